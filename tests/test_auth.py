import unittest

from cotiz.db import close_db
from tests.helpers.procurement import build_temp_app, db_fetchone, reset_global_state
from tests.helpers.temp_db import TempDbSandbox


class AuthTestCase(unittest.TestCase):
    overrides: dict = {}

    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="auth")
        self.app = build_temp_app(self._temp_db, **self.overrides)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()


class LoginTest(AuthTestCase):
    def test_configured_user_logs_in_and_is_bootstrapped(self) -> None:
        response = self.client.post(
            "/api/auth/login",
            json={"email": "Admin@Cotiz.local", "password": "admin123"},
        )

        self.assertEqual(response.status_code, 200, response.get_data(as_text=True))
        user = response.get_json()["user"]
        self.assertEqual(user["client_id"], "client-demo")
        self.assertEqual(user["role"], "admin")
        self.assertIsNotNone(user["id"])
        row = db_fetchone(self._temp_db, "SELECT client_id FROM auth_users WHERE email = ?", ("admin@cotiz.local",))
        self.assertEqual(row["client_id"], "client-demo")

        again = self.client.post("/api/auth/login", json={"email": "admin@cotiz.local", "password": "admin123"})
        self.assertEqual(again.get_json()["user"]["id"], user["id"])

    def test_wrong_password(self) -> None:
        response = self.client.post("/api/auth/login", json={"email": "admin@cotiz.local", "password": "errada"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "auth_invalid_credentials")

    def test_me_and_logout(self) -> None:
        self.client.post("/api/auth/login", json={"email": "admin@cotiz.local", "password": "admin123"})

        me = self.client.get("/api/auth/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.get_json()["user"]["email"], "admin@cotiz.local")
        self.assertEqual(me.get_json()["user"]["active_client_id"], "client-demo")

        logout = self.client.post("/api/auth/logout")
        self.assertEqual(logout.get_json(), {"logged_out": True})


class RegisterTest(AuthTestCase):
    def test_register_creates_client_and_user(self) -> None:
        response = self.client.post(
            "/api/auth/register",
            json={
                "email": "sindico@jardins.com",
                "password": "segredo123",
                "company_name": "Condominio Jardins",
            },
        )

        self.assertEqual(response.status_code, 201, response.get_data(as_text=True))
        user = response.get_json()["user"]
        self.assertEqual(user["client_id"], "client-condominio-jardins")
        self.assertEqual(user["role"], "client")
        client = db_fetchone(self._temp_db, "SELECT client_type FROM clients WHERE id = ?", ("client-condominio-jardins",))
        self.assertEqual(client["client_type"], "condominio")

        login = self.client.post(
            "/api/auth/login",
            json={"email": "sindico@jardins.com", "password": "segredo123"},
        )
        self.assertEqual(login.status_code, 200)

    def test_register_administradora_role(self) -> None:
        response = self.client.post(
            "/api/auth/register",
            json={
                "email": "contato@gestora.com",
                "password": "segredo123",
                "company_name": "Gestora Predial",
                "client_type": "administradora",
            },
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["user"]["role"], "administradora")

    def test_register_validation(self) -> None:
        cases = [
            ({"email": "", "password": ""}, 400, "auth_missing_credentials"),
            ({"email": "sem-arroba", "password": "x"}, 400, "email_invalid"),
            ({"email": "a@b.com", "password": "x", "client_type": "industria"}, 400, "client_type_invalid"),
        ]
        for payload, status, code in cases:
            with self.subTest(code=code):
                response = self.client.post("/api/auth/register", json=payload)
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.get_json()["error"], code)

    def test_duplicate_email(self) -> None:
        payload = {"email": "dup@example.com", "password": "segredo123"}
        self.client.post("/api/auth/register", json=payload)

        response = self.client.post("/api/auth/register", json=payload)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "email_already_registered")


class SessionEnforcementTest(AuthTestCase):
    overrides = {"TESTING": False, "AUTH_ENABLED": True, "DB_AUTO_INIT": True}

    def test_session_grants_access_and_headers_are_ignored(self) -> None:
        spoofed = self.client.get("/api/quotes", headers={"X-User-Id": "1", "X-User-Role": "admin"})
        self.assertEqual(spoofed.status_code, 401)
        self.assertEqual(spoofed.get_json()["error"], "auth_required")

        login = self.client.post("/api/auth/login", json={"email": "admin@cotiz.local", "password": "admin123"})
        self.assertEqual(login.status_code, 200)

        listed = self.client.get("/api/quotes")
        self.assertEqual(listed.status_code, 200, listed.get_data(as_text=True))

        self.client.post("/api/auth/logout")
        self.assertEqual(self.client.get("/api/quotes").status_code, 401)


if __name__ == "__main__":
    unittest.main()
