import unittest
from unittest.mock import patch

from cotiz.db import close_db
from cotiz.ui_strings import error_message
from tests.helpers.procurement import build_temp_app, headers, reset_global_state
from tests.helpers.temp_db import TempDbSandbox


class ErrorPermissionTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_perm")
        self.app = build_temp_app(
            self._temp_db,
            TESTING=False,
            AUTH_ENABLED=True,
            DB_AUTO_INIT=False,
            PROPAGATE_EXCEPTIONS=False,
        )
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def test_permission_error_for_unauthenticated_api(self) -> None:
        response = self.client.get("/api/quotes", headers=headers())
        self.assertEqual(response.status_code, 401)

        payload = response.get_json()
        self.assertEqual(payload.get("error"), "auth_required")
        self.assertEqual(payload.get("message"), error_message("auth_required"))
        self.assertTrue((payload.get("request_id") or "").strip())
        self.assertNotIn("Traceback", response.get_data(as_text=True))

    def test_public_paths_do_not_require_login(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        self.app = build_temp_app(self._temp_db, PROPAGATE_EXCEPTIONS=False)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def test_supplier_role_cannot_list_client_quotes(self) -> None:
        response = self.client.get("/api/quotes", headers=headers("supplier", supplier_id=1))

        self.assertEqual(response.status_code, 403)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("error"), "permission_denied")
        self.assertEqual(payload.get("message"), error_message("permission_denied"))

    def test_not_found_quote_returns_friendly_message(self) -> None:
        response = self.client.get("/api/quotes/999", headers=headers())

        self.assertEqual(response.status_code, 404)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("error"), "quote_not_found")
        self.assertEqual(payload.get("message"), error_message("quote_not_found"))

    def test_validation_error_on_invalid_status_filter(self) -> None:
        response = self.client.get("/api/quotes?status=bogus", headers=headers())

        self.assertEqual(response.status_code, 400)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("error"), "status_invalid")
        self.assertIn("draft", payload.get("allowed") or [])

    def test_unexpected_exception_is_masked(self) -> None:
        with patch("cotiz.routes.quote_routes._QUOTE_SERVICE.list", side_effect=RuntimeError("db exploded")):
            response = self.client.get("/api/quotes", headers=headers())

        self.assertEqual(response.status_code, 500)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        self.assertNotIn("db exploded", response.get_data(as_text=True))

    def test_request_id_is_propagated(self) -> None:
        response = self.client.get("/api/quotes/999", headers={**headers(), "X-Request-Id": "req-abc-123"})

        self.assertEqual(response.headers.get("X-Request-Id"), "req-abc-123")
        self.assertEqual((response.get_json() or {}).get("request_id"), "req-abc-123")


if __name__ == "__main__":
    unittest.main()
