import json
import unittest

from cotiz.db import close_db
from cotiz.errors import AuthError
from cotiz.security import asaas_token_is_valid, compute_stripe_signature, verify_stripe_signature
from cotiz.ui_strings import error_message
from tests.helpers.procurement import build_temp_app, headers, reset_global_state
from tests.helpers.temp_db import TempDbSandbox


class StripeSignatureTest(unittest.TestCase):
    body = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'

    def test_valid_signature_returns_timestamp(self) -> None:
        signature = compute_stripe_signature("whsec_x", 1_700_000_000, self.body)
        timestamp = verify_stripe_signature(
            self.body,
            f"t=1700000000,v1=deadbeef,v1={signature}",
            "whsec_x",
            now=1_700_000_100,
        )
        self.assertEqual(timestamp, 1_700_000_000)

    def test_tampered_body_is_rejected(self) -> None:
        signature = compute_stripe_signature("whsec_x", 1_700_000_000, self.body)
        with self.assertRaises(AuthError) as ctx:
            verify_stripe_signature(self.body + b" ", f"t=1700000000,v1={signature}", "whsec_x", now=1_700_000_000)
        self.assertEqual(ctx.exception.code, "webhook_signature_invalid")
        self.assertEqual(ctx.exception.http_status, 400)

    def test_old_timestamp_is_rejected(self) -> None:
        signature = compute_stripe_signature("whsec_x", 1_700_000_000, self.body)
        with self.assertRaises(AuthError):
            verify_stripe_signature(
                self.body,
                f"t=1700000000,v1={signature}",
                "whsec_x",
                tolerance_seconds=300,
                now=1_700_000_301,
            )

    def test_missing_secret_or_header_is_rejected(self) -> None:
        with self.assertRaises(AuthError):
            verify_stripe_signature(self.body, "t=1,v1=abc", None)
        with self.assertRaises(AuthError):
            verify_stripe_signature(self.body, None, "whsec_x")
        with self.assertRaises(AuthError):
            verify_stripe_signature(self.body, "t=abc,v1=abc", "whsec_x")

    def test_asaas_token_comparison(self) -> None:
        self.assertTrue(asaas_token_is_valid(" token-1 ", "token-1"))
        self.assertFalse(asaas_token_is_valid("token-2", "token-1"))
        self.assertFalse(asaas_token_is_valid(None, "token-1"))
        self.assertFalse(asaas_token_is_valid("token-1", None))


class SecurityHardeningTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="security_hardening")
        self.app = build_temp_app(
            self._temp_db,
            RATE_LIMIT_ENABLED=True,
            RATE_LIMIT_WINDOW_SECONDS=60,
            RATE_LIMIT_MAX_REQUESTS=300,
        )
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def test_rate_limit_blocks_excessive_api_calls(self) -> None:
        self.app.config["RATE_LIMIT_MAX_REQUESTS"] = 2

        first = self.client.get("/api/unknown")
        second = self.client.get("/api/unknown")
        third = self.client.get("/api/unknown")

        self.assertEqual(first.status_code, 404)
        self.assertEqual(second.status_code, 404)
        self.assertEqual(third.status_code, 429)
        payload = third.get_json() or {}
        self.assertEqual(payload.get("error"), "rate_limit_exceeded")
        self.assertEqual(payload.get("message"), error_message("rate_limit_exceeded"))
        self.assertGreaterEqual(int(payload.get("retry_after") or 0), 0)

    def test_webhooks_are_not_rate_limited(self) -> None:
        self.app.config["RATE_LIMIT_MAX_REQUESTS"] = 1
        body = json.dumps({"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_x"}}).encode("utf-8")

        statuses = []
        for index in range(3):
            response = self.client.post(
                "/api/webhooks/asaas",
                data=body.replace(b"pay_x", f"pay_{index}".encode("utf-8")),
                headers={"asaas-access-token": "asaas-token-test", "Content-Type": "application/json"},
            )
            statuses.append(response.status_code)

        self.assertEqual(statuses, [200, 200, 200])

    def test_security_headers_are_applied(self) -> None:
        response = self.client.get("/api/quotes", headers=headers())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers.get("X-Content-Type-Options"), "nosniff")
        self.assertEqual(response.headers.get("X-Frame-Options"), "DENY")
        self.assertIn("frame-ancestors 'none'", response.headers.get("Content-Security-Policy", ""))
        self.assertTrue(response.headers.get("X-Request-Id"))

    def test_security_headers_can_be_disabled(self) -> None:
        self.app.config["SECURITY_HEADERS_ENABLED"] = False

        response = self.client.get("/api/quotes", headers=headers())

        self.assertIsNone(response.headers.get("X-Frame-Options"))

    def test_health_exposes_circuits_and_metrics(self) -> None:
        self.client.get("/api/unknown")

        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}
        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("db"), "sqlite")
        self.assertIn("whatsapp", payload.get("circuits") or {})
        self.assertIn("email", payload.get("circuits") or {})
        self.assertGreaterEqual(int((payload.get("metrics") or {}).get("requests_total") or 0), 1)

    def test_prometheus_endpoint_exports_http_counters(self) -> None:
        self.client.get("/api/unknown")

        response = self.client.get("/metrics")

        self.assertEqual(response.status_code, 200)
        text = response.get_data(as_text=True)
        self.assertIn("http_requests_total", text)
        self.assertIn("# TYPE webhook_received_total counter", text)


if __name__ == "__main__":
    unittest.main()
