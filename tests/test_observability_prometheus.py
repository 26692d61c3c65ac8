import json
import logging
import unittest

from cotiz import create_app
from cotiz.config import Config
from cotiz.core import QuoteCreated, get_event_bus
from cotiz.db import close_db
from cotiz.observability import JsonLogFormatter, bind_request_id, reset_metrics_for_tests, set_log_request_id
from tests.helpers.procurement import reset_global_state
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = False
    AUTH_ENABLED = False
    SCHEDULER_ENABLED = False


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig, TESTING=False)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_global_state()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        get_event_bus().publish(QuoteCreated(client_id="client-metrics", quote_id=99, title="Pintura"))

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/plain", response.headers.get("Content-Type") or "")

        payload = response.get_data(as_text=True)
        for metric in (
            "http_requests_total",
            "http_request_duration_ms_bucket",
            "domain_event_emitted_total",
            "webhook_received_total",
            "payment_transition_total",
            "messaging_sent_total",
            "scheduler_job_total",
            "realtime_dropped_total",
        ):
            self.assertIn(metric, payload)
        self.assertIn('event_type="QuoteCreated"', payload)
        self.assertIn('status="404"', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="cotiz",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="worker_log",
            args=(),
            exc_info=None,
        )
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")
        self.assertEqual(parsed.get("logger"), "cotiz")

    def test_bound_request_id_is_scoped(self) -> None:
        formatter = JsonLogFormatter()
        record = logging.LogRecord("cotiz.scheduler", logging.INFO, __file__, 1, "job", (), None)
        with bind_request_id("job-abc"):
            inside = json.loads(formatter.format(record))
        outside = json.loads(formatter.format(record))

        self.assertEqual(inside["request_id"], "job-abc")
        self.assertNotEqual(outside["request_id"], "job-abc")

    def test_health_reports_status(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}

        self.assertIn(payload["status"], ("ok", "degraded"))
        self.assertEqual(payload["db"], "sqlite")
        self.assertIn("whatsapp", payload["circuits"])


if __name__ == "__main__":
    unittest.main()
