import unittest
from unittest.mock import patch

from cotiz.integrations.circuit_breaker import CircuitBreaker, get_circuit_breaker, reset_circuit_breakers_for_tests
from cotiz.integrations.messaging import (
    EmailGateway,
    EvolutionWhatsAppGateway,
    Messenger,
    MessagingError,
    MockEmailGateway,
    MockWhatsAppGateway,
    get_mock_outbox,
)
from cotiz.observability import metrics_snapshot, reset_metrics_for_tests


class _FlakyWhatsApp(MockWhatsAppGateway):
    def __init__(self, failures: int, *, definitive: bool = False, code: str | None = None) -> None:
        self.failures = failures
        self.definitive = definitive
        self.code = code
        self.calls = 0

    def send_text(self, phone: str, text: str) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            raise MessagingError("gateway fora do ar", code=self.code, definitive=self.definitive)
        return super().send_text(phone, text)


class _UnusedEmail(EmailGateway):
    def send_email(self, to: str, subject: str, body: str) -> dict:
        raise AssertionError("email nao deveria ser chamado")


class MessengerRetryTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_circuit_breakers_for_tests()
        reset_metrics_for_tests()
        get_mock_outbox().clear()
        self.sleeps = []

    def tearDown(self) -> None:
        reset_circuit_breakers_for_tests()
        reset_metrics_for_tests()
        get_mock_outbox().clear()

    def _messenger(self, whatsapp, retry_attempts: int = 2) -> Messenger:
        return Messenger(whatsapp, _UnusedEmail(), retry_attempts=retry_attempts, backoff_ms=100, sleep=self.sleeps.append)

    def test_transient_failure_is_retried_with_exponential_backoff(self) -> None:
        gateway = _FlakyWhatsApp(failures=2)

        result = self._messenger(gateway).send_whatsapp("(11) 99999-0000", "Ola")

        self.assertEqual(gateway.calls, 3)
        self.assertEqual(self.sleeps, [0.1, 0.2])
        self.assertEqual(result["to"], "5511999990000")
        self.assertEqual(len(get_mock_outbox().messages("whatsapp")), 1)
        messaging = metrics_snapshot()["messaging"]
        self.assertEqual(messaging.get("whatsapp:retry"), 2)
        self.assertEqual(messaging.get("whatsapp:sent"), 1)

    def test_gives_up_after_retry_budget(self) -> None:
        gateway = _FlakyWhatsApp(failures=5)

        with self.assertRaises(MessagingError):
            self._messenger(gateway, retry_attempts=1).send_whatsapp("11999990000", "Ola")

        self.assertEqual(gateway.calls, 2)
        self.assertEqual(metrics_snapshot()["messaging"].get("whatsapp:error"), 1)

    def test_definitive_failure_is_not_retried(self) -> None:
        gateway = _FlakyWhatsApp(failures=1, definitive=True, code="400")

        with self.assertRaises(MessagingError):
            self._messenger(gateway).send_whatsapp("11999990000", "Ola")

        self.assertEqual(gateway.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_invalid_recipient_does_not_count_against_circuit(self) -> None:
        messenger = Messenger(MockWhatsAppGateway(), MockEmailGateway(), retry_attempts=0, sleep=self.sleeps.append)

        with self.assertRaises(MessagingError) as ctx:
            messenger.send_email("nao-e-email", "Assunto", "Corpo")

        self.assertEqual(ctx.exception.code, "invalid_email")
        self.assertEqual(get_circuit_breaker("email").snapshot()["failures"], 0)

    def test_open_circuit_short_circuits_calls(self) -> None:
        breaker = get_circuit_breaker("whatsapp")
        breaker.configure(enabled=True, error_rate_threshold=0.5, min_samples=2, window_seconds=60, open_seconds=60)
        gateway = _FlakyWhatsApp(failures=10)
        messenger = self._messenger(gateway, retry_attempts=0)
        for _ in range(2):
            with self.assertRaises(MessagingError):
                messenger.send_whatsapp("11999990000", "Ola")

        with self.assertRaises(MessagingError) as ctx:
            messenger.send_whatsapp("11999990000", "Ola")

        self.assertEqual(ctx.exception.code, "circuit_open")
        self.assertEqual(gateway.calls, 2)
        self.assertEqual(breaker.snapshot()["state"], "open")


class CircuitBreakerTest(unittest.TestCase):
    def _breaker(self, **overrides) -> CircuitBreaker:
        settings = {"enabled": True, "error_rate_threshold": 0.5, "min_samples": 2, "window_seconds": 60, "open_seconds": 10}
        settings.update(overrides)
        breaker = CircuitBreaker("teste")
        breaker.configure(**settings)
        return breaker

    def test_opens_only_after_min_samples(self) -> None:
        breaker = self._breaker(min_samples=3)
        breaker.record_failure()
        breaker.record_failure()
        self.assertEqual(breaker.before_call(), (True, "closed"))

        breaker.record_failure()

        self.assertEqual(breaker.before_call(), (False, "open"))

    def test_half_open_trial_call_closes_on_success(self) -> None:
        breaker = self._breaker()
        with patch("cotiz.integrations.circuit_breaker.time.monotonic", return_value=100.0):
            breaker.record_failure()
            breaker.record_failure()
        with patch("cotiz.integrations.circuit_breaker.time.monotonic", return_value=111.0):
            self.assertEqual(breaker.before_call(), (True, "half_open"))
            self.assertEqual(breaker.before_call(), (False, "half_open"))
            breaker.record_success()
            self.assertEqual(breaker.before_call(), (True, "closed"))

    def test_half_open_failure_reopens(self) -> None:
        breaker = self._breaker()
        with patch("cotiz.integrations.circuit_breaker.time.monotonic", return_value=100.0):
            breaker.record_failure()
            breaker.record_failure()
        with patch("cotiz.integrations.circuit_breaker.time.monotonic", return_value=111.0):
            breaker.before_call()
            breaker.record_failure()
            self.assertEqual(breaker.before_call(), (False, "open"))

    def test_disabled_breaker_always_allows(self) -> None:
        breaker = self._breaker(enabled=False)
        for _ in range(10):
            breaker.record_failure()

        self.assertEqual(breaker.before_call(), (True, "disabled"))


class EvolutionGatewayTest(unittest.TestCase):
    def test_not_configured_is_definitive(self) -> None:
        gateway = EvolutionWhatsAppGateway(None, None, None)

        with self.assertRaises(MessagingError) as ctx:
            gateway.send_text("11999990000", "Ola")

        self.assertTrue(ctx.exception.definitive)
        self.assertEqual(ctx.exception.code, "not_configured")

    def test_falls_back_to_next_endpoint_on_404(self) -> None:
        gateway = EvolutionWhatsAppGateway("https://evo.local", "token", "cotiz")
        calls = []

        def fake_request(url, payload, headers):
            calls.append(url)
            if len(calls) == 1:
                raise MessagingError("nao encontrado", code="404", definitive=True)
            return {"key": {"id": "msg-1"}}

        with patch("cotiz.integrations.messaging._request_json", side_effect=fake_request):
            result = gateway.send_text("11999990000", "Ola")

        self.assertEqual(calls[0], "https://evo.local/message/sendText/cotiz")
        self.assertEqual(result["endpoint"], "cotiz/sendText")


if __name__ == "__main__":
    unittest.main()
