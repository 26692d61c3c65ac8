"""Envio de mensagens (WhatsApp via Evolution API e email via API HTTP).

Toda chamada externa passa pelo circuit breaker do canal e por retry
limitado; falhas definitivas (4xx) nao sao repetidas.
"""
from __future__ import annotations

import json
import logging
import os
import ssl
import threading
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Callable, Dict, List

from flask import current_app, has_app_context

from cotiz.integrations.circuit_breaker import get_circuit_breaker
from cotiz.observability import observe_messaging
from cotiz.validators import is_valid_email, normalize_phone


logger = logging.getLogger("cotiz.messaging")


class MessagingError(RuntimeError):
    def __init__(self, message: str, *, code: str | None = None, definitive: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.definitive = definitive


class WhatsAppGateway(ABC):
    channel = "whatsapp"

    @abstractmethod
    def send_text(self, phone: str, text: str) -> dict:
        raise NotImplementedError


class EmailGateway(ABC):
    channel = "email"

    @abstractmethod
    def send_email(self, to: str, subject: str, body: str) -> dict:
        raise NotImplementedError


def _get_config(key: str, default=None):
    if has_app_context():
        value = current_app.config.get(key)
        if value is not None:
            return value
    return os.environ.get(key, default)


def _int_config(key: str, default: int) -> int:
    try:
        return int(_get_config(key, default))
    except (TypeError, ValueError):
        return default


def _bool_config(key: str, default: bool) -> bool:
    value = _get_config(key, None)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _request_json(url: str, payload: dict, headers: Dict[str, str]) -> dict:
    body = json.dumps(payload).encode("utf-8")
    request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
    request_headers.update(headers)
    req = urllib.request.Request(url, data=body, method="POST", headers=request_headers)

    timeout = _int_config("MESSAGING_TIMEOUT_SECONDS", 15)
    context = None
    if url.lower().startswith("https") and not _bool_config("MESSAGING_VERIFY_SSL", True):
        context = ssl._create_unverified_context()

    try:
        with urllib.request.urlopen(req, timeout=timeout, context=context) as resp:
            raw = resp.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8") if exc.fp else ""
        definitive = 400 <= exc.code < 500 and exc.code not in {408, 429}
        raise MessagingError(
            f"Gateway retornou HTTP {exc.code}: {detail[:200]}",
            code=str(exc.code),
            definitive=definitive,
        ) from exc
    except urllib.error.URLError as exc:
        raise MessagingError(f"Erro de conexao com gateway: {exc.reason}") from exc

    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw[:200]}
    return parsed if isinstance(parsed, dict) else {"data": parsed}


class EvolutionWhatsAppGateway(WhatsAppGateway):
    def __init__(self, base_url: str | None, token: str | None, instance: str | None, endpoint: str | None = None):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token or ""
        self.instance = instance or ""
        self.endpoint = (endpoint or "").strip("/")

    def endpoint_candidates(self) -> List[str]:
        if self.endpoint:
            return [self.endpoint.replace("{instance}", self.instance)]
        return [
            f"message/sendText/{self.instance}",
            f"{self.instance}/sendText",
            f"api/message/sendText/{self.instance}",
        ]

    def send_text(self, phone: str, text: str) -> dict:
        if not self.base_url or not self.token or not self.instance:
            raise MessagingError("Evolution API nao configurada", code="not_configured", definitive=True)
        number = normalize_phone(phone)
        if not number:
            raise MessagingError("Telefone invalido para WhatsApp", code="invalid_phone", definitive=True)

        last_error: MessagingError | None = None
        for endpoint in self.endpoint_candidates():
            try:
                response = _request_json(
                    f"{self.base_url}/{endpoint}",
                    {"number": number, "text": text},
                    {"apikey": self.token},
                )
            except MessagingError as exc:
                # Versoes da Evolution API expoem rotas diferentes; 404 tenta a proxima.
                if exc.code == "404":
                    last_error = exc
                    continue
                raise
            return {"channel": self.channel, "to": number, "endpoint": endpoint, "response": response}
        raise last_error or MessagingError("Nenhum endpoint da Evolution API respondeu", definitive=True)


class HttpEmailGateway(EmailGateway):
    def __init__(self, api_url: str | None, api_key: str | None, sender: str | None):
        self.api_url = api_url or ""
        self.api_key = api_key or ""
        self.sender = sender or ""

    def send_email(self, to: str, subject: str, body: str) -> dict:
        if not self.api_url or not self.api_key:
            raise MessagingError("API de email nao configurada", code="not_configured", definitive=True)
        if not is_valid_email(to):
            raise MessagingError("Email invalido", code="invalid_email", definitive=True)
        response = _request_json(
            self.api_url,
            {"from": self.sender, "to": [to], "subject": subject, "text": body},
            {"Authorization": f"Bearer {self.api_key}"},
        )
        return {"channel": self.channel, "to": to, "response": response}


class MockOutbox:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: List[dict] = []

    def record(self, message: dict) -> None:
        with self._lock:
            self._messages.append(dict(message))

    def messages(self, channel: str | None = None) -> List[dict]:
        with self._lock:
            return [item for item in self._messages if channel is None or item["channel"] == channel]

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()


_MOCK_OUTBOX = MockOutbox()


class MockWhatsAppGateway(WhatsAppGateway):
    def send_text(self, phone: str, text: str) -> dict:
        number = normalize_phone(phone)
        if not number:
            raise MessagingError("Telefone invalido para WhatsApp", code="invalid_phone", definitive=True)
        message = {"channel": self.channel, "to": number, "text": text}
        _MOCK_OUTBOX.record(message)
        return message


class MockEmailGateway(EmailGateway):
    def send_email(self, to: str, subject: str, body: str) -> dict:
        if not is_valid_email(to):
            raise MessagingError("Email invalido", code="invalid_email", definitive=True)
        message = {"channel": self.channel, "to": to, "subject": subject, "text": body}
        _MOCK_OUTBOX.record(message)
        return message


def get_mock_outbox() -> MockOutbox:
    return _MOCK_OUTBOX


class Messenger:
    """Fachada usada pelos servicos: aplica circuit breaker, retry e metricas."""

    def __init__(
        self,
        whatsapp: WhatsAppGateway,
        email: EmailGateway,
        *,
        retry_attempts: int = 2,
        backoff_ms: int = 300,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.whatsapp = whatsapp
        self.email = email
        self.retry_attempts = max(0, int(retry_attempts))
        self.backoff_ms = max(0, int(backoff_ms))
        self._sleep = sleep

    def send_whatsapp(self, phone: str, text: str) -> dict:
        return self._call("whatsapp", lambda: self.whatsapp.send_text(phone, text))

    def send_email(self, to: str, subject: str, body: str) -> dict:
        return self._call("email", lambda: self.email.send_email(to, subject, body))

    def _call(self, channel: str, send: Callable[[], dict]) -> dict:
        breaker = get_circuit_breaker(channel)
        allowed, state = breaker.before_call()
        if not allowed:
            observe_messaging(channel, "circuit_open", 0.0)
            raise MessagingError(f"circuit_open: canal {channel} em {state}", code="circuit_open")

        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                result = send()
            except MessagingError as exc:
                duration_ms = (time.perf_counter() - started) * 1000.0
                if exc.definitive:
                    # Dado invalido nao indica indisponibilidade do provedor.
                    if exc.code not in {"invalid_phone", "invalid_email", "not_configured"}:
                        breaker.record_failure()
                    observe_messaging(channel, "rejected", duration_ms)
                    raise
                breaker.record_failure()
                if attempt >= self.retry_attempts:
                    observe_messaging(channel, "error", duration_ms)
                    logger.warning(
                        "messaging_send_failed",
                        extra={"channel": channel, "attempts": attempt + 1, "error": str(exc)},
                    )
                    raise
                observe_messaging(channel, "retry", duration_ms)
                self._sleep((self.backoff_ms * (2 ** attempt)) / 1000.0)
                attempt += 1
                continue
            breaker.record_success()
            observe_messaging(channel, "sent", (time.perf_counter() - started) * 1000.0)
            return result


def build_messenger(config) -> Messenger:
    mode = str(config.get("MESSAGING_MODE") or "mock").strip().lower()
    if mode == "live":
        whatsapp: WhatsAppGateway = EvolutionWhatsAppGateway(
            config.get("EVOLUTION_API_URL"),
            config.get("EVOLUTION_API_TOKEN"),
            config.get("EVOLUTION_INSTANCE"),
            config.get("EVOLUTION_SEND_ENDPOINT"),
        )
        email: EmailGateway = HttpEmailGateway(
            config.get("EMAIL_API_URL"),
            config.get("EMAIL_API_KEY"),
            config.get("EMAIL_FROM"),
        )
    else:
        whatsapp = MockWhatsAppGateway()
        email = MockEmailGateway()
    return Messenger(
        whatsapp,
        email,
        retry_attempts=config.get("MESSAGING_RETRY_ATTEMPTS", 2),
        backoff_ms=config.get("MESSAGING_RETRY_BACKOFF_MS", 300),
    )


def get_messenger() -> Messenger:
    messenger = current_app.extensions.get("messenger")
    if messenger is None:
        messenger = build_messenger(current_app.config)
        current_app.extensions["messenger"] = messenger
    return messenger
