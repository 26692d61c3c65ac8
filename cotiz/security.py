from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from typing import Dict, Tuple

from flask import current_app, request, session

from cotiz.errors import AuthError, ValidationError


STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
ASAAS_TOKEN_HEADER = "asaas-access-token"


class SimpleRateLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            start, count = self._entries.get(key, (now, 0))
            if now - start >= window_seconds:
                start = now
                count = 0
            count += 1
            self._entries[key] = (start, count)
            if len(self._entries) > 10_000:
                cutoff = now - (window_seconds * 2)
                self._entries = {
                    cached_key: value
                    for cached_key, value in self._entries.items()
                    if value[0] >= cutoff
                }
            retry_after = max(0, int(window_seconds - (now - start)))
            return count <= limit, retry_after

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


_RATE_LIMITER = SimpleRateLimiter()


def _rate_limit_key() -> str:
    user = str(session.get("user_email") or "").strip().lower() or "anon"
    ip = str(request.remote_addr or "").strip() or "unknown"
    route = request.url_rule.rule if request.url_rule else request.path
    return f"{ip}|{user}|{request.method}|{route}"


def enforce_rate_limit() -> None:
    if not bool(current_app.config.get("RATE_LIMIT_ENABLED", True)):
        return None
    if request.method == "OPTIONS":
        return None
    # Provedores externos repetem entregas; o limite nao pode descartar webhooks.
    if request.path.startswith("/api/webhooks/"):
        return None

    window_seconds = max(1, int(current_app.config.get("RATE_LIMIT_WINDOW_SECONDS", 60) or 60))
    max_requests = max(1, int(current_app.config.get("RATE_LIMIT_MAX_REQUESTS", 300) or 300))
    allowed, retry_after = _RATE_LIMITER.allow(
        _rate_limit_key(),
        limit=max_requests,
        window_seconds=window_seconds,
    )
    if allowed:
        return None

    raise ValidationError(
        code="rate_limit_exceeded",
        message_key="rate_limit_exceeded",
        http_status=429,
        critical=False,
        payload={"retry_after": retry_after},
    )


def apply_security_headers(response):
    if not bool(current_app.config.get("SECURITY_HEADERS_ENABLED", True)):
        return response
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault(
        "Permissions-Policy",
        "camera=(), geolocation=(), microphone=()",
    )
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def reset_rate_limiter_for_tests() -> None:
    _RATE_LIMITER.reset()


def _parse_stripe_signature(header_value: str | None) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for chunk in str(header_value or "").split(","):
        key, _, value = chunk.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value.strip())
    return timestamp, signatures


def compute_stripe_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{int(timestamp)}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    body: bytes,
    header_value: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> int:
    """Valida o header Stripe-Signature e devolve o timestamp assinado.

    O segredo ausente e tratado como erro de configuracao: nenhum evento e
    aceito sem assinatura verificavel.
    """
    if not secret:
        raise AuthError(
            code="webhook_signature_invalid",
            http_status=400,
            details="STRIPE_WEBHOOK_SECRET nao configurado",
        )
    timestamp, signatures = _parse_stripe_signature(header_value)
    if timestamp is None or not signatures:
        raise AuthError(code="webhook_signature_invalid", http_status=400, details="header de assinatura ausente")

    current = time.time() if now is None else float(now)
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise AuthError(code="webhook_signature_invalid", http_status=400, details="timestamp fora da tolerancia")

    expected = compute_stripe_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise AuthError(code="webhook_signature_invalid", http_status=400, details="assinatura nao confere")
    return timestamp


def asaas_token_is_valid(provided: str | None, expected: str | None) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(str(provided or "").strip(), str(expected).strip())
