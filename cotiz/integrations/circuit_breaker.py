from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from threading import Lock


logger = logging.getLogger("cotiz.messaging")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
CHANNELS = ("whatsapp", "email")


def _bounded(value, default, minimum, maximum, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


@dataclass(frozen=True)
class BreakerSettings:
    enabled: bool = True
    error_rate_threshold: float = 0.6
    min_samples: int = 5
    window_seconds: int = 120
    open_seconds: int = 30
    half_open_max_calls: int = 1

    def bounded(self) -> "BreakerSettings":
        return replace(
            self,
            enabled=bool(self.enabled),
            error_rate_threshold=_bounded(self.error_rate_threshold, 0.6, 0.05, 1.0, float),
            min_samples=_bounded(self.min_samples, 5, 1, 1000, int),
            window_seconds=_bounded(self.window_seconds, 120, 5, 3600, int),
            open_seconds=_bounded(self.open_seconds, 30, 1, 3600, int),
            half_open_max_calls=_bounded(self.half_open_max_calls, 1, 1, 100, int),
        )

    @classmethod
    def from_config(cls, config) -> "BreakerSettings":
        return cls(
            enabled=bool(config.get("MESSAGING_CIRCUIT_ENABLED", True)),
            error_rate_threshold=config.get("MESSAGING_CIRCUIT_ERROR_RATE", 0.6),
            min_samples=config.get("MESSAGING_CIRCUIT_MIN_SAMPLES", 5),
            window_seconds=config.get("MESSAGING_CIRCUIT_WINDOW_SECONDS", 120),
            open_seconds=config.get("MESSAGING_CIRCUIT_OPEN_SECONDS", 30),
        ).bounded()


class CircuitBreaker:
    """Disjuntor por canal de mensageria, aberto pela taxa de erro numa janela movel."""

    def __init__(self, name: str, settings: BreakerSettings | None = None) -> None:
        self.name = name
        self._lock = Lock()
        self._settings = (settings or BreakerSettings()).bounded()
        self._state = CLOSED
        self._opened_at = 0.0
        self._half_open_calls = 0
        # (instante, sucesso) das chamadas dentro da janela
        self._outcomes: deque[tuple[float, bool]] = deque()

    @property
    def settings(self) -> BreakerSettings:
        return self._settings

    def configure(self, **values) -> None:
        self.apply(replace(BreakerSettings(), **values))

    def configure_from_config(self, config) -> None:
        self.apply(BreakerSettings.from_config(config))

    def apply(self, settings: BreakerSettings) -> None:
        with self._lock:
            self._settings = settings.bounded()
            if not self._settings.enabled:
                self._reset()

    def _reset(self) -> None:
        self._state = CLOSED
        self._opened_at = 0.0
        self._half_open_calls = 0
        self._outcomes.clear()

    def _trip(self, now: float) -> None:
        if self._state != OPEN:
            logger.warning("circuit_opened", extra={"channel": self.name})
        self._state = OPEN
        self._opened_at = now
        self._half_open_calls = 0

    def _window(self, now: float) -> tuple[int, int]:
        cutoff = now - self._settings.window_seconds
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()
        failures = sum(1 for _at, ok in self._outcomes if not ok)
        return len(self._outcomes), failures

    def before_call(self) -> tuple[bool, str]:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled:
                return True, "disabled"
            if self._state == OPEN:
                if now - self._opened_at < self._settings.open_seconds:
                    return False, OPEN
                self._state = HALF_OPEN
                self._half_open_calls = 0
            if self._state == HALF_OPEN:
                if self._half_open_calls >= self._settings.half_open_max_calls:
                    return False, HALF_OPEN
                self._half_open_calls += 1
                return True, HALF_OPEN
            return True, CLOSED

    def record_success(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled:
                return
            if self._state == HALF_OPEN:
                logger.info("circuit_closed", extra={"channel": self.name})
                self._reset()
                return
            self._outcomes.append((now, True))
            self._window(now)

    def record_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled or self._state == OPEN:
                return
            self._outcomes.append((now, False))
            if self._state == HALF_OPEN:
                self._trip(now)
                return
            samples, failures = self._window(now)
            if samples >= self._settings.min_samples and failures / samples >= self._settings.error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        now = time.monotonic()
        with self._lock:
            samples, failures = self._window(now)
            retry_in = 0.0
            if self._state == OPEN:
                retry_in = max(0.0, self._settings.open_seconds - (now - self._opened_at))
            return {
                "name": self.name,
                "state": self._state,
                "enabled": self._settings.enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failures / samples, 4) if samples else 0.0,
                "retry_in_seconds": round(retry_in, 2),
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._settings = BreakerSettings()
            self._reset()


_BREAKERS = {channel: CircuitBreaker(channel) for channel in CHANNELS}


def get_circuit_breaker(channel: str) -> CircuitBreaker:
    return _BREAKERS[channel]


def circuit_snapshot() -> dict:
    return {name: breaker.snapshot() for name, breaker in _BREAKERS.items()}


def reset_circuit_breakers_for_tests() -> None:
    for breaker in _BREAKERS.values():
        breaker.reset_for_tests()
