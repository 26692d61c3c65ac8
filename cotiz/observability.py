from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_MESSAGING_DURATION_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 15000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id and request_id != "n/a":
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route: Dict[str, Dict[str, float]] = {}
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._domain_event_emitted_total: Dict[str, int] = {}
            self._webhook_received_total: Dict[tuple[str, str], int] = {}
            self._payment_transition_total: Dict[tuple[str, str], int] = {}
            self._messaging_sent_total: Dict[tuple[str, str], int] = {}
            self._messaging_duration_ms = self._new_histogram_state(_MESSAGING_DURATION_BUCKETS_MS)
            self._scheduler_job_total: Dict[tuple[str, str], int] = {}
            self._realtime_dropped_total = 0

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: dict, key) -> None:
        counter[key] = int(counter.get(key, 0)) + 1

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))

        key = f"{method_key} {route_key}"
        with self._lock:
            bucket = self._by_route.setdefault(
                key,
                {
                    "requests": 0.0,
                    "errors": 0.0,
                    "latency_sum_ms": 0.0,
                    "latency_max_ms": 0.0,
                },
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            self._requests_total += 1
            if int(status_code) >= 400:
                bucket["errors"] += 1
                self._errors_total += 1

            self._bump(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._bump(self._domain_event_emitted_total, key)

    def observe_webhook(self, provider: str, outcome: str) -> None:
        key = (str(provider or "unknown").strip().lower(), str(outcome or "unknown").strip().lower())
        with self._lock:
            self._bump(self._webhook_received_total, key)

    def observe_payment_transition(self, from_status: str | None, to_status: str) -> None:
        key = (str(from_status or "none"), str(to_status or "unknown"))
        with self._lock:
            self._bump(self._payment_transition_total, key)

    def observe_messaging(self, channel: str, outcome: str, duration_ms: float) -> None:
        key = (str(channel or "unknown"), str(outcome or "unknown"))
        with self._lock:
            self._bump(self._messaging_sent_total, key)
            self._observe_histogram(self._messaging_duration_ms, duration_ms, _MESSAGING_DURATION_BUCKETS_MS)

    def observe_scheduler_job(self, job: str, outcome: str) -> None:
        with self._lock:
            self._bump(self._scheduler_job_total, (str(job), str(outcome)))

    def observe_realtime_dropped(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._realtime_dropped_total += increment

    def snapshot(self) -> dict:
        with self._lock:
            routes = {}
            for key, bucket in self._by_route.items():
                requests = bucket["requests"] or 1.0
                routes[key] = {
                    "requests": int(bucket["requests"]),
                    "errors": int(bucket["errors"]),
                    "latency_avg_ms": round(bucket["latency_sum_ms"] / requests, 2),
                    "latency_max_ms": round(bucket["latency_max_ms"], 2),
                }
            return {
                "requests_total": self._requests_total,
                "errors_total": self._errors_total,
                "routes": routes,
                "domain_events": dict(self._domain_event_emitted_total),
                "webhooks": {f"{provider}:{outcome}": count for (provider, outcome), count in self._webhook_received_total.items()},
                "payment_transitions": {
                    f"{from_status}->{to_status}": count
                    for (from_status, to_status), count in self._payment_transition_total.items()
                },
                "messaging": {f"{channel}:{outcome}": count for (channel, outcome), count in self._messaging_sent_total.items()},
                "scheduler_jobs": {f"{job}:{outcome}": count for (job, outcome), count in self._scheduler_job_total.items()},
                "realtime_dropped_total": self._realtime_dropped_total,
                "_http_request_total": dict(self._http_request_total),
                "_http_request_duration_ms": {key: dict(value) for key, value in self._http_request_duration_ms.items()},
                "_messaging_duration_ms": dict(self._messaging_duration_ms),
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    snapshot = _METRICS.snapshot()
    return {key: value for key, value in snapshot.items() if not key.startswith("_")}


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_webhook(provider: str, outcome: str) -> None:
    _METRICS.observe_webhook(provider, outcome)


def observe_payment_transition(from_status: str | None, to_status: str) -> None:
    _METRICS.observe_payment_transition(from_status, to_status)


def observe_messaging(channel: str, outcome: str, duration_ms: float) -> None:
    _METRICS.observe_messaging(channel, outcome, duration_ms)


def observe_scheduler_job(job: str, outcome: str) -> None:
    _METRICS.observe_scheduler_job(job, outcome)


def observe_realtime_dropped(count: int = 1) -> None:
    _METRICS.observe_realtime_dropped(count)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        rendered = ",".join(f'{key}="{_prom_label(item)}"' for key, item in labels.items())
        return f"{name}{{{rendered}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, state: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for bucket, count in state["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(count), base_labels | {"le": bucket}))
    lines.append(_prom_line(f"{name}_sum", round(float(state["sum"]), 3), base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(state["count"]), base_labels or None))


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.snapshot()
    lines: list[str] = []

    lines.append("# TYPE http_requests_total counter")
    for (method, route, status), count in sorted(snapshot["_http_request_total"].items()):
        lines.append(_prom_line("http_requests_total", count, {"method": method, "route": route, "status": status}))

    lines.append("# TYPE http_request_duration_ms histogram")
    for (method, route), state in sorted(snapshot["_http_request_duration_ms"].items()):
        _prom_histogram(lines, "http_request_duration_ms", state, {"method": method, "route": route})

    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, count in sorted(snapshot["domain_events"].items()):
        lines.append(_prom_line("domain_event_emitted_total", count, {"event_type": event_type}))

    lines.append("# TYPE webhook_received_total counter")
    for key, count in sorted(snapshot["webhooks"].items()):
        provider, outcome = key.split(":", 1)
        lines.append(_prom_line("webhook_received_total", count, {"provider": provider, "outcome": outcome}))

    lines.append("# TYPE payment_transition_total counter")
    for key, count in sorted(snapshot["payment_transitions"].items()):
        from_status, to_status = key.split("->", 1)
        lines.append(_prom_line("payment_transition_total", count, {"from": from_status, "to": to_status}))

    lines.append("# TYPE messaging_sent_total counter")
    for key, count in sorted(snapshot["messaging"].items()):
        channel, outcome = key.split(":", 1)
        lines.append(_prom_line("messaging_sent_total", count, {"channel": channel, "outcome": outcome}))

    lines.append("# TYPE messaging_duration_ms histogram")
    _prom_histogram(lines, "messaging_duration_ms", snapshot["_messaging_duration_ms"])

    lines.append("# TYPE scheduler_job_total counter")
    for key, count in sorted(snapshot["scheduler_jobs"].items()):
        job, outcome = key.split(":", 1)
        lines.append(_prom_line("scheduler_job_total", count, {"job": job, "outcome": outcome}))

    lines.append("# TYPE realtime_dropped_total counter")
    lines.append(_prom_line("realtime_dropped_total", int(snapshot["realtime_dropped_total"])))
    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
