from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Type

from cotiz.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)
    client_id: str = ""

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        normalized_occurred_at = normalized_occurred_at.astimezone(timezone.utc)
        normalized_client = str(self.client_id or "").strip() or "unknown"

        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at)
        object.__setattr__(self, "client_id", normalized_client)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                payload[key] = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            else:
                payload[key] = value
        return payload


@dataclass(frozen=True, kw_only=True)
class QuoteCreated(DomainEvent):
    quote_id: int
    title: str = ""


@dataclass(frozen=True, kw_only=True)
class QuoteStatusChanged(DomainEvent):
    quote_id: int
    from_status: str | None
    to_status: str
    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class ProposalSubmitted(DomainEvent):
    quote_id: int
    response_id: int
    supplier_id: int
    total_amount: float = 0.0


@dataclass(frozen=True, kw_only=True)
class ProposalApproved(DomainEvent):
    quote_id: int
    response_id: int
    supplier_id: int
    rejected_count: int = 0


@dataclass(frozen=True, kw_only=True)
class ApprovalDecided(DomainEvent):
    approval_id: int
    quote_id: int
    status: str


@dataclass(frozen=True, kw_only=True)
class PaymentStatusChanged(DomainEvent):
    payment_id: int
    quote_id: int
    from_status: str | None
    to_status: str


@dataclass(frozen=True, kw_only=True)
class DeliveryStatusChanged(DomainEvent):
    delivery_id: int
    quote_id: int
    from_status: str | None
    to_status: str


@dataclass(frozen=True, kw_only=True)
class NotificationCreated(DomainEvent):
    notification_id: int
    user_id: int | None = None
    supplier_id: int | None = None
    title: str = ""


class EventBus:
    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("cotiz")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def publish_on_commit(self, db, event: DomainEvent) -> None:
        """Publica o evento so quando a unidade de trabalho de `db` for confirmada."""
        db.after_commit(lambda: self.publish(event))

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


_DEFAULT_EVENT_BUS = EventBus()


def get_event_bus() -> EventBus:
    return _DEFAULT_EVENT_BUS


def reset_event_bus_for_tests() -> None:
    _DEFAULT_EVENT_BUS.clear()
