from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import deque
from typing import Dict, Iterator, List

from cotiz.core import (
    DOMAIN_EVENT_TYPES,
    ApprovalDecided,
    DeliveryStatusChanged,
    DomainEvent,
    EventBus,
    NotificationCreated,
    PaymentStatusChanged,
    ProposalApproved,
    ProposalSubmitted,
    QuoteCreated,
    QuoteStatusChanged,
)
from cotiz.observability import observe_realtime_dropped


logger = logging.getLogger("cotiz.realtime")


EVENT_TABLES: Dict[type, tuple[str, str]] = {
    QuoteCreated: ("quotes", "quote_id"),
    QuoteStatusChanged: ("quotes", "quote_id"),
    ProposalSubmitted: ("quote_responses", "response_id"),
    ProposalApproved: ("quote_responses", "response_id"),
    ApprovalDecided: ("approvals", "approval_id"),
    PaymentStatusChanged: ("payments", "payment_id"),
    DeliveryStatusChanged: ("deliveries", "delivery_id"),
    NotificationCreated: ("notifications", "notification_id"),
}


def event_to_message(event: DomainEvent) -> dict:
    table, id_field = EVENT_TABLES.get(type(event), ("unknown", "id"))
    payload = event.to_payload()
    return {
        "type": type(event).__name__,
        "table": table,
        "entity_id": payload.get(id_field),
        "client_id": event.client_id,
        "payload": payload,
    }


class Subscription:
    """Fila FIFO limitada de um cliente SSE; ao encher descarta a mensagem mais antiga."""

    def __init__(self, client_id: str, max_size: int) -> None:
        self.id = uuid.uuid4().hex
        self.client_id = client_id
        self.dropped = 0
        self._queue: deque[dict] = deque()
        self._max_size = max(1, int(max_size))
        self._condition = threading.Condition()

    def put(self, message: dict) -> None:
        with self._condition:
            if len(self._queue) >= self._max_size:
                self._queue.popleft()
                self.dropped += 1
                observe_realtime_dropped(1)
            self._queue.append(message)
            self._condition.notify()

    def get(self, timeout: float | None = None) -> dict | None:
        with self._condition:
            if not self._queue:
                self._condition.wait(timeout)
            if not self._queue:
                return None
            return self._queue.popleft()

    def drain(self) -> List[dict]:
        with self._condition:
            items = list(self._queue)
            self._queue.clear()
            return items

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)


class RealtimeHub:
    def __init__(self, queue_size: int = 200) -> None:
        self.queue_size = max(1, int(queue_size))
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}

    def attach(self, bus: EventBus) -> None:
        for event_type in DOMAIN_EVENT_TYPES:
            bus.unsubscribe(event_type, self.handle_event)
            bus.subscribe(event_type, self.handle_event)

    def subscribe(self, client_id: str) -> Subscription:
        subscription = Subscription(client_id, self.queue_size)
        with self._lock:
            self._subscriptions.setdefault(client_id, {})[subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            by_client = self._subscriptions.get(subscription.client_id)
            if not by_client:
                return
            by_client.pop(subscription.id, None)
            if not by_client:
                self._subscriptions.pop(subscription.client_id, None)

    def subscriber_count(self, client_id: str | None = None) -> int:
        with self._lock:
            if client_id is not None:
                return len(self._subscriptions.get(client_id, {}))
            return sum(len(items) for items in self._subscriptions.values())

    def handle_event(self, event: DomainEvent) -> None:
        self.broadcast(event.client_id, event_to_message(event))

    def broadcast(self, client_id: str, message: dict) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(client_id, {}).values())
        for subscription in targets:
            subscription.put(message)
        return len(targets)

    def reset(self) -> None:
        with self._lock:
            self._subscriptions.clear()


def format_sse(message: dict) -> str:
    data = json.dumps(message, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: {message.get('type', 'message')}\ndata: {data}\n\n"


def stream_messages(
    hub: RealtimeHub,
    client_id: str,
    *,
    keepalive_seconds: float = 15.0,
    poll_seconds: float = 1.0,
    max_messages: int | None = None,
) -> Iterator[str]:
    """Gera os chunks SSE de um cliente.

    A inscricao no hub so acontece quando o gerador comeca a rodar, entao um
    gerador fechado antes do primeiro chunk nao deixa inscricao para tras.
    """
    sent = 0
    last_ping = time.monotonic()
    subscription = hub.subscribe(client_id)
    try:
        yield ": connected\n\n"
        while max_messages is None or sent < max_messages:
            message = subscription.get(timeout=poll_seconds)
            if message is not None:
                sent += 1
                yield format_sse(message)
                continue
            if time.monotonic() - last_ping >= keepalive_seconds:
                last_ping = time.monotonic()
                yield ": keep-alive\n\n"
    finally:
        hub.unsubscribe(subscription)
        logger.info(
            "realtime_stream_closed",
            extra={"client_id": subscription.client_id, "dropped": subscription.dropped, "sent": sent},
        )


_REALTIME_HUB = RealtimeHub()


def get_realtime_hub() -> RealtimeHub:
    return _REALTIME_HUB


def reset_realtime_hub_for_tests() -> None:
    _REALTIME_HUB.reset()
