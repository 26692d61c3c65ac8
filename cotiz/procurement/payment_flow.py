from __future__ import annotations

from typing import Dict, Tuple

from cotiz.errors import ConflictError


PAYMENT_STATUSES = ("pending", "in_escrow", "completed", "disputed", "cancelled", "failed", "refunded")
ACTIVE_PAYMENT_STATUSES = ("pending", "in_escrow", "disputed", "completed")

# (status atual, evento) -> proximo status
PAYMENT_TRANSITIONS: Dict[Tuple[str, str], str] = {
    ("pending", "gateway_confirmed"): "in_escrow",
    ("pending", "gateway_failed"): "failed",
    ("pending", "cancel"): "cancelled",
    ("failed", "retry"): "pending",
    ("in_escrow", "release"): "completed",
    ("in_escrow", "dispute_opened"): "disputed",
    ("in_escrow", "refund"): "refunded",
    ("disputed", "dispute_won"): "in_escrow",
    ("disputed", "dispute_lost"): "refunded",
    ("disputed", "refund"): "refunded",
}

# Lancamentos gravados em payment_transactions para cada evento.
EVENT_TRANSACTION_TYPES: Dict[str, Tuple[str, ...]] = {
    "gateway_confirmed": ("payment_received", "funds_held"),
    "gateway_failed": ("payment_failed",),
    "cancel": ("payment_cancelled",),
    "retry": ("payment_created",),
    "release": ("funds_released",),
    "dispute_opened": ("dispute_opened",),
    "dispute_won": ("dispute_resolved",),
    "dispute_lost": ("dispute_resolved", "payment_refunded"),
    "refund": ("payment_refunded",),
}


def next_payment_status(current: str | None, event: str) -> str | None:
    return PAYMENT_TRANSITIONS.get((str(current or ""), str(event or "")))


def transition_payment(current: str | None, event: str) -> str:
    target = next_payment_status(current, event)
    if target is None:
        raise ConflictError(
            code="invalid_payment_transition",
            message_key="invalid_payment_transition",
            http_status=409,
            details=f"{current} -> {event}",
            payload={"from_status": current, "event": event},
        )
    return target


def allowed_payment_events(current: str | None) -> list[str]:
    return [event for (status, event) in PAYMENT_TRANSITIONS if status == current]


def transaction_types_for(event: str) -> Tuple[str, ...]:
    return EVENT_TRANSACTION_TYPES.get(event, ())
