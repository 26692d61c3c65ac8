from __future__ import annotations

from flask import current_app

from cotiz.core import EventBus, QuoteStatusChanged
from cotiz.errors import ValidationError
from cotiz.infrastructure.repositories import QuoteRepository, StatusEventRepository
from cotiz.procurement.flow_policy import action_allowed, allowed_actions, primary_action


def config_int(key: str, default: int) -> int:
    try:
        return int(current_app.config.get(key, default))
    except (TypeError, ValueError):
        return default


def config_float(key: str, default: float) -> float:
    try:
        return float(current_app.config.get(key, default))
    except (TypeError, ValueError):
        return default


def forbidden_action(stage: str, status: str | None, action: str, http_status: int = 409):
    raise ValidationError(
        code="action_not_allowed_for_status",
        message_key="action_not_allowed_for_status",
        http_status=http_status,
        critical=False,
        payload={
            "stage": stage,
            "status": status,
            "action": action,
            "allowed_actions": allowed_actions(stage, status),
            "primary_action": primary_action(stage, status),
        },
    )


def ensure_action_allowed(stage: str, status: str | None, action: str) -> None:
    if not action_allowed(stage, status, action):
        forbidden_action(stage, status, action)


def change_quote_status(
    db,
    event_bus: EventBus,
    *,
    client_id: str,
    quote_id: int,
    from_status: str | None,
    to_status: str,
    reason: str,
) -> None:
    """Grava status, historico e evento de dominio de uma transicao de cotacao."""
    if from_status == to_status:
        return
    QuoteRepository(client_id=client_id).set_status(db, quote_id, to_status)
    StatusEventRepository(client_id=client_id).add_event(
        db,
        entity="quote",
        entity_id=quote_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
    )
    event_bus.publish_on_commit(
        db,
        QuoteStatusChanged(
            client_id=client_id,
            quote_id=quote_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
        )
    )


def quote_link(short_code: str) -> str:
    base_url = str(current_app.config.get("FRONTEND_BASE_URL") or "").rstrip("/")
    return f"{base_url}/s/{short_code}"
