from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.payment_service import PaymentService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.errors import ValidationError
from cotiz.policies import CLIENT_SIDE_ROLES, MANAGER_ROLES, require_roles
from cotiz.procurement.payment_flow import PAYMENT_STATUSES
from cotiz.validators import clean_text, parse_optional_int


payment_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

_PAYMENT_SERVICE = PaymentService()


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _reason() -> str | None:
    return clean_text(_payload().get("reason"), 1000)


@payment_bp.route("", methods=["GET"])
def list_payments():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    status = (request.args.get("status") or "").strip() or None
    if status and status not in PAYMENT_STATUSES:
        raise ValidationError(code="status_invalid", payload={"allowed": list(PAYMENT_STATUSES)})
    result = _PAYMENT_SERVICE.list(
        get_db(),
        client_id=actor.client_id,
        status=status,
        quote_id=parse_optional_int(request.args.get("quote_id")),
    )
    return jsonify(result.payload), result.status_code


@payment_bp.route("", methods=["POST"])
def create_payment():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    quote_id = parse_optional_int(payload.get("quote_id"))
    if quote_id is None:
        raise ValidationError(code="required_fields_missing", payload={"fields": ["quote_id"]})
    db = get_db()
    result = _PAYMENT_SERVICE.create(
        db,
        actor=actor,
        quote_id=quote_id,
        payment_method=clean_text(payload.get("payment_method"), 40),
        auto_release_enabled=bool(payload.get("auto_release_enabled", True)),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>", methods=["GET"])
def payment_detail(payment_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _PAYMENT_SERVICE.detail(get_db(), client_id=actor.client_id, payment_id=payment_id)
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/cancel", methods=["POST"])
def cancel_payment(payment_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.cancel(db, actor=actor, payment_id=payment_id, reason=_reason())
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/dispute", methods=["POST"])
def open_dispute(payment_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.open_dispute(db, actor=actor, payment_id=payment_id, reason=_reason())
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/dispute/resolve", methods=["POST"])
def resolve_dispute(payment_id: int):
    actor = current_actor()
    require_roles("admin", role=actor.role)
    payload = _payload()
    db = get_db()
    result = _PAYMENT_SERVICE.resolve_dispute(
        db,
        actor=actor,
        payment_id=payment_id,
        outcome=str(payload.get("outcome") or ""),
        reason=clean_text(payload.get("reason"), 1000),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/release", methods=["POST"])
def release_payment(payment_id: int):
    actor = current_actor()
    require_roles(*MANAGER_ROLES, role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.release(db, actor=actor, payment_id=payment_id, reason=_reason())
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/refund", methods=["POST"])
def refund_payment(payment_id: int):
    actor = current_actor()
    require_roles("admin", role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.refund(db, actor=actor, payment_id=payment_id, reason=_reason())
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/retry", methods=["POST"])
def retry_payment(payment_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.retry(db, actor=actor, payment_id=payment_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@payment_bp.route("/<int:payment_id>/offline", methods=["POST"])
def record_offline_payment(payment_id: int):
    actor = current_actor()
    require_roles("admin", role=actor.role)
    db = get_db()
    result = _PAYMENT_SERVICE.record_offline(db, actor=actor, payment_id=payment_id, reason=_reason())
    db.commit()
    return jsonify(result.payload), result.status_code
