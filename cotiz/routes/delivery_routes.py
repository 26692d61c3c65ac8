from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.delivery_service import DeliveryService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.domain.contracts import DeliveryCreateInput
from cotiz.errors import ValidationError
from cotiz.policies import CLIENT_SIDE_ROLES, MANAGER_ROLES, require_roles
from cotiz.ui_strings import status_keys_for_group
from cotiz.validators import clean_text, parse_optional_int


delivery_bp = Blueprint("deliveries", __name__, url_prefix="/api/deliveries")

_DELIVERY_SERVICE = DeliveryService()
DELIVERY_STATUSES = tuple(status_keys_for_group("entrega"))


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@delivery_bp.route("", methods=["GET"])
def list_deliveries():
    actor = current_actor()
    status = (request.args.get("status") or "").strip() or None
    if status and status not in DELIVERY_STATUSES:
        raise ValidationError(code="status_invalid", payload={"allowed": list(DELIVERY_STATUSES)})
    result = _DELIVERY_SERVICE.list(get_db(), actor=actor, status=status)
    return jsonify(result.payload), result.status_code


@delivery_bp.route("", methods=["POST"])
def create_delivery():
    actor = current_actor()
    payload = _payload()
    quote_id = parse_optional_int(payload.get("quote_id"))
    if quote_id is None:
        raise ValidationError(code="required_fields_missing", payload={"fields": ["quote_id"]})
    db = get_db()
    result = _DELIVERY_SERVICE.create(
        db,
        actor=actor,
        delivery_input=DeliveryCreateInput(
            quote_id=quote_id,
            scheduled_date=clean_text(payload.get("scheduled_date"), 40),
            tracking_info=clean_text(payload.get("tracking_info"), 500),
            notes=clean_text(payload.get("notes"), 2000),
        ),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@delivery_bp.route("/<int:delivery_id>", methods=["GET"])
def delivery_detail(delivery_id: int):
    result = _DELIVERY_SERVICE.detail(get_db(), actor=current_actor(), delivery_id=delivery_id)
    return jsonify(result.payload), result.status_code


@delivery_bp.route("/<int:delivery_id>/status", methods=["PATCH"])
def update_delivery_status(delivery_id: int):
    actor = current_actor()
    status = str(_payload().get("status") or "").strip()
    if status not in DELIVERY_STATUSES:
        raise ValidationError(code="status_invalid", payload={"allowed": list(DELIVERY_STATUSES)})
    if status == "in_transit":
        require_roles("supplier", "admin", role=actor.role)
    elif status == "cancelled":
        require_roles(*MANAGER_ROLES, role=actor.role)
    db = get_db()
    result = _DELIVERY_SERVICE.update_status(db, actor=actor, delivery_id=delivery_id, status=status)
    db.commit()
    return jsonify(result.payload), result.status_code


@delivery_bp.route("/<int:delivery_id>/resend-code", methods=["POST"])
def resend_code(delivery_id: int):
    db = get_db()
    result = _DELIVERY_SERVICE.resend_code(db, actor=current_actor(), delivery_id=delivery_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@delivery_bp.route("/confirm", methods=["POST"])
def confirm_delivery():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    db = get_db()
    result = _DELIVERY_SERVICE.confirm_delivery(
        db,
        actor=actor,
        code=payload.get("confirmation_code") or payload.get("code"),
    )
    db.commit()
    return jsonify(result.payload), result.status_code
