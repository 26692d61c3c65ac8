from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.notification_service import NotificationService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.errors import AuthError
from cotiz.validators import parse_int


notification_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")

_NOTIFICATION_SERVICE = NotificationService()


def _recipient():
    actor = current_actor()
    if actor.user_id is None and actor.supplier_id is None:
        raise AuthError(code="auth_required", http_status=401)
    return actor


@notification_bp.route("", methods=["GET"])
def list_notifications():
    actor = _recipient()
    result = _NOTIFICATION_SERVICE.list_for_recipient(
        get_db(),
        client_id=actor.client_id,
        user_id=actor.user_id,
        supplier_id=actor.supplier_id,
        unread_only=request.args.get("unread") in {"1", "true"},
        limit=parse_int(request.args.get("limit"), 50, 1, 200),
    )
    return jsonify(result.payload), result.status_code


@notification_bp.route("/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id: int):
    actor = _recipient()
    db = get_db()
    result = _NOTIFICATION_SERVICE.mark_read(
        db,
        client_id=actor.client_id,
        notification_id=notification_id,
        user_id=actor.user_id,
        supplier_id=actor.supplier_id,
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@notification_bp.route("/read-all", methods=["POST"])
def mark_all_read():
    actor = _recipient()
    db = get_db()
    result = _NOTIFICATION_SERVICE.mark_all_read(
        db,
        client_id=actor.client_id,
        user_id=actor.user_id,
        supplier_id=actor.supplier_id,
    )
    db.commit()
    return jsonify(result.payload), result.status_code
