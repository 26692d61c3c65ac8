from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.audit_service import AuditService
from cotiz.application.dashboard_service import DashboardService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.policies import require_roles
from cotiz.tenant import normalize_client_id
from cotiz.validators import parse_int


home_bp = Blueprint("home", __name__, url_prefix="/api")

_DASHBOARD_SERVICE = DashboardService()
_AUDIT_SERVICE = AuditService()


@home_bp.route("/dashboard", methods=["GET"])
def dashboard():
    result = _DASHBOARD_SERVICE.summary(get_db(), actor=current_actor())
    return jsonify(result.payload), result.status_code


@home_bp.route("/audit-logs", methods=["GET"])
def audit_logs():
    actor = current_actor()
    require_roles("admin", role=actor.role)
    # Admin ve todos os clientes quando ?all=1.
    client_id = None if request.args.get("all") in {"1", "true"} else normalize_client_id(actor.client_id)
    result = _AUDIT_SERVICE.list(
        get_db(),
        client_id=client_id,
        action=(request.args.get("action") or "").strip() or None,
        entity_type=(request.args.get("entity_type") or "").strip() or None,
        limit=parse_int(request.args.get("limit"), 100, 1, 500),
    )
    return jsonify(result.payload), result.status_code
