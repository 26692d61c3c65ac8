from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.approval_service import ApprovalService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.domain.contracts import ApprovalLevelInput
from cotiz.errors import ValidationError
from cotiz.policies import CLIENT_SIDE_ROLES, MANAGER_ROLES, require_roles
from cotiz.tenant import normalize_client_id
from cotiz.validators import clean_text, normalize_int_list, parse_optional_float, parse_optional_int


approval_bp = Blueprint("approvals", __name__, url_prefix="/api")

_APPROVAL_SERVICE = ApprovalService()


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _amount(payload: dict, key: str):
    raw = payload.get(key)
    parsed = parse_optional_float(raw)
    # Valor informado mas invalido segue cru para a validacao do nivel recusar.
    return raw if parsed is None and raw not in (None, "") else parsed


def _level_input(payload: dict) -> ApprovalLevelInput:
    return ApprovalLevelInput(
        name=str(payload.get("name") or ""),
        amount_threshold=_amount(payload, "amount_threshold"),
        max_amount_threshold=_amount(payload, "max_amount_threshold"),
        order_level=parse_optional_int(payload.get("order_level")) or 1,
        approvers=normalize_int_list(payload.get("approvers")),
        active=bool(payload.get("active", True)),
    )


@approval_bp.route("/approval-levels", methods=["GET"])
def list_levels():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _APPROVAL_SERVICE.list_levels(get_db(), client_id=actor.client_id)
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approval-levels", methods=["POST"])
def create_level():
    actor = current_actor()
    require_roles(*MANAGER_ROLES, role=actor.role)
    db = get_db()
    result = _APPROVAL_SERVICE.create_level(db, actor=actor, level_input=_level_input(_payload()))
    db.commit()
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approval-levels/<int:level_id>", methods=["PUT", "PATCH"])
def update_level(level_id: int):
    actor = current_actor()
    require_roles(*MANAGER_ROLES, role=actor.role)
    db = get_db()
    result = _APPROVAL_SERVICE.update_level(db, actor=actor, level_id=level_id, level_input=_level_input(_payload()))
    db.commit()
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approval-levels/<int:level_id>", methods=["DELETE"])
def delete_level(level_id: int):
    actor = current_actor()
    require_roles(*MANAGER_ROLES, role=actor.role)
    db = get_db()
    result = _APPROVAL_SERVICE.delete_level(db, actor=actor, level_id=level_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approval-levels/copy", methods=["POST"])
def copy_levels():
    actor = current_actor()
    require_roles("admin", "administradora", role=actor.role)
    payload = _payload()
    source = normalize_client_id(payload.get("source_client_id"))
    target = normalize_client_id(payload.get("target_client_id"))
    missing = [name for name, value in (("source_client_id", source), ("target_client_id", target)) if not value]
    if missing:
        raise ValidationError(code="required_fields_missing", payload={"fields": missing})
    db = get_db()
    result = _APPROVAL_SERVICE.copy_levels(db, actor=actor, source_client_id=source, target_client_id=target)
    db.commit()
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approvals", methods=["GET"])
def list_approvals():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    status = (request.args.get("status") or "").strip() or None
    result = _APPROVAL_SERVICE.list_approvals(get_db(), actor=actor, status=status)
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approvals/<int:approval_id>/approve", methods=["POST"])
def approve(approval_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _APPROVAL_SERVICE.decide(
        db,
        actor=actor,
        approval_id=approval_id,
        approve=True,
        comments=clean_text(_payload().get("comments"), 2000),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@approval_bp.route("/approvals/<int:approval_id>/reject", methods=["POST"])
def reject(approval_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _APPROVAL_SERVICE.decide(
        db,
        actor=actor,
        approval_id=approval_id,
        approve=False,
        comments=clean_text(_payload().get("comments"), 2000),
    )
    db.commit()
    return jsonify(result.payload), result.status_code
