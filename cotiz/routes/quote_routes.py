from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.proposal_service import ProposalService
from cotiz.application.quote_service import QuoteService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.domain.contracts import QuoteCreateInput, QuoteItemInput, SendQuoteInput
from cotiz.errors import ValidationError
from cotiz.policies import CLIENT_SIDE_ROLES, require_roles
from cotiz.procurement.flow_policy import QUOTE_STATUSES
from cotiz.validators import clean_text, normalize_int_list, parse_int, parse_optional_float, parse_optional_int


quote_bp = Blueprint("quotes", __name__, url_prefix="/api")

_QUOTE_SERVICE = QuoteService()
_PROPOSAL_SERVICE = ProposalService()


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _item_inputs(raw_items) -> list[QuoteItemInput]:
    items: list[QuoteItemInput] = []
    if not isinstance(raw_items, list):
        return items
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        items.append(
            QuoteItemInput(
                description=str(raw.get("description") or "").strip(),
                quantity=parse_optional_float(raw.get("quantity")) or 1.0,
                unit=clean_text(raw.get("unit"), 20),
            )
        )
    return items


def _status_filter() -> str | None:
    status = (request.args.get("status") or "").strip()
    if not status:
        return None
    if status not in QUOTE_STATUSES:
        raise ValidationError(code="status_invalid", payload={"allowed": list(QUOTE_STATUSES)})
    return status


@quote_bp.route("/quotes", methods=["GET"])
def list_quotes():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _QUOTE_SERVICE.list(
        get_db(),
        client_id=actor.client_id,
        status=_status_filter(),
        search=clean_text(request.args.get("q"), 120),
        limit=parse_int(request.args.get("limit"), 100, 1, 500),
    )
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes", methods=["POST"])
def create_quote():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    db = get_db()
    result = _QUOTE_SERVICE.create(
        db,
        actor=actor,
        quote_input=QuoteCreateInput(
            title=str(payload.get("title") or "").strip(),
            description=clean_text(payload.get("description"), 4000),
            deadline=clean_text(payload.get("deadline"), 40),
            cost_center_id=clean_text(payload.get("cost_center_id"), 80),
            items=_item_inputs(payload.get("items")),
        ),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>", methods=["GET"])
def quote_detail(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _QUOTE_SERVICE.detail(get_db(), client_id=actor.client_id, quote_id=quote_id)
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>", methods=["PATCH"])
def update_quote(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    if "items" in payload:
        payload["items"] = _item_inputs(payload.get("items"))
    db = get_db()
    result = _QUOTE_SERVICE.update(db, actor=actor, quote_id=quote_id, payload=payload)
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>/cancel", methods=["POST"])
def cancel_quote(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _QUOTE_SERVICE.cancel(db, actor=actor, quote_id=quote_id, reason=clean_text(_payload().get("reason"), 1000))
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>/send", methods=["POST"])
def send_quote(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    db = get_db()
    result = _QUOTE_SERVICE.send_to_suppliers(
        db,
        actor=actor,
        send_input=SendQuoteInput(
            quote_id=quote_id,
            supplier_ids=normalize_int_list(payload.get("supplier_ids")),
            send_whatsapp=bool(payload.get("send_whatsapp", True)),
            send_email=bool(payload.get("send_email", True)),
            custom_message=clean_text(payload.get("custom_message"), 1000),
        ),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>/close", methods=["POST"])
def close_quote_responses(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _QUOTE_SERVICE.close_responses(db, actor=actor, quote_id=quote_id)
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>/history", methods=["GET"])
def quote_history(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _QUOTE_SERVICE.history(get_db(), client_id=actor.client_id, quote_id=quote_id)
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/reminders", methods=["POST"])
def send_quote_reminders():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _QUOTE_SERVICE.send_reminders(
        db,
        client_id=actor.client_id,
        quote_id=parse_optional_int(_payload().get("quote_id")),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/quotes/<int:quote_id>/responses", methods=["GET"])
def compare_responses(quote_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _PROPOSAL_SERVICE.comparison(get_db(), client_id=actor.client_id, quote_id=quote_id)
    return jsonify(result.payload), result.status_code


@quote_bp.route("/responses/<int:response_id>/approve", methods=["POST"])
def approve_response(response_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _PROPOSAL_SERVICE.approve_proposal(
        db,
        actor=actor,
        response_id=response_id,
        comments=clean_text(_payload().get("comments"), 2000),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@quote_bp.route("/responses/<int:response_id>/reject", methods=["POST"])
def reject_response(response_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _PROPOSAL_SERVICE.reject_proposal(
        db,
        actor=actor,
        response_id=response_id,
        reason=clean_text(_payload().get("reason"), 2000),
    )
    db.commit()
    return jsonify(result.payload), result.status_code
