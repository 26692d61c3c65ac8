from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.proposal_service import ProposalService
from cotiz.application.quote_service import QuoteService
from cotiz.application.supplier_service import SupplierService
from cotiz.auth import current_actor
from cotiz.db import get_db
from cotiz.domain.contracts import QuickResponseInput, SupplierCreateInput
from cotiz.policies import CLIENT_SIDE_ROLES, require_roles
from cotiz.validators import clean_text, parse_int, parse_optional_float


supplier_bp = Blueprint("suppliers", __name__, url_prefix="/api")

_SUPPLIER_SERVICE = SupplierService()
_QUOTE_SERVICE = QuoteService()
_PROPOSAL_SERVICE = ProposalService()


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _quick_response_input(payload: dict, token: str) -> QuickResponseInput:
    items = payload.get("items")
    return QuickResponseInput(
        token=token,
        supplier_name=str(payload.get("supplier_name") or "").strip(),
        supplier_email=str(payload.get("supplier_email") or "").strip(),
        total_amount=parse_optional_float(payload.get("total_amount")),
        items=[item for item in items if isinstance(item, dict)] if isinstance(items, list) else [],
        delivery_days=parse_int(payload.get("delivery_days"), 7, 0, 3650),
        shipping_cost=parse_optional_float(payload.get("shipping_cost")) or 0.0,
        warranty_months=parse_int(payload.get("warranty_months"), 12, 0, 600),
        payment_terms=clean_text(payload.get("payment_terms"), 120) or "30 dias",
        notes=clean_text(payload.get("notes"), 4000),
        supplier_phone=clean_text(payload.get("supplier_phone"), 40),
        visit_date=clean_text(payload.get("visit_date"), 40),
        visit_notes=clean_text(payload.get("visit_notes"), 2000),
    )


@supplier_bp.route("/suppliers", methods=["GET"])
def list_suppliers():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _SUPPLIER_SERVICE.list(
        get_db(),
        client_id=actor.client_id,
        status=(request.args.get("status") or "").strip() or None,
        search=clean_text(request.args.get("q"), 120),
        limit=parse_int(request.args.get("limit"), 200, 1, 500),
    )
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/suppliers", methods=["POST"])
def create_supplier():
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    payload = _payload()
    specialties = payload.get("specialties")
    bank_data = payload.get("bank_data")
    db = get_db()
    result = _SUPPLIER_SERVICE.create_local(
        db,
        client_id=actor.client_id,
        supplier_input=SupplierCreateInput(
            name=str(payload.get("name") or ""),
            email=payload.get("email"),
            whatsapp=payload.get("whatsapp"),
            cnpj=payload.get("cnpj"),
            specialties=list(specialties) if isinstance(specialties, list) else [],
            bank_data=dict(bank_data) if isinstance(bank_data, dict) else {},
        ),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/suppliers/<int:supplier_id>", methods=["GET"])
def supplier_detail(supplier_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    result = _SUPPLIER_SERVICE.get(get_db(), client_id=actor.client_id, supplier_id=supplier_id)
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/suppliers/<int:supplier_id>/status", methods=["PATCH"])
def update_supplier_status(supplier_id: int):
    actor = current_actor()
    require_roles(*CLIENT_SIDE_ROLES, role=actor.role)
    db = get_db()
    result = _SUPPLIER_SERVICE.update_status(
        db,
        client_id=actor.client_id,
        supplier_id=supplier_id,
        status=str(_payload().get("status") or "").strip(),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/supplier/quotes/<int:quote_id>/responses", methods=["POST"])
def submit_supplier_response(quote_id: int):
    actor = current_actor()
    require_roles("supplier", role=actor.role)
    db = get_db()
    result = _PROPOSAL_SERVICE.submit_supplier_response(
        db,
        actor=actor,
        quote_id=quote_id,
        response_input=_quick_response_input(_payload(), token=""),
    )
    db.commit()
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/public/quotes/<string:token>", methods=["GET"])
def public_quote(token: str):
    db = get_db()
    result = _QUOTE_SERVICE.public_view(db, token=token)
    # O contador de acessos e gravado mesmo em leitura.
    db.commit()
    return jsonify(result.payload), result.status_code


@supplier_bp.route("/public/quotes/<string:token>/responses", methods=["POST"])
def submit_quick_response(token: str):
    db = get_db()
    result = _PROPOSAL_SERVICE.submit_quick_response(db, response_input=_quick_response_input(_payload(), token))
    db.commit()
    return jsonify(result.payload), result.status_code
