from __future__ import annotations

from flask import Blueprint, jsonify, request

from cotiz.application.webhook_service import WebhookService
from cotiz.db import get_db
from cotiz.security import ASAAS_TOKEN_HEADER, STRIPE_SIGNATURE_HEADER


webhook_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

_WEBHOOK_SERVICE = WebhookService()


@webhook_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    db = get_db()
    # Registro de idempotencia e transicao entram juntos ou nenhum.
    with db.transaction():
        result = _WEBHOOK_SERVICE.handle_stripe(
            db,
            body=request.get_data(cache=True),
            signature_header=request.headers.get(STRIPE_SIGNATURE_HEADER),
            remote_addr=request.remote_addr,
        )
    return jsonify(result.payload), result.status_code


@webhook_bp.route("/asaas", methods=["POST"])
def asaas_webhook():
    db = get_db()
    token = request.headers.get(ASAAS_TOKEN_HEADER)
    with db.transaction():
        result = _WEBHOOK_SERVICE.handle_asaas(
            db,
            payload=request.get_json(silent=True) or {},
            token=token,
            remote_addr=request.remote_addr,
        )
    return jsonify(result.payload), result.status_code


@webhook_bp.route("/asaas/transfer-approval", methods=["POST"])
def asaas_transfer_approval():
    db = get_db()
    with db.transaction():
        result = _WEBHOOK_SERVICE.approve_transfer(
            db,
            payload=request.get_json(silent=True) or {},
            token=request.headers.get(ASAAS_TOKEN_HEADER),
            remote_addr=request.remote_addr,
        )
    return jsonify(result.payload), result.status_code
