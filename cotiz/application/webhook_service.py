"""Webhooks de pagamento (Stripe e Asaas) e autorizacao de transferencias.

Todo evento passa por autenticacao e por idempotencia: o par
(provider, event_id) e gravado antes do processamento e uma repeticao
responde 200 com duplicate=true sem novas escritas.
"""
from __future__ import annotations

import json
import logging
from typing import Dict

from flask import current_app

from cotiz.application.audit_service import AuditService
from cotiz.application.billing_service import BillingService
from cotiz.application.payment_service import PaymentService
from cotiz.application.support import config_float, config_int
from cotiz.domain.contracts import ServiceOutput
from cotiz.errors import AuthError, ConflictError, ValidationError
from cotiz.infrastructure.repositories import (
    BillingRepository,
    PaymentRepository,
    SupplierRepository,
    TransferRepository,
    WebhookEventRepository,
)
from cotiz.observability import observe_webhook
from cotiz.security import asaas_token_is_valid, verify_stripe_signature
from cotiz.validators import parse_optional_float, parse_optional_int


logger = logging.getLogger("cotiz.webhooks")


STRIPE_EVENTS: Dict[str, str] = {
    "checkout.session.completed": "gateway_confirmed",
    "payment_intent.succeeded": "gateway_confirmed",
    "payment_intent.payment_failed": "gateway_failed",
    "charge.dispute.created": "dispute_opened",
}

ASAAS_PAYMENT_EVENTS: Dict[str, str] = {
    "PAYMENT_RECEIVED": "gateway_confirmed",
    "PAYMENT_CONFIRMED": "gateway_confirmed",
    "PAYMENT_OVERDUE": "gateway_failed",
    "PAYMENT_REFUNDED": "refund",
}

ASAAS_SUBSCRIPTION_EVENTS = ("SUBSCRIPTION_UPDATED", "SUBSCRIPTION_EXPIRED")


def _json_object(value) -> dict:
    """Objeto aninhado do payload: ausente vira {}, qualquer outro tipo e payload invalido."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(code="webhook_payload_invalid")
    return value


class WebhookService:
    def __init__(
        self,
        payments: PaymentService | None = None,
        billing: BillingService | None = None,
        audit: AuditService | None = None,
        events: WebhookEventRepository | None = None,
    ) -> None:
        self.audit = audit or AuditService()
        self.payments = payments or PaymentService(audit=self.audit)
        self.billing = billing or BillingService(audit=self.audit)
        self.events = events or WebhookEventRepository()

    def _reject_unauthorized(self, db, *, provider: str, reason: str, remote_addr: str | None, http_status: int, code: str):
        self.audit.record(
            db,
            action="WEBHOOK_UNAUTHORIZED_ATTEMPT",
            entity_type="webhook",
            entity_id=provider,
            client_id=None,
            panel_type="system",
            details={"provider": provider, "reason": reason, "remote_addr": remote_addr},
        )
        # A tentativa fica registrada mesmo com a resposta de erro.
        db.commit()
        observe_webhook(provider, "unauthorized")
        logger.warning("webhook_unauthorized", extra={"provider": provider, "reason": reason, "remote_addr": remote_addr})
        raise AuthError(code=code, http_status=http_status, details=reason)

    def _register_event(self, db, provider: str, event_id: str, event_type: str | None) -> bool:
        if not self.events.record(db, provider, event_id, event_type):
            observe_webhook(provider, "duplicate")
            logger.info("webhook_duplicate", extra={"provider": provider, "event_id": event_id})
            return False
        return True

    def _apply_payment_event(self, db, *, provider: str, payment: dict, event: str, fields: dict, event_id: str) -> dict:
        client_id = str(payment["client_id"])
        try:
            status = self.payments.apply_event(
                db,
                client_id=client_id,
                payment=payment,
                event=event,
                fields=fields,
                description=f"Webhook {provider}",
                metadata={"provider": provider, "event_id": event_id},
            )
        except ConflictError:
            # Provedores enviam eventos redundantes (ex.: RECEIVED e CONFIRMED).
            observe_webhook(provider, "ignored")
            logger.info(
                "webhook_transition_ignored",
                extra={"provider": provider, "payment_id": payment["id"], "status": payment.get("status"), "event": event},
            )
            return {"received": True, "ignored": "invalid_transition", "payment_id": payment["id"], "status": payment.get("status")}
        observe_webhook(provider, "processed")
        return {"received": True, "payment_id": payment["id"], "status": status}

    # Stripe

    def handle_stripe(self, db, *, body: bytes, signature_header: str | None, remote_addr: str | None = None) -> ServiceOutput:
        try:
            verify_stripe_signature(
                body,
                signature_header,
                current_app.config.get("STRIPE_WEBHOOK_SECRET"),
                tolerance_seconds=config_int("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300),
            )
        except AuthError as exc:
            self._reject_unauthorized(
                db,
                provider="stripe",
                reason=exc.details or "assinatura invalida",
                remote_addr=remote_addr,
                http_status=400,
                code="webhook_signature_invalid",
            )

        try:
            event = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValidationError(code="webhook_payload_invalid") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError(code="webhook_payload_invalid")

        obj = _json_object(_json_object(event.get("data")).get("object"))
        event_id = str(event["id"])
        event_type = str(event["type"])
        if not self._register_event(db, "stripe", event_id, event_type):
            return ServiceOutput({"received": True, "duplicate": True, "event_id": event_id})

        transition = STRIPE_EVENTS.get(event_type)
        if event_type == "charge.dispute.closed":
            # warning_closed encerra uma consulta sem chargeback; nao mexe no pagamento.
            transition = {"won": "dispute_won", "lost": "dispute_lost"}.get(str(obj.get("status") or ""))
        if transition is None:
            observe_webhook("stripe", "ignored")
            return ServiceOutput({"received": True, "ignored": "event_type", "event_type": event_type})

        payment, fields = self._resolve_stripe_payment(db, event_type, obj)
        if not payment:
            observe_webhook("stripe", "ignored")
            logger.info("stripe_payment_not_found", extra={"event_id": event_id, "event_type": event_type})
            return ServiceOutput({"received": True, "ignored": "payment_not_found", "event_type": event_type})

        return ServiceOutput(
            self._apply_payment_event(db, provider="stripe", payment=payment, event=transition, fields=fields, event_id=event_id)
        )

    @staticmethod
    def _resolve_stripe_payment(db, event_type: str, obj: dict) -> tuple[dict | None, dict]:
        fields: Dict[str, object] = {}
        metadata = _json_object(obj.get("metadata"))
        session_id = None
        intent_id = None
        if event_type == "checkout.session.completed":
            session_id = obj.get("id")
            intent_id = obj.get("payment_intent")
        elif event_type.startswith("payment_intent."):
            intent_id = obj.get("id")
        else:
            intent_id = obj.get("payment_intent")
        if session_id:
            fields["stripe_session_id"] = session_id
        if intent_id:
            fields["stripe_payment_intent_id"] = intent_id
        if event_type == "checkout.session.completed":
            fields["payment_method"] = "stripe"

        payment = None
        payment_id = parse_optional_int(metadata.get("payment_id"))
        if payment_id is not None:
            payment = PaymentRepository.find_by_id(db, payment_id)
        if payment is None and session_id:
            payment = PaymentRepository.find_by_provider_reference(db, "stripe_session_id", str(session_id))
        if payment is None and intent_id:
            payment = PaymentRepository.find_by_provider_reference(db, "stripe_payment_intent_id", str(intent_id))
        return payment, fields

    # Asaas

    def _check_asaas_token(self, db, token: str | None, remote_addr: str | None, provider: str) -> None:
        if not asaas_token_is_valid(token, current_app.config.get("ASAAS_WEBHOOK_TOKEN")):
            self._reject_unauthorized(
                db,
                provider=provider,
                reason="token invalido ou ausente",
                remote_addr=remote_addr,
                http_status=401,
                code="webhook_unauthorized",
            )

    def handle_asaas(self, db, *, payload: dict, token: str | None, remote_addr: str | None = None) -> ServiceOutput:
        self._check_asaas_token(db, token, remote_addr, "asaas")
        if not isinstance(payload, dict):
            raise ValidationError(code="webhook_payload_invalid")
        event_type = str(payload.get("event") or "").strip()
        if not event_type:
            raise ValidationError(code="webhook_payload_invalid")

        payment_data = _json_object(payload.get("payment"))
        subscription_data = _json_object(payload.get("subscription"))
        reference = payment_data.get("id") or subscription_data.get("id") or ""
        event_id = str(payload.get("id") or f"{event_type}:{reference}")
        if not self._register_event(db, "asaas", event_id, event_type):
            return ServiceOutput({"received": True, "duplicate": True, "event_id": event_id})

        if event_type in ASAAS_SUBSCRIPTION_EVENTS:
            subscription = BillingRepository().find_subscription_by_asaas_id(db, str(subscription_data.get("id") or ""))
            if not subscription:
                observe_webhook("asaas", "ignored")
                return ServiceOutput({"received": True, "ignored": "subscription_not_found"})
            observe_webhook("asaas", "processed")
            return ServiceOutput({"received": True, **self.billing.apply_subscription_event(db, subscription, event_type)})

        transition = ASAAS_PAYMENT_EVENTS.get(event_type)
        if transition is None:
            observe_webhook("asaas", "ignored")
            return ServiceOutput({"received": True, "ignored": "event_type", "event_type": event_type})

        asaas_payment_id = str(payment_data.get("id") or "")
        payment = PaymentRepository.find_by_provider_reference(db, "asaas_payment_id", asaas_payment_id)
        if payment is None:
            external_id = parse_optional_int(payment_data.get("externalReference"))
            if external_id is not None:
                payment = PaymentRepository.find_by_id(db, external_id)
        if payment is not None:
            fields = {"asaas_payment_id": asaas_payment_id} if asaas_payment_id else {}
            if payment_data.get("billingType"):
                fields["payment_method"] = str(payment_data["billingType"]).lower()
            return ServiceOutput(
                self._apply_payment_event(db, provider="asaas", payment=payment, event=transition, fields=fields, event_id=event_id)
            )

        invoice = BillingRepository().find_invoice_by_charge(db, asaas_payment_id) if asaas_payment_id else None
        if invoice is None:
            observe_webhook("asaas", "ignored")
            logger.info("asaas_reference_not_found", extra={"event_id": event_id, "asaas_payment_id": asaas_payment_id})
            return ServiceOutput({"received": True, "ignored": "payment_not_found"})
        observe_webhook("asaas", "processed")
        return ServiceOutput({"received": True, **self.billing.apply_invoice_event(db, invoice, event_type)})

    def approve_transfer(self, db, *, payload: dict, token: str | None, remote_addr: str | None = None) -> ServiceOutput:
        """Responde ao Asaas se a transferencia ao fornecedor pode ser efetivada."""
        self._check_asaas_token(db, token, remote_addr, "asaas_transfer")
        transfer_data = payload.get("transfer") if isinstance(payload, dict) else None
        transfer_id = str(transfer_data.get("id") or "").strip() if isinstance(transfer_data, dict) else ""
        if not transfer_id:
            observe_webhook("asaas_transfer", "rejected")
            return ServiceOutput({"status": "REJECTED", "message": "Payload invalido"}, 400)

        repository = TransferRepository()
        transfer = repository.find_by_asaas_id(db, transfer_id)
        if not transfer:
            return self._transfer_rejected(db, None, "Transferencia nao registrada no sistema", transfer_id=transfer_id)

        value = parse_optional_float(transfer_data.get("value"))
        value = value if value is not None else 0.0
        supplier = SupplierRepository.find_by_id(db, int(transfer["supplier_id"])) if transfer.get("supplier_id") else None

        if transfer.get("status") != "pending":
            return self._transfer_rejected(db, transfer, "Transferencia nao esta pendente")
        if abs(float(transfer.get("amount") or 0) - value) >= 0.01:
            return self._transfer_rejected(db, transfer, "Valor nao confere com o registrado", fail=True)
        if supplier is None:
            return self._transfer_rejected(db, transfer, "Fornecedor nao encontrado", fail=True)
        if value <= 0:
            return self._transfer_rejected(db, transfer, "Valor invalido", fail=True)

        max_auto = config_float("TRANSFER_MAX_AUTO_APPROVE", 50000.0)
        if value > max_auto:
            repository.set_status(db, int(transfer["id"]), "pending", failure_reason="Valor excede limite automatico, requer aprovacao manual")
            return self._transfer_rejected(db, transfer, f"Valor excede limite de R$ {max_auto:.2f}")

        expected_pix = str((supplier.get("bank_data") or {}).get("pix_key") or "").strip().lower()
        received_pix = str(transfer_data.get("pixKey") or transfer_data.get("pixAddressKey") or "").strip().lower()
        if expected_pix and received_pix and expected_pix != received_pix:
            return self._transfer_rejected(db, transfer, "Dados bancarios nao conferem", fail=True)

        repository.set_status(db, int(transfer["id"]), "approved")
        self.audit.record(
            db,
            action="TRANSFER_AUTO_APPROVED",
            entity_type="supplier_transfer",
            entity_id=transfer["id"],
            client_id=transfer.get("client_id"),
            panel_type="system",
            details={"asaas_transfer_id": transfer_id, "supplier_id": transfer.get("supplier_id"), "amount": value},
        )
        observe_webhook("asaas_transfer", "approved")
        return ServiceOutput({"status": "APPROVED", "message": "Transferencia aprovada"})

    def _transfer_rejected(
        self,
        db,
        transfer: dict | None,
        message: str,
        *,
        fail: bool = False,
        transfer_id: str | None = None,
    ) -> ServiceOutput:
        if transfer is not None and fail:
            TransferRepository().set_status(db, int(transfer["id"]), "failed", failure_reason=message)
        self.audit.record(
            db,
            action="TRANSFER_REJECTED",
            entity_type="supplier_transfer",
            entity_id=transfer["id"] if transfer else transfer_id,
            client_id=transfer.get("client_id") if transfer else None,
            panel_type="system",
            details={"reason": message},
        )
        observe_webhook("asaas_transfer", "rejected")
        logger.warning("transfer_rejected", extra={"transfer_id": transfer_id or (transfer or {}).get("id"), "reason": message})
        return ServiceOutput({"status": "REJECTED", "message": message})
