from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict

from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.support import config_int, ensure_action_allowed
from cotiz.core import EventBus, PaymentStatusChanged, get_event_bus
from cotiz.domain.contracts import Actor, ServiceOutput
from cotiz.errors import ConflictError, NotFoundError, ValidationError
from cotiz.infrastructure.repositories import PaymentRepository, QuoteRepository
from cotiz.observability import observe_payment_transition
from cotiz.procurement.payment_flow import (
    ACTIVE_PAYMENT_STATUSES,
    PAYMENT_STATUSES,
    allowed_payment_events,
    transaction_types_for,
    transition_payment,
)
from cotiz.validators import clean_text, format_datetime, now_iso, utc_now


logger = logging.getLogger("cotiz.payments")


class PaymentService:
    """Pagamentos em custodia (escrow): criacao, transicoes e liberacao."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        notifications: NotificationService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.notifications = notifications or NotificationService(event_bus=self.event_bus)
        self.audit = audit or AuditService()

    def _load(self, db, client_id: str, payment_id: int) -> dict:
        payment = PaymentRepository(client_id=client_id).get(db, payment_id)
        if not payment:
            raise NotFoundError(code="payment_not_found", payload={"payment_id": payment_id})
        return payment

    def create(
        self,
        db,
        *,
        actor: Actor,
        quote_id: int,
        payment_method: str | None = None,
        auto_release_enabled: bool = True,
    ) -> ServiceOutput:
        quote = QuoteRepository(client_id=actor.client_id).get(db, quote_id)
        if not quote:
            raise NotFoundError(code="quote_not_found", payload={"quote_id": quote_id})
        ensure_action_allowed("cotacao", quote.get("status"), "create_payment")

        repository = PaymentRepository(client_id=actor.client_id)
        existing = repository.find_active_for_quote(db, quote_id, ACTIVE_PAYMENT_STATUSES)
        if existing:
            raise ConflictError(
                code="payment_already_exists",
                payload={"payment_id": existing["id"], "status": existing["status"]},
            )
        amount = float(quote.get("total") or 0)
        if amount <= 0:
            raise ValidationError(code="amount_invalid", payload={"amount": amount})

        payment_id = repository.create(
            db,
            quote_id=quote_id,
            supplier_id=quote.get("supplier_id"),
            amount=amount,
            escrow_release_date=None,
            auto_release_enabled=auto_release_enabled,
            payment_method=clean_text(payment_method, 40),
            cost_center_id=quote.get("cost_center_id"),
        )
        repository.add_transaction(
            db,
            payment_id=payment_id,
            transaction_type="payment_created",
            amount=amount,
            status="completed",
            description="Pagamento criado",
        )
        observe_payment_transition(None, "pending")
        self.event_bus.publish_on_commit(
            db,
            PaymentStatusChanged(
                client_id=actor.client_id,
                payment_id=payment_id,
                quote_id=quote_id,
                from_status=None,
                to_status="pending",
            )
        )
        self.audit.record(
            db,
            action="CREATE_PAYMENT",
            entity_type="payment",
            entity_id=payment_id,
            client_id=actor.client_id,
            actor=actor,
            details={"quote_id": quote_id, "amount": amount},
        )
        return ServiceOutput({"id": payment_id, "quote_id": quote_id, "amount": amount, "status": "pending"}, 201)

    def list(self, db, *, client_id: str, status: str | None = None, quote_id: int | None = None) -> ServiceOutput:
        if status and status not in PAYMENT_STATUSES:
            raise ValidationError(code="status_invalid", payload={"allowed": list(PAYMENT_STATUSES)})
        repository = PaymentRepository(client_id=client_id)
        items = repository.list(db, status=status, quote_id=quote_id)
        return ServiceOutput({"items": items, "summary": repository.summary_by_status(db)})

    def detail(self, db, *, client_id: str, payment_id: int) -> ServiceOutput:
        payment = self._load(db, client_id, payment_id)
        payment["transactions"] = PaymentRepository(client_id=client_id).list_transactions(db, payment_id)
        payment["allowed_events"] = allowed_payment_events(payment.get("status"))
        return ServiceOutput(payment)

    def apply_event(
        self,
        db,
        *,
        client_id: str,
        payment: dict,
        event: str,
        actor: Actor | None = None,
        fields: Dict[str, object] | None = None,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Aplica um evento a tabela de transicao e grava os lancamentos correspondentes."""
        from_status = payment.get("status")
        to_status = transition_payment(from_status, event)
        updates = dict(fields or {})
        if event == "gateway_confirmed" and "escrow_release_date" not in updates:
            release_days = max(0, config_int("ESCROW_RELEASE_DAYS", 7))
            updates["escrow_release_date"] = format_datetime(utc_now() + timedelta(days=release_days))
        if to_status == "completed":
            updates.setdefault("released_at", now_iso())

        repository = PaymentRepository(client_id=client_id)
        payment_id = int(payment["id"])
        repository.update_status(db, payment_id, status=to_status, fields=updates)
        amount = float(payment.get("amount") or 0)
        for transaction_type in transaction_types_for(event):
            repository.add_transaction(
                db,
                payment_id=payment_id,
                transaction_type=transaction_type,
                amount=amount,
                status="completed",
                description=description,
                metadata={"event": event, "from_status": from_status, "to_status": to_status, **(metadata or {})},
            )

        observe_payment_transition(from_status, to_status)
        self.event_bus.publish_on_commit(
            db,
            PaymentStatusChanged(
                client_id=client_id,
                payment_id=payment_id,
                quote_id=int(payment["quote_id"]),
                from_status=from_status,
                to_status=to_status,
            )
        )
        if to_status == "in_escrow" and from_status == "pending" and payment.get("supplier_id"):
            quote = QuoteRepository(client_id=client_id).get(db, int(payment["quote_id"])) or {}
            self.notifications.notify(
                db,
                client_id=client_id,
                template_key="payment_in_escrow",
                context={"quote_title": quote.get("title")},
                supplier_id=int(payment["supplier_id"]),
                type="payment",
                metadata={"payment_id": payment_id},
            )
        logger.info(
            "payment_transition",
            extra={
                "payment_id": payment_id,
                "client_id": client_id,
                "event": event,
                "from_status": from_status,
                "to_status": to_status,
                "actor_id": actor.user_id if actor else None,
            },
        )
        return to_status

    def _transition(
        self,
        db,
        *,
        actor: Actor,
        payment_id: int,
        event: str,
        audit_action: str,
        reason: str | None = None,
        fields: Dict[str, object] | None = None,
    ) -> ServiceOutput:
        payment = self._load(db, actor.client_id, payment_id)
        status = self.apply_event(
            db,
            client_id=actor.client_id,
            payment=payment,
            event=event,
            actor=actor,
            fields=fields,
            description=reason,
            metadata={"reason": reason} if reason else None,
        )
        self.audit.record(
            db,
            action=audit_action,
            entity_type="payment",
            entity_id=payment_id,
            client_id=actor.client_id,
            actor=actor,
            details={"from_status": payment.get("status"), "to_status": status, "reason": reason},
        )
        return ServiceOutput({"id": payment_id, "status": status, "allowed_events": allowed_payment_events(status)})

    @staticmethod
    def _required_reason(reason: str | None) -> str:
        text = clean_text(reason, 1000)
        if not text:
            raise ValidationError(code="reason_required", payload={"fields": ["reason"]})
        return text

    def cancel(self, db, *, actor: Actor, payment_id: int, reason: str | None) -> ServiceOutput:
        text = self._required_reason(reason)
        return self._transition(db, actor=actor, payment_id=payment_id, event="cancel", audit_action="CANCEL_PAYMENT", reason=text)

    def open_dispute(self, db, *, actor: Actor, payment_id: int, reason: str | None) -> ServiceOutput:
        text = self._required_reason(reason)
        result = self._transition(
            db,
            actor=actor,
            payment_id=payment_id,
            event="dispute_opened",
            audit_action="OPEN_DISPUTE",
            reason=text,
        )
        payment = self._load(db, actor.client_id, payment_id)
        if payment.get("supplier_id"):
            self.notifications.notify(
                db,
                client_id=actor.client_id,
                template_key="dispute_opened",
                context={"quote_title": payment.get("quote_title"), "reason": text},
                supplier_id=int(payment["supplier_id"]),
                type="payment",
                priority="high",
                metadata={"payment_id": payment_id},
            )
        return result

    def resolve_dispute(self, db, *, actor: Actor, payment_id: int, outcome: str, reason: str | None = None) -> ServiceOutput:
        events = {"won": "dispute_won", "lost": "dispute_lost"}
        event = events.get(str(outcome or "").strip().lower())
        if event is None:
            raise ValidationError(code="validation_error", payload={"field": "outcome", "allowed": sorted(events)})
        return self._transition(
            db,
            actor=actor,
            payment_id=payment_id,
            event=event,
            audit_action="RESOLVE_DISPUTE",
            reason=clean_text(reason, 1000) or outcome,
        )

    def release(self, db, *, actor: Actor, payment_id: int, reason: str | None = None) -> ServiceOutput:
        return self._transition(
            db,
            actor=actor,
            payment_id=payment_id,
            event="release",
            audit_action="RELEASE_PAYMENT",
            reason=clean_text(reason, 1000) or "manual_release",
            fields={"release_reason": "manual_release"},
        )

    def refund(self, db, *, actor: Actor, payment_id: int, reason: str | None) -> ServiceOutput:
        text = self._required_reason(reason)
        return self._transition(db, actor=actor, payment_id=payment_id, event="refund", audit_action="REFUND_PAYMENT", reason=text)

    def retry(self, db, *, actor: Actor, payment_id: int) -> ServiceOutput:
        return self._transition(db, actor=actor, payment_id=payment_id, event="retry", audit_action="RETRY_PAYMENT")

    def record_offline(self, db, *, actor: Actor, payment_id: int, reason: str | None = None) -> ServiceOutput:
        return self._transition(
            db,
            actor=actor,
            payment_id=payment_id,
            event="gateway_confirmed",
            audit_action="RECORD_OFFLINE_PAYMENT",
            reason=clean_text(reason, 1000) or "offline",
            fields={"payment_method": "offline"},
        )

    def auto_release_due(self, db) -> Dict[str, int]:
        released = 0
        failed = 0
        for payment in PaymentRepository.list_due_for_auto_release(db, now_iso()):
            try:
                self.apply_event(
                    db,
                    client_id=str(payment["client_id"]),
                    payment=payment,
                    event="release",
                    fields={"release_reason": "auto_release"},
                    description="Liberacao automatica",
                    metadata={"reason": "auto_release"},
                )
            except ConflictError:
                failed += 1
                logger.warning("auto_release_skipped", extra={"payment_id": payment["id"]})
                continue
            self.audit.record(
                db,
                action="AUTO_RELEASE_PAYMENT",
                entity_type="payment",
                entity_id=payment["id"],
                client_id=str(payment["client_id"]),
                panel_type="system",
                details={"amount": payment.get("amount"), "escrow_release_date": payment.get("escrow_release_date")},
            )
            released += 1
        return {"released": released, "skipped": failed}
