from __future__ import annotations

import logging
import secrets
from datetime import timedelta

from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.payment_service import PaymentService
from cotiz.application.support import change_quote_status, config_int, ensure_action_allowed
from cotiz.core import DeliveryStatusChanged, EventBus, get_event_bus
from cotiz.domain.contracts import Actor, DeliveryCreateInput, ServiceOutput
from cotiz.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from cotiz.infrastructure.repositories import (
    AuthRepository,
    DeliveryRepository,
    PaymentRepository,
    QuoteRepository,
)
from cotiz.procurement.flow_policy import delivery_transition_allowed, flow_meta
from cotiz.ui_strings import success_message
from cotiz.validators import clean_text, format_datetime, now_iso, parse_datetime, utc_now


logger = logging.getLogger("cotiz.deliveries")


def generate_confirmation_code(db) -> str:
    while True:
        code = f"{secrets.randbelow(1_000_000):06d}"
        if not DeliveryRepository.code_in_use(db, code):
            return code


class DeliveryService:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        notifications: NotificationService | None = None,
        payments: PaymentService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.notifications = notifications or NotificationService(event_bus=self.event_bus)
        self.audit = audit or AuditService()
        self.payments = payments or PaymentService(
            event_bus=self.event_bus,
            notifications=self.notifications,
            audit=self.audit,
        )

    def _quote_for_actor(self, db, actor: Actor, quote_id: int) -> dict:
        if actor.role == "supplier":
            quote = QuoteRepository.find_by_id(db, quote_id)
            if quote and actor.supplier_id is not None and quote.get("supplier_id") == actor.supplier_id:
                return quote
        else:
            quote = QuoteRepository(client_id=actor.client_id).get(db, quote_id)
            if quote:
                return quote
        raise NotFoundError(code="quote_not_found", payload={"quote_id": quote_id})

    def _delivery_for_actor(self, db, actor: Actor, delivery_id: int) -> dict:
        if actor.role == "supplier":
            # Fornecedor enxerga as entregas dele em qualquer cliente.
            row = DeliveryRepository.find_by_id(db, delivery_id)
            if row and actor.supplier_id is not None and row.get("supplier_id") == actor.supplier_id:
                return DeliveryRepository(client_id=str(row["client_id"])).get(db, delivery_id) or row
            raise NotFoundError(code="delivery_not_found", payload={"delivery_id": delivery_id})
        delivery = DeliveryRepository(client_id=actor.client_id).get(db, delivery_id)
        if not delivery:
            raise NotFoundError(code="delivery_not_found", payload={"delivery_id": delivery_id})
        return delivery

    def _issue_code(self, db, client_id: str, delivery_id: int) -> dict:
        ttl_hours = max(1, config_int("DELIVERY_CODE_TTL_HOURS", 72))
        code = generate_confirmation_code(db)
        expires_at = format_datetime(utc_now() + timedelta(hours=ttl_hours))
        confirmation_id = DeliveryRepository(client_id=client_id).create_confirmation(
            db,
            delivery_id,
            code=code,
            expires_at=expires_at,
        )
        return {"id": confirmation_id, "confirmation_code": code, "expires_at": expires_at}

    def _send_code(self, db, *, client_id: str, quote: dict, delivery_id: int, confirmation: dict) -> dict:
        context = {
            "quote_title": quote.get("title"),
            "code": confirmation["confirmation_code"],
            "expires_at": confirmation["expires_at"],
        }
        recipient = None
        if quote.get("created_by"):
            recipient = AuthRepository().find_user_by_id(db, int(quote["created_by"]))
        if recipient is None:
            users = AuthRepository().list_users_for_client(db, client_id, ("admin", "manager", "client"))
            recipient = users[0] if users else None
        if recipient is None:
            logger.warning("delivery_code_without_recipient", extra={"delivery_id": delivery_id, "client_id": client_id})
            return {}
        self.notifications.notify(
            db,
            client_id=client_id,
            template_key="delivery_code",
            context=context,
            user_id=int(recipient["id"]),
            type="delivery",
            priority="high",
            metadata={"delivery_id": delivery_id},
        )
        return self.notifications.deliver(
            phone=recipient.get("phone"),
            email=recipient.get("email"),
            template_key="delivery_code",
            context=context,
        )

    def create(self, db, *, actor: Actor, delivery_input: DeliveryCreateInput) -> ServiceOutput:
        quote = self._quote_for_actor(db, actor, delivery_input.quote_id)
        client_id = str(quote["client_id"])
        ensure_action_allowed("cotacao", quote.get("status"), "create_delivery")

        quote_id = int(quote["id"])
        payment = PaymentRepository(client_id=client_id).find_active_for_quote(db, quote_id, ("in_escrow",))
        if not payment:
            raise ConflictError(code="delivery_requires_escrow", payload={"quote_id": quote_id})
        deliveries = DeliveryRepository(client_id=client_id)
        existing = deliveries.find_open_for_quote(db, quote_id)
        if existing:
            raise ConflictError(code="conflict", payload={"delivery_id": existing["id"], "status": existing["status"]})

        delivery_id = deliveries.create(
            db,
            quote_id=quote_id,
            payment_id=int(payment["id"]),
            supplier_id=quote.get("supplier_id"),
            scheduled_date=clean_text(delivery_input.scheduled_date, 40),
            tracking_info=clean_text(delivery_input.tracking_info, 500),
            notes=clean_text(delivery_input.notes, 2000),
        )
        confirmation = self._issue_code(db, client_id, delivery_id)
        channels = self._send_code(db, client_id=client_id, quote=quote, delivery_id=delivery_id, confirmation=confirmation)
        self.event_bus.publish_on_commit(
            db,
            DeliveryStatusChanged(
                client_id=client_id,
                delivery_id=delivery_id,
                quote_id=quote_id,
                from_status=None,
                to_status="scheduled",
            )
        )
        self.audit.record(
            db,
            action="CREATE_DELIVERY",
            entity_type="delivery",
            entity_id=delivery_id,
            client_id=client_id,
            actor=actor,
            details={"quote_id": quote_id, "payment_id": payment["id"]},
        )
        return ServiceOutput(
            {
                "id": delivery_id,
                "quote_id": quote_id,
                "status": "scheduled",
                "code_expires_at": confirmation["expires_at"],
                "notifications": channels,
                **flow_meta("entrega", "scheduled"),
            },
            201,
        )

    def list(self, db, *, actor: Actor, status: str | None = None) -> ServiceOutput:
        if actor.role == "supplier":
            items = DeliveryRepository.list_for_supplier(db, actor.supplier_id or 0, status)
        else:
            items = DeliveryRepository(client_id=actor.client_id).list(db, status=status)
        for item in items:
            item["flow"] = flow_meta("entrega", item.get("status"))
        return ServiceOutput({"items": items})

    def detail(self, db, *, actor: Actor, delivery_id: int) -> ServiceOutput:
        delivery = self._delivery_for_actor(db, actor, delivery_id)
        delivery["flow"] = flow_meta("entrega", delivery.get("status"))
        return ServiceOutput(delivery)

    def update_status(self, db, *, actor: Actor, delivery_id: int, status: str) -> ServiceOutput:
        delivery = self._delivery_for_actor(db, actor, delivery_id)
        current = delivery.get("status")
        # "delivered" so com codigo de confirmacao.
        if status == "delivered" or not delivery_transition_allowed(current, status):
            raise ConflictError(
                code="invalid_delivery_transition",
                payload={"from_status": current, "to_status": status},
            )
        scoped_client = str(delivery["client_id"])
        deliveries = DeliveryRepository(client_id=scoped_client)
        deliveries.set_status(db, delivery_id, status)
        if status == "cancelled":
            deliveries.expire_open_confirmations(db, delivery_id)
        self.event_bus.publish_on_commit(
            db,
            DeliveryStatusChanged(
                client_id=scoped_client,
                delivery_id=delivery_id,
                quote_id=int(delivery["quote_id"]),
                from_status=current,
                to_status=status,
            )
        )
        return ServiceOutput({"id": delivery_id, "status": status, **flow_meta("entrega", status)})

    def resend_code(self, db, *, actor: Actor, delivery_id: int) -> ServiceOutput:
        delivery = self._delivery_for_actor(db, actor, delivery_id)
        if delivery.get("status") not in ("scheduled", "in_transit"):
            raise ConflictError(code="invalid_delivery_transition", payload={"status": delivery.get("status")})
        client_id = str(delivery["client_id"])
        confirmation = DeliveryRepository(client_id=client_id).current_confirmation(db, delivery_id, now_iso())
        reused = confirmation is not None
        if confirmation is None:
            confirmation = self._issue_code(db, client_id, delivery_id)
        quote = QuoteRepository(client_id=client_id).get(db, int(delivery["quote_id"])) or {}
        channels = self._send_code(db, client_id=client_id, quote=quote, delivery_id=delivery_id, confirmation=confirmation)
        return ServiceOutput(
            {
                "id": delivery_id,
                "reused_code": reused,
                "code_expires_at": confirmation["expires_at"],
                "notifications": channels,
            }
        )

    def confirm_delivery(self, db, *, actor: Actor, code: str | None) -> ServiceOutput:
        code_text = str(code or "").strip()
        if not code_text:
            raise ValidationError(code="confirmation_code_required", payload={"fields": ["confirmation_code"]})

        confirmation = DeliveryRepository.find_confirmation_by_code(db, code_text)
        if not confirmation:
            raise NotFoundError(code="CODE_NOT_FOUND")
        if bool(confirmation.get("is_used")):
            raise ValidationError(code="CODE_ALREADY_USED", payload={"confirmed_at": confirmation.get("used_at")})
        if confirmation.get("delivery_status") not in ("scheduled", "in_transit"):
            raise ConflictError(
                code="invalid_delivery_transition",
                payload={"from_status": confirmation.get("delivery_status"), "to_status": "delivered"},
            )
        expires_at = parse_datetime(confirmation.get("expires_at"))
        if expires_at is None or expires_at <= utc_now():
            raise ValidationError(code="CODE_EXPIRED", payload={"expired_at": confirmation.get("expires_at")})
        client_id = str(confirmation["delivery_client_id"])
        if actor.role != "admin" and actor.client_id != client_id:
            raise PermissionError(code="PERMISSION_DENIED")

        delivery_id = int(confirmation["delivery_id"])
        quote_id = int(confirmation["quote_id"])
        previous_status = confirmation.get("delivery_status")
        released_payment_id = None
        with db.transaction():
            if not DeliveryRepository.mark_confirmation_used(db, int(confirmation["id"]), used_by=actor.user_id):
                raise ValidationError(code="CODE_ALREADY_USED")
            DeliveryRepository(client_id=client_id).set_status(db, delivery_id, "delivered", actual_delivery_date=now_iso())

            payments = PaymentRepository(client_id=client_id)
            payment = None
            if confirmation.get("payment_id"):
                payment = payments.get(db, int(confirmation["payment_id"]))
            if payment is None or payment.get("status") != "in_escrow":
                payment = payments.find_active_for_quote(db, quote_id, ("in_escrow",))
            if payment is not None:
                payments.add_transaction(
                    db,
                    payment_id=int(payment["id"]),
                    transaction_type="delivery_confirmed",
                    amount=float(payment.get("amount") or 0),
                    status="completed",
                    description="Entrega confirmada pelo cliente",
                    metadata={"delivery_id": delivery_id},
                )
                self.payments.apply_event(
                    db,
                    client_id=client_id,
                    payment=payment,
                    event="release",
                    actor=actor,
                    fields={"release_reason": "delivery_confirmed"},
                    description="Liberacao apos confirmacao de entrega",
                )
                released_payment_id = int(payment["id"])

            quote = QuoteRepository(client_id=client_id).get(db, quote_id) or {}
            if quote.get("status") == "approved" and released_payment_id is not None:
                change_quote_status(
                    db,
                    self.event_bus,
                    client_id=client_id,
                    quote_id=quote_id,
                    from_status="approved",
                    to_status="finalized",
                    reason="delivery_confirmed",
                )
            if confirmation.get("supplier_id"):
                self.notifications.notify(
                    db,
                    client_id=client_id,
                    template_key="delivery_confirmed",
                    context={"quote_title": quote.get("title")},
                    supplier_id=int(confirmation["supplier_id"]),
                    type="delivery",
                    metadata={"delivery_id": delivery_id, "payment_id": released_payment_id},
                )
            self.audit.record(
                db,
                action="DELIVERY_CONFIRMED",
                entity_type="delivery",
                entity_id=delivery_id,
                client_id=client_id,
                actor=actor,
                details={"quote_id": quote_id, "payment_id": released_payment_id},
            )
            self.event_bus.publish_on_commit(
                db,
                DeliveryStatusChanged(
                    client_id=client_id,
                    delivery_id=delivery_id,
                    quote_id=quote_id,
                    from_status=previous_status,
                    to_status="delivered",
                ),
            )

        logger.info("delivery_confirmed", extra={"delivery_id": delivery_id, "client_id": client_id})
        return ServiceOutput(
            {
                "success": True,
                "delivery_id": delivery_id,
                "quote_id": quote_id,
                "payment_id": released_payment_id,
                "payment_released": released_payment_id is not None,
                "message": success_message("delivery_confirmed"),
            }
        )
