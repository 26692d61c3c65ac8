from __future__ import annotations

import logging
from typing import List

from cotiz.application.approval_service import ApprovalService
from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.support import change_quote_status, ensure_action_allowed
from cotiz.core import EventBus, ProposalApproved, ProposalSubmitted, get_event_bus
from cotiz.domain.contracts import Actor, QuickResponseInput, ServiceOutput
from cotiz.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from cotiz.infrastructure.repositories import (
    InvitationRepository,
    QuoteRepository,
    ResponseRepository,
    SupplierRepository,
)
from cotiz.policies import MANAGER_ROLES
from cotiz.procurement.flow_policy import flow_meta
from cotiz.ui_strings import format_brl, success_message
from cotiz.validators import clean_text, is_valid_email, parse_datetime, utc_now


logger = logging.getLogger("cotiz.proposals")

REJECTED_NOTE = "Proposta nao selecionada"


class ProposalService:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        notifications: NotificationService | None = None,
        approvals: ApprovalService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.notifications = notifications or NotificationService(event_bus=self.event_bus)
        self.audit = audit or AuditService()
        self.approvals = approvals or ApprovalService(
            event_bus=self.event_bus,
            notifications=self.notifications,
            audit=self.audit,
        )

    @staticmethod
    def _validate_response_fields(response_input: QuickResponseInput, *, require_identity: bool) -> None:
        missing: List[str] = []
        if require_identity:
            if not (response_input.token or "").strip():
                missing.append("token")
            if not (response_input.supplier_name or "").strip():
                missing.append("supplier_name")
            if not (response_input.supplier_email or "").strip():
                missing.append("supplier_email")
        if response_input.total_amount is None:
            missing.append("total_amount")
        if missing:
            raise ValidationError(code="required_fields_missing", payload={"fields": missing})
        if require_identity and not is_valid_email(response_input.supplier_email):
            raise ValidationError(code="validation_error", payload={"field": "supplier_email"})
        if float(response_input.total_amount) <= 0:
            raise ValidationError(code="total_amount_invalid", payload={"total_amount": response_input.total_amount})
        if not response_input.items:
            raise ValidationError(code="items_required", payload={"fields": ["items"]})

    def submit_quick_response(self, db, *, response_input: QuickResponseInput) -> ServiceOutput:
        self._validate_response_fields(response_input, require_identity=True)

        token_row = InvitationRepository.find_token(db, response_input.token)
        if not token_row:
            raise NotFoundError(code="token_not_found")
        expires_at = parse_datetime(token_row.get("expires_at"))
        if expires_at is None or expires_at <= utc_now():
            raise PermissionError(code="token_expired", http_status=403, payload={"expires_at": token_row.get("expires_at")})

        quote = QuoteRepository.find_by_id(db, int(token_row["quote_id"]))
        if not quote:
            raise NotFoundError(code="quote_not_found")
        client_id = str(quote["client_id"])

        email = response_input.supplier_email.strip().lower()
        suppliers = SupplierRepository(client_id=client_id)
        supplier = suppliers.find_visible_by_email(db, email)
        if supplier:
            supplier_id = int(supplier["id"])
        else:
            supplier_id = suppliers.create_local(
                db,
                name=response_input.supplier_name.strip(),
                email=email,
                whatsapp=clean_text(response_input.supplier_phone, 40),
            )
            logger.info("supplier_created_from_response", extra={"supplier_id": supplier_id, "client_id": client_id})

        return self._store_response(
            db,
            client_id=client_id,
            quote=quote,
            supplier_id=supplier_id,
            response_input=response_input,
        )

    def submit_supplier_response(
        self,
        db,
        *,
        actor: Actor,
        quote_id: int,
        response_input: QuickResponseInput,
    ) -> ServiceOutput:
        if actor.supplier_id is None:
            raise PermissionError(code="permission_denied")
        self._validate_response_fields(response_input, require_identity=False)

        quote = QuoteRepository.find_by_id(db, quote_id)
        if not quote:
            raise NotFoundError(code="quote_not_found", payload={"quote_id": quote_id})
        client_id = str(quote["client_id"])
        statuses = InvitationRepository(client_id=client_id).list_supplier_statuses(db, quote_id)
        if not any(int(item["supplier_id"]) == actor.supplier_id for item in statuses):
            raise PermissionError(code="permission_denied", payload={"quote_id": quote_id})

        supplier = SupplierRepository.find_by_id(db, actor.supplier_id) or {}
        named_input = QuickResponseInput(
            token="",
            supplier_name=response_input.supplier_name or supplier.get("name") or "",
            supplier_email=response_input.supplier_email or supplier.get("email") or actor.email or "",
            total_amount=response_input.total_amount,
            items=response_input.items,
            delivery_days=response_input.delivery_days,
            shipping_cost=response_input.shipping_cost,
            warranty_months=response_input.warranty_months,
            payment_terms=response_input.payment_terms,
            notes=response_input.notes,
            visit_date=response_input.visit_date,
            visit_notes=response_input.visit_notes,
        )
        return self._store_response(
            db,
            client_id=client_id,
            quote=quote,
            supplier_id=actor.supplier_id,
            response_input=named_input,
        )

    def _store_response(
        self,
        db,
        *,
        client_id: str,
        quote: dict,
        supplier_id: int,
        response_input: QuickResponseInput,
    ) -> ServiceOutput:
        quote_id = int(quote["id"])
        ensure_action_allowed("cotacao", quote.get("status"), "submit_response")

        responses = ResponseRepository(client_id=client_id)
        response_id, created = responses.save(
            db,
            quote_id=quote_id,
            supplier_id=supplier_id,
            supplier_name=response_input.supplier_name.strip(),
            supplier_email=response_input.supplier_email.strip().lower(),
            total_amount=float(response_input.total_amount),
            delivery_days=int(response_input.delivery_days),
            shipping_cost=float(response_input.shipping_cost or 0),
            warranty_months=int(response_input.warranty_months),
            payment_terms=(response_input.payment_terms or "30 dias").strip(),
            notes=clean_text(response_input.notes, 2000),
            items=list(response_input.items),
        )
        InvitationRepository(client_id=client_id).mark_responded(db, quote_id, supplier_id)

        visit_id = None
        if response_input.visit_date:
            visit_id = responses.add_visit(
                db,
                quote_id=quote_id,
                supplier_id=supplier_id,
                response_id=response_id,
                scheduled_date=response_input.visit_date,
                notes=clean_text(response_input.visit_notes, 1000),
            )

        status = quote.get("status")
        if status == "sent":
            change_quote_status(
                db,
                self.event_bus,
                client_id=client_id,
                quote_id=quote_id,
                from_status="sent",
                to_status="receiving",
                reason="first_response_received",
            )
            status = "receiving"

        context = {
            "supplier_name": response_input.supplier_name.strip(),
            "amount": format_brl(response_input.total_amount),
            "quote_id": quote_id,
        }
        if quote.get("created_by"):
            self.notifications.notify(
                db,
                client_id=client_id,
                template_key="proposal_received",
                context=context,
                user_id=int(quote["created_by"]),
                type="proposal",
                action_url=f"/cotacoes/{quote_id}",
                metadata={"response_id": response_id, "quote_id": quote_id},
            )
        else:
            self.notifications.notify_client_users(
                db,
                client_id=client_id,
                template_key="proposal_received",
                context=context,
                roles=tuple(MANAGER_ROLES) + ("client",),
                type="proposal",
                action_url=f"/cotacoes/{quote_id}",
                metadata={"response_id": response_id, "quote_id": quote_id},
            )

        self.event_bus.publish_on_commit(
            db,
            ProposalSubmitted(
                client_id=client_id,
                quote_id=quote_id,
                response_id=response_id,
                supplier_id=supplier_id,
                total_amount=float(response_input.total_amount),
            )
        )
        logger.info(
            "proposal_submitted",
            extra={"quote_id": quote_id, "response_id": response_id, "supplier_id": supplier_id, "is_new": created},
        )
        return ServiceOutput(
            {
                "success": True,
                "response_id": response_id,
                "quote_id": quote_id,
                "supplier_id": supplier_id,
                "updated": not created,
                "visit_id": visit_id,
                "quote_status": status,
                "message": success_message("proposal_submitted"),
            },
            201 if created else 200,
        )

    def _load_response(self, db, client_id: str, response_id: int) -> tuple[dict, dict]:
        response = ResponseRepository(client_id=client_id).get(db, response_id)
        if not response:
            raise NotFoundError(code="proposal_not_found", payload={"response_id": response_id})
        quote = QuoteRepository(client_id=client_id).get(db, int(response["quote_id"]))
        if not quote:
            raise NotFoundError(code="quote_not_found", payload={"quote_id": response["quote_id"]})
        return response, quote

    def approve_proposal(self, db, *, actor: Actor, response_id: int, comments: str | None = None) -> ServiceOutput:
        response, quote = self._load_response(db, actor.client_id, response_id)
        ensure_action_allowed("cotacao", quote.get("status"), "approve_proposal")
        if response.get("status") not in ("pending", "submitted"):
            raise ConflictError(code="conflict", payload={"response_id": response_id, "status": response.get("status")})

        quote_id = int(quote["id"])
        comments_text = clean_text(comments, 1000)
        notes = response.get("notes")
        if comments_text:
            notes = f"{notes}\n\nComentarios do cliente: {comments_text}" if notes else f"Comentarios do cliente: {comments_text}"

        responses = ResponseRepository(client_id=actor.client_id)
        responses.set_status(db, response_id, "approved", notes)
        rejected = responses.reject_others(db, quote_id, response_id, REJECTED_NOTE)

        amount = float(response.get("total_amount") or 0)
        QuoteRepository(client_id=actor.client_id).set_selected_supplier(
            db,
            quote_id,
            supplier_id=int(response["supplier_id"]),
            supplier_name=response.get("supplier_name"),
            total=amount,
        )
        next_status, approval = self.approvals.route_quote(db, actor=actor, quote=quote, amount=amount)
        change_quote_status(
            db,
            self.event_bus,
            client_id=actor.client_id,
            quote_id=quote_id,
            from_status=quote.get("status"),
            to_status=next_status,
            reason="proposal_approved" if next_status == "approved" else "approval_requested",
        )

        winner_id = int(response["supplier_id"])
        winner_context = {
            "quote_title": quote.get("title"),
            "amount": format_brl(amount),
            "delivery_days": response.get("delivery_days"),
            "comments": f"Comentarios: {comments_text}" if comments_text else "",
        }
        self.notifications.notify(
            db,
            client_id=actor.client_id,
            template_key="proposal_approved",
            context=winner_context,
            supplier_id=winner_id,
            type="proposal",
            priority="high",
            metadata={"response_id": response_id, "quote_id": quote_id},
        )
        winner = SupplierRepository.find_by_id(db, winner_id) or {}
        channels = self.notifications.deliver(
            phone=winner.get("whatsapp"),
            template_key="proposal_approved",
            context=winner_context,
            send_email=False,
        )
        for item in rejected:
            self.notifications.notify(
                db,
                client_id=actor.client_id,
                template_key="proposal_rejected",
                context={"quote_title": quote.get("title")},
                supplier_id=int(item["supplier_id"]),
                type="proposal",
                metadata={"response_id": item["id"], "quote_id": quote_id},
            )

        self.audit.record(
            db,
            action="PROPOSAL_APPROVED",
            entity_type="quote_response",
            entity_id=response_id,
            client_id=actor.client_id,
            actor=actor,
            details={
                "quote_id": quote_id,
                "supplier_id": winner_id,
                "amount": amount,
                "auto_rejected_count": len(rejected),
                "comments": comments_text,
            },
        )
        self.event_bus.publish_on_commit(
            db,
            ProposalApproved(
                client_id=actor.client_id,
                quote_id=quote_id,
                response_id=response_id,
                supplier_id=winner_id,
                rejected_count=len(rejected),
            )
        )
        return ServiceOutput(
            {
                "success": True,
                "response_id": response_id,
                "quote_id": quote_id,
                "quote_status": next_status,
                "approval": approval,
                "rejected_count": len(rejected),
                "message": success_message("proposal_approved"),
                "notifications": {"whatsapp": channels.get("whatsapp")},
                **flow_meta("cotacao", next_status),
            }
        )

    def reject_proposal(self, db, *, actor: Actor, response_id: int, reason: str | None) -> ServiceOutput:
        response, quote = self._load_response(db, actor.client_id, response_id)
        ensure_action_allowed("cotacao", quote.get("status"), "reject_proposal")
        reason_text = clean_text(reason, 1000)
        if not reason_text:
            raise ValidationError(code="reason_required", payload={"fields": ["reason"]})
        if response.get("status") not in ("pending", "submitted"):
            raise ConflictError(code="conflict", payload={"response_id": response_id, "status": response.get("status")})

        ResponseRepository(client_id=actor.client_id).set_status(db, response_id, "rejected", reason_text)
        self.notifications.notify(
            db,
            client_id=actor.client_id,
            template_key="proposal_rejected",
            context={"quote_title": quote.get("title")},
            supplier_id=int(response["supplier_id"]),
            type="proposal",
            metadata={"response_id": response_id, "quote_id": quote["id"], "reason": reason_text},
        )
        self.audit.record(
            db,
            action="PROPOSAL_REJECTED",
            entity_type="quote_response",
            entity_id=response_id,
            client_id=actor.client_id,
            actor=actor,
            details={"quote_id": quote["id"], "reason": reason_text},
        )
        return ServiceOutput({"success": True, "response_id": response_id, "status": "rejected"})

    def comparison(self, db, *, client_id: str, quote_id: int) -> ServiceOutput:
        quote = QuoteRepository(client_id=client_id).get(db, quote_id)
        if not quote:
            raise NotFoundError(code="quote_not_found", payload={"quote_id": quote_id})
        responses = ResponseRepository(client_id=client_id).list_for_quote(db, quote_id)
        for item in responses:
            item["total"] = round(float(item.get("total_amount") or 0) + float(item.get("shipping_cost") or 0), 2)
            item["is_lowest_price"] = False
            item["is_fastest_delivery"] = False

        competing = [item for item in responses if item.get("status") != "rejected"]
        if competing:
            lowest = min(item["total"] for item in competing)
            fastest = min(int(item.get("delivery_days") or 0) for item in competing)
            for item in competing:
                item["is_lowest_price"] = item["total"] == lowest
                item["is_fastest_delivery"] = int(item.get("delivery_days") or 0) == fastest

        return ServiceOutput(
            {
                "quote": {"id": quote["id"], "title": quote.get("title"), "status": quote.get("status")},
                "items": responses,
                "count": len(responses),
                **flow_meta("cotacao", quote.get("status")),
            }
        )
