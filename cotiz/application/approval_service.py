from __future__ import annotations

import logging
from typing import List

from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.support import change_quote_status
from cotiz.core import ApprovalDecided, EventBus, get_event_bus
from cotiz.domain.contracts import Actor, ApprovalLevelInput, ServiceOutput
from cotiz.errors import ConflictError, NotFoundError, PermissionError, ValidationError
from cotiz.infrastructure.repositories import ApprovalRepository, ClientRepository, QuoteRepository
from cotiz.policies import MANAGER_ROLES
from cotiz.procurement.approval_rules import level_for_amount, validate_level
from cotiz.ui_strings import format_brl


logger = logging.getLogger("cotiz.approvals")


class ApprovalService:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        notifications: NotificationService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.notifications = notifications or NotificationService(event_bus=self.event_bus)
        self.audit = audit or AuditService()

    @staticmethod
    def ensure_can_manage_client(db, actor: Actor, client_id: str) -> None:
        if actor.role == "admin" or client_id == actor.client_id:
            return
        if actor.role == "administradora" and ClientRepository().is_managed_by(db, client_id, actor.client_id):
            return
        raise PermissionError(code="permission_denied", payload={"client_id": client_id})

    def list_levels(self, db, *, client_id: str) -> ServiceOutput:
        return ServiceOutput({"items": ApprovalRepository(client_id=client_id).list_levels(db)})

    def create_level(self, db, *, actor: Actor, level_input: ApprovalLevelInput) -> ServiceOutput:
        threshold, maximum = validate_level(
            name=level_input.name,
            amount_threshold=level_input.amount_threshold,
            max_amount_threshold=level_input.max_amount_threshold,
            approvers=level_input.approvers,
        )
        repository = ApprovalRepository(client_id=actor.client_id)
        level_id = repository.create_level(
            db,
            name=level_input.name.strip(),
            amount_threshold=threshold,
            max_amount_threshold=maximum,
            order_level=int(level_input.order_level or 1),
            approvers=list(level_input.approvers),
            active=level_input.active,
        )
        return ServiceOutput(repository.get_level(db, level_id) or {"id": level_id}, 201)

    def update_level(self, db, *, actor: Actor, level_id: int, level_input: ApprovalLevelInput) -> ServiceOutput:
        repository = ApprovalRepository(client_id=actor.client_id)
        if not repository.get_level(db, level_id):
            raise NotFoundError(code="approval_level_not_found", payload={"level_id": level_id})
        threshold, maximum = validate_level(
            name=level_input.name,
            amount_threshold=level_input.amount_threshold,
            max_amount_threshold=level_input.max_amount_threshold,
            approvers=level_input.approvers,
        )
        repository.update_level(
            db,
            level_id,
            name=level_input.name.strip(),
            amount_threshold=threshold,
            max_amount_threshold=maximum,
            order_level=int(level_input.order_level or 1),
            approvers=list(level_input.approvers),
            active=level_input.active,
        )
        return ServiceOutput(repository.get_level(db, level_id) or {"id": level_id})

    def delete_level(self, db, *, actor: Actor, level_id: int) -> ServiceOutput:
        if not ApprovalRepository(client_id=actor.client_id).delete_level(db, level_id):
            raise NotFoundError(code="approval_level_not_found", payload={"level_id": level_id})
        return ServiceOutput({"id": level_id, "deleted": True})

    def copy_levels(self, db, *, actor: Actor, source_client_id: str, target_client_id: str) -> ServiceOutput:
        self.ensure_can_manage_client(db, actor, source_client_id)
        self.ensure_can_manage_client(db, actor, target_client_id)
        if source_client_id == target_client_id:
            raise ValidationError(code="validation_error", payload={"field": "target_client_id"})

        source_levels = ApprovalRepository(client_id=source_client_id).list_levels(db)
        target = ApprovalRepository(client_id=target_client_id)
        created: List[int] = []
        for level in source_levels:
            created.append(
                target.create_level(
                    db,
                    name=level["name"],
                    amount_threshold=float(level["amount_threshold"] or 0),
                    max_amount_threshold=level.get("max_amount_threshold"),
                    order_level=int(level.get("order_level") or 1),
                    approvers=list(level.get("approvers") or []),
                    active=bool(level.get("active")),
                )
            )
        self.audit.record(
            db,
            action="COPY_APPROVAL_LEVELS",
            entity_type="approval_level",
            entity_id=None,
            client_id=target_client_id,
            actor=actor,
            details={"source_client_id": source_client_id, "copied": len(created)},
        )
        return ServiceOutput({"source_client_id": source_client_id, "target_client_id": target_client_id, "created": created}, 201)

    def route_quote(self, db, *, actor: Actor, quote: dict, amount: float) -> tuple[str, dict | None]:
        """Decide se a cotacao e aprovada direto ou vai para um nivel de aprovacao."""
        repository = ApprovalRepository(client_id=actor.client_id)
        level = level_for_amount(repository.list_levels(db, only_active=True), amount)
        if level is None:
            return "approved", None

        approval_id = repository.create_approval(
            db,
            quote_id=int(quote["id"]),
            approval_level_id=int(level["id"]),
            requested_by=actor.user_id,
            amount=amount,
        )
        self.notifications.notify_client_users(
            db,
            client_id=actor.client_id,
            template_key="approval_request",
            context={"quote_id": quote["id"], "amount": format_brl(amount)},
            user_ids=level.get("approvers") or [],
            type="approval",
            priority="high",
            action_url=f"/aprovacoes/{approval_id}",
            metadata={"approval_id": approval_id, "quote_id": quote["id"]},
        )
        return "under_review", {"id": approval_id, "level_id": level["id"], "level_name": level.get("name")}

    def list_approvals(self, db, *, actor: Actor, status: str | None = None) -> ServiceOutput:
        approvals = ApprovalRepository(client_id=actor.client_id).list_approvals(db, status=status)
        if actor.role not in MANAGER_ROLES:
            approvals = [item for item in approvals if actor.user_id is not None and actor.user_id in item["approvers"]]
        return ServiceOutput({"items": approvals})

    def decide(self, db, *, actor: Actor, approval_id: int, approve: bool, comments: str | None) -> ServiceOutput:
        repository = ApprovalRepository(client_id=actor.client_id)
        approval = repository.get_approval(db, approval_id)
        if not approval:
            raise NotFoundError(code="approval_not_found", payload={"approval_id": approval_id})
        if approval.get("status") != "pending":
            raise ConflictError(
                code="approval_already_decided",
                payload={"approval_id": approval_id, "status": approval.get("status")},
            )

        approvers = approval.get("approvers") or []
        allowed = actor.role == "admin" or (actor.user_id is not None and actor.user_id in approvers)
        if not approvers and actor.role in MANAGER_ROLES:
            allowed = True
        if not allowed:
            raise PermissionError(code="permission_denied", payload={"approval_id": approval_id})

        comments_text = (comments or "").strip() or None
        if not approve and not comments_text:
            raise ValidationError(code="comments_required", payload={"fields": ["comments"]})

        status = "approved" if approve else "rejected"
        if not repository.decide(db, approval_id, status=status, comments=comments_text, decided_by=actor.user_id):
            raise ConflictError(code="approval_already_decided", payload={"approval_id": approval_id})

        quote_id = int(approval["quote_id"])
        quote = QuoteRepository(client_id=actor.client_id).get(db, quote_id) or {}
        if quote.get("status") == "under_review":
            change_quote_status(
                db,
                self.event_bus,
                client_id=actor.client_id,
                quote_id=quote_id,
                from_status="under_review",
                to_status=status,
                reason=f"approval_{status}",
            )

        requester = approval.get("requested_by") or quote.get("created_by")
        if requester:
            self.notifications.notify(
                db,
                client_id=actor.client_id,
                template_key="approval_approved" if approve else "approval_rejected",
                context={"quote_title": quote.get("title"), "reason": comments_text},
                user_id=int(requester),
                type="approval",
                action_url=f"/cotacoes/{quote_id}",
                metadata={"approval_id": approval_id, "quote_id": quote_id},
            )
        self.audit.record(
            db,
            action="APPROVE_QUOTE" if approve else "REJECT_QUOTE",
            entity_type="quote",
            entity_id=quote_id,
            client_id=actor.client_id,
            actor=actor,
            details={"approval_id": approval_id, "amount": approval.get("amount"), "comments": comments_text},
        )
        self.event_bus.publish_on_commit(
            db,
            ApprovalDecided(client_id=actor.client_id, approval_id=approval_id, quote_id=quote_id, status=status)
        )
        logger.info("approval_decided", extra={"approval_id": approval_id, "status": status, "client_id": actor.client_id})
        return ServiceOutput({"id": approval_id, "quote_id": quote_id, "status": status, "quote_status": status})
