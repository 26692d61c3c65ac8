from __future__ import annotations

import logging
import secrets
import string
from datetime import timedelta
from typing import Dict, List

from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.support import change_quote_status, config_int, ensure_action_allowed, quote_link
from cotiz.core import EventBus, QuoteCreated, get_event_bus
from cotiz.domain.contracts import Actor, QuoteCreateInput, SendQuoteInput, ServiceOutput
from cotiz.errors import NotFoundError, PermissionError, ValidationError
from cotiz.infrastructure.repositories import (
    ApprovalRepository,
    ClientRepository,
    InvitationRepository,
    PaymentRepository,
    QuoteRepository,
    ResponseRepository,
    StatusEventRepository,
    SupplierRepository,
)
from cotiz.procurement.flow_policy import (
    OPEN_QUOTE_STATUSES,
    build_process_steps,
    flow_meta,
    stage_for_quote_status,
)
from cotiz.ui_strings import success_message
from cotiz.validators import clean_text, format_datetime, parse_datetime, parse_optional_float, utc_now


logger = logging.getLogger("cotiz.quotes")

_SHORT_CODE_ALPHABET = string.ascii_uppercase + string.digits
_SHORT_CODE_LENGTH = 8


def format_deadline(value: str | None) -> str:
    parsed = parse_datetime(value)
    if not parsed:
        return "Nao definido"
    return parsed.strftime("%d/%m/%Y")


def generate_short_code(db) -> str:
    while True:
        code = "".join(secrets.choice(_SHORT_CODE_ALPHABET) for _ in range(_SHORT_CODE_LENGTH))
        if not InvitationRepository.short_code_exists(db, code):
            return code


def issue_token(db, repository: InvitationRepository, *, quote_id: int, supplier_id: int) -> dict:
    ttl_days = max(1, config_int("QUOTE_TOKEN_TTL_DAYS", 7))
    short_code = generate_short_code(db)
    full_token = secrets.token_urlsafe(32)
    expires_at = format_datetime(utc_now() + timedelta(days=ttl_days))
    token_id = repository.create_token(
        db,
        quote_id=quote_id,
        supplier_id=supplier_id,
        short_code=short_code,
        full_token=full_token,
        expires_at=expires_at,
    )
    return {
        "id": token_id,
        "short_code": short_code,
        "full_token": full_token,
        "expires_at": expires_at,
    }


def _item_field(raw, key: str):
    if isinstance(raw, dict):
        return raw.get(key)
    return getattr(raw, key, None)


def _normalize_items(raw_items) -> List[Dict[str, object]]:
    items: List[Dict[str, object]] = []
    for raw in raw_items or []:
        description = clean_text(_item_field(raw, "description"), 500)
        if not description:
            continue
        quantity = parse_optional_float(_item_field(raw, "quantity"))
        items.append(
            {
                "description": description,
                "quantity": quantity if quantity and quantity > 0 else 1.0,
                "unit": clean_text(_item_field(raw, "unit"), 20),
            }
        )
    return items


class QuoteService:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        notifications: NotificationService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.event_bus = event_bus or get_event_bus()
        self.notifications = notifications or NotificationService(event_bus=self.event_bus)
        self.audit = audit or AuditService()

    def _load_quote(self, db, client_id: str, quote_id: int) -> dict:
        quote = QuoteRepository(client_id=client_id).get(db, quote_id)
        if not quote:
            raise NotFoundError(code="quote_not_found", payload={"quote_id": quote_id})
        return quote

    def create(self, db, *, actor: Actor, quote_input: QuoteCreateInput) -> ServiceOutput:
        title = clean_text(quote_input.title, 200)
        if not title:
            raise ValidationError(code="title_required", payload={"fields": ["title"]})
        items = _normalize_items(quote_input.items)
        if not items:
            raise ValidationError(code="quote_items_required", payload={"fields": ["items"]})

        repository = QuoteRepository(client_id=actor.client_id)
        quote_id = repository.create(
            db,
            title=title,
            description=clean_text(quote_input.description),
            deadline=clean_text(quote_input.deadline, 40),
            cost_center_id=clean_text(quote_input.cost_center_id, 80),
            created_by=actor.user_id,
        )
        for item in items:
            repository.add_item(db, quote_id, **item)
        StatusEventRepository(client_id=actor.client_id).add_event(
            db,
            entity="quote",
            entity_id=quote_id,
            from_status=None,
            to_status="draft",
            reason="quote_created",
        )
        self.event_bus.publish_on_commit(db, QuoteCreated(client_id=actor.client_id, quote_id=quote_id, title=title))
        logger.info("quote_created", extra={"quote_id": quote_id, "client_id": actor.client_id, "items": len(items)})
        return ServiceOutput(
            {
                "id": quote_id,
                "title": title,
                "status": "draft",
                "items_created": len(items),
                "message": success_message("quote_created"),
                **flow_meta("cotacao", "draft"),
            },
            201,
        )

    def list(self, db, *, client_id: str, status: str | None = None, search: str | None = None, limit: int = 100) -> ServiceOutput:
        quotes = QuoteRepository(client_id=client_id).list(db, status=status, search=search, limit=limit)
        for quote in quotes:
            quote["flow"] = flow_meta("cotacao", quote.get("status"))
        return ServiceOutput({"items": quotes})

    def detail(self, db, *, client_id: str, quote_id: int) -> ServiceOutput:
        quote = self._load_quote(db, client_id, quote_id)
        status = quote.get("status")
        payload = {
            **quote,
            "items": QuoteRepository(client_id=client_id).list_items(db, quote_id),
            "responses": ResponseRepository(client_id=client_id).list_for_quote(db, quote_id),
            "visits": ResponseRepository(client_id=client_id).list_visits(db, quote_id),
            "supplier_statuses": InvitationRepository(client_id=client_id).list_supplier_statuses(db, quote_id),
            "approvals": ApprovalRepository(client_id=client_id).list_approvals(db, quote_id=quote_id),
            "payments": PaymentRepository(client_id=client_id).list(db, quote_id=quote_id),
            "history": StatusEventRepository(client_id=client_id).list_for_entity(db, entity="quote", entity_id=quote_id),
            "flow": flow_meta("cotacao", status),
            "process_steps": build_process_steps(stage_for_quote_status(status)),
        }
        return ServiceOutput(payload)

    def history(self, db, *, client_id: str, quote_id: int) -> ServiceOutput:
        self._load_quote(db, client_id, quote_id)
        events = StatusEventRepository(client_id=client_id).list_for_entity(db, entity="quote", entity_id=quote_id)
        return ServiceOutput({"quote_id": quote_id, "items": events})

    def update(self, db, *, actor: Actor, quote_id: int, payload: dict) -> ServiceOutput:
        quote = self._load_quote(db, actor.client_id, quote_id)
        ensure_action_allowed("cotacao", quote.get("status"), "edit_quote")

        repository = QuoteRepository(client_id=actor.client_id)
        fields: Dict[str, object] = {}
        if "title" in payload:
            title = clean_text(payload.get("title"), 200)
            if not title:
                raise ValidationError(code="title_required", payload={"fields": ["title"]})
            fields["title"] = title
        for key, max_length in (("description", None), ("deadline", 40), ("cost_center_id", 80)):
            if key in payload:
                fields[key] = clean_text(payload.get(key), max_length)

        items = None
        if "items" in payload:
            items = _normalize_items(payload.get("items") or [])
            if not items:
                raise ValidationError(code="quote_items_required", payload={"fields": ["items"]})

        if not fields and items is None:
            raise ValidationError(code="no_changes")

        repository.update_fields(db, quote_id, fields)
        if items is not None:
            repository.delete_items(db, quote_id)
            for item in items:
                repository.add_item(db, quote_id, **item)
        return ServiceOutput({"id": quote_id, "updated_fields": sorted(fields), "items_replaced": items is not None})

    def cancel(self, db, *, actor: Actor, quote_id: int, reason: str | None = None) -> ServiceOutput:
        quote = self._load_quote(db, actor.client_id, quote_id)
        ensure_action_allowed("cotacao", quote.get("status"), "cancel_quote")
        change_quote_status(
            db,
            self.event_bus,
            client_id=actor.client_id,
            quote_id=quote_id,
            from_status=quote.get("status"),
            to_status="cancelled",
            reason="quote_cancelled",
        )
        self.audit.record(
            db,
            action="CANCEL_QUOTE",
            entity_type="quote",
            entity_id=quote_id,
            client_id=actor.client_id,
            actor=actor,
            details={"reason": clean_text(reason, 500), "previous_status": quote.get("status")},
        )
        return ServiceOutput(
            {
                "id": quote_id,
                "status": "cancelled",
                "message": success_message("quote_cancelled"),
                **flow_meta("cotacao", "cancelled"),
            }
        )

    def close_responses(self, db, *, actor: Actor, quote_id: int) -> ServiceOutput:
        quote = self._load_quote(db, actor.client_id, quote_id)
        ensure_action_allowed("cotacao", quote.get("status"), "close_responses")
        change_quote_status(
            db,
            self.event_bus,
            client_id=actor.client_id,
            quote_id=quote_id,
            from_status=quote.get("status"),
            to_status="received",
            reason="responses_closed",
        )
        return ServiceOutput({"id": quote_id, "status": "received", **flow_meta("cotacao", "received")})

    def send_to_suppliers(self, db, *, actor: Actor, send_input: SendQuoteInput) -> ServiceOutput:
        quote = self._load_quote(db, actor.client_id, send_input.quote_id)
        ensure_action_allowed("cotacao", quote.get("status"), "send_to_suppliers")

        supplier_repository = SupplierRepository(client_id=actor.client_id)
        results: List[dict] = []
        suppliers: List[dict] = []
        if send_input.supplier_ids:
            for supplier_id in send_input.supplier_ids:
                supplier = supplier_repository.get_visible(db, supplier_id)
                if not supplier:
                    results.append({"supplier_id": supplier_id, "status": "skipped", "reason": "supplier_not_found"})
                elif supplier.get("status") != "active":
                    results.append(
                        {
                            "supplier_id": supplier_id,
                            "supplier_name": supplier.get("name"),
                            "status": "skipped",
                            "reason": f"supplier_{supplier.get('status')}",
                        }
                    )
                else:
                    suppliers.append(supplier)
        else:
            suppliers = supplier_repository.list_visible(db, status="active")
        if not suppliers:
            raise NotFoundError(code="suppliers_not_found", payload={"results": results})

        client = ClientRepository().get(db, actor.client_id) or {}
        invitations = InvitationRepository(client_id=actor.client_id)
        now = format_datetime(utc_now())
        quote_id = int(quote["id"])
        for supplier in suppliers:
            supplier_id = int(supplier["id"])
            token = invitations.latest_valid_token(db, quote_id, supplier_id, now) or issue_token(
                db,
                invitations,
                quote_id=quote_id,
                supplier_id=supplier_id,
            )
            invitations.ensure_supplier_status(db, quote_id, supplier_id)
            link = quote_link(token["short_code"])
            channels = self.notifications.deliver(
                phone=supplier.get("whatsapp"),
                email=supplier.get("email"),
                template_key="quote_invitation",
                context={
                    "supplier_name": supplier.get("name"),
                    "client_name": client.get("name") or "Seu cliente",
                    "quote_title": quote.get("title"),
                    "deadline": format_deadline(quote.get("deadline")),
                    "link": link,
                    "custom_message": clean_text(send_input.custom_message, 1000),
                },
                send_whatsapp=send_input.send_whatsapp,
                send_email=send_input.send_email,
            )
            results.append(
                {
                    "supplier_id": supplier_id,
                    "supplier_name": supplier.get("name"),
                    "status": "invited",
                    "short_code": token["short_code"],
                    "link": link,
                    "channels": channels,
                }
            )

        previous_status = quote.get("status")
        next_status = "sent" if previous_status == "draft" else previous_status
        change_quote_status(
            db,
            self.event_bus,
            client_id=actor.client_id,
            quote_id=quote_id,
            from_status=previous_status,
            to_status=next_status,
            reason="quote_sent",
        )
        invited = sum(1 for item in results if item["status"] == "invited")
        logger.info("quote_sent", extra={"quote_id": quote_id, "client_id": actor.client_id, "invited": invited})
        return ServiceOutput(
            {
                "quote_id": quote_id,
                "status": next_status,
                "invited_count": invited,
                "results": results,
                **flow_meta("cotacao", next_status),
            }
        )

    def send_reminders(self, db, *, client_id: str, quote_id: int | None = None) -> ServiceOutput:
        """Lembra fornecedores que nao responderam; no maximo dois lembretes por convite."""
        now = utc_now()
        after_hours = max(0, config_int("QUOTE_REMINDER_AFTER_HOURS", 48))
        gap_hours = max(0, config_int("QUOTE_REMINDER_MIN_GAP_HOURS", 24))
        invitations = InvitationRepository(client_id=client_id)
        candidates = invitations.list_reminder_candidates(
            db,
            invited_before=format_datetime(now - timedelta(hours=after_hours)),
            last_reminder_before=format_datetime(now - timedelta(hours=gap_hours)),
            quote_id=quote_id,
        )

        results: List[dict] = []
        sent = 0
        now_text = format_datetime(now)
        for candidate in candidates:
            if candidate["status"] not in ("pending", "reminded_once"):
                continue
            token = invitations.latest_valid_token(
                db,
                int(candidate["quote_id"]),
                int(candidate["supplier_id"]),
                now_text,
            ) or issue_token(
                db,
                invitations,
                quote_id=int(candidate["quote_id"]),
                supplier_id=int(candidate["supplier_id"]),
            )
            first = candidate["status"] == "pending"
            channels = self.notifications.deliver(
                phone=candidate.get("supplier_whatsapp"),
                email=candidate.get("supplier_email"),
                template_key="quote_reminder",
                context={
                    "supplier_name": candidate.get("supplier_name"),
                    "reminder_label": "primeiro" if first else "segundo",
                    "quote_title": candidate.get("quote_title"),
                    "deadline": format_deadline(candidate.get("deadline")),
                    "link": quote_link(token["short_code"]),
                },
            )
            entry = {
                "quote_id": candidate["quote_id"],
                "supplier_id": candidate["supplier_id"],
                "supplier_name": candidate.get("supplier_name"),
                "channels": channels,
            }
            if self.notifications.any_sent(channels):
                reminder_count = int(candidate.get("reminder_count") or 0) + 1
                invitations.mark_reminded(
                    db,
                    int(candidate["id"]),
                    status="reminded_once" if first else "reminded_twice",
                    reminder_count=reminder_count,
                )
                entry.update({"success": True, "reminder_count": reminder_count})
                sent += 1
            else:
                entry["success"] = False
            results.append(entry)

        logger.info("quote_reminders_processed", extra={"client_id": client_id, "sent": sent, "candidates": len(candidates)})
        return ServiceOutput({"reminders_sent": sent, "results": results})

    def public_view(self, db, *, token: str) -> ServiceOutput:
        token_row = InvitationRepository.find_token(db, token)
        if not token_row:
            raise NotFoundError(code="token_not_found")
        expires_at = parse_datetime(token_row.get("expires_at"))
        if expires_at is None or expires_at <= utc_now():
            raise PermissionError(
                code="token_expired",
                http_status=403,
                payload={"expires_at": token_row.get("expires_at")},
            )

        InvitationRepository.register_access(db, int(token_row["id"]))
        quote = QuoteRepository.find_by_id(db, int(token_row["quote_id"]))
        if not quote:
            raise NotFoundError(code="quote_not_found")
        supplier = SupplierRepository.find_by_id(db, int(token_row["supplier_id"])) or {}
        client = ClientRepository().get(db, str(quote["client_id"])) or {}
        status = quote.get("status")
        return ServiceOutput(
            {
                "quote": {
                    "id": quote["id"],
                    "title": quote.get("title"),
                    "description": quote.get("description"),
                    "deadline": quote.get("deadline"),
                    "status": status,
                    "client_name": client.get("name"),
                },
                "items": QuoteRepository.list_items_unscoped(db, int(quote["id"])),
                "supplier": {"id": supplier.get("id"), "name": supplier.get("name"), "email": supplier.get("email")},
                "expires_at": token_row.get("expires_at"),
                "access_count": int(token_row.get("access_count") or 0) + 1,
                "can_respond": status in OPEN_QUOTE_STATUSES,
            }
        )
