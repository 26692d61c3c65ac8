from __future__ import annotations

import logging
from typing import Dict, List

from flask import current_app

from cotiz.application.audit_service import AuditService
from cotiz.application.notification_service import NotificationService
from cotiz.application.support import config_float, config_int
from cotiz.infrastructure.repositories import BillingRepository, ClientRepository, SupplierRepository
from cotiz.ui_strings import format_brl
from cotiz.validators import days_since, format_datetime, now_iso, parse_datetime, utc_now


logger = logging.getLogger("cotiz.billing")

PAID_EVENTS = ("PAYMENT_RECEIVED", "PAYMENT_CONFIRMED")


class BillingService:
    """Faturas de assinatura: pagamento reativa, atraso prolongado suspende."""

    def __init__(
        self,
        repository: BillingRepository | None = None,
        audit: AuditService | None = None,
        notifications: NotificationService | None = None,
    ) -> None:
        self.repository = repository or BillingRepository()
        self.audit = audit or AuditService()
        self.notifications = notifications or NotificationService()

    @staticmethod
    def _auto_suspend_enabled() -> bool:
        return bool(current_app.config.get("OVERDUE_AUTO_SUSPEND", True))

    def _reactivate_owner(self, db, invoice: dict) -> None:
        if invoice.get("client_id"):
            ClientRepository().set_active(db, str(invoice["client_id"]), True)
        if invoice.get("supplier_id"):
            SupplierRepository.set_status_global(db, int(invoice["supplier_id"]), "active")

    def _suspend(self, db, invoice: dict, *, overdue_days: int | None) -> None:
        subscription_id = invoice.get("subscription_id")
        if subscription_id:
            self.repository.set_subscription_status(db, int(subscription_id), "suspended")
        if invoice.get("client_id"):
            ClientRepository().set_active(db, str(invoice["client_id"]), False)
        if invoice.get("supplier_id"):
            SupplierRepository.set_status_global(db, int(invoice["supplier_id"]), "suspended")
        self.audit.record(
            db,
            action="SUBSCRIPTION_SUSPENDED",
            entity_type="subscription",
            entity_id=subscription_id,
            client_id=invoice.get("client_id"),
            panel_type="system",
            details={
                "invoice_id": invoice.get("id"),
                "supplier_id": invoice.get("supplier_id"),
                "overdue_days": overdue_days,
            },
        )
        logger.warning(
            "subscription_suspended",
            extra={"subscription_id": subscription_id, "invoice_id": invoice.get("id"), "overdue_days": overdue_days},
        )

    def apply_invoice_event(self, db, invoice: dict, event: str) -> Dict[str, object]:
        invoice_id = int(invoice["id"])
        subscription_id = invoice.get("subscription_id")
        if event in PAID_EVENTS:
            self.repository.set_invoice_status(db, invoice_id, "paid", paid_at=now_iso())
            if subscription_id:
                self.repository.set_subscription_status(db, int(subscription_id), "active")
            self._reactivate_owner(db, invoice)
            return {"invoice_id": invoice_id, "invoice_status": "paid", "subscription_status": "active"}

        if event == "PAYMENT_OVERDUE":
            self.repository.set_invoice_status(db, invoice_id, "past_due")
            subscription = self.repository.get_subscription(db, int(subscription_id)) if subscription_id else None
            overdue_days = days_since(invoice.get("due_date"))
            suspend_after = max(0, config_int("OVERDUE_SUSPEND_DAYS", 7))
            if (
                subscription
                and bool(subscription.get("auto_suspend"))
                and self._auto_suspend_enabled()
                and overdue_days is not None
                and overdue_days >= suspend_after
            ):
                self._suspend(db, invoice, overdue_days=overdue_days)
                return {"invoice_id": invoice_id, "invoice_status": "past_due", "subscription_status": "suspended"}
            if subscription_id:
                self.repository.set_subscription_status(db, int(subscription_id), "past_due")
            return {"invoice_id": invoice_id, "invoice_status": "past_due", "subscription_status": "past_due"}

        if event == "PAYMENT_REFUNDED":
            self.repository.set_invoice_status(db, invoice_id, "cancelled")
            return {"invoice_id": invoice_id, "invoice_status": "cancelled"}

        return {"invoice_id": invoice_id, "ignored": True}

    def apply_subscription_event(self, db, subscription: dict, event: str) -> Dict[str, object]:
        targets = {"SUBSCRIPTION_UPDATED": "active", "SUBSCRIPTION_EXPIRED": "expired"}
        status = targets.get(event)
        if status is None:
            return {"subscription_id": subscription["id"], "ignored": True}
        self.repository.set_subscription_status(db, int(subscription["id"]), status)
        return {"subscription_id": subscription["id"], "subscription_status": status}

    def sweep_overdue(self, db) -> Dict[str, int]:
        """Marca faturas vencidas e suspende assinaturas com atraso acima do limite."""
        suspend_after = max(0, config_int("OVERDUE_SUSPEND_DAYS", 7))
        now = utc_now()
        marked = 0
        suspended = 0
        for invoice in self.repository.list_overdue_invoices(db, format_datetime(now)):
            if invoice.get("status") == "pending":
                self.repository.set_invoice_status(db, int(invoice["id"]), "past_due")
                marked += 1
            overdue_days = days_since(invoice.get("due_date"), now)
            if (
                bool(invoice.get("auto_suspend"))
                and self._auto_suspend_enabled()
                and overdue_days is not None
                and overdue_days >= suspend_after
            ):
                self._suspend(db, invoice, overdue_days=overdue_days)
                suspended += 1
            elif invoice.get("subscription_id") and invoice.get("subscription_status") == "active":
                self.repository.set_subscription_status(db, int(invoice["subscription_id"]), "past_due")
        return {"marked_past_due": marked, "suspended": suspended}

    def send_overdue_reminders(self, db, now=None) -> Dict[str, int]:
        """Lembretes de fatura em atraso nos dias da regua configurada.

        Cada dia da regua e enviado no maximo uma vez por fatura, respeitando um
        intervalo minimo desde o ultimo lembrete. Depois de OVERDUE_REMINDER_STOP_AFTER_DAYS
        a fatura sai da regua.
        """
        if not current_app.config.get("OVERDUE_REMINDER_ENABLED", True):
            return {"reminders_sent": 0, "reminders_skipped": 0}
        now = now or utc_now()
        schedule = _parse_schedule(current_app.config.get("OVERDUE_REMINDER_SCHEDULE"))
        channels = _parse_channels(current_app.config.get("OVERDUE_REMINDER_CHANNELS"))
        stop_after = max(0, config_int("OVERDUE_REMINDER_STOP_AFTER_DAYS", 45))
        min_gap_hours = max(0, config_int("OVERDUE_REMINDER_MIN_GAP_HOURS", 24))
        fee_pct = max(0.0, config_float("LATE_FEE_PERCENTAGE", 2.0))

        sent = 0
        skipped = 0
        for invoice in self.repository.list_unpaid_invoices(db, format_datetime(now)):
            invoice_id = int(invoice["id"])
            days_overdue = days_since(invoice.get("due_date"), now)
            if days_overdue is None or days_overdue > stop_after:
                skipped += 1
                continue
            due_days = [day for day in schedule if day <= days_overdue]
            if not due_days:
                continue
            reminder_day = due_days[-1]
            if self.repository.reminder_sent_for_day(db, invoice_id, reminder_day):
                continue
            last_at = parse_datetime(self.repository.last_reminder_at(db, invoice_id))
            if last_at is not None and (now - last_at).total_seconds() < min_gap_hours * 3600:
                continue

            phone, email, owner_name = _contact(invoice)
            if not phone and not email:
                logger.info("overdue_reminder_without_contact", extra={"invoice_id": invoice_id})
                skipped += 1
                continue

            amount = float(invoice.get("amount") or 0)
            late_fee = round(amount * fee_pct / 100 * days_overdue, 2)
            results = self.notifications.deliver(
                phone=phone,
                email=email,
                template_key="overdue_reminder",
                context={
                    "owner_name": owner_name,
                    "invoice_id": invoice_id,
                    "plan_name": invoice.get("plan") or "-",
                    "invoice_amount": format_brl(amount),
                    "due_date": str(invoice.get("due_date") or "")[:10],
                    "days_overdue": days_overdue,
                    "late_fee": format_brl(late_fee),
                    "total_with_fee": format_brl(amount + late_fee),
                },
                send_whatsapp="whatsapp" in channels,
                send_email="email" in channels,
            )
            self.repository.record_reminder(
                db,
                invoice,
                reminder_day=reminder_day,
                days_overdue=days_overdue,
                results=results,
            )
            if self.notifications.any_sent(results):
                sent += 1
            else:
                skipped += 1
            logger.info(
                "overdue_reminder_processed",
                extra={"invoice_id": invoice_id, "reminder_day": reminder_day, "days_overdue": days_overdue},
            )
        return {"reminders_sent": sent, "reminders_skipped": skipped}


def _parse_schedule(value: object) -> List[int]:
    if value is None:
        value = "1,3,7,15,30"
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",") if item.strip()]
    else:
        items = list(value)  # type: ignore[arg-type]
    days = set()
    for item in items:
        try:
            day = int(item)
        except (TypeError, ValueError):
            continue
        if day > 0:
            days.add(day)
    return sorted(days)


def _parse_channels(value: object) -> set:
    if value is None:
        return {"whatsapp", "email"}
    if isinstance(value, str):
        return {item.strip().lower() for item in value.split(",") if item.strip()}
    return {str(item).strip().lower() for item in value}  # type: ignore[union-attr]


def _contact(invoice: dict) -> tuple:
    if invoice.get("client_id"):
        return invoice.get("client_phone"), invoice.get("client_email"), invoice.get("client_name") or ""
    return invoice.get("supplier_whatsapp"), invoice.get("supplier_email"), invoice.get("supplier_name") or ""
