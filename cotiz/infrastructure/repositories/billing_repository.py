from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import inserted_id, row_to_dict
from cotiz.validators import now_iso


class BillingRepository:
    """Assinaturas e faturas de clientes e fornecedores (cobranca via Asaas)."""

    def create_subscription(
        self,
        db,
        *,
        client_id: str | None = None,
        supplier_id: int | None = None,
        plan: str | None = None,
        auto_suspend: bool = True,
        asaas_subscription_id: str | None = None,
        status: str = "active",
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO subscriptions (
                client_id, supplier_id, plan, status, auto_suspend, asaas_subscription_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (client_id, supplier_id, plan, status, 1 if auto_suspend else 0, asaas_subscription_id, now, now),
        )
        return inserted_id(cursor)

    def create_invoice(
        self,
        db,
        *,
        subscription_id: int | None,
        amount: float,
        due_date: str,
        client_id: str | None = None,
        supplier_id: int | None = None,
        asaas_charge_id: str | None = None,
        status: str = "pending",
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO invoices (
                subscription_id, client_id, supplier_id, amount, due_date, status, asaas_charge_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (subscription_id, client_id, supplier_id, amount, due_date, status, asaas_charge_id, now, now),
        )
        return inserted_id(cursor)

    def get_subscription(self, db, subscription_id: int) -> dict | None:
        row = db.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        return row_to_dict(row)

    def find_subscription_by_asaas_id(self, db, asaas_subscription_id: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM subscriptions WHERE asaas_subscription_id = ? ORDER BY id DESC LIMIT 1",
            (asaas_subscription_id,),
        ).fetchone()
        return row_to_dict(row)

    def get_invoice(self, db, invoice_id: int) -> dict | None:
        row = db.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return row_to_dict(row)

    def find_invoice_by_charge(self, db, asaas_charge_id: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM invoices WHERE asaas_charge_id = ? ORDER BY id DESC LIMIT 1",
            (asaas_charge_id,),
        ).fetchone()
        return row_to_dict(row)

    def set_invoice_status(self, db, invoice_id: int, status: str, *, paid_at: str | None = None) -> None:
        db.execute(
            """
            UPDATE invoices
            SET status = ?, paid_at = COALESCE(?, paid_at), updated_at = ?
            WHERE id = ?
            """,
            (status, paid_at, now_iso(), invoice_id),
        )

    def set_subscription_status(self, db, subscription_id: int, status: str) -> None:
        db.execute(
            "UPDATE subscriptions SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_iso(), subscription_id),
        )

    def list_overdue_invoices(self, db, due_before: str) -> List[dict]:
        rows = db.execute(
            """
            SELECT i.*, s.auto_suspend, s.status AS subscription_status
            FROM invoices i
            JOIN subscriptions s ON s.id = i.subscription_id
            WHERE i.status IN ('pending', 'past_due')
              AND i.due_date <= ?
              AND s.status IN ('active', 'past_due')
            ORDER BY i.due_date, i.id
            """,
            (due_before,),
        ).fetchall()
        return [dict(row) for row in rows]

    def list_unpaid_invoices(self, db, due_before: str) -> List[dict]:
        """Faturas vencidas em aberto com o contato do dono (cliente ou fornecedor)."""
        rows = db.execute(
            """
            SELECT i.*, s.plan,
                   c.name AS client_name, c.email AS client_email, c.phone AS client_phone,
                   sp.name AS supplier_name, sp.email AS supplier_email, sp.whatsapp AS supplier_whatsapp
            FROM invoices i
            LEFT JOIN subscriptions s ON s.id = i.subscription_id
            LEFT JOIN clients c ON c.id = i.client_id
            LEFT JOIN suppliers sp ON sp.id = i.supplier_id
            WHERE i.status IN ('pending', 'past_due')
              AND i.due_date < ?
            ORDER BY i.due_date, i.id
            """,
            (due_before,),
        ).fetchall()
        return [dict(row) for row in rows]

    def reminder_sent_for_day(self, db, invoice_id: int, reminder_day: int) -> bool:
        row = db.execute(
            "SELECT 1 FROM overdue_reminders WHERE invoice_id = ? AND reminder_day = ?",
            (invoice_id, reminder_day),
        ).fetchone()
        return bool(row)

    def last_reminder_at(self, db, invoice_id: int) -> str | None:
        row = db.execute(
            "SELECT MAX(created_at) AS last_at FROM overdue_reminders WHERE invoice_id = ?",
            (invoice_id,),
        ).fetchone()
        return row["last_at"] if row else None

    def record_reminder(
        self,
        db,
        invoice: dict,
        *,
        reminder_day: int,
        days_overdue: int,
        results: dict,
    ) -> int:
        whatsapp = results.get("whatsapp") or {}
        email = results.get("email") or {}
        cursor = db.execute(
            """
            INSERT INTO overdue_reminders (
                invoice_id, client_id, supplier_id, reminder_day, days_overdue, invoice_amount,
                sent_via_whatsapp, sent_via_email, whatsapp_error, email_error, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                invoice["id"],
                invoice.get("client_id"),
                invoice.get("supplier_id"),
                reminder_day,
                days_overdue,
                float(invoice.get("amount") or 0),
                1 if whatsapp.get("status") == "sent" else 0,
                1 if email.get("status") == "sent" else 0,
                whatsapp.get("error"),
                email.get("error"),
                now_iso(),
            ),
        )
        return inserted_id(cursor)
