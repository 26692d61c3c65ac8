from __future__ import annotations

from typing import Dict, List

from cotiz.infrastructure.repositories.base import BaseRepository, dumps_json, inserted_id, loads_json, row_to_dict
from cotiz.validators import now_iso


_PROVIDER_COLUMNS = ("stripe_session_id", "stripe_payment_intent_id", "asaas_payment_id")


class PaymentRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        quote_id: int,
        supplier_id: int | None,
        amount: float,
        escrow_release_date: str | None,
        auto_release_enabled: bool,
        payment_method: str | None,
        cost_center_id: str | None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO payments (
                quote_id, supplier_id, amount, status, escrow_release_date, auto_release_enabled, payment_method,
                cost_center_id, client_id, created_at, updated_at
            )
            VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                quote_id,
                supplier_id,
                amount,
                escrow_release_date,
                1 if auto_release_enabled else 0,
                payment_method,
                cost_center_id,
                self.client_id,
                now,
                now,
            ),
        )
        return inserted_id(cursor)

    def get(self, db, payment_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT p.*, q.title AS quote_title, s.name AS supplier_name
            FROM payments p
            LEFT JOIN quotes q ON q.id = p.quote_id
            LEFT JOIN suppliers s ON s.id = p.supplier_id
            WHERE p.id = ? AND p.client_id = ?
            """,
            (payment_id, self.client_id),
        ).fetchone()
        return row_to_dict(row)

    def find_active_for_quote(self, db, quote_id: int, statuses: tuple[str, ...]) -> dict | None:
        placeholders = ", ".join("?" for _ in statuses)
        row = db.execute(
            f"""
            SELECT *
            FROM payments
            WHERE quote_id = ? AND client_id = ? AND status IN ({placeholders})
            ORDER BY id DESC
            LIMIT 1
            """,
            (quote_id, self.client_id, *statuses),
        ).fetchone()
        return row_to_dict(row)

    def list(self, db, *, status: str | None = None, quote_id: int | None = None, limit: int = 200) -> List[dict]:
        clauses = ["p.client_id = ?"]
        params: list = [self.client_id]
        if status:
            clauses.append("p.status = ?")
            params.append(status)
        if quote_id is not None:
            clauses.append("p.quote_id = ?")
            params.append(quote_id)
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT p.*, q.title AS quote_title, s.name AS supplier_name
            FROM payments p
            LEFT JOIN quotes q ON q.id = p.quote_id
            LEFT JOIN suppliers s ON s.id = p.supplier_id
            WHERE {' AND '.join(clauses)}
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def update_status(self, db, payment_id: int, *, status: str, fields: Dict[str, object] | None = None) -> None:
        extra = dict(fields or {})
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [status, now_iso()]
        for key, value in extra.items():
            if key not in {"release_reason", "released_at", "payment_method", "escrow_release_date", *_PROVIDER_COLUMNS}:
                continue
            assignments.append(f"{key} = ?")
            params.append(value)
        params.extend([payment_id, self.client_id])
        db.execute(
            f"UPDATE payments SET {', '.join(assignments)} WHERE id = ? AND client_id = ?",
            params,
        )

    def add_transaction(
        self,
        db,
        *,
        payment_id: int,
        transaction_type: str,
        amount: float,
        status: str,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO payment_transactions (
                payment_id, transaction_type, amount, status, description, metadata_json, client_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                payment_id,
                transaction_type,
                amount,
                status,
                description,
                dumps_json(metadata or {}),
                self.client_id,
                now_iso(),
            ),
        )
        return inserted_id(cursor)

    def list_transactions(self, db, payment_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT id, transaction_type, amount, status, description, metadata_json, created_at
            FROM payment_transactions
            WHERE payment_id = ? AND client_id = ?
            ORDER BY id
            """,
            (payment_id, self.client_id),
        ).fetchall()
        transactions = []
        for row in rows:
            item = dict(row)
            item["metadata"] = loads_json(item.pop("metadata_json", None), {})
            transactions.append(item)
        return transactions

    def summary_by_status(self, db) -> Dict[str, dict]:
        rows = db.execute(
            """
            SELECT status, COUNT(*) AS total, COALESCE(SUM(amount), 0) AS amount
            FROM payments
            WHERE client_id = ?
            GROUP BY status
            """,
            (self.client_id,),
        ).fetchall()
        return {str(row["status"]): {"count": int(row["total"]), "amount": float(row["amount"] or 0)} for row in rows}

    @staticmethod
    def find_by_id(db, payment_id: int) -> dict | None:
        row = db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return row_to_dict(row)

    @staticmethod
    def find_by_provider_reference(db, column: str, value: str) -> dict | None:
        if column not in _PROVIDER_COLUMNS or not value:
            return None
        row = db.execute(
            f"SELECT * FROM payments WHERE {column} = ? ORDER BY id DESC LIMIT 1",
            (value,),
        ).fetchone()
        return row_to_dict(row)

    @staticmethod
    def list_due_for_auto_release(db, now: str, limit: int = 200) -> List[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM payments
            WHERE status = 'in_escrow'
              AND auto_release_enabled = 1
              AND escrow_release_date IS NOT NULL
              AND escrow_release_date <= ?
            ORDER BY escrow_release_date, id
            LIMIT ?
            """,
            (now, int(limit)),
        ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def receivables_for_supplier(db, supplier_id: int) -> Dict[str, dict]:
        rows = db.execute(
            """
            SELECT status, COUNT(*) AS total, COALESCE(SUM(amount), 0) AS amount
            FROM payments
            WHERE supplier_id = ?
            GROUP BY status
            """,
            (supplier_id,),
        ).fetchall()
        return {str(row["status"]): {"count": int(row["total"]), "amount": float(row["amount"] or 0)} for row in rows}
