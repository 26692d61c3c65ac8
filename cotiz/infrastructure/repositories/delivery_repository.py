from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import BaseRepository, inserted_id, row_to_dict
from cotiz.validators import now_iso


class DeliveryRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        quote_id: int,
        payment_id: int | None,
        supplier_id: int | None,
        scheduled_date: str | None,
        tracking_info: str | None,
        notes: str | None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO deliveries (
                quote_id, payment_id, supplier_id, status, scheduled_date, tracking_info, notes, client_id,
                created_at, updated_at
            )
            VALUES (?, ?, ?, 'scheduled', ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (quote_id, payment_id, supplier_id, scheduled_date, tracking_info, notes, self.client_id, now, now),
        )
        return inserted_id(cursor)

    def get(self, db, delivery_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT d.*, q.title AS quote_title, s.name AS supplier_name
            FROM deliveries d
            LEFT JOIN quotes q ON q.id = d.quote_id
            LEFT JOIN suppliers s ON s.id = d.supplier_id
            WHERE d.id = ? AND d.client_id = ?
            """,
            (delivery_id, self.client_id),
        ).fetchone()
        return row_to_dict(row)

    def find_open_for_quote(self, db, quote_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM deliveries
            WHERE quote_id = ? AND client_id = ? AND status IN ('scheduled', 'in_transit')
            ORDER BY id DESC
            LIMIT 1
            """,
            (quote_id, self.client_id),
        ).fetchone()
        return row_to_dict(row)

    def list(self, db, *, status: str | None = None, supplier_id: int | None = None) -> List[dict]:
        clauses = ["d.client_id = ?"]
        params: list = [self.client_id]
        if status:
            clauses.append("d.status = ?")
            params.append(status)
        if supplier_id is not None:
            clauses.append("d.supplier_id = ?")
            params.append(supplier_id)
        rows = db.execute(
            f"""
            SELECT d.*, q.title AS quote_title, s.name AS supplier_name
            FROM deliveries d
            LEFT JOIN quotes q ON q.id = d.quote_id
            LEFT JOIN suppliers s ON s.id = d.supplier_id
            WHERE {' AND '.join(clauses)}
            ORDER BY d.created_at DESC, d.id DESC
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def set_status(self, db, delivery_id: int, status: str, *, actual_delivery_date: str | None = None) -> None:
        db.execute(
            """
            UPDATE deliveries
            SET status = ?, actual_delivery_date = COALESCE(?, actual_delivery_date), updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (status, actual_delivery_date, now_iso(), delivery_id, self.client_id),
        )

    def create_confirmation(self, db, delivery_id: int, *, code: str, expires_at: str) -> int:
        cursor = db.execute(
            """
            INSERT INTO delivery_confirmations (delivery_id, confirmation_code, expires_at, is_used, client_id, created_at)
            VALUES (?, ?, ?, 0, ?, ?)
            RETURNING id
            """,
            (delivery_id, code, expires_at, self.client_id, now_iso()),
        )
        return inserted_id(cursor)

    def current_confirmation(self, db, delivery_id: int, now: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM delivery_confirmations
            WHERE delivery_id = ? AND client_id = ? AND is_used = 0 AND expires_at > ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (delivery_id, self.client_id, now),
        ).fetchone()
        return row_to_dict(row)

    def expire_open_confirmations(self, db, delivery_id: int) -> int:
        cursor = db.execute(
            """
            UPDATE delivery_confirmations
            SET expires_at = ?
            WHERE delivery_id = ? AND client_id = ? AND is_used = 0
            """,
            (now_iso(), delivery_id, self.client_id),
        )
        return cursor.rowcount or 0

    def count_pending(self, db) -> int:
        row = db.execute(
            """
            SELECT COUNT(*) AS total
            FROM deliveries
            WHERE client_id = ? AND status IN ('scheduled', 'in_transit')
            """,
            (self.client_id,),
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    @staticmethod
    def find_confirmation_by_code(db, code: str) -> dict | None:
        row = db.execute(
            """
            SELECT c.*, d.client_id AS delivery_client_id, d.quote_id, d.supplier_id, d.payment_id,
                   d.status AS delivery_status
            FROM delivery_confirmations c
            JOIN deliveries d ON d.id = c.delivery_id
            WHERE c.confirmation_code = ?
            ORDER BY c.is_used ASC, c.id DESC
            LIMIT 1
            """,
            (code,),
        ).fetchone()
        return row_to_dict(row)

    @staticmethod
    def mark_confirmation_used(db, confirmation_id: int, *, used_by: int | None) -> bool:
        cursor = db.execute(
            """
            UPDATE delivery_confirmations
            SET is_used = 1, used_at = ?, confirmed_by = ?
            WHERE id = ? AND is_used = 0
            """,
            (now_iso(), used_by, confirmation_id),
        )
        return (cursor.rowcount or 0) > 0

    @staticmethod
    def code_in_use(db, code: str) -> bool:
        row = db.execute(
            "SELECT 1 FROM delivery_confirmations WHERE confirmation_code = ? AND is_used = 0",
            (code,),
        ).fetchone()
        return bool(row)

    @staticmethod
    def find_by_id(db, delivery_id: int) -> dict | None:
        row = db.execute("SELECT * FROM deliveries WHERE id = ?", (delivery_id,)).fetchone()
        return row_to_dict(row)

    @staticmethod
    def list_for_supplier(db, supplier_id: int, status: str | None = None) -> List[dict]:
        params: list = [supplier_id]
        status_clause = ""
        if status:
            status_clause = " AND d.status = ?"
            params.append(status)
        rows = db.execute(
            f"""
            SELECT d.*, q.title AS quote_title
            FROM deliveries d
            LEFT JOIN quotes q ON q.id = d.quote_id
            WHERE d.supplier_id = ?{status_clause}
            ORDER BY d.created_at DESC, d.id DESC
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]
