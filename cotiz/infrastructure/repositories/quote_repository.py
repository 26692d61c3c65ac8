from __future__ import annotations

from typing import Dict, List

from cotiz.infrastructure.repositories.base import BaseRepository, inserted_id, row_to_dict
from cotiz.validators import now_iso


_UPDATABLE_FIELDS = ("title", "description", "deadline", "cost_center_id")


class QuoteRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        title: str,
        description: str | None,
        deadline: str | None,
        cost_center_id: str | None,
        created_by: int | None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO quotes (
                title, description, status, deadline, cost_center_id, created_by, client_id, created_at, updated_at
            )
            VALUES (?, ?, 'draft', ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (title, description, deadline, cost_center_id, created_by, self.client_id, now, now),
        )
        return inserted_id(cursor)

    def add_item(self, db, quote_id: int, *, description: str, quantity: float, unit: str | None) -> int:
        cursor = db.execute(
            """
            INSERT INTO quote_items (quote_id, description, quantity, unit, client_id)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            (quote_id, description, quantity, unit, self.client_id),
        )
        return inserted_id(cursor)

    def delete_items(self, db, quote_id: int) -> None:
        db.execute(
            "DELETE FROM quote_items WHERE quote_id = ? AND client_id = ?",
            (quote_id, self.client_id),
        )

    def get(self, db, quote_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM quotes
            WHERE id = ? AND client_id = ?
            LIMIT 1
            """,
            (quote_id, self.client_id),
        ).fetchone()
        return row_to_dict(row)

    def list(self, db, *, status: str | None = None, search: str | None = None, limit: int = 100) -> List[dict]:
        clauses = ["client_id = ?"]
        params: list = [self.client_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if search:
            clauses.append("LOWER(title) LIKE ?")
            params.append(f"%{search.strip().lower()}%")
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT id, title, description, status, deadline, cost_center_id, total, supplier_id, supplier_name,
                   created_by, client_id, created_at, updated_at
            FROM quotes
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_items(self, db, quote_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT id, description, quantity, unit
            FROM quote_items
            WHERE quote_id = ? AND client_id = ?
            ORDER BY id
            """,
            (quote_id, self.client_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def update_fields(self, db, quote_id: int, fields: Dict[str, object]) -> None:
        updates = {key: value for key, value in fields.items() if key in _UPDATABLE_FIELDS}
        if not updates:
            return
        assignments = ", ".join(f"{key} = ?" for key in updates)
        db.execute(
            f"UPDATE quotes SET {assignments}, updated_at = ? WHERE id = ? AND client_id = ?",
            (*updates.values(), now_iso(), quote_id, self.client_id),
        )

    def set_status(self, db, quote_id: int, status: str) -> None:
        db.execute(
            "UPDATE quotes SET status = ?, updated_at = ? WHERE id = ? AND client_id = ?",
            (status, now_iso(), quote_id, self.client_id),
        )

    def set_selected_supplier(self, db, quote_id: int, *, supplier_id: int, supplier_name: str | None, total: float) -> None:
        db.execute(
            """
            UPDATE quotes
            SET supplier_id = ?, supplier_name = ?, total = ?, updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (supplier_id, supplier_name, total, now_iso(), quote_id, self.client_id),
        )

    def count_by_status(self, db) -> Dict[str, int]:
        rows = db.execute(
            """
            SELECT status, COUNT(*) AS total
            FROM quotes
            WHERE client_id = ?
            GROUP BY status
            """,
            (self.client_id,),
        ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    @staticmethod
    def find_by_id(db, quote_id: int) -> dict | None:
        row = db.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        return row_to_dict(row)

    @staticmethod
    def list_items_unscoped(db, quote_id: int) -> List[dict]:
        rows = db.execute(
            "SELECT id, description, quantity, unit FROM quote_items WHERE quote_id = ? ORDER BY id",
            (quote_id,),
        ).fetchall()
        return [dict(row) for row in rows]
