from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import BaseRepository, dumps_json, inserted_id, loads_json
from cotiz.validators import now_iso


_RESPONSE_COLUMNS = """
    id, quote_id, supplier_id, supplier_name, supplier_email, total_amount, delivery_days, shipping_cost,
    warranty_months, payment_terms, notes, items_json, status, client_id, created_at, updated_at
"""


def serialize_response(row) -> dict | None:
    if not row:
        return None
    response = dict(row)
    response["items"] = loads_json(response.pop("items_json", None), [])
    return response


class ResponseRepository(BaseRepository):
    def get(self, db, response_id: int) -> dict | None:
        row = db.execute(
            f"SELECT {_RESPONSE_COLUMNS} FROM quote_responses WHERE id = ? AND client_id = ?",
            (response_id, self.client_id),
        ).fetchone()
        return serialize_response(row)

    def get_for_supplier(self, db, quote_id: int, supplier_id: int) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_RESPONSE_COLUMNS}
            FROM quote_responses
            WHERE quote_id = ? AND supplier_id = ? AND client_id = ?
            """,
            (quote_id, supplier_id, self.client_id),
        ).fetchone()
        return serialize_response(row)

    def list_for_quote(self, db, quote_id: int) -> List[dict]:
        rows = db.execute(
            f"""
            SELECT {_RESPONSE_COLUMNS}
            FROM quote_responses
            WHERE quote_id = ? AND client_id = ?
            ORDER BY (total_amount + shipping_cost) ASC, id ASC
            """,
            (quote_id, self.client_id),
        ).fetchall()
        return [serialize_response(row) for row in rows]

    def save(
        self,
        db,
        *,
        quote_id: int,
        supplier_id: int,
        supplier_name: str,
        supplier_email: str,
        total_amount: float,
        delivery_days: int,
        shipping_cost: float,
        warranty_months: int,
        payment_terms: str,
        notes: str | None,
        items: list,
    ) -> tuple[int, bool]:
        """Cria ou atualiza a proposta do fornecedor; devolve (id, criada)."""
        now = now_iso()
        existing = self.get_for_supplier(db, quote_id, supplier_id)
        if existing:
            db.execute(
                """
                UPDATE quote_responses
                SET supplier_name = ?, supplier_email = ?, total_amount = ?, delivery_days = ?, shipping_cost = ?,
                    warranty_months = ?, payment_terms = ?, notes = ?, items_json = ?, status = 'submitted',
                    updated_at = ?
                WHERE id = ? AND client_id = ?
                """,
                (
                    supplier_name,
                    supplier_email,
                    total_amount,
                    delivery_days,
                    shipping_cost,
                    warranty_months,
                    payment_terms,
                    notes,
                    dumps_json(items),
                    now,
                    existing["id"],
                    self.client_id,
                ),
            )
            return int(existing["id"]), False

        cursor = db.execute(
            """
            INSERT INTO quote_responses (
                quote_id, supplier_id, supplier_name, supplier_email, total_amount, delivery_days, shipping_cost,
                warranty_months, payment_terms, notes, items_json, status, client_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'submitted', ?, ?, ?)
            RETURNING id
            """,
            (
                quote_id,
                supplier_id,
                supplier_name,
                supplier_email,
                total_amount,
                delivery_days,
                shipping_cost,
                warranty_months,
                payment_terms,
                notes,
                dumps_json(items),
                self.client_id,
                now,
                now,
            ),
        )
        return inserted_id(cursor), True

    def set_status(self, db, response_id: int, status: str, notes: str | None = None) -> None:
        db.execute(
            """
            UPDATE quote_responses
            SET status = ?, notes = COALESCE(?, notes), updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (status, notes, now_iso(), response_id, self.client_id),
        )

    def reject_others(self, db, quote_id: int, keep_response_id: int, note: str) -> List[dict]:
        rows = db.execute(
            f"""
            SELECT {_RESPONSE_COLUMNS}
            FROM quote_responses
            WHERE quote_id = ? AND client_id = ? AND id <> ? AND status IN ('pending', 'submitted')
            """,
            (quote_id, self.client_id, keep_response_id),
        ).fetchall()
        rejected = [serialize_response(row) for row in rows]
        if rejected:
            db.execute(
                """
                UPDATE quote_responses
                SET status = 'rejected', notes = ?, updated_at = ?
                WHERE quote_id = ? AND client_id = ? AND id <> ? AND status IN ('pending', 'submitted')
                """,
                (note, now_iso(), quote_id, self.client_id, keep_response_id),
            )
        return rejected

    def add_visit(
        self,
        db,
        *,
        quote_id: int,
        supplier_id: int,
        response_id: int,
        scheduled_date: str,
        notes: str | None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO quote_visits (quote_id, supplier_id, response_id, scheduled_date, notes, status, client_id, created_at)
            VALUES (?, ?, ?, ?, ?, 'scheduled', ?, ?)
            RETURNING id
            """,
            (quote_id, supplier_id, response_id, scheduled_date, notes, self.client_id, now_iso()),
        )
        return inserted_id(cursor)

    def list_visits(self, db, quote_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT id, supplier_id, response_id, scheduled_date, notes, status
            FROM quote_visits
            WHERE quote_id = ? AND client_id = ?
            ORDER BY scheduled_date, id
            """,
            (quote_id, self.client_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    @staticmethod
    def count_by_status_for_supplier(db, supplier_id: int) -> dict:
        rows = db.execute(
            """
            SELECT status, COUNT(*) AS total
            FROM quote_responses
            WHERE supplier_id = ?
            GROUP BY status
            """,
            (supplier_id,),
        ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}
