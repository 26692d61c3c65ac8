from __future__ import annotations

from cotiz.infrastructure.repositories.base import inserted_id, row_to_dict
from cotiz.validators import now_iso


class TransferRepository:
    def create(
        self,
        db,
        *,
        supplier_id: int | None,
        amount: float,
        asaas_transfer_id: str,
        pix_key: str | None,
        payment_id: int | None = None,
        client_id: str | None = None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO supplier_transfers (
                supplier_id, payment_id, amount, status, asaas_transfer_id, pix_key, client_id, created_at, updated_at
            )
            VALUES (?, ?, ?, 'pending', ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (supplier_id, payment_id, amount, asaas_transfer_id, pix_key, client_id, now, now),
        )
        return inserted_id(cursor)

    def find_by_asaas_id(self, db, asaas_transfer_id: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM supplier_transfers WHERE asaas_transfer_id = ?",
            (asaas_transfer_id,),
        ).fetchone()
        return row_to_dict(row)

    def set_status(self, db, transfer_id: int, status: str, *, failure_reason: str | None = None) -> None:
        db.execute(
            """
            UPDATE supplier_transfers
            SET status = ?, failure_reason = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, failure_reason, now_iso(), transfer_id),
        )
