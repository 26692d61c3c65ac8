from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import BaseRepository, inserted_id, row_to_dict
from cotiz.validators import now_iso


class InvitationRepository(BaseRepository):
    """Tokens de acesso publico e status de convite por fornecedor."""

    def create_token(
        self,
        db,
        *,
        quote_id: int,
        supplier_id: int,
        short_code: str,
        full_token: str,
        expires_at: str,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO quote_tokens (quote_id, supplier_id, short_code, full_token, expires_at, client_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (quote_id, supplier_id, short_code, full_token, expires_at, self.client_id, now_iso()),
        )
        return inserted_id(cursor)

    def latest_valid_token(self, db, quote_id: int, supplier_id: int, now: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, quote_id, supplier_id, short_code, full_token, expires_at, access_count
            FROM quote_tokens
            WHERE quote_id = ? AND supplier_id = ? AND client_id = ? AND expires_at > ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (quote_id, supplier_id, self.client_id, now),
        ).fetchone()
        return row_to_dict(row)

    def ensure_supplier_status(self, db, quote_id: int, supplier_id: int) -> None:
        db.execute(
            """
            INSERT INTO quote_supplier_status (quote_id, supplier_id, status, reminder_count, invited_at, client_id)
            VALUES (?, ?, 'pending', 0, ?, ?)
            ON CONFLICT (quote_id, supplier_id) DO NOTHING
            """,
            (quote_id, supplier_id, now_iso(), self.client_id),
        )

    def mark_responded(self, db, quote_id: int, supplier_id: int) -> None:
        now = now_iso()
        db.execute(
            """
            INSERT INTO quote_supplier_status (
                quote_id, supplier_id, status, reminder_count, invited_at, responded_at, client_id
            )
            VALUES (?, ?, 'responded', 0, ?, ?, ?)
            ON CONFLICT (quote_id, supplier_id) DO UPDATE SET
                status = 'responded',
                responded_at = excluded.responded_at
            """,
            (quote_id, supplier_id, now, now, self.client_id),
        )

    def mark_reminded(self, db, status_id: int, *, status: str, reminder_count: int) -> None:
        db.execute(
            """
            UPDATE quote_supplier_status
            SET status = ?, reminder_count = ?, last_reminder_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (status, reminder_count, now_iso(), status_id, self.client_id),
        )

    def list_supplier_statuses(self, db, quote_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT qss.id, qss.supplier_id, s.name AS supplier_name, qss.status, qss.reminder_count,
                   qss.invited_at, qss.last_reminder_at, qss.responded_at
            FROM quote_supplier_status qss
            LEFT JOIN suppliers s ON s.id = qss.supplier_id
            WHERE qss.quote_id = ? AND qss.client_id = ?
            ORDER BY qss.id
            """,
            (quote_id, self.client_id),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_reminder_candidates(
        self,
        db,
        *,
        invited_before: str,
        last_reminder_before: str,
        quote_id: int | None = None,
    ) -> List[dict]:
        params: list = [self.client_id, invited_before, last_reminder_before]
        quote_clause = ""
        if quote_id is not None:
            quote_clause = " AND q.id = ?"
            params.append(quote_id)
        rows = db.execute(
            f"""
            SELECT qss.id, qss.quote_id, qss.supplier_id, qss.status, qss.reminder_count,
                   q.title AS quote_title, q.deadline,
                   s.name AS supplier_name, s.email AS supplier_email, s.whatsapp AS supplier_whatsapp
            FROM quote_supplier_status qss
            JOIN quotes q ON q.id = qss.quote_id AND q.client_id = qss.client_id
            JOIN suppliers s ON s.id = qss.supplier_id
            WHERE qss.client_id = ?
              AND q.status IN ('sent', 'receiving')
              AND qss.status IN ('pending', 'reminded_once')
              AND qss.invited_at <= ?
              AND (qss.last_reminder_at IS NULL OR qss.last_reminder_at <= ?){quote_clause}
            ORDER BY qss.quote_id, qss.id
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)

    @staticmethod
    def count_open_for_supplier(db, supplier_id: int) -> int:
        row = db.execute(
            """
            SELECT COUNT(*) AS total
            FROM quote_supplier_status qss
            JOIN quotes q ON q.id = qss.quote_id
            WHERE qss.supplier_id = ? AND qss.status <> 'responded' AND q.status IN ('sent', 'receiving')
            """,
            (supplier_id,),
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    @staticmethod
    def find_token(db, token: str) -> dict | None:
        value = str(token or "").strip()
        if not value:
            return None
        row = db.execute(
            """
            SELECT id, quote_id, supplier_id, short_code, full_token, expires_at, access_count, client_id
            FROM quote_tokens
            WHERE short_code = ? OR full_token = ?
            LIMIT 1
            """,
            (value.upper(), value),
        ).fetchone()
        return row_to_dict(row)

    @staticmethod
    def short_code_exists(db, short_code: str) -> bool:
        row = db.execute("SELECT 1 FROM quote_tokens WHERE short_code = ?", (short_code,)).fetchone()
        return bool(row)

    @staticmethod
    def register_access(db, token_id: int) -> None:
        db.execute(
            """
            UPDATE quote_tokens
            SET access_count = access_count + 1, last_accessed_at = ?
            WHERE id = ?
            """,
            (now_iso(), token_id),
        )

    @staticmethod
    def clients_with_open_invitations(db) -> List[str]:
        rows = db.execute(
            """
            SELECT DISTINCT qss.client_id
            FROM quote_supplier_status qss
            JOIN quotes q ON q.id = qss.quote_id
            WHERE q.status IN ('sent', 'receiving') AND qss.status IN ('pending', 'reminded_once')
            ORDER BY qss.client_id
            """
        ).fetchall()
        return [str(row["client_id"]) for row in rows]
