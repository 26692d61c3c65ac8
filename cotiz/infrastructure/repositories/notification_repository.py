from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import BaseRepository, dumps_json, inserted_id, loads_json
from cotiz.validators import now_iso


def _serialize(row) -> dict:
    item = dict(row)
    item["metadata"] = loads_json(item.pop("metadata_json", None), {})
    item["read"] = bool(item.get("read_at"))
    return item


class NotificationRepository(BaseRepository):
    def create(
        self,
        db,
        *,
        title: str,
        message: str,
        user_id: int | None = None,
        supplier_id: int | None = None,
        type: str = "info",
        priority: str = "normal",
        action_url: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO notifications (
                user_id, supplier_id, title, message, type, priority, action_url, metadata_json, client_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                user_id,
                supplier_id,
                title,
                message,
                type,
                priority,
                action_url,
                dumps_json(metadata or {}),
                self.client_id,
                now_iso(),
            ),
        )
        return inserted_id(cursor)

    def list_for_recipient(
        self,
        db,
        *,
        user_id: int | None,
        supplier_id: int | None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[dict]:
        recipient_clause, params = self._recipient_clause(user_id, supplier_id)
        unread_clause = " AND read_at IS NULL" if unread_only else ""
        rows = db.execute(
            f"""
            SELECT id, user_id, supplier_id, title, message, type, priority, action_url, metadata_json, read_at,
                   client_id, created_at
            FROM notifications
            WHERE {recipient_clause}{unread_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (*params, int(limit)),
        ).fetchall()
        return [_serialize(row) for row in rows]

    def count_unread(self, db, *, user_id: int | None, supplier_id: int | None) -> int:
        recipient_clause, params = self._recipient_clause(user_id, supplier_id)
        row = db.execute(
            f"SELECT COUNT(*) AS total FROM notifications WHERE {recipient_clause} AND read_at IS NULL",
            params,
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    def mark_read(self, db, notification_id: int, *, user_id: int | None, supplier_id: int | None) -> bool:
        recipient_clause, params = self._recipient_clause(user_id, supplier_id)
        cursor = db.execute(
            f"""
            UPDATE notifications
            SET read_at = COALESCE(read_at, ?)
            WHERE id = ? AND {recipient_clause}
            """,
            (now_iso(), notification_id, *params),
        )
        return (cursor.rowcount or 0) > 0

    def mark_all_read(self, db, *, user_id: int | None, supplier_id: int | None) -> int:
        recipient_clause, params = self._recipient_clause(user_id, supplier_id)
        cursor = db.execute(
            f"UPDATE notifications SET read_at = ? WHERE {recipient_clause} AND read_at IS NULL",
            (now_iso(), *params),
        )
        return int(cursor.rowcount or 0)

    def _recipient_clause(self, user_id: int | None, supplier_id: int | None) -> tuple[str, tuple]:
        # Fornecedores leem notificacoes de qualquer cliente; usuarios, so as do proprio cliente.
        if supplier_id is not None and user_id is not None:
            return "((user_id = ? AND client_id = ?) OR supplier_id = ?)", (user_id, self.client_id, supplier_id)
        if supplier_id is not None:
            return "supplier_id = ?", (supplier_id,)
        return "(user_id = ? AND client_id = ?)", (user_id, self.client_id)
