from __future__ import annotations

from cotiz.validators import now_iso


class WebhookEventRepository:
    def record(self, db, provider: str, event_id: str, event_type: str | None) -> bool:
        """Registra o evento; False quando o par (provider, event_id) ja existia."""
        cursor = db.execute(
            """
            INSERT INTO webhook_events (provider, event_id, event_type, received_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (provider, event_id) DO NOTHING
            """,
            (provider, event_id, event_type, now_iso()),
        )
        return (cursor.rowcount or 0) > 0
