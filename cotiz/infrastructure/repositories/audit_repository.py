from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import dumps_json, inserted_id, loads_json
from cotiz.validators import now_iso


class AuditRepository:
    def add(
        self,
        db,
        *,
        action: str,
        entity_type: str | None,
        entity_id: object | None,
        client_id: str | None,
        user_id: int | None = None,
        panel_type: str | None = None,
        details: dict | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO audit_logs (user_id, action, entity_type, entity_id, panel_type, details_json, client_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                user_id,
                action,
                entity_type,
                None if entity_id is None else str(entity_id),
                panel_type,
                dumps_json(details or {}),
                client_id,
                now_iso(),
            ),
        )
        return inserted_id(cursor)

    def list(
        self,
        db,
        *,
        client_id: str | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        limit: int = 100,
    ) -> List[dict]:
        clauses = []
        params: list = []
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        if action:
            clauses.append("action = ?")
            params.append(action)
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT id, user_id, action, entity_type, entity_id, panel_type, details_json, client_id, created_at
            FROM audit_logs
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["details"] = loads_json(item.pop("details_json", None), {})
            items.append(item)
        return items
