from __future__ import annotations

from cotiz.infrastructure.repositories.base import row_to_dict
from cotiz.validators import now_iso


class ClientRepository:
    def get(self, db, client_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, name, client_type, administradora_id, cnpj, email, phone, is_active, created_at
            FROM clients
            WHERE id = ?
            """,
            (client_id,),
        ).fetchone()
        return row_to_dict(row)

    def ensure_client(
        self,
        db,
        client_id: str,
        name: str,
        *,
        client_type: str = "condominio",
        administradora_id: str | None = None,
    ) -> None:
        db.execute(
            """
            INSERT INTO clients (id, name, client_type, administradora_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (client_id, name, client_type, administradora_id, now_iso()),
        )

    def list_managed_by(self, db, administradora_id: str) -> list[dict]:
        rows = db.execute(
            """
            SELECT id, name, client_type, administradora_id, is_active
            FROM clients
            WHERE administradora_id = ?
            ORDER BY name, id
            """,
            (administradora_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def is_managed_by(self, db, client_id: str, administradora_id: str) -> bool:
        row = db.execute(
            "SELECT 1 FROM clients WHERE id = ? AND administradora_id = ?",
            (client_id, administradora_id),
        ).fetchone()
        return bool(row)

    def set_active(self, db, client_id: str, active: bool) -> None:
        db.execute(
            "UPDATE clients SET is_active = ? WHERE id = ?",
            (1 if active else 0, client_id),
        )
