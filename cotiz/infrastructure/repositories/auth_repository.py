from __future__ import annotations

from werkzeug.security import generate_password_hash

from cotiz.infrastructure.repositories.base import inserted_id, row_to_dict
from cotiz.validators import now_iso


class AuthRepository:
    def find_user_by_email(self, db, email: str) -> dict | None:
        row = db.execute(
            """
            SELECT id, email, password_hash, display_name, role, client_id, supplier_id, phone
            FROM auth_users
            WHERE email = ?
            """,
            (email,),
        ).fetchone()
        return row_to_dict(row)

    def find_user_by_id(self, db, user_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, email, display_name, role, client_id, supplier_id, phone
            FROM auth_users
            WHERE id = ?
            """,
            (user_id,),
        ).fetchone()
        return row_to_dict(row)

    def email_exists(self, db, email: str) -> bool:
        row = db.execute(
            "SELECT 1 FROM auth_users WHERE email = ?",
            (email,),
        ).fetchone()
        return bool(row)

    def list_users_for_client(self, db, client_id: str, roles: tuple[str, ...] | None = None) -> list[dict]:
        params: list = [client_id]
        role_clause = ""
        if roles:
            role_clause = f" AND role IN ({', '.join('?' for _ in roles)})"
            params.extend(roles)
        rows = db.execute(
            f"""
            SELECT id, email, display_name, role, client_id, supplier_id, phone
            FROM auth_users
            WHERE client_id = ?{role_clause}
            ORDER BY id
            """,
            params,
        ).fetchall()
        return [dict(row) for row in rows]

    def create_user(
        self,
        db,
        *,
        email: str,
        password: str,
        display_name: str | None,
        client_id: str,
        role: str = "client",
        supplier_id: int | None = None,
        phone: str | None = None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO auth_users (
                email, password_hash, display_name, role, client_id, supplier_id, phone, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                email,
                generate_password_hash(password),
                display_name,
                role,
                client_id,
                supplier_id,
                phone,
                now,
                now,
            ),
        )
        return inserted_id(cursor)
