from __future__ import annotations

from cotiz.infrastructure.repositories.base import BaseRepository, dumps_json, inserted_id, loads_json
from cotiz.validators import now_iso


_SUPPLIER_COLUMNS = """
    id, name, email, whatsapp, cnpj, status, type, specialties, bank_data, client_id, created_at, updated_at
"""


def serialize_supplier(row) -> dict | None:
    if not row:
        return None
    supplier = dict(row)
    supplier["specialties"] = loads_json(supplier.get("specialties"), [])
    supplier["bank_data"] = loads_json(supplier.get("bank_data"), {})
    return supplier


class SupplierRepository(BaseRepository):
    """Fornecedores visiveis ao cliente: os locais dele e todos os certificados."""

    def list_visible(self, db, *, status: str | None = None, search: str | None = None, limit: int = 200) -> list[dict]:
        clauses = ["(type = 'certified' OR client_id = ?)"]
        params: list = [self.client_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        if search:
            clauses.append("(LOWER(name) LIKE ? OR LOWER(COALESCE(email, '')) LIKE ? OR COALESCE(cnpj, '') LIKE ?)")
            pattern = f"%{search.strip().lower()}%"
            params.extend([pattern, pattern, f"%{search.strip()}%"])
        params.append(int(limit))
        rows = db.execute(
            f"""
            SELECT {_SUPPLIER_COLUMNS}
            FROM suppliers
            WHERE {' AND '.join(clauses)}
            ORDER BY name, id
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [serialize_supplier(row) for row in rows]

    def get_visible(self, db, supplier_id: int) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_SUPPLIER_COLUMNS}
            FROM suppliers
            WHERE id = ? AND (type = 'certified' OR client_id = ?)
            """,
            (supplier_id, self.client_id),
        ).fetchone()
        return serialize_supplier(row)

    def find_visible_by_email(self, db, email: str) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_SUPPLIER_COLUMNS}
            FROM suppliers
            WHERE LOWER(email) = ? AND (type = 'certified' OR client_id = ?)
            ORDER BY CASE WHEN client_id = ? THEN 0 ELSE 1 END, id
            LIMIT 1
            """,
            (email.strip().lower(), self.client_id, self.client_id),
        ).fetchone()
        return serialize_supplier(row)

    def cnpj_exists(self, db, cnpj: str) -> bool:
        row = db.execute(
            "SELECT 1 FROM suppliers WHERE cnpj = ? AND (type = 'certified' OR client_id = ?)",
            (cnpj, self.client_id),
        ).fetchone()
        return bool(row)

    def create_local(
        self,
        db,
        *,
        name: str,
        email: str | None,
        whatsapp: str | None = None,
        cnpj: str | None = None,
        status: str = "active",
        specialties: list | None = None,
        bank_data: dict | None = None,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO suppliers (
                name, email, whatsapp, cnpj, status, type, specialties, bank_data, client_id, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, 'local', ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                name,
                email,
                whatsapp,
                cnpj,
                status,
                dumps_json(specialties or []),
                dumps_json(bank_data or {}),
                self.client_id,
                now,
                now,
            ),
        )
        return inserted_id(cursor)

    def update_status(self, db, supplier_id: int, status: str) -> bool:
        cursor = db.execute(
            """
            UPDATE suppliers
            SET status = ?, updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (status, now_iso(), supplier_id, self.client_id),
        )
        return (cursor.rowcount or 0) > 0

    @staticmethod
    def find_by_id(db, supplier_id: int) -> dict | None:
        row = db.execute(
            f"SELECT {_SUPPLIER_COLUMNS} FROM suppliers WHERE id = ?",
            (supplier_id,),
        ).fetchone()
        return serialize_supplier(row)

    @staticmethod
    def set_status_global(db, supplier_id: int, status: str) -> None:
        db.execute(
            "UPDATE suppliers SET status = ?, updated_at = ? WHERE id = ?",
            (status, now_iso(), supplier_id),
        )
