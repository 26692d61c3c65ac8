from __future__ import annotations

from typing import List

from cotiz.infrastructure.repositories.base import BaseRepository, dumps_json, inserted_id, loads_json
from cotiz.validators import now_iso


_LEVEL_COLUMNS = """
    id, name, amount_threshold, max_amount_threshold, order_level, approvers_json, active, client_id,
    created_at, updated_at
"""


def serialize_level(row) -> dict | None:
    if not row:
        return None
    level = dict(row)
    level["approvers"] = [int(item) for item in loads_json(level.pop("approvers_json", None), [])]
    level["active"] = bool(level.get("active"))
    return level


class ApprovalRepository(BaseRepository):
    def list_levels(self, db, *, only_active: bool = False) -> List[dict]:
        active_clause = " AND active = 1" if only_active else ""
        rows = db.execute(
            f"""
            SELECT {_LEVEL_COLUMNS}
            FROM approval_levels
            WHERE client_id = ?{active_clause}
            ORDER BY order_level, amount_threshold, id
            """,
            (self.client_id,),
        ).fetchall()
        return [serialize_level(row) for row in rows]

    def get_level(self, db, level_id: int) -> dict | None:
        row = db.execute(
            f"SELECT {_LEVEL_COLUMNS} FROM approval_levels WHERE id = ? AND client_id = ?",
            (level_id, self.client_id),
        ).fetchone()
        return serialize_level(row)

    def create_level(
        self,
        db,
        *,
        name: str,
        amount_threshold: float,
        max_amount_threshold: float | None,
        order_level: int,
        approvers: List[int],
        active: bool = True,
    ) -> int:
        now = now_iso()
        cursor = db.execute(
            """
            INSERT INTO approval_levels (
                name, amount_threshold, max_amount_threshold, order_level, approvers_json, active, client_id,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                name,
                amount_threshold,
                max_amount_threshold,
                order_level,
                dumps_json(approvers),
                1 if active else 0,
                self.client_id,
                now,
                now,
            ),
        )
        return inserted_id(cursor)

    def update_level(
        self,
        db,
        level_id: int,
        *,
        name: str,
        amount_threshold: float,
        max_amount_threshold: float | None,
        order_level: int,
        approvers: List[int],
        active: bool,
    ) -> None:
        db.execute(
            """
            UPDATE approval_levels
            SET name = ?, amount_threshold = ?, max_amount_threshold = ?, order_level = ?, approvers_json = ?,
                active = ?, updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            (
                name,
                amount_threshold,
                max_amount_threshold,
                order_level,
                dumps_json(approvers),
                1 if active else 0,
                now_iso(),
                level_id,
                self.client_id,
            ),
        )

    def delete_level(self, db, level_id: int) -> bool:
        cursor = db.execute(
            "DELETE FROM approval_levels WHERE id = ? AND client_id = ?",
            (level_id, self.client_id),
        )
        return (cursor.rowcount or 0) > 0

    def create_approval(
        self,
        db,
        *,
        quote_id: int,
        approval_level_id: int | None,
        requested_by: int | None,
        amount: float,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO approvals (quote_id, approval_level_id, requested_by, status, amount, client_id, created_at)
            VALUES (?, ?, ?, 'pending', ?, ?, ?)
            RETURNING id
            """,
            (quote_id, approval_level_id, requested_by, amount, self.client_id, now_iso()),
        )
        return inserted_id(cursor)

    def get_approval(self, db, approval_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT a.*, q.title AS quote_title, l.name AS level_name, l.approvers_json
            FROM approvals a
            LEFT JOIN quotes q ON q.id = a.quote_id
            LEFT JOIN approval_levels l ON l.id = a.approval_level_id
            WHERE a.id = ? AND a.client_id = ?
            """,
            (approval_id, self.client_id),
        ).fetchone()
        if not row:
            return None
        approval = dict(row)
        approval["approvers"] = [int(item) for item in loads_json(approval.pop("approvers_json", None), [])]
        return approval

    def list_approvals(self, db, *, status: str | None = None, quote_id: int | None = None) -> List[dict]:
        clauses = ["a.client_id = ?"]
        params: list = [self.client_id]
        if status:
            clauses.append("a.status = ?")
            params.append(status)
        if quote_id is not None:
            clauses.append("a.quote_id = ?")
            params.append(quote_id)
        rows = db.execute(
            f"""
            SELECT a.*, q.title AS quote_title, l.name AS level_name, l.approvers_json
            FROM approvals a
            LEFT JOIN quotes q ON q.id = a.quote_id
            LEFT JOIN approval_levels l ON l.id = a.approval_level_id
            WHERE {' AND '.join(clauses)}
            ORDER BY a.created_at DESC, a.id DESC
            """,
            params,
        ).fetchall()
        approvals = []
        for row in rows:
            approval = dict(row)
            approval["approvers"] = [int(item) for item in loads_json(approval.pop("approvers_json", None), [])]
            approvals.append(approval)
        return approvals

    def decide(self, db, approval_id: int, *, status: str, comments: str | None, decided_by: int | None) -> bool:
        cursor = db.execute(
            """
            UPDATE approvals
            SET status = ?, comments = ?, decided_by = ?, decided_at = ?
            WHERE id = ? AND client_id = ? AND status = 'pending'
            """,
            (status, comments, decided_by, now_iso(), approval_id, self.client_id),
        )
        return (cursor.rowcount or 0) > 0

    def count_pending(self, db) -> int:
        row = db.execute(
            "SELECT COUNT(*) AS total FROM approvals WHERE client_id = ? AND status = 'pending'",
            (self.client_id,),
        ).fetchone()
        return int(row["total"] or 0) if row else 0
