"""Overdue invoice reminders

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 00:00:02
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from cotiz.db import render_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, Sequence[str], None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _resolve_backend() -> str:
    dialect = (op.get_bind().dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    for statement in render_schema(_resolve_backend()):
        if "overdue_reminders" in statement:
            connection.exec_driver_sql(statement)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS overdue_reminders")
