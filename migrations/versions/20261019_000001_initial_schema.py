"""Initial Cotiz schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op

from cotiz.db import render_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TABLES = [
    "supplier_transfers",
    "invoices",
    "subscriptions",
    "webhook_events",
    "status_events",
    "audit_logs",
    "notifications",
    "delivery_confirmations",
    "deliveries",
    "payment_transactions",
    "payments",
    "approvals",
    "approval_levels",
    "quote_visits",
    "quote_responses",
    "quote_supplier_status",
    "quote_tokens",
    "quote_items",
    "quotes",
    "suppliers",
    "auth_users",
    "clients",
]


def _resolve_backend() -> str:
    dialect = (op.get_bind().dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    for statement in render_schema(_resolve_backend()):
        # overdue_reminders entra na revisao 20261019_000002
        if "overdue_reminders" not in statement:
            connection.exec_driver_sql(statement)


def downgrade() -> None:
    for table in TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
