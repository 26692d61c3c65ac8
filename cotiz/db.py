import contextlib
import sqlite3
from typing import Callable, Iterable, List

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._after_commit: List[Callable[[], None]] = []

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            import psycopg2.extras

            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Agenda um callback para depois do proximo commit. Rollback descarta."""
        self._after_commit.append(callback)

    def _run_after_commit(self):
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def commit(self):
        self._conn.commit()
        self._run_after_commit()

    def rollback(self):
        self._conn.rollback()
        self._after_commit.clear()

    @contextlib.contextmanager
    def transaction(self):
        """Agrupa escritas em uma unica transacao (commit no fim, rollback em erro)."""
        if self.backend == "postgres":
            previous = self._conn.autocommit
            self._conn.autocommit = False
            try:
                yield self
                self.commit()
            except Exception:
                self.rollback()
                raise
            finally:
                self._conn.autocommit = previous
            return

        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise

    def close(self):
        self._after_commit.clear()
        self._conn.close()


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        elif ch == ";" and not in_single:
            statements.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        import psycopg2

        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


_COLUMN_TYPES = {
    "sqlite": {"pk": "INTEGER PRIMARY KEY AUTOINCREMENT", "real": "REAL"},
    "postgres": {"pk": "SERIAL PRIMARY KEY", "real": "DOUBLE PRECISION"},
}


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        client_type TEXT NOT NULL DEFAULT 'condominio' CHECK (
            client_type IN ('condominio','administradora')
        ),
        administradora_id TEXT,
        cnpj TEXT,
        email TEXT,
        phone TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_users (
        id {pk},
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'client',
        client_id TEXT NOT NULL,
        supplier_id INTEGER,
        phone TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS suppliers (
        id {pk},
        name TEXT NOT NULL,
        email TEXT,
        whatsapp TEXT,
        cnpj TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK (
            status IN ('active','pending','suspended','inactive')
        ),
        type TEXT NOT NULL DEFAULT 'local' CHECK (type IN ('local','certified')),
        specialties TEXT NOT NULL DEFAULT '[]',
        bank_data TEXT NOT NULL DEFAULT '{{}}',
        client_id TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quotes (
        id {pk},
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'draft' CHECK (
            status IN ('draft','sent','receiving','received','under_review','approved','rejected','finalized','cancelled')
        ),
        deadline TEXT,
        cost_center_id TEXT,
        total {real} NOT NULL DEFAULT 0,
        supplier_id INTEGER,
        supplier_name TEXT,
        created_by INTEGER,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quote_items (
        id {pk},
        quote_id INTEGER NOT NULL,
        description TEXT NOT NULL,
        quantity {real} NOT NULL DEFAULT 1,
        unit TEXT,
        client_id TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quote_tokens (
        id {pk},
        quote_id INTEGER NOT NULL,
        supplier_id INTEGER NOT NULL,
        short_code TEXT NOT NULL UNIQUE,
        full_token TEXT NOT NULL UNIQUE,
        expires_at TEXT NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 0,
        last_accessed_at TEXT,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quote_supplier_status (
        id {pk},
        quote_id INTEGER NOT NULL,
        supplier_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','reminded_once','reminded_twice','responded')
        ),
        reminder_count INTEGER NOT NULL DEFAULT 0,
        invited_at TEXT NOT NULL,
        last_reminder_at TEXT,
        responded_at TEXT,
        client_id TEXT NOT NULL,
        UNIQUE (quote_id, supplier_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quote_responses (
        id {pk},
        quote_id INTEGER NOT NULL,
        supplier_id INTEGER NOT NULL,
        supplier_name TEXT,
        supplier_email TEXT,
        total_amount {real} NOT NULL,
        delivery_days INTEGER NOT NULL DEFAULT 7,
        shipping_cost {real} NOT NULL DEFAULT 0,
        warranty_months INTEGER NOT NULL DEFAULT 12,
        payment_terms TEXT,
        notes TEXT,
        items_json TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'submitted' CHECK (
            status IN ('pending','submitted','approved','rejected')
        ),
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (quote_id, supplier_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quote_visits (
        id {pk},
        quote_id INTEGER NOT NULL,
        supplier_id INTEGER NOT NULL,
        response_id INTEGER,
        scheduled_date TEXT NOT NULL,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'scheduled',
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_levels (
        id {pk},
        name TEXT NOT NULL,
        amount_threshold {real} NOT NULL DEFAULT 0,
        max_amount_threshold {real},
        order_level INTEGER NOT NULL DEFAULT 1,
        approvers_json TEXT NOT NULL DEFAULT '[]',
        active INTEGER NOT NULL DEFAULT 1,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        id {pk},
        quote_id INTEGER NOT NULL,
        approval_level_id INTEGER,
        requested_by INTEGER,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','approved','rejected')),
        amount {real} NOT NULL DEFAULT 0,
        comments TEXT,
        decided_by INTEGER,
        decided_at TEXT,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id {pk},
        quote_id INTEGER NOT NULL,
        supplier_id INTEGER,
        amount {real} NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','in_escrow','completed','disputed','cancelled','failed','refunded')
        ),
        escrow_release_date TEXT,
        auto_release_enabled INTEGER NOT NULL DEFAULT 1,
        stripe_session_id TEXT,
        stripe_payment_intent_id TEXT,
        asaas_payment_id TEXT,
        payment_method TEXT,
        release_reason TEXT,
        cost_center_id TEXT,
        released_at TEXT,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_transactions (
        id {pk},
        payment_id INTEGER NOT NULL,
        transaction_type TEXT NOT NULL,
        amount {real} NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        description TEXT,
        metadata_json TEXT NOT NULL DEFAULT '{{}}',
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deliveries (
        id {pk},
        quote_id INTEGER NOT NULL,
        payment_id INTEGER,
        supplier_id INTEGER,
        status TEXT NOT NULL DEFAULT 'scheduled' CHECK (
            status IN ('scheduled','in_transit','delivered','cancelled')
        ),
        scheduled_date TEXT,
        tracking_info TEXT,
        notes TEXT,
        actual_delivery_date TEXT,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delivery_confirmations (
        id {pk},
        delivery_id INTEGER NOT NULL,
        confirmation_code TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        is_used INTEGER NOT NULL DEFAULT 0,
        used_at TEXT,
        confirmed_by INTEGER,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id {pk},
        user_id INTEGER,
        supplier_id INTEGER,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'info',
        priority TEXT NOT NULL DEFAULT 'normal',
        action_url TEXT,
        metadata_json TEXT NOT NULL DEFAULT '{{}}',
        read_at TEXT,
        client_id TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id {pk},
        user_id INTEGER,
        action TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        panel_type TEXT,
        details_json TEXT NOT NULL DEFAULT '{{}}',
        client_id TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS status_events (
        id {pk},
        entity TEXT NOT NULL,
        entity_id INTEGER NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        reason TEXT,
        client_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id {pk},
        provider TEXT NOT NULL,
        event_id TEXT NOT NULL,
        event_type TEXT,
        received_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (provider, event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id {pk},
        client_id TEXT,
        supplier_id INTEGER,
        plan TEXT,
        status TEXT NOT NULL DEFAULT 'active' CHECK (
            status IN ('active','past_due','suspended','expired','cancelled')
        ),
        auto_suspend INTEGER NOT NULL DEFAULT 1,
        asaas_subscription_id TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id {pk},
        subscription_id INTEGER,
        client_id TEXT,
        supplier_id INTEGER,
        amount {real} NOT NULL DEFAULT 0,
        due_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','paid','past_due','cancelled')
        ),
        asaas_charge_id TEXT,
        paid_at TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS overdue_reminders (
        id {pk},
        invoice_id INTEGER NOT NULL,
        client_id TEXT,
        supplier_id INTEGER,
        reminder_day INTEGER NOT NULL,
        days_overdue INTEGER NOT NULL,
        invoice_amount {real} NOT NULL DEFAULT 0,
        sent_via_whatsapp INTEGER NOT NULL DEFAULT 0,
        sent_via_email INTEGER NOT NULL DEFAULT 0,
        whatsapp_error TEXT,
        email_error TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (invoice_id, reminder_day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS supplier_transfers (
        id {pk},
        supplier_id INTEGER,
        payment_id INTEGER,
        amount {real} NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending','approved','failed','completed')
        ),
        asaas_transfer_id TEXT UNIQUE,
        pix_key TEXT,
        failure_reason TEXT,
        client_id TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


INDEX_STATEMENTS: List[str] = [
    "CREATE INDEX IF NOT EXISTS idx_quotes_client_status ON quotes (client_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_quote_items_quote ON quote_items (quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_quote_responses_quote ON quote_responses (quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_approvals_quote ON approvals (quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_quote ON payments (quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_status_release ON payments (status, escrow_release_date)",
    "CREATE INDEX IF NOT EXISTS idx_payment_transactions_payment ON payment_transactions (payment_id)",
    "CREATE INDEX IF NOT EXISTS idx_deliveries_quote ON deliveries (quote_id)",
    "CREATE INDEX IF NOT EXISTS idx_delivery_confirmations_code ON delivery_confirmations (confirmation_code)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, read_at)",
    "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (entity, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_client ON audit_logs (client_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_invoices_charge ON invoices (asaas_charge_id)",
    "CREATE INDEX IF NOT EXISTS idx_overdue_reminders_invoice ON overdue_reminders (invoice_id, created_at)",
]


def render_schema(backend: str) -> List[str]:
    types = _COLUMN_TYPES["postgres" if backend == "postgres" else "sqlite"]
    return [statement.format(**types) for statement in SCHEMA_STATEMENTS] + list(INDEX_STATEMENTS)


def init_db():
    db = get_db()
    for statement in render_schema(db.backend):
        db.execute(statement)
    db.commit()
