import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
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

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
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


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 nao instalado.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS quotations (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    supplier_id TEXT NOT NULL,
    supplier_name TEXT,
    supplier_email TEXT,
    category TEXT,
    status TEXT NOT NULL DEFAULT 'draft' CHECK (
        status IN ('draft','sent','replied','quoted','confirmed','delivered','cancelled','expired')
    ),
    items_json TEXT NOT NULL DEFAULT '[]',
    quoted_items_json TEXT,
    quoted_total {float_type},
    sent_at TEXT,
    replied_at TEXT,
    analyzed_at TEXT,
    confirmed_at TEXT,
    delivered_at TEXT,
    cancelled_at TEXT,
    details_json TEXT NOT NULL DEFAULT '{{}}',
    history_json TEXT NOT NULL DEFAULT '[]',
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_quotations_tenant_status ON quotations (tenant_id, status);

CREATE TABLE IF NOT EXISTS processing_locks (
    tenant_id TEXT NOT NULL,
    product_id TEXT NOT NULL,
    acquired_at {float_type} NOT NULL,
    expires_at {float_type} NOT NULL,
    last_heartbeat {float_type},
    acquired_by TEXT NOT NULL,
    PRIMARY KEY (tenant_id, product_id)
);

CREATE TABLE IF NOT EXISTS suppliers (
    id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    email TEXT,
    auto_order_enabled INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (tenant_id, id)
);

CREATE TABLE IF NOT EXISTS inventory_items (
    id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    category TEXT,
    current_stock {float_type} NOT NULL DEFAULT 0,
    min_stock {float_type} NOT NULL DEFAULT 0,
    max_stock {float_type} NOT NULL DEFAULT 0,
    unit TEXT NOT NULL DEFAULT 'un',
    supplier_id TEXT,
    current_price {float_type},
    enable_auto_quotation INTEGER,
    updated_at TEXT,
    PRIMARY KEY (tenant_id, id)
);

CREATE TABLE IF NOT EXISTS settings (
    tenant_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    PRIMARY KEY (tenant_id, key)
);
"""


def init_db():
    db = get_db()
    float_type = "DOUBLE PRECISION" if db.backend == "postgres" else "REAL"
    db.executescript(_SCHEMA.format(float_type=float_type))
    db.commit()
