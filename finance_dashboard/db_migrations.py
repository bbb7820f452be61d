import argparse
from datetime import datetime, timezone

from .db import connect_db, parse_database_config
from .statements import CATEGORIES


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "username", "password_hash"},
        "indexes": set(),
    },
    "categories": {
        "columns": {"id", "name", "created_at"},
        "indexes": set(),
    },
    "source_files": {
        "columns": {"id", "filename", "uploaded_at", "user_id", "amount_sign_convention"},
        "indexes": {"idx_source_files_user_id", "idx_source_files_convention"},
    },
    "merchant_rules": {
        "columns": {
            "id",
            "user_id",
            "merchant_normalized",
            "category_id",
            "confidence_boost",
            "created_from_manual_override",
            "created_at",
            "updated_at",
        },
        "indexes": {"idx_merchant_rules_user_id"},
    },
    "transactions": {
        "columns": {
            "id",
            "date",
            "merchant_raw",
            "merchant_normalized",
            "amount",
            "category_id",
            "confidence_score",
            "status",
            "source_file_id",
            "user_id",
            "created_at",
            "import_error_reason",
            "import_error_message",
        },
        "indexes": {
            "idx_transactions_user_id",
            "idx_transactions_date",
            "idx_transactions_status",
            "idx_transactions_source_file_id",
            "idx_transactions_merchant_normalized",
            "idx_transactions_import_error",
        },
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    return table_exists(conn, table) and column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    for name in CATEGORIES:
        conn.execute("INSERT OR IGNORE INTO categories (name) VALUES (?)", (name,))

    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS source_files (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT NOT NULL,
            uploaded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            user_id INTEGER NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS merchant_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            merchant_normalized TEXT NOT NULL,
            category_id INTEGER NOT NULL,
            confidence_boost REAL NOT NULL DEFAULT 0 CHECK (confidence_boost >= 0 AND confidence_boost <= 1),
            created_from_manual_override INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(user_id, merchant_normalized),
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            merchant_raw TEXT NOT NULL,
            merchant_normalized TEXT NOT NULL,
            amount REAL NOT NULL,
            category_id INTEGER,
            confidence_score REAL CHECK (confidence_score >= 0 AND confidence_score <= 1),
            status TEXT NOT NULL DEFAULT 'pending_review' CHECK (status IN ('pending_review', 'approved')),
            source_file_id INTEGER,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE SET NULL,
            FOREIGN KEY (source_file_id) REFERENCES source_files (id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )

    for index_name, create_sql in [
        ("idx_transactions_user_id", "CREATE INDEX idx_transactions_user_id ON transactions(user_id)"),
        ("idx_transactions_date", "CREATE INDEX idx_transactions_date ON transactions(date)"),
        ("idx_transactions_status", "CREATE INDEX idx_transactions_status ON transactions(status)"),
        ("idx_transactions_source_file_id", "CREATE INDEX idx_transactions_source_file_id ON transactions(source_file_id)"),
        (
            "idx_transactions_merchant_normalized",
            "CREATE INDEX idx_transactions_merchant_normalized ON transactions(merchant_normalized)",
        ),
        ("idx_source_files_user_id", "CREATE INDEX idx_source_files_user_id ON source_files(user_id)"),
        ("idx_merchant_rules_user_id", "CREATE INDEX idx_merchant_rules_user_id ON merchant_rules(user_id)"),
    ]:
        create_index_if_missing(conn, index_name, create_sql)


def migration_002(conn):
    add_column_if_missing(
        conn,
        "source_files",
        "amount_sign_convention TEXT CHECK (amount_sign_convention IN ('negative', 'positive'))",
    )
    create_index_if_missing(
        conn,
        "idx_source_files_convention",
        "CREATE INDEX idx_source_files_convention ON source_files(amount_sign_convention)",
    )


def migration_003(conn):
    add_column_if_missing(conn, "transactions", "import_error_reason TEXT")
    add_column_if_missing(conn, "transactions", "import_error_message TEXT")
    create_index_if_missing(
        conn,
        "idx_transactions_import_error",
        "CREATE INDEX idx_transactions_import_error ON transactions(import_error_reason) WHERE import_error_reason IS NOT NULL",
    )


def migration_004(conn):
    # Files uploaded before conventions were recorded: Chase exports store spending as negative.
    conn.execute(
        """
        UPDATE source_files
        SET amount_sign_convention = CASE
            WHEN LOWER(filename) LIKE ? THEN 'negative'
            ELSE 'positive'
        END
        WHERE amount_sign_convention IS NULL
        """,
        ("%chase%",),
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance dashboard DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(get_db_health(args.db_path))


if __name__ == "__main__":
    main()
