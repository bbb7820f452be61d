import sqlite3

from finance_dashboard.db import CompatRow, row_to_dict, rewrite_sql
from finance_dashboard.db_migrations import MIGRATIONS, apply_migrations, get_db_health, migration_004
from finance_dashboard.statements import CATEGORIES


class _RecordingPostgresConnection:
    def __init__(self):
        self.backend = "postgres"
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == len(MIGRATIONS)
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []

    conn = sqlite3.connect(db_path)
    names = [row[0] for row in conn.execute("SELECT name FROM categories ORDER BY id").fetchall()]
    assert names == CATEGORIES
    conn.close()


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()]
    category_count = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
    conn.close()
    assert versions == [version for version, _ in MIGRATIONS]
    assert category_count == len(CATEGORIES)


def test_apply_migrations_on_legacy_db(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL
        );
        INSERT INTO users(username, password_hash) VALUES ('alice', 'legacy-hash');

        CREATE TABLE source_files (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT NOT NULL,
            uploaded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            user_id INTEGER NOT NULL
        );
        INSERT INTO source_files(filename, user_id) VALUES ('Chase2861_Activity.csv', 1);
        INSERT INTO source_files(filename, user_id) VALUES ('amex_nov.csv', 1);

        CREATE TABLE transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            merchant_raw TEXT NOT NULL,
            merchant_normalized TEXT NOT NULL,
            amount REAL NOT NULL,
            category_id INTEGER,
            confidence_score REAL,
            status TEXT NOT NULL DEFAULT 'pending_review',
            source_file_id INTEGER,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO transactions(date, merchant_raw, merchant_normalized, amount, source_file_id, user_id)
        VALUES ('2025-11-01', 'ACME', 'acme', -10.0, 1, 1);
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    conventions = dict(conn.execute("SELECT filename, amount_sign_convention FROM source_files").fetchall())
    assert conventions == {"Chase2861_Activity.csv": "negative", "amex_nov.csv": "positive"}

    row = conn.execute("SELECT import_error_reason, merchant_normalized FROM transactions WHERE id = 1").fetchone()
    assert row == (None, "acme")

    user = conn.execute("SELECT password_hash FROM users WHERE username = 'alice'").fetchone()
    assert user[0] == "legacy-hash"
    conn.close()


def test_health_reports_missing_tables(tmp_path):
    db_path = tmp_path / "blank.sqlite"
    sqlite3.connect(db_path).close()

    health = get_db_health(str(db_path))

    assert health["ok"] is False
    assert "transactions" in health["missing_tables"]
    assert "idx_transactions_source_file_id" in health["missing_indexes"]


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_migration_004_passes_like_pattern_as_parameter():
    conn = _RecordingPostgresConnection()

    migration_004(conn)

    [(sql, params)] = conn.statements
    assert "%" not in sql
    assert params == ("%chase%",)


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql("postgres", "INSERT OR IGNORE INTO categories (name) VALUES (?)", ("Misc",))
    assert sql == "INSERT INTO categories (name) VALUES (%s) ON CONFLICT DO NOTHING"
    assert params == ("Misc",)

    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid()", None)
    assert sql == "SELECT lastval()"
    assert params == ()

    assert rewrite_sql("sqlite", "SELECT ? ", (1,)) == ("SELECT ? ", (1,))


def test_compat_row_lookup():
    row = CompatRow(["id", "filename"], (7, "chase_nov.csv"))

    assert row["filename"] == "chase_nov.csv"
    assert row[0] == 7
    assert row.keys() == ["id", "filename"]
    assert row_to_dict(row) == {"id": 7, "filename": "chase_nov.csv"}
