from datetime import date, datetime

import pytest

from finance_dashboard.db import connect_db, parse_database_config
from finance_dashboard.db_migrations import apply_migrations
from finance_dashboard.diagnostics import month_bounds
from finance_dashboard.errors import DashboardError, ErrorKind
from finance_dashboard.reconcile import (
    filter_by_month,
    find_missing_transactions,
    fingerprint,
    reconcile,
)
from finance_dashboard.statements import NormalizedTransaction


STATEMENT = (
    "Date,Description,Amount\n"
    "2025-11-01,ACME,10.00\n"
    "2025-11-01,ACME,10.00\n"
    "2025-11-04,Corner Pizza,-18.50\n"
    "2025-10-30,Gas Station 12,-40.00\n"
    "2025-11-05,,7.00\n"
    "2025-11-06,Refund Desk,0\n"
)


def csv_tx(day, merchant, amount):
    return NormalizedTransaction(date=date.fromisoformat(day), merchant=merchant, amount=amount)


def db_tx(day, merchant, amount, tx_id=None):
    return {"id": tx_id, "date": day, "merchant_normalized": merchant, "amount": amount}


@pytest.fixture()
def db(tmp_path):
    config = parse_database_config(str(tmp_path / "reconcile.sqlite"))
    apply_migrations(config)
    conn = connect_db(config)
    conn.execute("INSERT INTO users (username, password_hash) VALUES ('alice', 'x'), ('bob', 'x')")
    conn.commit()
    yield conn
    conn.close()


def add_source_file(db, filename, user_id=1):
    return db.insert(
        "INSERT INTO source_files (filename, user_id, amount_sign_convention) VALUES (?, ?, 'negative')",
        (filename, user_id),
    )


def add_transaction(db, source_file_id, day, merchant, amount, user_id=1):
    return db.insert(
        """
        INSERT INTO transactions (date, merchant_raw, merchant_normalized, amount, status, source_file_id, user_id)
        VALUES (?, ?, ?, ?, 'approved', ?, ?)
        """,
        (day, merchant.upper(), merchant, amount, source_file_id, user_id),
    )


def test_fingerprint_uses_absolute_amount_and_iso_date():
    assert fingerprint(date(2025, 11, 1), "acme", -10) == "2025-11-01|acme|10.00"
    assert fingerprint(datetime(2025, 11, 1, 23, 59), "acme", 10.004) == "2025-11-01|acme|10.00"
    assert fingerprint("2025-11-01T08:00:00", "acme", "10") == "2025-11-01|acme|10.00"


def test_equal_multisets_have_no_differences():
    csv_side = [csv_tx("2025-11-01", "acme", 10.0), csv_tx("2025-11-02", "cafe", -4.5)]
    db_side = [db_tx("2025-11-02", "cafe", 4.5), db_tx("2025-11-01", "acme", -10.0)]

    assert reconcile(csv_side, db_side) == ([], [])


def test_single_csv_row_against_empty_db():
    row = csv_tx("2025-11-01", "acme", 10.0)

    missing, extra = reconcile([row], [])

    assert missing == [row]
    assert extra == []


def test_duplicate_csv_rows_are_counted():
    row = csv_tx("2025-11-01", "acme", 10.0)

    missing, extra = reconcile([row, row], [db_tx("2025-11-01", "acme", 10.0)])

    assert missing == [row]
    assert extra == []


def test_count_conservation_and_idempotence():
    csv_side = [
        csv_tx("2025-11-01", "acme", 10.0),
        csv_tx("2025-11-01", "acme", 10.0),
        csv_tx("2025-11-03", "grocer", -50.0),
        csv_tx("2025-11-04", "pizza", -18.5),
    ]
    db_side = [
        db_tx("2025-11-01", "acme", 10.0, 1),
        db_tx("2025-11-03", "grocer", 50.0, 2),
        db_tx("2025-11-07", "hotel", 120.0, 3),
        db_tx("2025-11-07", "hotel", 120.0, 4),
        db_tx("2025-11-08", "pizza", 18.5, 5),
    ]

    missing, extra = reconcile(csv_side, db_side)

    assert len(missing) - len(extra) == len(csv_side) - len(db_side)
    assert missing == [csv_side[1], csv_side[3]]
    assert [row["id"] for row in extra] == [3, 4, 5]
    assert reconcile(csv_side, db_side) == (missing, extra)


def test_month_filter_on_csv_side():
    rows = [csv_tx("2025-11-01", "a", 1.0), csv_tx("2025-10-31", "b", 1.0), csv_tx("2025-12-01", "c", 1.0)]

    assert [tx.merchant for tx in filter_by_month(rows, "2025-11")] == ["a"]
    assert filter_by_month(rows, None) == rows


def test_month_bounds_are_lexical():
    assert month_bounds("2025-11") == ("2025-11-01", "2025-11-32")
    start, end = month_bounds("garbage")
    assert start == "garbage-01"
    assert end == "garbage-32"


def test_find_missing_transactions_requires_user(db):
    with pytest.raises(DashboardError) as exc_info:
        find_missing_transactions(db, None, STATEMENT.encode(), "statement.csv")

    assert exc_info.value.kind is ErrorKind.UNAUTHENTICATED


def test_find_missing_transactions_missing_path(db, tmp_path):
    with pytest.raises(FileNotFoundError):
        find_missing_transactions(db, 1, tmp_path / "missing.csv", "missing.csv")


def test_find_missing_transactions_without_source_file(db):
    result = find_missing_transactions(db, 1, STATEMENT.encode(), "never-uploaded.csv")

    assert result["db_count"] == 0
    assert result["csv_count"] == 4
    assert len(result["missing"]) == 4
    assert result["extra"] == []
    assert result["month"] == "all"


def test_find_missing_transactions_reports_differences(db, tmp_path):
    source_id = add_source_file(db, "statement.csv")
    add_transaction(db, source_id, "2025-11-01", "acme", 10.0)
    add_transaction(db, source_id, "2025-11-04", "corner pizza", 18.5)
    add_transaction(db, source_id, "2025-11-09", "hotel", 200.0)
    add_transaction(db, source_id, "2025-10-30", "gas station 12", -40.0)
    other_user_file = add_source_file(db, "statement.csv", user_id=2)
    add_transaction(db, other_user_file, "2025-11-01", "acme", 10.0, user_id=2)
    db.commit()

    csv_path = tmp_path / "statement.csv"
    csv_path.write_text(STATEMENT)

    result = find_missing_transactions(db, 1, csv_path, "statement.csv")

    assert result["csv_count"] == 4
    assert result["db_count"] == 4
    assert result["missing"] == [
        {
            "date": "2025-11-01",
            "merchant": "acme",
            "amount": 10.0,
            "raw_row": {"Date": "2025-11-01", "Description": "ACME", "Amount": "10.00"},
        }
    ]
    assert [row["merchant_normalized"] for row in result["extra"]] == ["hotel"]
    assert result["total_csv_rows"] == 6
    assert result["successfully_normalized"] == 4
    assert result["normalization_errors"] == 2
    assert result["error_breakdown"] == {"empty_merchant": 1, "zero_amount": 1}
    assert [error["reason"] for error in result["failed_errors"]] == ["empty_merchant"]


def test_find_missing_transactions_month_filter(db):
    source_id = add_source_file(db, "statement.csv")
    add_transaction(db, source_id, "2025-11-01", "acme", 10.0)
    add_transaction(db, source_id, "2025-12-01", "hotel", 200.0)
    db.commit()

    result = find_missing_transactions(db, 1, STATEMENT.encode(), "statement.csv", month="2025-11")

    assert result["month"] == "2025-11"
    assert result["csv_count"] == 3
    assert result["db_count"] == 1
    assert [tx["merchant"] for tx in result["missing"]] == ["acme", "corner pizza"]
    assert result["extra"] == []


def test_failed_errors_are_capped_but_fully_counted(db):
    content = "Date,Description,Amount\n2025-11-01,ACME,10.00\n" + "".join(
        f"not-a-date-{i},Shop {i},-1.00\n" for i in range(30)
    )

    result = find_missing_transactions(db, 1, content.encode(), "statement.csv")

    assert result["total_csv_rows"] == 31
    assert result["successfully_normalized"] == 1
    assert result["normalization_errors"] == 30
    assert result["error_breakdown"] == {"date_parse": 30}
    assert len(result["failed_errors"]) == 20
    assert result["failed_errors"][0]["reason"] == "date_parse"
