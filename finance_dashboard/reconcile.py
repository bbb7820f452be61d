"""Compare a statement CSV against the transactions stored for it.

Matching is a counted multiset difference on a ``date|merchant|amount``
fingerprint, so duplicate rows are only matched as many times as they occur
on the other side. Amounts are compared by absolute value.
"""

import logging
from collections import Counter
from datetime import date, datetime

from .diagnostics import file_transactions, source_file_ids_for
from .errors import require_user
from .statements import (
    NON_FAILURE_REASONS,
    detect_columns,
    error_breakdown,
    load_csv_rows,
    normalize_transactions,
    parse_csv_bytes,
)


logger = logging.getLogger(__name__)

FAILED_ERROR_SAMPLE = 20


def _iso_date(value):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value or "")[:10]


def fingerprint(tx_date, merchant_normalized, amount):
    return f"{_iso_date(tx_date)}|{merchant_normalized}|{abs(float(amount)):.2f}"


def csv_fingerprint(tx):
    return fingerprint(tx.date, tx.merchant, tx.amount)


def db_fingerprint(row):
    return fingerprint(row["date"], row["merchant_normalized"], row["amount"])


def unmatched(items, item_key, others, other_key):
    """Items with no remaining counterpart in ``others``, in input order."""
    remaining = Counter(other_key(other) for other in others)
    result = []
    for item in items:
        key = item_key(item)
        if remaining[key] > 0:
            remaining[key] -= 1
        else:
            result.append(item)
    return result


def reconcile(csv_transactions, db_transactions, csv_key=csv_fingerprint, db_key=db_fingerprint):
    """Return ``(missing, extra)``.

    ``missing`` holds CSV transactions with no stored counterpart and
    ``extra`` holds stored rows with no CSV counterpart.
    """
    missing = unmatched(csv_transactions, csv_key, db_transactions, db_key)
    extra = unmatched(db_transactions, db_key, csv_transactions, csv_key)
    return missing, extra


def filter_by_month(transactions, month):
    if not month:
        return list(transactions)
    return [tx for tx in transactions if _iso_date(tx.date).startswith(month)]


def _missing_entry(tx):
    return {
        "date": _iso_date(tx.date),
        "merchant": tx.merchant,
        "amount": tx.amount,
        "raw_row": tx.raw,
    }


def _load_rows(csv_source):
    if isinstance(csv_source, (bytes, bytearray)):
        return parse_csv_bytes(bytes(csv_source))
    return load_csv_rows(csv_source)


def find_missing_transactions(db, user_id, csv_source, source_filename, month=None):
    """Reconcile a CSV (path or raw bytes) with the caller's stored file.

    A CSV path that does not exist raises :class:`FileNotFoundError`. When
    no source file with ``source_filename`` belongs to the caller, every CSV
    transaction is reported missing.
    """
    require_user(user_id)
    rows = _load_rows(csv_source)
    columns = detect_columns(rows)
    transactions, errors = normalize_transactions(rows, columns)
    csv_transactions = filter_by_month(transactions, month)

    file_ids = source_file_ids_for(db, user_id, source_filename)
    db_transactions = file_transactions(db, user_id, file_ids, month) if file_ids else []

    missing, extra = reconcile(csv_transactions, db_transactions)
    failed = [error.to_dict() for error in errors if error.reason not in NON_FAILURE_REASONS]

    logger.info(
        "Reconciled %s for user_id=%s month=%s: csv=%s db=%s missing=%s extra=%s",
        source_filename,
        user_id,
        month or "all",
        len(csv_transactions),
        len(db_transactions),
        len(missing),
        len(extra),
    )
    return {
        "csv_count": len(csv_transactions),
        "db_count": len(db_transactions),
        "missing": [_missing_entry(tx) for tx in missing],
        "extra": extra,
        "month": month or "all",
        "normalization_errors": len(errors),
        "error_breakdown": error_breakdown(errors),
        "failed_errors": failed[:FAILED_ERROR_SAMPLE],
        "total_csv_rows": len(rows),
        "successfully_normalized": len(transactions),
    }
