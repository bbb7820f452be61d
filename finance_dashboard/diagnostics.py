"""Read and cleanup queries behind the diagnostic/admin endpoints.

Every function takes an open connection and an explicit ``user_id``. Scoped
operations call :func:`require_user` first; the few unscoped ones (used by
operators to compare what all users see against what one user sees) accept
``user_id=None``.
"""

import logging

from .db import in_placeholders, row_to_dict
from .errors import require_user, storage_errors
from .statements import CONFIDENCE_THRESHOLD, calculate_spending_amount, guess_convention_from_filename


logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 10
BUCKET_SAMPLE_LIMIT = 20


def _count(db, table, user_id=None, extra_sql="", params=()):
    sql = f"SELECT COUNT(*) FROM {table}"
    filters = []
    values = []
    if user_id is not None:
        filters.append("user_id = ?")
        values.append(user_id)
    if extra_sql:
        filters.append(extra_sql)
        values.extend(params)
    if filters:
        sql += " WHERE " + " AND ".join(filters)
    return int(db.execute(sql, tuple(values)).fetchone()[0] or 0)


def _convention_for(convention, filename):
    return convention or guess_convention_from_filename(filename)


@storage_errors
def db_status_counts(db, user_id=None):
    recent_files = db.execute(
        """
        SELECT id, filename, uploaded_at, user_id
        FROM source_files
        ORDER BY uploaded_at DESC, id DESC
        LIMIT ?
        """,
        (SAMPLE_LIMIT,),
    ).fetchall()

    return {
        "authenticated": user_id is not None,
        "user_id": user_id,
        "database": {
            "all_source_files": _count(db, "source_files"),
            "user_source_files": _count(db, "source_files", user_id) if user_id is not None else 0,
            "all_transactions": _count(db, "transactions"),
            "user_transactions": _count(db, "transactions", user_id) if user_id is not None else 0,
        },
        "recent_files": [row_to_dict(row) for row in recent_files],
    }


def _file_rows(db, user_id=None):
    params = []
    join_scope = ""
    where = ""
    if user_id is not None:
        join_scope = " AND t.user_id = ?"
        where = "WHERE sf.user_id = ?"
        params = [user_id, user_id]

    return db.execute(
        f"""
        SELECT
            sf.id,
            sf.filename,
            sf.uploaded_at,
            sf.amount_sign_convention,
            sf.user_id,
            COUNT(t.id) AS total_transactions,
            COALESCE(SUM(CASE WHEN t.status = 'approved' THEN 1 ELSE 0 END), 0) AS approved_count,
            COALESCE(SUM(CASE WHEN t.status = 'pending_review' THEN 1 ELSE 0 END), 0) AS pending_count,
            COALESCE(SUM(ABS(t.amount)), 0) AS total_amount
        FROM source_files sf
        LEFT JOIN transactions t ON t.source_file_id = sf.id{join_scope}
        {where}
        GROUP BY sf.id, sf.filename, sf.uploaded_at, sf.amount_sign_convention, sf.user_id
        ORDER BY sf.uploaded_at DESC, sf.id DESC
        """,
        tuple(params),
    ).fetchall()


def _status_counts(db, user_id=None):
    sql = "SELECT status, COUNT(*) AS n FROM transactions"
    params = ()
    if user_id is not None:
        sql += " WHERE user_id = ?"
        params = (user_id,)
    sql += " GROUP BY status"
    return {row["status"]: int(row["n"]) for row in db.execute(sql, params).fetchall()}


@storage_errors
def file_breakdown(db, user_id=None):
    """Per-file transaction counts and dashboard visibility.

    With ``user_id=None`` every user's files are reported.
    """
    files = []
    for row in _file_rows(db, user_id):
        approved = int(row["approved_count"])
        files.append(
            {
                "id": row["id"],
                "filename": row["filename"],
                "convention": row["amount_sign_convention"],
                "uploaded_at": row["uploaded_at"],
                "user_id": row["user_id"],
                "total_transactions": int(row["total_transactions"]),
                "approved_count": approved,
                "pending_count": int(row["pending_count"]),
                "visible_on_dashboard": approved > 0,
            }
        )

    statuses = _status_counts(db, user_id)
    approved_total = statuses.get("approved", 0)
    pending_total = statuses.get("pending_review", 0)
    visible = sum(1 for f in files if f["visible_on_dashboard"])
    return {
        "summary": {
            "total_files": len(files),
            "files_visible": visible,
            "files_hidden": len(files) - visible,
            "total_transactions": approved_total + pending_total,
            "approved_transactions": approved_total,
            "pending_transactions": pending_total,
        },
        "files": files,
    }


@storage_errors
def list_source_files(db, user_id):
    require_user(user_id)
    files = [
        {
            "id": row["id"],
            "filename": row["filename"],
            "uploaded_at": row["uploaded_at"],
            "amount_sign_convention": row["amount_sign_convention"],
            "total_transactions": int(row["total_transactions"]),
            "approved_transactions": int(row["approved_count"]),
            "pending_transactions": int(row["pending_count"]),
            "total_amount": round(float(row["total_amount"]), 2),
        }
        for row in _file_rows(db, user_id)
    ]
    return {
        "files": files,
        "total_files": len(files),
        "total_transactions": sum(f["total_transactions"] for f in files),
        "total_approved": sum(f["approved_transactions"] for f in files),
        "total_pending": sum(f["pending_transactions"] for f in files),
    }


@storage_errors
def verify_cleanup(db, user_id):
    if user_id is None:
        return {"authenticated": False}

    files = [
        {
            "filename": row["filename"],
            "transaction_count": int(row["total_transactions"]),
            "is_empty": int(row["total_transactions"]) == 0,
        }
        for row in _file_rows(db, user_id)
    ]
    empty = [f for f in files if f["is_empty"]]
    non_empty = [f for f in files if not f["is_empty"]]
    return {
        "authenticated": True,
        "total_files": len(files),
        "empty_files": len(empty),
        "non_empty_files": len(non_empty),
        "files": non_empty,
        "remaining_empty_files": empty,
    }


def find_empty_source_file_ids(db, user_id):
    rows = db.execute(
        """
        SELECT sf.id FROM source_files sf
        WHERE sf.user_id = ?
          AND NOT EXISTS (SELECT 1 FROM transactions t WHERE t.source_file_id = sf.id)
        ORDER BY sf.id
        """,
        (user_id,),
    ).fetchall()
    return [row["id"] for row in rows]


@storage_errors
def cleanup_empty_files(db, user_id, recount=False):
    """Delete the caller's source files that have no transactions.

    The delete is a single statement: either every empty file goes or none do.
    """
    require_user(user_id)
    before_count = _count(db, "source_files", user_id)
    empty_ids = find_empty_source_file_ids(db, user_id)

    if not empty_ids:
        return {
            "success": True,
            "message": "No empty files to clean up",
            "deleted_count": 0,
            "before_count": before_count,
            "after_count": before_count,
            "deleted_ids": [],
        }

    db.execute(
        f"DELETE FROM source_files WHERE user_id = ? AND id IN ({in_placeholders(empty_ids)})",
        [user_id, *empty_ids],
    )
    db.commit()
    logger.info("Deleted %s empty source files for user_id=%s", len(empty_ids), user_id)

    after_count = _count(db, "source_files", user_id) if recount else before_count - len(empty_ids)
    return {
        "success": True,
        "message": f"Successfully deleted {len(empty_ids)} empty source files",
        "deleted_count": len(empty_ids),
        "before_count": before_count,
        "after_count": after_count,
        "deleted_ids": empty_ids,
    }


def _user_transactions_with_files(db, user_id, extra_sql="", params=(), order_sql="t.id ASC"):
    return db.execute(
        f"""
        SELECT
            t.id, t.date, t.amount, t.status, t.merchant_raw, t.merchant_normalized,
            t.category_id, t.confidence_score, t.import_error_reason,
            sf.id AS source_file_id, sf.filename, sf.amount_sign_convention
        FROM transactions t
        LEFT JOIN source_files sf ON sf.id = t.source_file_id
        WHERE t.user_id = ? {extra_sql}
        ORDER BY {order_sql}
        """,
        (user_id, *params),
    ).fetchall()


def _sample(row):
    return {
        "id": row["id"],
        "date": row["date"],
        "merchant": row["merchant_raw"],
        "amount": float(row["amount"]),
        "status": row["status"],
        "filename": row["filename"],
    }


@storage_errors
def raw_totals(db, user_id):
    """Sum amounts exactly as stored, without applying sign conventions."""
    require_user(user_id)
    rows = _user_transactions_with_files(db, user_id)

    raw_total = positive_total = negative_total = 0.0
    zero_count = 0
    by_status = {}
    by_file = {}
    for row in rows:
        amount = float(row["amount"])
        raw_total += amount
        if amount > 0:
            positive_total += amount
        elif amount < 0:
            negative_total += amount
        else:
            zero_count += 1

        status_entry = by_status.setdefault(
            row["status"] or "unknown",
            {"count": 0, "raw_total": 0.0, "positive_total": 0.0, "negative_total": 0.0},
        )
        file_entry = by_file.setdefault(
            row["filename"] or "unknown",
            {
                "count": 0,
                "raw_total": 0.0,
                "positive_total": 0.0,
                "negative_total": 0.0,
                "convention": row["amount_sign_convention"],
            },
        )
        for entry in (status_entry, file_entry):
            entry["count"] += 1
            entry["raw_total"] += amount
            if amount > 0:
                entry["positive_total"] += amount
            elif amount < 0:
                entry["negative_total"] += amount

    dates = sorted(row["date"] for row in rows if row["date"])
    return {
        "summary": {
            "total_transactions": len(rows),
            "raw_total": round(raw_total, 2),
            "raw_positive_total": round(positive_total, 2),
            "raw_negative_total": round(negative_total, 2),
            "zero_count": zero_count,
            "date_range": {"min": dates[0], "max": dates[-1]} if dates else None,
        },
        "by_status": [{"status": status, **data} for status, data in by_status.items()],
        "by_file": [{"filename": filename, **data} for filename, data in by_file.items()],
        "samples": {
            "positive": [_sample(row) for row in rows if float(row["amount"]) > 0][:SAMPLE_LIMIT],
            "negative": [_sample(row) for row in rows if float(row["amount"]) < 0][:SAMPLE_LIMIT],
        },
    }


@storage_errors
def pending_breakdown(db, user_id):
    """Group pending_review transactions by why they are not yet approved."""
    require_user(user_id)
    rows = _user_transactions_with_files(
        db, user_id, "AND t.status = ?", ("pending_review",), order_sql="t.date DESC, t.id DESC"
    )

    buckets = {"import_error": [], "no_category": [], "low_confidence": [], "other": []}
    total_amount = 0.0
    for row in rows:
        convention = _convention_for(row["amount_sign_convention"], row["filename"])
        spending = calculate_spending_amount(float(row["amount"]), convention)
        if spending <= 0:
            continue
        total_amount += spending
        item = {
            "id": row["id"],
            "date": row["date"],
            "merchant": row["merchant_raw"],
            "amount": spending,
            "confidence_score": row["confidence_score"],
            "category_id": row["category_id"],
            "import_error_reason": row["import_error_reason"],
        }
        if row["import_error_reason"]:
            buckets["import_error"].append(item)
        elif not row["category_id"]:
            buckets["no_category"].append(item)
        elif row["confidence_score"] is not None and row["confidence_score"] < CONFIDENCE_THRESHOLD:
            buckets["low_confidence"].append(item)
        else:
            buckets["other"].append(item)

    return {
        "total": {"count": len(rows), "amount": round(total_amount, 2)},
        "by_reason": {
            reason: {
                "count": len(items),
                "amount": round(sum(item["amount"] for item in items), 2),
                "transactions": items[:BUCKET_SAMPLE_LIMIT],
            }
            for reason, items in buckets.items()
        },
    }


@storage_errors
def failed_summary(db, user_id):
    require_user(user_id)
    count = _count(
        db,
        "transactions",
        user_id,
        "status = ? AND import_error_reason IS NOT NULL",
        ("pending_review",),
    )
    return {"has_failed": count > 0, "count": count}


@storage_errors
def clear_transactions(db, user_id):
    require_user(user_id)
    count = _count(db, "transactions", user_id)
    db.execute("DELETE FROM transactions WHERE user_id = ?", (user_id,))
    db.commit()
    logger.info("Cleared %s transactions for user_id=%s", count, user_id)
    return {
        "success": True,
        "message": f"Successfully deleted {count} transaction(s)",
        "deleted_count": count,
    }


@storage_errors
def dashboard_summary(db, user_id, recent_limit=20):
    """Spending totals over approved transactions only."""
    require_user(user_id)
    rows = _user_transactions_with_files(
        db, user_id, "AND t.status = ?", ("approved",), order_sql="t.date DESC, t.id DESC"
    )
    categories = _category_names(db)

    total_spending = 0.0
    files = {}
    recent = []
    for row in rows:
        convention = _convention_for(row["amount_sign_convention"], row["filename"])
        spending = calculate_spending_amount(float(row["amount"]), convention)
        if spending <= 0:
            continue
        total_spending += spending
        entry = files.setdefault(row["filename"] or "Unknown", {"transaction_count": 0, "total_spending": 0.0})
        entry["transaction_count"] += 1
        entry["total_spending"] += spending
        if len(recent) < recent_limit:
            recent.append(
                {
                    "id": row["id"],
                    "date": row["date"],
                    "merchant": row["merchant_raw"],
                    "amount": spending,
                    "category": categories.get(row["category_id"]),
                    "source_file": row["filename"] or "Unknown",
                }
            )

    return {
        "total_transactions": sum(f["transaction_count"] for f in files.values()),
        "total_spending": round(total_spending, 2),
        "file_count": len(files),
        "files": [
            {"filename": name, "transaction_count": f["transaction_count"], "total_spending": round(f["total_spending"], 2)}
            for name, f in sorted(files.items())
        ],
        "recent_transactions": recent,
    }


def month_bounds(month):
    # Lexical upper bound; "-32" sorts after the last day of any month.
    return f"{month}-01", f"{month}-32"


@storage_errors
def source_file_ids_for(db, user_id, filename):
    rows = db.execute(
        "SELECT id FROM source_files WHERE filename = ? AND user_id = ? ORDER BY id",
        (filename, user_id),
    ).fetchall()
    return [row["id"] for row in rows]


@storage_errors
def file_transactions(db, user_id, source_file_ids, month=None):
    if not source_file_ids:
        return []
    sql = (
        "SELECT id, date, merchant_raw, merchant_normalized, amount FROM transactions "
        f"WHERE source_file_id IN ({in_placeholders(source_file_ids)}) AND user_id = ?"
    )
    params = [*source_file_ids, user_id]
    if month:
        sql += " AND date >= ? AND date < ?"
        params.extend(month_bounds(month))
    sql += " ORDER BY date ASC, id ASC"
    rows = db.execute(sql, params).fetchall()
    return [{**row_to_dict(row), "amount": float(row["amount"])} for row in rows]


def _approved_spending(db, user_id, month=None):
    """Yield ``(row, spending)`` for the caller's approved spending rows."""
    extra_sql = "AND t.status = ?"
    params = ["approved"]
    if month:
        extra_sql += " AND t.date >= ? AND t.date < ?"
        params.extend(month_bounds(month))
    for row in _user_transactions_with_files(db, user_id, extra_sql, params, order_sql="t.date ASC, t.id ASC"):
        convention = _convention_for(row["amount_sign_convention"], row["filename"])
        spending = calculate_spending_amount(float(row["amount"]), convention)
        if spending > 0:
            yield row, spending


def _category_names(db):
    return {row["id"]: row["name"] for row in db.execute("SELECT id, name FROM categories").fetchall()}


@storage_errors
def spending_by_category(db, user_id, month=None):
    require_user(user_id)
    names = _category_names(db)
    totals = {}
    for row, spending in _approved_spending(db, user_id, month):
        entry = totals.setdefault(names.get(row["category_id"], "Uncategorized"), {"total": 0.0, "count": 0})
        entry["total"] += spending
        entry["count"] += 1

    grand_total = sum(entry["total"] for entry in totals.values())
    categories = [
        {
            "category": name,
            "total": round(entry["total"], 2),
            "count": entry["count"],
            "percentage": round(entry["total"] / grand_total * 100, 2) if grand_total > 0 else 0.0,
        }
        for name, entry in totals.items()
    ]
    categories.sort(key=lambda item: (-item["total"], item["category"]))
    return {"month": month, "total_spending": round(grand_total, 2), "categories": categories}


@storage_errors
def monthly_spending(db, user_id):
    """Approved spending per ``YYYY-MM``, with a per-category split."""
    require_user(user_id)
    names = _category_names(db)
    months = {}
    for row, spending in _approved_spending(db, user_id):
        entry = months.setdefault(row["date"][:7], {"total": 0.0, "by_category": {}})
        entry["total"] += spending
        category = names.get(row["category_id"], "Uncategorized")
        entry["by_category"][category] = entry["by_category"].get(category, 0.0) + spending

    return {
        "months": [
            {
                "month": month,
                "total": round(entry["total"], 2),
                "by_category": {name: round(total, 2) for name, total in sorted(entry["by_category"].items())},
            }
            for month, entry in sorted(months.items())
        ]
    }


@storage_errors
def top_merchants(db, user_id, limit=10, month=None):
    require_user(user_id)
    merchants = {}
    for row, spending in _approved_spending(db, user_id, month):
        entry = merchants.setdefault(row["merchant_normalized"] or "unknown", {"total": 0.0, "count": 0})
        entry["total"] += spending
        entry["count"] += 1

    ranked = sorted(merchants.items(), key=lambda item: (-item[1]["total"], item[0]))[:limit]
    return {
        "month": month,
        "merchants": [
            {
                "merchant": merchant,
                "total": round(entry["total"], 2),
                "count": entry["count"],
                "average": round(entry["total"] / entry["count"], 2),
            }
            for merchant, entry in ranked
        ],
    }
