"""Persisting uploaded statements and learning from manual approvals."""

import logging
import re
from datetime import date

from .db import in_placeholders
from .errors import DashboardError, require_user, storage_errors
from .statements import (
    CONFIDENCE_THRESHOLD,
    EXPECTED_SKIP_REASONS,
    KEYWORD_CONFIDENCE,
    detect_amount_convention,
    detect_columns,
    infer_category,
    normalize_merchant,
    normalize_transactions,
    parse_amount,
    parse_csv_bytes,
    parse_statement_date,
)


logger = logging.getLogger(__name__)

EXACT_RULE_CONFIDENCE = 0.95
PARTIAL_RULE_CONFIDENCE = 0.85
MANUAL_RULE_BOOST = 0.2
BULK_RULE_BOOST = 0.3
UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_filename(filename):
    return UNSAFE_FILENAME_CHARS.sub("_", filename or "")


def load_categories(db):
    rows = db.execute("SELECT id, name FROM categories ORDER BY id").fetchall()
    return {row["name"]: row["id"] for row in rows}


def load_merchant_rules(db, user_id):
    rows = db.execute(
        "SELECT merchant_normalized, category_id, confidence_boost FROM merchant_rules WHERE user_id = ?",
        (user_id,),
    ).fetchall()
    return [
        (row["merchant_normalized"], row["category_id"], float(row["confidence_boost"] or 0))
        for row in rows
    ]


def categorize(merchant_normalized, rules, categories):
    """Return ``(category_id, confidence)`` for a normalized merchant.

    Learned rules win over keywords: an exact rule first, then a rule whose
    merchant contains or is contained in this one.
    """
    for merchant, category_id, boost in rules:
        if merchant == merchant_normalized:
            return category_id, min(1.0, EXACT_RULE_CONFIDENCE + boost)

    for merchant, category_id, boost in rules:
        if merchant and (merchant in merchant_normalized or merchant_normalized in merchant):
            return category_id, min(1.0, PARTIAL_RULE_CONFIDENCE + boost)

    category_name = infer_category(merchant_normalized)
    if category_name and category_name in categories:
        return categories[category_name], KEYWORD_CONFIDENCE

    return None, 0.0


def _failed_row_fields(error, columns):
    """Best-effort date, merchant and amount for a row that failed to normalize."""
    row = error.row or {}
    try:
        row_date = parse_statement_date(row.get(columns.date_column)).isoformat()
    except ValueError:
        row_date = date.today().isoformat()
    try:
        amount = parse_amount(row.get(columns.amount_column))
    except ValueError:
        amount = 0.0
    merchant_raw = (row.get(columns.merchant_column) or "").strip()
    return {
        "date": row_date,
        "merchant_raw": merchant_raw or "UNKNOWN MERCHANT",
        "merchant_normalized": normalize_merchant(merchant_raw) or "unknown merchant",
        "amount": amount,
    }


@storage_errors
def import_statement(db, user_id, filename, file_bytes, confidence_threshold=CONFIDENCE_THRESHOLD):
    """Store an uploaded CSV as a source file plus its transactions.

    Rows that normalize are inserted approved or pending depending on the
    categorization confidence. Rows that fail for a fixable reason are kept
    as pending rows carrying ``import_error_reason`` so they can be reviewed.
    """
    require_user(user_id)
    safe_name = sanitize_filename(filename)
    if not safe_name.lower().endswith(".csv"):
        raise DashboardError.validation("Only .csv files are supported.")

    rows = parse_csv_bytes(file_bytes)
    columns = detect_columns(rows)
    transactions, errors = normalize_transactions(rows, columns)
    fixable = [error for error in errors if error.reason not in EXPECTED_SKIP_REASONS]
    if not transactions and not fixable:
        raise DashboardError.validation("No valid transactions found in CSV.")

    convention = detect_amount_convention(rows, columns, safe_name)
    source_file_id = db.insert(
        "INSERT INTO source_files (filename, user_id, amount_sign_convention) VALUES (?, ?, ?)",
        (safe_name, user_id, convention),
    )

    categories = load_categories(db)
    rules = load_merchant_rules(db, user_id)
    approved = pending = 0
    for tx in transactions:
        category_id, confidence = categorize(tx.merchant, rules, categories)
        status = "approved" if category_id and confidence >= confidence_threshold else "pending_review"
        if status == "approved":
            approved += 1
        else:
            pending += 1
        db.execute(
            """
            INSERT INTO transactions (
                date, merchant_raw, merchant_normalized, amount, category_id,
                confidence_score, status, source_file_id, user_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tx.date.isoformat(),
                (tx.raw or {}).get(columns.merchant_column, tx.merchant).strip() or tx.merchant,
                tx.merchant,
                tx.amount,
                category_id,
                confidence,
                status,
                source_file_id,
                user_id,
            ),
        )

    for error in fixable:
        fields = _failed_row_fields(error, columns)
        db.execute(
            """
            INSERT INTO transactions (
                date, merchant_raw, merchant_normalized, amount, status,
                source_file_id, user_id, import_error_reason, import_error_message
            ) VALUES (?, ?, ?, ?, 'pending_review', ?, ?, ?, ?)
            """,
            (
                fields["date"],
                fields["merchant_raw"],
                fields["merchant_normalized"],
                fields["amount"],
                source_file_id,
                user_id,
                error.reason,
                error.error,
            ),
        )

    db.commit()
    logger.info(
        "Imported %s for user_id=%s: %s approved, %s pending, %s failed, %s skipped",
        safe_name,
        user_id,
        approved,
        pending,
        len(fixable),
        len(errors) - len(fixable),
    )
    return {
        "success": True,
        "source_file_id": source_file_id,
        "filename": safe_name,
        "amount_sign_convention": convention,
        "total_rows": len(rows),
        "imported": len(transactions),
        "approved": approved,
        "pending_review": pending,
        "failed": len(fixable),
        "skipped": len(errors) - len(fixable),
    }


def _learn_merchant_rule(db, user_id, merchant, category_id, boost=MANUAL_RULE_BOOST):
    if not merchant:
        return
    db.execute(
        """
        INSERT INTO merchant_rules (
            user_id, merchant_normalized, category_id, confidence_boost, created_from_manual_override
        ) VALUES (?, ?, ?, ?, 1)
        ON CONFLICT(user_id, merchant_normalized) DO UPDATE SET
            category_id = excluded.category_id,
            confidence_boost = excluded.confidence_boost,
            created_from_manual_override = 1,
            updated_at = CURRENT_TIMESTAMP
        """,
        (user_id, merchant, category_id, boost),
    )


def _require_category(db, category_id):
    exists = db.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone()
    if exists is None:
        raise DashboardError.validation(f"Unknown category id: {category_id}")
    return category_id


@storage_errors
def approve_transaction(db, user_id, transaction_id, category_id=None):
    """Approve one of the caller's transactions and remember its merchant."""
    require_user(user_id)
    tx = db.execute(
        "SELECT id, merchant_normalized, category_id FROM transactions WHERE id = ? AND user_id = ?",
        (transaction_id, user_id),
    ).fetchone()
    if tx is None:
        raise DashboardError.not_found(f"Transaction {transaction_id} not found")

    if category_id is not None:
        _require_category(db, category_id)
    category_id = category_id if category_id is not None else tx["category_id"]
    if category_id is None:
        raise DashboardError.validation("A category is required to approve this transaction.")

    db.execute(
        """
        UPDATE transactions
        SET status = 'approved', category_id = ?, confidence_score = 1.0,
            import_error_reason = NULL, import_error_message = NULL
        WHERE id = ? AND user_id = ?
        """,
        (category_id, transaction_id, user_id),
    )
    _learn_merchant_rule(db, user_id, tx["merchant_normalized"], category_id)
    db.commit()
    logger.info("Approved transaction_id=%s for user_id=%s category_id=%s", transaction_id, user_id, category_id)
    return {"success": True, "id": transaction_id, "category_id": category_id, "status": "approved"}


@storage_errors
def accept_all_transactions(db, user_id, failed_only=False):
    """Approve every pending transaction that already has a category.

    Each distinct merchant among the accepted rows gets a manual rule. With
    ``failed_only`` only rows carrying an import error are considered.
    """
    require_user(user_id)
    sql = (
        "SELECT id, merchant_normalized, category_id FROM transactions "
        "WHERE user_id = ? AND status = ? AND category_id IS NOT NULL"
    )
    if failed_only:
        sql += " AND import_error_reason IS NOT NULL"
    rows = db.execute(sql + " ORDER BY id", (user_id, "pending_review")).fetchall()
    if not rows:
        return {"success": True, "accepted_count": 0, "rules_learned": 0}

    ids = [row["id"] for row in rows]
    db.execute(
        f"""
        UPDATE transactions
        SET status = 'approved', confidence_score = 1.0,
            import_error_reason = NULL, import_error_message = NULL
        WHERE user_id = ? AND id IN ({in_placeholders(ids)})
        """,
        [user_id, *ids],
    )
    learned = {}
    for row in rows:
        learned.setdefault(row["merchant_normalized"], row["category_id"])
    for merchant, category_id in learned.items():
        _learn_merchant_rule(db, user_id, merchant, category_id)
    db.commit()
    logger.info("Accepted %s pending transactions for user_id=%s", len(ids), user_id)
    return {"success": True, "accepted_count": len(ids), "rules_learned": len(learned)}


@storage_errors
def bulk_apply_category(db, user_id, merchant_normalized, category_id):
    """Categorize and approve all of the caller's pending rows for one merchant."""
    require_user(user_id)
    merchant = normalize_merchant(merchant_normalized or "")
    if not merchant:
        raise DashboardError.validation("A merchant is required.")
    _require_category(db, category_id)

    cursor = db.execute(
        """
        UPDATE transactions
        SET status = 'approved', category_id = ?, confidence_score = 1.0,
            import_error_reason = NULL, import_error_message = NULL
        WHERE user_id = ? AND merchant_normalized = ? AND status = 'pending_review'
        """,
        (category_id, user_id, merchant),
    )
    updated = max(cursor.rowcount, 0)
    if updated:
        _learn_merchant_rule(db, user_id, merchant, category_id, BULK_RULE_BOOST)
    db.commit()
    logger.info("Applied category_id=%s to %s transactions of %r for user_id=%s", category_id, updated, merchant, user_id)
    return {"success": True, "merchant": merchant, "category_id": category_id, "updated_count": updated}
