"""Reading bank statement CSV exports into normalized transactions.

The pipeline is: load rows (:func:`load_csv_rows` / :func:`parse_csv_bytes`),
find the date, merchant and amount columns (:func:`detect_columns`), then
turn each row into a :class:`NormalizedTransaction` or a
:class:`NormalizationError` (:func:`normalize_transactions`).
"""

import csv
import io
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from pathlib import Path

from .errors import DashboardError


CATEGORIES = [
    "Housing",
    "Utilities",
    "Groceries",
    "Dining",
    "Transportation",
    "Travel",
    "Shopping",
    "Health",
    "Entertainment",
    "Subscriptions",
    "Misc",
]
CONFIDENCE_THRESHOLD = 0.75
KEYWORD_CONFIDENCE = 0.8
KEYWORD_RULES = [
    ("Groceries", ["whole foods", "trader joe", "safeway", "kroger", "grocery", "market"]),
    ("Dining", ["restaurant", "cafe", "coffee", "starbucks", "pizza", "doordash", "grubhub"]),
    ("Transportation", ["uber", "lyft", "shell", "chevron", "exxon", "parking", "transit", "metro"]),
    ("Travel", ["airline", "airbnb", "hotel", "marriott", "delta air", "united airlines", "expedia"]),
    ("Utilities", ["electric", "water", "comcast", "verizon", "internet", "pge"]),
    ("Subscriptions", ["netflix", "spotify", "hulu", "applecombill", "icloud", "disney"]),
    ("Health", ["pharmacy", "cvs", "walgreens", "dental", "medical", "clinic"]),
    ("Entertainment", ["cinema", "theatre", "theater", "ticketmaster", "steam"]),
    ("Shopping", ["amazon", "target", "walmart", "costco", "best buy"]),
    ("Housing", ["mortgage", "property management", "apartment"]),
]

DATE_PATTERNS = [
    re.compile(r"^date$", re.IGNORECASE),
    re.compile(r"transaction.*date", re.IGNORECASE),
    re.compile(r"posted.*date", re.IGNORECASE),
    re.compile(r"trans.*date", re.IGNORECASE),
]
MERCHANT_PATTERNS = [
    re.compile(r"^merchant$", re.IGNORECASE),
    re.compile(r"description", re.IGNORECASE),
    re.compile(r"^vendor$", re.IGNORECASE),
    re.compile(r"payee", re.IGNORECASE),
    re.compile(r"^name$", re.IGNORECASE),
    re.compile(r"merchant.*name", re.IGNORECASE),
]
AMOUNT_PATTERNS = [
    re.compile(r"^amount$", re.IGNORECASE),
    re.compile(r"transaction.*amount", re.IGNORECASE),
    re.compile(r"^total$", re.IGNORECASE),
    re.compile(r"^debit$", re.IGNORECASE),
    re.compile(r"^credit$", re.IGNORECASE),
    re.compile(r"balance", re.IGNORECASE),
]
CREDIT_CARD_PAYMENT_PATTERNS = [
    re.compile(r"credit.*card.*payment", re.IGNORECASE),
    re.compile(r"statement.*payment", re.IGNORECASE),
    re.compile(r"online.*payment", re.IGNORECASE),
    re.compile(r"mobile payment", re.IGNORECASE),
]
DATE_FORMATS = ["%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d", "%m-%d-%Y"]
DATE_VALUE_RE = re.compile(r"^(\d{4}[-/]\d{1,2}[-/]\d{1,2}|\d{1,2}[-/]\d{1,2}[-/]\d{4})")
NUMERIC_VALUE_RE = re.compile(r"^-?\$?\d+\.?\d*$")
LEADING_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")

# Reasons that describe rows deliberately skipped rather than rows that failed.
EXPECTED_SKIP_REASONS = {"payment", "credit_card_payment"}
NON_FAILURE_REASONS = EXPECTED_SKIP_REASONS | {"zero_amount"}


@dataclass(frozen=True)
class DetectedColumns:
    date_column: str
    merchant_column: str
    amount_column: str


@dataclass(frozen=True)
class NormalizedTransaction:
    date: date
    merchant: str
    amount: float
    raw: dict = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class NormalizationError:
    row: dict
    error: str
    reason: str

    def to_dict(self):
        return asdict(self)


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def parse_csv_text(text):
    reader = csv.DictReader(io.StringIO(text), restkey="_extra", restval="")
    if reader.fieldnames is not None:
        reader.fieldnames = [(name or "").strip() for name in reader.fieldnames]
    rows = []
    for row in reader:
        values = [value for key, value in row.items() if key != "_extra"]
        if not any((value or "").strip() for value in values):
            continue
        row.pop("_extra", None)
        rows.append(row)
    return rows


def parse_csv_bytes(file_bytes):
    text = decode_csv_bytes(file_bytes)
    if text is None:
        raise DashboardError.validation("Unable to decode CSV file.")
    return parse_csv_text(text)


def load_csv_rows(csv_path):
    path = Path(csv_path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {csv_path}")
    return parse_csv_bytes(path.read_bytes())


def _first_matching_header(headers, patterns):
    for header in headers:
        if any(pattern.search(header) for pattern in patterns):
            return header
    return None


def detect_columns(rows):
    if not rows:
        raise DashboardError.validation("No rows found in CSV")

    first_row = rows[0]
    headers = list(first_row.keys())

    date_column = _first_matching_header(headers, DATE_PATTERNS)
    if date_column is None:
        date_column = next(
            (h for h in headers if DATE_VALUE_RE.match((first_row[h] or "").strip())),
            None,
        )

    merchant_column = _first_matching_header(headers, MERCHANT_PATTERNS)
    if merchant_column is None:
        merchant_column = next((h for h in headers if len(first_row[h] or "") > 5), None)

    amount_column = _first_matching_header(headers, AMOUNT_PATTERNS)
    if amount_column is None:
        amount_column = next(
            (h for h in headers if NUMERIC_VALUE_RE.match((first_row[h] or "").strip().replace(",", ""))),
            None,
        )

    if not date_column:
        raise DashboardError.validation("Could not detect date column. Please ensure your CSV has a date column.")
    if not merchant_column:
        raise DashboardError.validation(
            "Could not detect merchant/description column. Please ensure your CSV has a merchant or description column."
        )
    if not amount_column:
        raise DashboardError.validation("Could not detect amount column. Please ensure your CSV has an amount column.")

    return DetectedColumns(date_column, merchant_column, amount_column)


def normalize_merchant(value):
    if not value:
        return ""
    text = re.sub(r"\s+", " ", value.strip().lower())
    text = re.sub(r"[^\w\s-]", "", text, flags=re.ASCII)
    return re.sub(r"\s+", " ", text).strip()


def parse_statement_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError("Date value is null or empty")

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        pass
    raise ValueError(f"Could not parse date: {cleaned}")


def parse_amount(value):
    if value is None:
        raise ValueError("Amount value is null or empty")
    if isinstance(value, (int, float)):
        return float(value)

    cleaned = re.sub(r"[$,\s]", "", str(value))
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    if negative:
        cleaned = cleaned[1:-1]
    match = LEADING_NUMBER_RE.match(cleaned)
    if not match:
        raise ValueError(f"Could not parse amount: {value}")
    amount = float(match.group(0))
    return -amount if negative else amount


def is_credit_card_payment(merchant_normalized):
    return any(pattern.search(merchant_normalized) for pattern in CREDIT_CARD_PAYMENT_PATTERNS)


def _type_column(row):
    return next((key for key in row if re.fullmatch(r"type", key, re.IGNORECASE)), None)


def normalize_row(row, columns):
    """Return a NormalizedTransaction or a NormalizationError for one raw row."""
    type_column = _type_column(row)
    if type_column and (row.get(type_column) or "").strip().lower() == "payment":
        return NormalizationError(row, "Payment transaction (skipped)", "payment")

    if columns is None or not (columns.date_column and columns.merchant_column and columns.amount_column):
        return NormalizationError(row, "Missing required columns", "missing_columns")

    try:
        parsed_date = parse_statement_date(row.get(columns.date_column))
    except ValueError as exc:
        return NormalizationError(row, str(exc), "date_parse")

    merchant_raw = (row.get(columns.merchant_column) or "").strip()
    if not merchant_raw:
        return NormalizationError(row, "Empty merchant name", "empty_merchant")

    merchant = normalize_merchant(merchant_raw)
    if is_credit_card_payment(merchant):
        return NormalizationError(row, "Credit card payment pattern detected", "credit_card_payment")

    try:
        amount = parse_amount(row.get(columns.amount_column))
    except ValueError as exc:
        return NormalizationError(row, str(exc), "amount_parse")

    if amount == 0:
        return NormalizationError(row, "Zero amount", "zero_amount")

    return NormalizedTransaction(date=parsed_date, merchant=merchant, amount=amount, raw=row)


def normalize_transactions(rows, columns):
    transactions = []
    errors = []
    for row in rows:
        try:
            result = normalize_row(row, columns)
        except (TypeError, AttributeError) as exc:
            result = NormalizationError(row, str(exc) or "Unknown error", "other")
        if isinstance(result, NormalizationError):
            errors.append(result)
        else:
            transactions.append(result)
    return transactions, errors


def error_breakdown(errors):
    breakdown = {}
    for error in errors:
        breakdown[error.reason] = breakdown.get(error.reason, 0) + 1
    return breakdown


def detect_amount_convention(rows, columns, filename):
    if "chase" in (filename or "").lower():
        return "negative"

    amounts = []
    for row in rows:
        try:
            amount = parse_amount(row.get(columns.amount_column))
        except ValueError:
            continue
        if amount != 0:
            amounts.append(amount)

    if not amounts:
        return "negative"

    positives = [a for a in amounts if a > 0]
    negatives = [a for a in amounts if a < 0]
    if len(negatives) > len(positives) * 1.5:
        return "negative"
    if len(positives) > len(negatives) * 1.5:
        return "positive"

    positive_total = sum(positives)
    negative_total = sum(abs(a) for a in negatives)
    if negative_total > positive_total * 1.2:
        return "negative"
    if positive_total > negative_total * 1.2:
        return "positive"
    return "negative"


def guess_convention_from_filename(filename):
    return "negative" if "chase" in (filename or "").lower() else "positive"


def calculate_spending_amount(amount, convention):
    if convention == "negative":
        return abs(amount) if amount < 0 else 0
    return amount if amount > 0 else 0


def infer_category(merchant_normalized):
    for category, keywords in KEYWORD_RULES:
        if any(keyword in merchant_normalized for keyword in keywords):
            return category
    return ""
