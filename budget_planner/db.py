from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from . import config as config_mod
from .grouping import normalize_signature

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    transaction_date TEXT,
    processed_date TEXT,
    description TEXT,
    normalized_description TEXT,
    category_id TEXT,
    sub_category_id TEXT,
    amount REAL NOT NULL,
    exclude_from_budget INTEGER NOT NULL DEFAULT 0,
    imported_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_txn_dedup
ON transactions (user_id, transaction_date, processed_date, normalized_description, amount);

CREATE INDEX IF NOT EXISTS ix_txn_user_date ON transactions (user_id, processed_date);
CREATE INDEX IF NOT EXISTS ix_txn_category ON transactions (category_id, sub_category_id);

CREATE TABLE IF NOT EXISTS transaction_patterns (
    pattern_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    signature TEXT NOT NULL,
    category_id TEXT NOT NULL,
    sub_category_id TEXT NOT NULL DEFAULT '',
    amount_bucket REAL NOT NULL,
    periodicity INTEGER NOT NULL CHECK (periodicity IN (2, 3, 12)),
    scheduled_months TEXT NOT NULL,
    average_amount REAL NOT NULL,
    direction TEXT NOT NULL,
    confidence REAL NOT NULL,
    detection_data TEXT NOT NULL,
    occurrences TEXT NOT NULL,
    approval_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (approval_status IN ('pending', 'approved', 'rejected')),
    is_active INTEGER NOT NULL DEFAULT 0,
    approved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_pattern_key
ON transaction_patterns (user_id, signature, category_id, sub_category_id, amount_bucket);

CREATE INDEX IF NOT EXISTS ix_pattern_status ON transaction_patterns (user_id, approval_status);

CREATE TABLE IF NOT EXISTS category_budgets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    category_id TEXT NOT NULL,
    sub_category_id TEXT NOT NULL DEFAULT '',
    budget_type TEXT NOT NULL DEFAULT 'fixed' CHECK (budget_type IN ('fixed', 'variable')),
    fixed_amount REAL NOT NULL DEFAULT 0,
    monthly_amounts TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_category_budget
ON category_budgets (user_id, category_id, sub_category_id);
"""

PATTERN_COLUMNS = (
    'pattern_id', 'user_id', 'signature', 'category_id', 'sub_category_id', 'amount_bucket',
    'periodicity', 'scheduled_months', 'average_amount', 'direction', 'confidence',
    'detection_data', 'occurrences', 'approval_status', 'is_active', 'approved_at',
    'created_at', 'updated_at',
)


def _resolve_path(db_path: Optional[str]) -> str:
    return str(db_path) if db_path is not None else str(config_mod.DB_PATH)


@contextmanager
def connect(db_path: Optional[str] = None, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
    path = _resolve_path(db_path)
    timeout = config_mod.SQLITE_TIMEOUT if timeout is None else timeout
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None) -> None:
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()


def _sub_key(sub_category_id: Optional[str]) -> str:
    """Sub-category ids are stored as '' for "none" so UNIQUE indexes treat them as equal."""
    return '' if sub_category_id is None else str(sub_category_id)


def _from_sub_key(value: Optional[str]) -> Optional[str]:
    return value or None


def _to_iso_date(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        if hasattr(value, 'to_pydatetime'):
            value = value.to_pydatetime()
        if isinstance(value, datetime):
            return value.date().isoformat()
        ts = pd.to_datetime(value, errors='coerce')
        if pd.isna(ts):
            return None
        return ts.date().isoformat()
    except (TypeError, ValueError):
        return None


def _parse_amount(value: Any) -> Optional[float]:
    """Convert different textual amount representations into floats."""
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, (int, float)):
        if pd.isna(value):
            return None
        return float(value)
    if isinstance(value, str):
        cleaned = value.strip()
        # Accounting negatives e.g. (123.45)
        if cleaned.startswith("(") and cleaned.endswith(")"):
            cleaned = f"-{cleaned[1:-1]}"
        value = cleaned.replace("$", "").replace(",", "").replace("₪", "")
    parsed = pd.to_numeric([value], errors='coerce')
    number = parsed[0]
    if pd.isna(number):
        return None
    return float(number)


def _sanitize_db_value(value: Any) -> Any:
    """Convert pandas NA/NaT and empty strings to SQLite-friendly values."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    if pd.isna(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _exclude_flag(value: Any) -> int:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return 0
    return 1 if bool(value) else 0


def insert_transactions(df: pd.DataFrame, user_id: str, db_path: Optional[str] = None) -> Tuple[int, int]:
    """Insert transactions for ``user_id`` with deduplication.

    Expects the frame columns ``Transaction Date``, ``Processed Date``
    (optional), ``Description``, ``Amount``, ``category_id``,
    ``sub_category_id`` (optional) and ``exclude_from_budget`` (optional).

    Returns (inserted_count, skipped_count).
    """
    if df is None or df.empty:
        return (0, 0)

    records: List[Tuple] = []
    imported_at = datetime.now().isoformat()
    skipped_invalid = 0

    for row in df.to_dict('records'):
        amt = _parse_amount(row.get('Amount'))
        td = _to_iso_date(row.get('Transaction Date'))
        # Reject transactions missing mandatory fields to avoid corrupt records
        if amt is None or td is None:
            skipped_invalid += 1
            continue
        desc = row.get('Description')
        desc = desc if isinstance(desc, str) and desc.strip() else ''
        records.append((
            str(user_id),
            td,
            _to_iso_date(row.get('Processed Date')) or td,
            desc,
            normalize_signature(desc),
            _sanitize_db_value(row.get('category_id')),
            _sanitize_db_value(row.get('sub_category_id')),
            amt,
            _exclude_flag(row.get('exclude_from_budget')),
            imported_at,
        ))

    if not records:
        return (0, skipped_invalid)

    insert_sql = (
        "INSERT OR IGNORE INTO transactions (user_id, transaction_date, processed_date, description, "
        "normalized_description, category_id, sub_category_id, amount, exclude_from_budget, imported_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    )
    with connect(db_path) as conn:
        cur = conn.cursor()
        before_changes = conn.total_changes
        cur.executemany(insert_sql, records)
        conn.commit()
        inserted = conn.total_changes - before_changes

    skipped_duplicates = len(records) - inserted
    return inserted, skipped_invalid + skipped_duplicates


def fetch_transactions(
    user_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    category_id: Optional[str] = None,
    *,
    include_excluded: bool = False,
    db_path: Optional[str] = None,
) -> pd.DataFrame:
    """Transactions of ``user_id`` whose processed date (or transaction date) is in range."""
    where: List[str] = ["user_id = ?"]
    params: List[Any] = [str(user_id)]
    effective = "COALESCE(processed_date, transaction_date)"

    if start_date:
        where.append(f"{effective} >= ?")
        params.append(start_date)
    if end_date:
        where.append(f"{effective} <= ?")
        params.append(end_date)
    if category_id is not None:
        where.append("category_id = ?")
        params.append(str(category_id))
    if not include_excluded:
        where.append("exclude_from_budget = 0")

    sql = (
        "SELECT id, user_id, transaction_date AS 'Transaction Date', "
        f"{effective} AS 'Processed Date', description AS 'Description', amount AS 'Amount', "
        "category_id, sub_category_id FROM transactions WHERE "
        + " AND ".join(where)
        + f" ORDER BY {effective} ASC, id ASC"
    )
    with connect(db_path) as conn:
        df = pd.read_sql_query(sql, conn, params=params)
    if not df.empty:
        df['Transaction Date'] = pd.to_datetime(df['Transaction Date'])
        df['Processed Date'] = pd.to_datetime(df['Processed Date'])
    return df


# ---------------------------------------------------------------------------
# Pattern persistence
# ---------------------------------------------------------------------------

def insert_pattern(row: Dict[str, Any], db_path: Optional[str] = None) -> bool:
    """Insert a pattern row; returns False when its (user, key) already exists."""
    values = dict(row)
    values['sub_category_id'] = _sub_key(values.get('sub_category_id'))
    placeholders = ", ".join("?" for _ in PATTERN_COLUMNS)
    sql = (
        f"INSERT OR IGNORE INTO transaction_patterns ({', '.join(PATTERN_COLUMNS)}) "
        f"VALUES ({placeholders})"
    )
    with connect(db_path) as conn:
        cur = conn.execute(sql, [values[col] for col in PATTERN_COLUMNS])
        conn.commit()
        return cur.rowcount > 0


def pattern_exists(
    user_id: str,
    signature: str,
    category_id: str,
    sub_category_id: Optional[str],
    amount_bucket: float,
    db_path: Optional[str] = None,
) -> bool:
    sql = (
        "SELECT 1 FROM transaction_patterns WHERE user_id = ? AND signature = ? "
        "AND category_id = ? AND sub_category_id = ? AND amount_bucket = ?"
    )
    with connect(db_path) as conn:
        row = conn.execute(
            sql, (str(user_id), signature, str(category_id), _sub_key(sub_category_id), amount_bucket)
        ).fetchone()
    return row is not None


def _pattern_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data['sub_category_id'] = _from_sub_key(data.get('sub_category_id'))
    data['scheduled_months'] = json.loads(data['scheduled_months'])
    data['detection_data'] = json.loads(data['detection_data'])
    data['occurrences'] = json.loads(data['occurrences'])
    data['is_active'] = bool(data['is_active'])
    return data


def fetch_patterns(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    pattern_id: Optional[str] = None,
    db_path: Optional[str] = None,
) -> List[Dict[str, Any]]:
    where: List[str] = []
    params: List[Any] = []
    if user_id is not None:
        where.append("user_id = ?")
        params.append(str(user_id))
    if status is not None:
        where.append("approval_status = ?")
        params.append(status)
    if pattern_id is not None:
        where.append("pattern_id = ?")
        params.append(pattern_id)

    sql = f"SELECT {', '.join(PATTERN_COLUMNS)} FROM transaction_patterns"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY created_at DESC, signature ASC"
    with connect(db_path) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_pattern_row(r) for r in rows]


def count_patterns(user_id: str, status: Optional[str] = None, db_path: Optional[str] = None) -> int:
    sql = "SELECT COUNT(*) FROM transaction_patterns WHERE user_id = ?"
    params: List[Any] = [str(user_id)]
    if status is not None:
        sql += " AND approval_status = ?"
        params.append(status)
    with connect(db_path) as conn:
        return int(conn.execute(sql, params).fetchone()[0])


def update_pattern_status(
    pattern_id: str,
    expected_status: str,
    new_status: str,
    is_active: bool,
    approved_at: Optional[str],
    updated_at: str,
    db_path: Optional[str] = None,
) -> bool:
    """Compare-and-swap status update.

    The row only changes while it still holds ``expected_status``; returns
    True when this call won.
    """
    sql = (
        "UPDATE transaction_patterns SET approval_status = ?, is_active = ?, approved_at = ?, "
        "updated_at = ? WHERE pattern_id = ? AND approval_status = ?"
    )
    with connect(db_path) as conn:
        cur = conn.execute(
            sql, (new_status, 1 if is_active else 0, approved_at, updated_at, pattern_id, expected_status)
        )
        conn.commit()
        return cur.rowcount == 1


# ---------------------------------------------------------------------------
# Category budget configuration
# ---------------------------------------------------------------------------

def _budget_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data['sub_category_id'] = _from_sub_key(data.get('sub_category_id'))
    data['monthly_amounts'] = {int(k): float(v) for k, v in json.loads(data['monthly_amounts']).items()}
    return data


def upsert_category_budget(
    user_id: str,
    category_id: str,
    sub_category_id: Optional[str] = None,
    budget_type: str = 'fixed',
    fixed_amount: float = 0.0,
    monthly_amounts: Optional[Dict[int, float]] = None,
    db_path: Optional[str] = None,
) -> None:
    """Create or replace the budget configuration of one category."""
    sql = (
        "INSERT INTO category_budgets (user_id, category_id, sub_category_id, budget_type, "
        "fixed_amount, monthly_amounts, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT (user_id, category_id, sub_category_id) DO UPDATE SET "
        "budget_type = excluded.budget_type, fixed_amount = excluded.fixed_amount, "
        "monthly_amounts = excluded.monthly_amounts, updated_at = excluded.updated_at"
    )
    payload = json.dumps({str(k): v for k, v in (monthly_amounts or {}).items()}, sort_keys=True)
    with connect(db_path) as conn:
        conn.execute(sql, (
            str(user_id), str(category_id), _sub_key(sub_category_id), budget_type,
            float(fixed_amount), payload, datetime.now().isoformat(),
        ))
        conn.commit()


def fetch_category_budget(
    user_id: str,
    category_id: str,
    sub_category_id: Optional[str] = None,
    db_path: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    sql = (
        "SELECT user_id, category_id, sub_category_id, budget_type, fixed_amount, monthly_amounts, "
        "updated_at FROM category_budgets WHERE user_id = ? AND category_id = ? AND sub_category_id = ?"
    )
    with connect(db_path) as conn:
        row = conn.execute(sql, (str(user_id), str(category_id), _sub_key(sub_category_id))).fetchone()
    return _budget_row(row) if row is not None else None


def update_category_budget_amounts(
    user_id: str,
    category_id: str,
    sub_category_id: Optional[str],
    budget_type: str,
    fixed_amount: float,
    monthly_amounts: Dict[int, float],
    db_path: Optional[str] = None,
) -> bool:
    """Update an existing budget configuration; returns False if none exists."""
    sql = (
        "UPDATE category_budgets SET budget_type = ?, fixed_amount = ?, monthly_amounts = ?, "
        "updated_at = ? WHERE user_id = ? AND category_id = ? AND sub_category_id = ?"
    )
    payload = json.dumps({str(k): v for k, v in monthly_amounts.items()}, sort_keys=True)
    with connect(db_path) as conn:
        cur = conn.execute(sql, (
            budget_type, float(fixed_amount), payload, datetime.now().isoformat(),
            str(user_id), str(category_id), _sub_key(sub_category_id),
        ))
        conn.commit()
        return cur.rowcount > 0
