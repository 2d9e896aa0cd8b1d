"""Group historical transactions into candidate recurring series."""

from __future__ import annotations

import logging
import math
import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .config import DetectionConfig, load_detection_config
from .models import GroupKey, Occurrence, TransactionGroup

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")
_REFERENCE_SUFFIX_RE = re.compile(r"(?:\s\d{2,})+$")

SERIES_COLUMNS = ['Signature', 'category_id', 'Sub Key']
KEY_COLUMNS = SERIES_COLUMNS + ['Amount Bucket']


def normalize_signature(text: Any) -> str:
    """Lower-case ``text``, strip punctuation and collapse whitespace runs.

    Trailing reference numbers (``#1234``, ``20240312``) are dropped so that
    the same biller groups together across statements.
    """
    if text is None:
        return ''
    if not isinstance(text, str):
        if pd.isna(text):
            return ''
        text = str(text)
    t = _PUNCTUATION_RE.sub(' ', text.lower())
    t = _WHITESPACE_RE.sub(' ', t).strip()
    stripped = _REFERENCE_SUFFIX_RE.sub('', t).strip()
    return stripped or t


def amount_buckets(amounts: pd.Series, tolerance: float) -> pd.Series:
    """Cluster ``amounts`` by magnitude and map each one to its cluster's anchor.

    Magnitudes are visited in ascending order; a new cluster starts whenever
    a value is more than ``tolerance`` (relative) above the current anchor.
    The anchor is the smallest magnitude of its cluster.
    """
    anchors: Dict[Any, float] = {}
    anchor: Optional[float] = None
    for idx, value in amounts.abs().sort_values(kind='mergesort').items():
        if anchor is None or not amount_within(value, anchor, tolerance):
            anchor = float(value)
        anchors[idx] = round(anchor, 2)
    return pd.Series(anchors, dtype=float).reindex(amounts.index)


def amount_within(amount: float, anchor: float, tolerance: float) -> bool:
    """Whether ``abs(amount)`` lies within ``tolerance`` of ``anchor``."""
    return abs(abs(float(amount)) - anchor) <= tolerance * anchor


def _clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            return str(int(value))
    text = str(value).strip()
    return text or None


def group_key_for(
    description: Any,
    category_id: Any,
    sub_category_id: Any,
    amount: float,
    known_keys: Iterable[GroupKey],
    config: Optional[DetectionConfig] = None,
) -> Optional[GroupKey]:
    """Return the key in ``known_keys`` a single transaction belongs to, if any.

    The transaction must share signature, category and sub-category with the
    key, and its magnitude must be within ``amount_bucket_tolerance`` of the
    key's anchor.  The closest anchor wins.
    """
    config = config or load_detection_config()
    signature = normalize_signature(description)
    category = _clean_id(category_id)
    if not signature or category is None or amount is None or pd.isna(amount):
        return None
    sub_category = _clean_id(sub_category_id)
    tolerance = config.amount_bucket_tolerance
    matches = [
        key for key in known_keys
        if (key.signature, key.category_id, key.sub_category_id) == (signature, category, sub_category)
        and amount_within(amount, key.amount_bucket, tolerance)
    ]
    if not matches:
        return None
    return min(matches, key=lambda key: abs(abs(float(amount)) - key.amount_bucket))


def lookback_window(as_of: Any, months: int) -> Tuple[date, date]:
    """First and last day of the ``months`` calendar months ending with ``as_of``'s month."""
    if months < 1:
        raise ValueError(f"Lookback window must be at least 1 month, got {months}")
    end = pd.Period(as_of if as_of is not None else pd.Timestamp.today(), freq='M')
    start = end - (months - 1)
    return start.start_time.date(), end.end_time.date()


def _preferred_date_series(df: pd.DataFrame) -> pd.Series:
    """Processed date where known, otherwise the transaction date."""
    if 'Transaction Date' in df.columns:
        txn_dates = pd.to_datetime(df['Transaction Date'], errors='coerce')
    else:
        txn_dates = pd.Series(pd.NaT, index=df.index, dtype='datetime64[ns]')
    if 'Processed Date' not in df.columns:
        return txn_dates
    processed = pd.to_datetime(df['Processed Date'], errors='coerce')
    return processed.fillna(txn_dates)


def annotate_group_keys(df: pd.DataFrame, config: Optional[DetectionConfig] = None) -> pd.DataFrame:
    """Return a copy of ``df`` with grouping columns added.

    Adds ``Effective Date``, ``Year``, ``Month``, ``Month Index``,
    ``Signature``, ``Sub Key`` and ``Amount Bucket``.  Rows without a usable
    date, amount, category or description are dropped.
    """
    config = config or load_detection_config()
    if df is None or df.empty:
        return pd.DataFrame()

    working = df.reset_index(drop=True)
    working['Effective Date'] = _preferred_date_series(working)
    working = working.dropna(subset=['Effective Date'])
    if 'Amount' not in working.columns:
        return pd.DataFrame()
    working['Amount'] = pd.to_numeric(working['Amount'], errors='coerce')
    working = working.dropna(subset=['Amount'])
    if 'category_id' not in working.columns:
        return pd.DataFrame()
    working['category_id'] = working['category_id'].apply(_clean_id)
    working = working[working['category_id'].notna()]
    if 'sub_category_id' not in working.columns:
        working['sub_category_id'] = None
    working['sub_category_id'] = working['sub_category_id'].apply(_clean_id).astype(object)
    working['Sub Key'] = working['sub_category_id'].fillna('')
    working['Signature'] = working.get('Description', pd.Series('', index=working.index)).apply(normalize_signature)
    working = working[working['Signature'] != ''].copy()
    if working.empty:
        return pd.DataFrame()

    tolerance = config.amount_bucket_tolerance
    working['Amount Bucket'] = working.groupby(SERIES_COLUMNS, sort=False)['Amount'].transform(
        lambda amounts: amount_buckets(amounts, tolerance)
    )
    working['Year'] = working['Effective Date'].dt.year.astype(int)
    working['Month'] = working['Effective Date'].dt.month.astype(int)
    working['Month Index'] = working['Year'] * 12 + working['Month'] - 1
    return working


def _occurrence(row: Dict[str, Any]) -> Occurrence:
    when = pd.Timestamp(row['Effective Date'])
    return Occurrence(
        year=int(row['Year']),
        month=int(row['Month']),
        amount=float(row['Amount']),
        transaction_id=_clean_id(row.get('id')),
        date=when.date(),
    )


def group_transactions(df: pd.DataFrame, config: Optional[DetectionConfig] = None) -> List[TransactionGroup]:
    """Cluster transactions by :class:`GroupKey`.

    Groups present in fewer than ``config.min_occurrences`` distinct calendar
    months are discarded: not enough evidence for a recurring series.
    """
    config = config or load_detection_config()
    working = annotate_group_keys(df, config)
    if working.empty:
        return []

    sort_cols = ['Effective Date'] + (['id'] if 'id' in working.columns else [])
    ordered = working.sort_values(sort_cols, kind='mergesort')
    groups: List[TransactionGroup] = []
    for (signature, category_id, sub_key, bucket), group in ordered.groupby(KEY_COLUMNS, sort=True):
        distinct_months = group['Month Index'].nunique()
        if distinct_months < config.min_occurrences:
            logger.debug(
                "Skipping group %r (%s/%s): %d distinct month(s), need %d",
                signature, category_id, sub_key or '-', distinct_months, config.min_occurrences,
            )
            continue
        key = GroupKey(
            signature=signature,
            category_id=category_id,
            sub_category_id=sub_key or None,
            amount_bucket=bucket,
        )
        occurrences = tuple(_occurrence(row) for row in group.to_dict('records'))
        groups.append(TransactionGroup(group_key=key, occurrences=occurrences))

    logger.info("Grouped %d transactions into %d candidate series", len(working), len(groups))
    return groups
