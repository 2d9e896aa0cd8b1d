"""Detect bi-monthly, quarterly and yearly recurring payments."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from . import db
from .config import DetectionConfig, load_detection_config
from .grouping import group_transactions, lookback_window
from .models import (
    CandidatePattern,
    DetectionData,
    FlowDirection,
    Periodicity,
    TransactionGroup,
    utc_now,
    validate_month,
)

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 3


def scheduled_months_for(periodicity: Periodicity, start_month: int) -> Tuple[int, ...]:
    """Project a pattern across the year, starting from ``start_month``.

    >>> scheduled_months_for(Periodicity.BI_MONTHLY, 1)
    (1, 3, 5, 7, 9, 11)
    >>> scheduled_months_for(Periodicity.QUARTERLY, 5)
    (2, 5, 8, 11)
    """
    validate_month(start_month, 'start month')
    months: List[int] = []
    month = start_month
    while month not in months:
        months.append(month)
        month = (month - 1 + periodicity.months) % 12 + 1
    return tuple(sorted(months))


def periodicity_from_deltas(deltas: Sequence[int]) -> Optional[Periodicity]:
    """Every delta must equal the same supported period exactly."""
    if not deltas:
        return None
    first = deltas[0]
    if any(delta != first for delta in deltas):
        return None
    try:
        return Periodicity(first)
    except ValueError:
        return None


def coefficient_of_variation(amounts: Sequence[float]) -> float:
    values = np.abs(np.asarray(amounts, dtype=float))
    if values.size == 0:
        return 0.0
    mean = values.mean()
    if mean == 0:
        return 0.0
    return float(values.std(ddof=0) / mean)


def expected_occurrences(periodicity: Periodicity, window_months: int) -> int:
    return max(1, math.ceil(window_months / periodicity.months))


def consistency_score(cv: float, threshold: float) -> float:
    if cv < threshold:
        return 1.0
    return max(0.0, 1.0 - (cv - threshold) / threshold)


def score_confidence(coverage: float, consistency: float, config: DetectionConfig) -> float:
    score = (
        config.base_confidence
        + config.coverage_weight * coverage
        + config.consistency_weight * consistency
    )
    return round(min(1.0, max(0.0, score)), 4)


def _direction(amounts: Sequence[float]) -> Optional[FlowDirection]:
    if all(a < 0 for a in amounts):
        return FlowDirection.EXPENSE
    if all(a > 0 for a in amounts):
        return FlowDirection.INCOME
    return None


def classify_group(
    group: TransactionGroup,
    window_months: int,
    config: Optional[DetectionConfig] = None,
    *,
    user_id: str,
    detected_at: Optional[datetime] = None,
) -> Optional[CandidatePattern]:
    """Turn a transaction group into a :class:`CandidatePattern`, or ``None``.

    ``None`` means "no pattern": too few months, mixed signs, more than one
    transaction in a month, uneven spacing, or confidence below the floor
    for the inferred periodicity.
    """
    config = config or load_detection_config()
    key = group.group_key
    occurrences = group.occurrences
    amounts = [occ.amount for occ in occurrences]
    months = group.distinct_months

    if len(months) < config.min_occurrences:
        logger.debug("No pattern for %r: only %d month(s)", key.signature, len(months))
        return None

    direction = _direction(amounts)
    if direction is None:
        logger.debug("No pattern for %r: amounts mix income and expense", key.signature)
        return None

    if len(months) != len(occurrences):
        logger.debug("No pattern for %r: multiple transactions in the same month", key.signature)
        return None

    deltas = [b - a for a, b in zip(months, months[1:])]
    periodicity = periodicity_from_deltas(deltas)
    if periodicity is None:
        logger.debug("No pattern for %r: month gaps %s are not a supported period", key.signature, deltas)
        return None

    cv = coefficient_of_variation(amounts)
    expected = expected_occurrences(periodicity, window_months)
    coverage = min(1.0, len(months) / expected)
    confidence = score_confidence(coverage, consistency_score(cv, config.cv_threshold), config)
    floor = config.floor_for(periodicity)
    if confidence < floor:
        logger.debug(
            "No pattern for %r: %s confidence %.2f below floor %.2f (cv=%.3f)",
            key.signature, periodicity.label, confidence, floor, cv,
        )
        return None

    magnitudes = [abs(a) for a in amounts]
    first = min(occurrences, key=lambda occ: occ.month_index)
    detection = DetectionData(
        observed_occurrences=len(months),
        expected_occurrences=expected,
        coverage_ratio=round(coverage, 4),
        coefficient_of_variation=round(cv, 4),
        amount_min=round(min(magnitudes), 2),
        amount_max=round(max(magnitudes), 2),
        analysis_months=window_months,
        detected_at=detected_at or utc_now(),
        sample_transaction_ids=tuple(
            occ.transaction_id for occ in occurrences[:SAMPLE_SIZE] if occ.transaction_id is not None
        ),
    )
    return CandidatePattern(
        user_id=str(user_id),
        group_key=key,
        occurrences=occurrences,
        periodicity=periodicity,
        scheduled_months=scheduled_months_for(periodicity, first.month),
        average_amount=round(float(np.mean(magnitudes)), 2),
        direction=direction,
        confidence=confidence,
        detection_data=detection,
    )


def detect_patterns_in_frame(
    df: pd.DataFrame,
    user_id: str,
    months_back: Optional[int] = None,
    config: Optional[DetectionConfig] = None,
    *,
    detected_at: Optional[datetime] = None,
) -> List[CandidatePattern]:
    """Detect recurring patterns in an already-loaded transaction frame."""
    config = config or load_detection_config()
    window = config.clamp_lookback(months_back)
    if df is None or df.empty:
        return []

    working = df
    if 'user_id' in working.columns:
        working = working[working['user_id'].astype(str) == str(user_id)]

    stamp = detected_at or utc_now()
    candidates: List[CandidatePattern] = []
    for group in group_transactions(working, config):
        candidate = classify_group(group, window, config, user_id=user_id, detected_at=stamp)
        if candidate is not None:
            candidates.append(candidate)

    candidates.sort(key=lambda c: (
        -c.confidence,
        c.group_key.signature,
        c.group_key.category_id,
        c.group_key.sub_category_id or '',
        c.group_key.amount_bucket,
    ))
    logger.info("Detected %d recurring pattern(s) for user %s over %d months", len(candidates), user_id, window)
    return candidates


def detect_patterns(
    user_id: str,
    months_back: Optional[int] = None,
    *,
    as_of: Any = None,
    config: Optional[DetectionConfig] = None,
    db_path: Optional[str] = None,
) -> List[CandidatePattern]:
    """Detect recurring patterns in the ``months_back`` calendar months ending at ``as_of``.

    Candidates are built fresh on every call and never persisted here; pass
    them to :meth:`PatternStore.store_detected_patterns` to keep them.
    """
    config = config or load_detection_config()
    if months_back is not None and months_back > config.max_lookback_months:
        logger.warning(
            "Lookback of %d months exceeds the %d month limit; clamping",
            months_back, config.max_lookback_months,
        )
    window = config.clamp_lookback(months_back)
    start, end = lookback_window(as_of, window)
    logger.info("Starting pattern detection for user %s from %s to %s", user_id, start, end)
    df = db.fetch_transactions(user_id, start.isoformat(), end.isoformat(), db_path=db_path)
    return detect_patterns_in_frame(df, user_id, window, config)
