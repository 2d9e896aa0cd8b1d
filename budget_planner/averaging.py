"""Choose how many months to divide by when averaging category spending.

Averaging over the requested window punishes categories that simply
didn't exist for part of it (a new subscription, a card opened two months
ago).  The analyzer classifies how regularly a category shows up and always
divides by the number of months in which it actually appeared.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

import pandas as pd

from .config import AveragingConfig, load_averaging_config
from .models import AveragingStrategy, SpendingAnalysis, SpendingClassification


def _to_period(month: Any) -> pd.Period:
    if isinstance(month, pd.Period):
        return month.asfreq('M')
    return pd.Period(month, freq='M')


def _to_periods(months: Iterable[Any]) -> List[pd.Period]:
    return sorted({_to_period(m) for m in months})


def _effective_window(
    periods: List[pd.Period],
    window_months: int,
    history_start: Any,
    window_end: Any,
) -> int:
    if history_start is None:
        return window_months
    if window_end is not None:
        end = _to_period(window_end)
    elif periods:
        end = periods[-1]
    else:
        return window_months
    span = (end - _to_period(history_start)).n + 1
    if 0 < span < window_months:
        return span
    return window_months


def _classify(coverage: float, config: AveragingConfig) -> SpendingClassification:
    if coverage >= config.regular_threshold:
        return SpendingClassification.REGULAR
    if coverage >= config.mostly_regular_threshold:
        return SpendingClassification.MOSTLY_REGULAR
    if coverage >= config.semi_regular_threshold:
        return SpendingClassification.SEMI_REGULAR
    return SpendingClassification.IRREGULAR


def analyze_spending_pattern(
    present_months: Iterable[Any],
    window_months: int,
    *,
    history_start: Any = None,
    window_end: Any = None,
    config: Optional[AveragingConfig] = None,
) -> SpendingAnalysis:
    """Classify how regularly a category appears within the analysis window.

    Args:
        present_months: Months with at least one transaction; anything
            ``pandas.Period(..., freq='M')`` accepts
        window_months: Requested window length in months
        history_start: First month of the account's history, if known.
            Shortens the effective window for young accounts.
        window_end: Last month of the window; defaults to the latest
            present month
        config: Breakpoints and confidences

    Raises:
        ValueError: If ``window_months`` is not positive
    """
    if window_months <= 0:
        raise ValueError(f"window_months must be positive, got {window_months}")
    config = config or load_averaging_config()
    periods = _to_periods(present_months)
    effective = _effective_window(periods, window_months, history_start, window_end)
    coverage = min(100.0, len(periods) / effective * 100.0)
    classification = _classify(coverage, config)
    return SpendingAnalysis(
        classification=classification,
        confidence=config.confidences[classification],
        coverage_percentage=round(coverage, 2),
        months_present=len(periods),
        window_months=window_months,
        effective_window_months=effective,
        present_months=tuple(str(p) for p in periods),
    )


def get_averaging_denominator(present_months: Iterable[Any], window_months: int, **kwargs: Any) -> int:
    """Number of months to divide a category total by; never less than 1."""
    return get_averaging_strategy(present_months, window_months, **kwargs).denominator


def get_averaging_strategy(
    present_months: Iterable[Any],
    window_months: int,
    *,
    history_start: Any = None,
    window_end: Any = None,
    config: Optional[AveragingConfig] = None,
) -> AveragingStrategy:
    analysis = analyze_spending_pattern(
        present_months,
        window_months,
        history_start=history_start,
        window_end=window_end,
        config=config,
    )
    denominator = max(1, analysis.months_present)
    reasoning = (
        f"{analysis.classification.value.replace('_', ' ').lower()} spending: present in "
        f"{analysis.months_present} of {analysis.effective_window_months} months "
        f"({analysis.coverage_percentage:.0f}% coverage), averaging over {denominator} month(s)"
    )
    return AveragingStrategy(denominator=denominator, analysis=analysis, reasoning=reasoning)


def average_for(total: float, strategy: AveragingStrategy) -> float:
    if strategy.analysis.months_present == 0:
        return 0.0
    return float(total) / strategy.denominator
