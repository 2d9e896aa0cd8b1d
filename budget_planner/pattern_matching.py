"""Month arithmetic for recurring patterns, with year-boundary handling."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import Periodicity, validate_month

logger = logging.getLogger(__name__)


def month_difference(target_month: int, base_month: int) -> int:
    """Months from ``base_month`` forward to ``target_month``, normalized to 0-11.

    >>> month_difference(3, 1)
    2
    >>> month_difference(2, 12)
    2
    >>> month_difference(1, 3)
    10
    """
    validate_month(target_month, 'target month')
    validate_month(base_month, 'base month')
    return (target_month - base_month + 12) % 12


def matches_month(periodicity: Periodicity, scheduled_months: Iterable[int], target_month: int) -> bool:
    """Whether a pattern with this schedule is expected in ``target_month``.

    Yearly patterns match by direct membership.  Bi-monthly and quarterly
    patterns match when the target is a whole number of periods away from
    any scheduled month.
    """
    validate_month(target_month, 'target month')
    months = [validate_month(int(m), 'scheduled month') for m in scheduled_months]
    if not months:
        return False
    if periodicity is Periodicity.YEARLY:
        return target_month in months
    for base in months:
        diff = month_difference(target_month, base)
        if diff % periodicity.months == 0:
            logger.debug(
                "%s match: month %d is %d months from base month %d",
                periodicity.label, target_month, diff, base,
            )
            return True
    return False

