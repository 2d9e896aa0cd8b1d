"""Monthly budget lines from history plus approved recurring patterns."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from . import db
from .averaging import average_for, get_averaging_strategy
from .config import AveragingConfig, DetectionConfig, load_averaging_config, load_detection_config
from .grouping import annotate_group_keys, group_key_for
from .models import (
    ApprovalStatus,
    BudgetCalculationResult,
    BudgetLine,
    BudgetType,
    StoredPattern,
    validate_month,
)
from .pattern_matching import matches_month
from .pattern_store import PatternStore

logger = logging.getLogger(__name__)

CategoryKey = Tuple[str, Optional[str]]


def analysis_window(year: int, month: int, months_to_analyze: int) -> Tuple[pd.Period, pd.Period]:
    """The ``months_to_analyze`` full months before (never including) the target month."""
    validate_month(month)
    if months_to_analyze < 1:
        raise ValueError(f"months_to_analyze must be at least 1, got {months_to_analyze}")
    target = pd.Period(year=year, month=month, freq='M')
    return target - months_to_analyze, target - 1


def _contribution(patterns: Sequence[StoredPattern], month: int) -> float:
    return sum(
        p.average_amount for p in patterns
        if matches_month(p.periodicity, p.scheduled_months, month)
    )


def calculate_budget_lines(
    df: pd.DataFrame,
    approved_patterns: Iterable[StoredPattern],
    year: int,
    month: int,
    months_to_analyze: int = 6,
    config: Optional[DetectionConfig] = None,
    averaging_config: Optional[AveragingConfig] = None,
) -> List[BudgetLine]:
    """Compute one :class:`BudgetLine` per category.

    Transactions that fall under an approved pattern (see
    :func:`~budget_planner.grouping.group_key_for`) are left out of
    the regular average; the pattern's own ``average_amount`` is added back
    in the months it is scheduled for.
    """
    config = config or load_detection_config()
    averaging_config = averaging_config or load_averaging_config()
    start, end = analysis_window(year, month, months_to_analyze)
    patterns = [p for p in approved_patterns if p.is_active and p.approval_status is ApprovalStatus.APPROVED]
    approved_keys = [p.group_key for p in patterns]

    patterns_by_category: Dict[CategoryKey, List[StoredPattern]] = defaultdict(list)
    for p in patterns:
        patterns_by_category[p.group_key.category_key].append(p)

    working = annotate_group_keys(df, config)
    regular_totals: Dict[CategoryKey, float] = defaultdict(float)
    regular_months: Dict[CategoryKey, set] = defaultdict(set)
    categories = set(patterns_by_category)

    if not working.empty:
        periods = working['Effective Date'].dt.to_period('M')
        working = working[(periods >= start) & (periods <= end)]
        for row in working.to_dict('records'):
            category = (row['category_id'], row['Sub Key'] or None)
            categories.add(category)
            if group_key_for(
                row.get('Description'), row['category_id'], row['sub_category_id'], row['Amount'],
                approved_keys, config,
            ) is not None:
                continue
            regular_totals[category] += abs(float(row['Amount']))
            regular_months[category].add(pd.Timestamp(row['Effective Date']).to_period('M'))

    lines: List[BudgetLine] = []
    for category in sorted(categories, key=lambda c: (c[0], c[1] or '')):
        strategy = get_averaging_strategy(
            regular_months.get(category, ()), months_to_analyze, config=averaging_config
        )
        regular_average = round(average_for(regular_totals.get(category, 0.0), strategy), 2)
        category_patterns = patterns_by_category.get(category, [])
        monthly_amounts = {
            m: round(regular_average + _contribution(category_patterns, m), 2) for m in range(1, 13)
        }
        scheduled_now = [
            p for p in category_patterns if matches_month(p.periodicity, p.scheduled_months, month)
        ]
        contribution = round(sum(p.average_amount for p in scheduled_now), 2)
        logger.debug("Category %s/%s: %s", category[0], category[1] or '-', strategy.reasoning)
        lines.append(BudgetLine(
            category_id=category[0],
            sub_category_id=category[1],
            budgeted_amount=round(regular_average + contribution, 2),
            regular_average=regular_average,
            pattern_contribution=contribution,
            budget_type=BudgetType.VARIABLE if category_patterns else BudgetType.FIXED,
            monthly_amounts=monthly_amounts,
            strategy=strategy,
            pattern_ids=tuple(p.pattern_id for p in scheduled_now),
        ))
    return lines


def calculate_monthly_budget_from_history(
    user_id: str,
    year: int,
    month: int,
    months_to_analyze: int = 6,
    *,
    store: Optional[PatternStore] = None,
    config: Optional[DetectionConfig] = None,
    averaging_config: Optional[AveragingConfig] = None,
    db_path: Optional[str] = None,
) -> BudgetCalculationResult:
    """Budget for ``year``/``month`` from the preceding ``months_to_analyze`` months."""
    config = config or load_detection_config()
    if months_to_analyze > config.max_lookback_months:
        logger.warning(
            "Budget history of %d months exceeds the %d month limit; clamping",
            months_to_analyze, config.max_lookback_months,
        )
    months_to_analyze = config.clamp_lookback(months_to_analyze)
    store = store or PatternStore(db_path)
    start, end = analysis_window(year, month, months_to_analyze)

    all_patterns = store.get_patterns(user_id)
    approved = [p for p in all_patterns if p.approval_status is ApprovalStatus.APPROVED and p.is_active]
    df = db.fetch_transactions(
        user_id,
        start.start_time.date().isoformat(),
        end.end_time.date().isoformat(),
        db_path=store.db_path,
    )
    lines = calculate_budget_lines(df, approved, year, month, months_to_analyze, config, averaging_config)

    result = BudgetCalculationResult(
        user_id=str(user_id),
        year=year,
        month=month,
        months_analyzed=months_to_analyze,
        lines=tuple(lines),
        total_patterns_detected=len(all_patterns),
        patterns_for_this_month=sum(
            1 for p in approved if matches_month(p.periodicity, p.scheduled_months, month)
        ),
        requires_approval=any(p.approval_status is ApprovalStatus.PENDING for p in all_patterns),
    )
    logger.info(
        "Calculated %d budget line(s) for user %s, %d-%02d from %s to %s",
        len(lines), user_id, year, month, start, end,
    )
    return result


def apply_budget_lines(
    user_id: str,
    result: BudgetCalculationResult,
    db_path: Optional[str] = None,
) -> List[BudgetLine]:
    """Write calculated lines into categories that already have a budget configured.

    Categories without a configuration are skipped.  Returns the lines that
    were applied.
    """
    applied: List[BudgetLine] = []
    for line in result.lines:
        updated = db.update_category_budget_amounts(
            user_id,
            line.category_id,
            line.sub_category_id,
            budget_type=line.budget_type.value,
            fixed_amount=line.budgeted_amount,
            monthly_amounts=line.monthly_amounts,
            db_path=db_path,
        )
        if not updated:
            logger.debug("No budget configured for %s/%s; skipping", line.category_id, line.sub_category_id or '-')
            continue
        applied.append(line)
    logger.info("Applied %d of %d budget line(s) for user %s", len(applied), len(result.lines), user_id)
    return applied
