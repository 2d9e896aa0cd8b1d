from datetime import datetime, timezone

import pandas as pd
import pytest

from budget_planner import db
from budget_planner.budget_calculation import (
    analysis_window,
    apply_budget_lines,
    calculate_budget_lines,
    calculate_monthly_budget_from_history,
)
from budget_planner.config import AveragingConfig, DetectionConfig
from budget_planner.models import BudgetType, StoredPattern, approve
from budget_planner.pattern_store import PatternStore
from budget_planner.recurring import detect_patterns_in_frame

NOW = datetime(2024, 6, 20, tzinfo=timezone.utc)
DETECTION = DetectionConfig()
AVERAGING = AveragingConfig()


def _build_df(rows):
    return pd.DataFrame(rows)


def _history():
    rows = []
    for month in range(1, 7):
        rows.append({'id': month, 'user_id': 'u1', 'Transaction Date': f'2024-{month:02d}-08',
                     'Description': 'Fresh Market', 'Amount': -100.0, 'category_id': 'food',
                     'sub_category_id': None})
    for month in (1, 3, 5):
        rows.append({'id': 100 + month, 'user_id': 'u1', 'Transaction Date': f'2024-{month:02d}-12',
                     'Description': 'Municipal Tax', 'Amount': -450.0, 'category_id': 'taxes',
                     'sub_category_id': None})
    rows.append({'id': 200, 'user_id': 'u1', 'Transaction Date': '2024-02-20',
                 'Description': 'Permit Fee', 'Amount': -60.0, 'category_id': 'taxes',
                 'sub_category_id': None})
    # inside the target month, never part of its own average
    rows.append({'id': 300, 'user_id': 'u1', 'Transaction Date': '2024-07-02',
                 'Description': 'Fresh Market', 'Amount': -999.0, 'category_id': 'food',
                 'sub_category_id': None})
    return _build_df(rows)


def _approved_tax_pattern(df):
    candidate = next(
        c for c in detect_patterns_in_frame(df, 'u1', 6, DETECTION)
        if c.group_key.signature == 'municipal tax'
    )
    return approve(StoredPattern.from_candidate(candidate, pattern_id='tax-1', now=NOW), now=NOW)


def test_analysis_window_excludes_target_month():
    start, end = analysis_window(2024, 7, 6)
    assert str(start) == '2024-01'
    assert str(end) == '2024-06'

    start, end = analysis_window(2024, 2, 3)
    assert str(start) == '2023-11'
    assert str(end) == '2024-01'

    with pytest.raises(ValueError):
        analysis_window(2024, 13, 6)


def test_pattern_amount_is_added_to_regular_average():
    df = _history()
    pattern = _approved_tax_pattern(df)

    lines = calculate_budget_lines(df, [pattern], 2024, 7, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    # the permit fee appeared once; the tax payments belong to the pattern
    assert taxes.regular_average == pytest.approx(60.0)
    assert taxes.pattern_contribution == pytest.approx(450.0)
    assert taxes.budgeted_amount == pytest.approx(510.0)
    assert taxes.budget_type is BudgetType.VARIABLE
    assert taxes.pattern_ids == ('tax-1',)


def test_months_without_the_pattern_budget_only_the_regular_average():
    df = _history()
    pattern = _approved_tax_pattern(df)

    lines = calculate_budget_lines(df, [pattern], 2024, 8, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    assert taxes.pattern_contribution == 0.0
    assert taxes.budgeted_amount == pytest.approx(taxes.regular_average)
    assert taxes.pattern_ids == ()


def test_monthly_amounts_follow_the_schedule():
    df = _history()
    pattern = _approved_tax_pattern(df)

    lines = calculate_budget_lines(df, [pattern], 2024, 7, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    assert sorted(taxes.monthly_amounts) == list(range(1, 13))
    assert taxes.monthly_amounts[7] == pytest.approx(510.0)
    assert taxes.monthly_amounts[8] == pytest.approx(60.0)


def test_categories_without_patterns_are_fixed_and_ignore_target_month():
    df = _history()

    lines = calculate_budget_lines(df, [], 2024, 7, 6, DETECTION, AVERAGING)
    food = next(line for line in lines if line.category_id == 'food')

    assert food.regular_average == pytest.approx(100.0)
    assert food.budgeted_amount == pytest.approx(100.0)
    assert food.budget_type is BudgetType.FIXED
    assert food.strategy.denominator == 6


def test_unapproved_patterns_count_as_regular_spending():
    df = _history()
    candidate = next(
        c for c in detect_patterns_in_frame(df, 'u1', 6, DETECTION)
        if c.group_key.signature == 'municipal tax'
    )
    pending = StoredPattern.from_candidate(candidate, pattern_id='tax-1', now=NOW)

    lines = calculate_budget_lines(df, [pending], 2024, 7, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    # 1350 + 60 over the four months taxes appeared in
    assert taxes.regular_average == pytest.approx(352.5)
    assert taxes.pattern_contribution == 0.0
    assert taxes.budget_type is BudgetType.FIXED


def test_pattern_category_without_recent_transactions_still_gets_a_line():
    df = _history()
    pattern = _approved_tax_pattern(df)
    recent = df[df['category_id'] == 'food']

    lines = calculate_budget_lines(recent, [pattern], 2024, 9, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    assert taxes.regular_average == 0.0
    assert taxes.budgeted_amount == pytest.approx(450.0)


def _seeded_store(tmp_path):
    db_path = str(tmp_path / 'budget.db')
    store = PatternStore(db_path)
    db.insert_transactions(_history(), 'u1', db_path=db_path)
    candidates = detect_patterns_in_frame(_history(), 'u1', 6, DETECTION)
    return store, store.store_detected_patterns(candidates)


def test_history_budget_reports_pending_patterns(tmp_path):
    store, stored = _seeded_store(tmp_path)

    result = calculate_monthly_budget_from_history(
        'u1', 2024, 7, 6, store=store, config=DETECTION, averaging_config=AVERAGING,
    )

    assert result.total_patterns_detected == len(stored) == 1
    assert result.patterns_for_this_month == 0
    assert result.requires_approval
    assert result.line_for('taxes').pattern_contribution == 0.0


def test_history_budget_uses_approved_patterns(tmp_path):
    store, stored = _seeded_store(tmp_path)
    store.approve(stored[0].pattern_id)

    result = calculate_monthly_budget_from_history(
        'u1', 2024, 7, 6, store=store, config=DETECTION, averaging_config=AVERAGING,
    )

    assert result.months_analyzed == 6
    assert result.patterns_for_this_month == 1
    assert not result.requires_approval
    assert result.line_for('taxes').budgeted_amount == pytest.approx(510.0)
    assert result.line_for('food').budgeted_amount == pytest.approx(100.0)


def test_apply_only_touches_configured_categories(tmp_path):
    store, stored = _seeded_store(tmp_path)
    store.approve(stored[0].pattern_id)
    db.upsert_category_budget('u1', 'taxes', db_path=store.db_path)
    result = calculate_monthly_budget_from_history(
        'u1', 2024, 7, 6, store=store, config=DETECTION, averaging_config=AVERAGING,
    )

    applied = apply_budget_lines('u1', result, db_path=store.db_path)

    assert [line.category_id for line in applied] == ['taxes']
    budget = db.fetch_category_budget('u1', 'taxes', db_path=store.db_path)
    assert budget['budget_type'] == 'variable'
    assert budget['fixed_amount'] == pytest.approx(510.0)
    assert budget['monthly_amounts'][7] == pytest.approx(510.0)
    assert budget['monthly_amounts'][8] == pytest.approx(60.0)
    assert db.fetch_category_budget('u1', 'food', db_path=store.db_path) is None


def test_payments_close_to_an_approved_pattern_are_not_counted_twice():
    df = _history()
    pattern = _approved_tax_pattern(df)
    later = _build_df([{'id': 400, 'user_id': 'u1', 'Transaction Date': '2024-06-12',
                        'Description': 'MUNICIPAL TAX #0612', 'Amount': -459.0, 'category_id': 'taxes',
                        'sub_category_id': None}])

    lines = calculate_budget_lines(pd.concat([df, later], ignore_index=True), [pattern],
                                   2024, 7, 6, DETECTION, AVERAGING)
    taxes = next(line for line in lines if line.category_id == 'taxes')

    assert taxes.regular_average == pytest.approx(60.0)
    assert taxes.budgeted_amount == pytest.approx(510.0)


def test_series_with_price_drift_is_fully_covered_by_its_pattern():
    df = _build_df([
        {'id': idx, 'user_id': 'u1', 'Transaction Date': f'2024-{month:02d}-10', 'Description': 'Water Bill',
         'Amount': amount, 'category_id': 'utilities', 'sub_category_id': None}
        for idx, (month, amount) in enumerate([(1, -100.0), (3, -102.0), (5, -100.0)], start=1)
    ])
    candidate, = detect_patterns_in_frame(df, 'u1', 6, DETECTION)
    pattern = approve(StoredPattern.from_candidate(candidate, pattern_id='water-1', now=NOW), now=NOW)

    lines = calculate_budget_lines(df, [pattern], 2024, 7, 6, DETECTION, AVERAGING)

    assert len(lines) == 1
    assert lines[0].regular_average == 0.0
    assert lines[0].budgeted_amount == pytest.approx(100.67)


def test_history_budget_clamps_long_windows(tmp_path, caplog):
    store, _ = _seeded_store(tmp_path)

    with caplog.at_level('WARNING', logger='budget_planner.budget_calculation'):
        result = calculate_monthly_budget_from_history(
            'u1', 2024, 7, 120, store=store, config=DETECTION, averaging_config=AVERAGING,
        )

    assert result.months_analyzed == 36
    assert 'clamping' in caplog.text
