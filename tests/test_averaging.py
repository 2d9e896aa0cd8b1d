import pandas as pd
import pytest

from budget_planner.averaging import (
    analyze_spending_pattern,
    average_for,
    get_averaging_denominator,
    get_averaging_strategy,
)
from budget_planner.config import AveragingConfig
from budget_planner.models import SpendingClassification

CONFIG = AveragingConfig()


def _months(*numbers, year=2024):
    return [f'{year}-{n:02d}' for n in numbers]


def test_five_of_six_months_is_mostly_regular():
    strategy = get_averaging_strategy(_months(1, 2, 3, 4, 5), 6, config=CONFIG)

    assert strategy.analysis.classification is SpendingClassification.MOSTLY_REGULAR
    assert strategy.analysis.confidence == pytest.approx(0.80)
    assert strategy.denominator == 5
    assert average_for(500.0, strategy) == pytest.approx(100.0)


def test_single_month_is_irregular_but_not_diluted():
    strategy = get_averaging_strategy(_months(3), 6, config=CONFIG)

    assert strategy.analysis.classification is SpendingClassification.IRREGULAR
    assert strategy.analysis.confidence == pytest.approx(0.40)
    assert strategy.denominator == 1
    assert average_for(80.0, strategy) == pytest.approx(80.0)


@pytest.mark.parametrize('present, window, expected, confidence', [
    (6, 6, SpendingClassification.REGULAR, 0.95),
    (8, 10, SpendingClassification.MOSTLY_REGULAR, 0.80),
    (9, 10, SpendingClassification.MOSTLY_REGULAR, 0.80),
    (5, 10, SpendingClassification.SEMI_REGULAR, 0.60),
    (7, 10, SpendingClassification.SEMI_REGULAR, 0.60),
    (4, 10, SpendingClassification.IRREGULAR, 0.40),
])
def test_classification_table(present, window, expected, confidence):
    analysis = analyze_spending_pattern(_months(*range(1, present + 1)), window, config=CONFIG)

    assert analysis.classification is expected
    assert analysis.confidence == pytest.approx(confidence)
    assert analysis.months_present == present


def test_no_months_present_guards_division():
    strategy = get_averaging_strategy([], 6, config=CONFIG)

    assert strategy.denominator == 1
    assert strategy.analysis.classification is SpendingClassification.IRREGULAR
    assert average_for(0.0, strategy) == 0.0


def test_denominator_is_pure_and_idempotent():
    months = _months(2, 4, 5)
    snapshot = list(months)

    first = get_averaging_denominator(months, 6, config=CONFIG)
    second = get_averaging_denominator(months, 6, config=CONFIG)

    assert first == second == 3
    assert months == snapshot


def test_duplicate_and_mixed_month_inputs_count_once():
    months = ['2024-01', pd.Period('2024-01', freq='M'), pd.Timestamp('2024-02-14')]
    assert get_averaging_denominator(months, 6, config=CONFIG) == 2


def test_young_history_shortens_effective_window():
    analysis = analyze_spending_pattern(
        _months(5, 6), 6, history_start='2024-05', config=CONFIG,
    )

    assert analysis.effective_window_months == 2
    assert analysis.classification is SpendingClassification.REGULAR
    assert analysis.coverage_percentage == pytest.approx(100.0)


def test_reasoning_names_the_denominator():
    strategy = get_averaging_strategy(_months(1, 2, 3, 4, 5), 6, config=CONFIG)
    assert 'averaging over 5 month' in strategy.reasoning
    assert 'mostly regular' in strategy.reasoning


def test_custom_breakpoints():
    lenient = AveragingConfig(mostly_regular_threshold=60.0, semi_regular_threshold=30.0)
    analysis = analyze_spending_pattern(_months(1, 2, 3, 4), 6, config=lenient)
    assert analysis.classification is SpendingClassification.MOSTLY_REGULAR


@pytest.mark.parametrize('window', [0, -3])
def test_non_positive_window_is_rejected(window):
    with pytest.raises(ValueError):
        analyze_spending_pattern(_months(1), window, config=CONFIG)
