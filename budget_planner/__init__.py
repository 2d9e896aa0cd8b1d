"""Top-level package for the Budget Planner.

Detects bi-monthly, quarterly and yearly recurring payments in a user's
transaction history, keeps them behind a user approval workflow, and
folds approved ones into monthly category budgets.  The primary modules
are:

* ``recurring`` – grouping transactions and classifying recurring series
* ``pattern_store`` – persistence and approve/reject of detected patterns
* ``averaging`` – choosing the averaging denominator for a category
* ``budget_calculation`` – monthly budget lines from history plus patterns

From the command line:

```bash
python scripts/budget_patterns.py detect --user alice
```
"""

from .averaging import get_averaging_denominator, get_averaging_strategy  # noqa: F401
from .budget_calculation import apply_budget_lines, calculate_monthly_budget_from_history  # noqa: F401
from .pattern_store import PatternStore  # noqa: F401
from .recurring import detect_patterns  # noqa: F401

__all__ = [
    "PatternStore",
    "apply_budget_lines",
    "calculate_monthly_budget_from_history",
    "detect_patterns",
    "get_averaging_denominator",
    "get_averaging_strategy",
]
