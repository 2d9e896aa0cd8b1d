#!/usr/bin/env python3
"""Detect, review and apply recurring payment patterns from the command line."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from budget_planner import config, db  # noqa: E402
from budget_planner.budget_calculation import apply_budget_lines, calculate_monthly_budget_from_history  # noqa: E402
from budget_planner.models import TransitionConflict, describe_pattern  # noqa: E402
from budget_planner.pattern_store import PatternStore  # noqa: E402
from budget_planner.recurring import detect_patterns  # noqa: E402


def _store(args: argparse.Namespace) -> PatternStore:
    if args.db is None:
        config.ensure_data_directories()
    return PatternStore(args.db)


def cmd_detect(args: argparse.Namespace) -> int:
    store = _store(args)
    candidates = detect_patterns(args.user, args.months, db_path=store.db_path)
    stored = store.store_detected_patterns(candidates)
    print(f"Detected {len(candidates)} pattern(s); {len(stored)} new and awaiting approval.")
    for pattern in stored:
        print(f"  {pattern.pattern_id}  {describe_pattern(pattern)}  "
              f"{pattern.average_amount:.2f} ({pattern.confidence:.0%})")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    store = _store(args)
    df = pd.read_csv(args.csv)
    inserted, skipped = db.insert_transactions(df, args.user, db_path=store.db_path)
    print(f"Imported {inserted} transaction(s), skipped {skipped}.")
    return 0


def cmd_pending(args: argparse.Namespace) -> int:
    pending = _store(args).get_pending_patterns(args.user)
    if not pending:
        print("No patterns awaiting approval.")
        return 0
    for pattern in pending:
        months = ", ".join(str(m) for m in pattern.scheduled_months)
        print(f"{pattern.pattern_id}  {describe_pattern(pattern)}  "
              f"{pattern.average_amount:.2f}  months [{months}]  ({pattern.confidence:.0%})")
    return 0


def _transition(args: argparse.Namespace, approve: bool) -> int:
    store = _store(args)
    result = store.approve(args.pattern_id) if approve else store.reject(args.pattern_id)
    if isinstance(result, TransitionConflict):
        print(f"Cannot update {result.pattern_id}: {result.reason}")
        return 1
    print(f"{describe_pattern(result)} is now {result.approval_status.value}.")
    return 0


def cmd_approve(args: argparse.Namespace) -> int:
    return _transition(args, approve=True)


def cmd_reject(args: argparse.Namespace) -> int:
    return _transition(args, approve=False)


def cmd_budget(args: argparse.Namespace) -> int:
    store = _store(args)
    result = calculate_monthly_budget_from_history(
        args.user, args.year, args.month, args.months, store=store,
    )
    print(f"Budget for {result.year}-{result.month:02d} from {result.months_analyzed} month(s) of history")
    for line in result.lines:
        category = line.category_id + (f"/{line.sub_category_id}" if line.sub_category_id else "")
        print(f"  {category:<24} {line.budgeted_amount:>10.2f}  "
              f"(regular {line.regular_average:.2f} + patterns {line.pattern_contribution:.2f})")
    print(f"Patterns: {result.total_patterns_detected} detected, "
          f"{result.patterns_for_this_month} in this month")
    if result.requires_approval:
        print("Some patterns are awaiting approval; run the 'pending' command to review them.")
    if args.apply:
        applied = apply_budget_lines(args.user, result, db_path=store.db_path)
        print(f"Applied {len(applied)} line(s) to configured category budgets.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db", default=None, help="SQLite database path (default: BUDGET_PLANNER_DB_PATH)")
    parser.add_argument("--user", required=True, help="User id whose transactions are analysed")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    detect = sub.add_parser("detect", help="Detect and store new recurring patterns")
    detect.add_argument("--months", type=int, default=None, help="Lookback window in months")
    detect.set_defaults(func=cmd_detect)

    imp = sub.add_parser("import", help="Load transactions from a CSV file")
    imp.add_argument("csv", type=Path)
    imp.set_defaults(func=cmd_import)

    pending = sub.add_parser("pending", help="List patterns awaiting approval")
    pending.set_defaults(func=cmd_pending)

    approve = sub.add_parser("approve", help="Approve a pending pattern")
    approve.add_argument("pattern_id")
    approve.set_defaults(func=cmd_approve)

    reject = sub.add_parser("reject", help="Reject a pending pattern")
    reject.add_argument("pattern_id")
    reject.set_defaults(func=cmd_reject)

    budget = sub.add_parser("budget", help="Calculate the budget for a month")
    budget.add_argument("year", type=int)
    budget.add_argument("month", type=int)
    budget.add_argument("--months", type=int, default=6, help="Months of history to average")
    budget.add_argument("--apply", action="store_true", help="Write lines into configured category budgets")
    budget.set_defaults(func=cmd_budget)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
