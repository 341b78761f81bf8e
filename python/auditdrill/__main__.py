"""CLI entry point for ``python -m auditdrill``.

Subcommands:
    cohort <db_path> <case_id>     Baseline-vs-latest progress for a case
    attempts <db_path> <trainee>   A trainee's attempt history
    metrics <db_path> <case_id>    Activity metrics over a date range
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auditdrill",
        description="auditdrill: audit training simulator attempts and cohort progress",
    )
    sub = parser.add_subparsers(dest="command")

    # --- cohort ---
    cohort_p = sub.add_parser("cohort", help="Show cohort progress for a case")
    cohort_p.add_argument("db_path", help="Path to the attempts database")
    cohort_p.add_argument("case_id", help="Case to report on")
    cohort_p.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        dest="fmt",
        help="Output format (default: table)",
    )
    cohort_p.add_argument("--config", help="SimulatorConfig JSON file with thresholds")

    # --- attempts ---
    attempts_p = sub.add_parser("attempts", help="Show a trainee's attempt history")
    attempts_p.add_argument("db_path", help="Path to the attempts database")
    attempts_p.add_argument("trainee_id", help="Trainee to list")
    attempts_p.add_argument("--case", dest="case_id", help="Filter to a single case")

    # --- metrics ---
    metrics_p = sub.add_parser("metrics", help="Show activity metrics for a case")
    metrics_p.add_argument("db_path", help="Path to the attempts database")
    metrics_p.add_argument("case_id", help="Case to report on")
    metrics_p.add_argument("--start", help="Range start (ISO 8601)")
    metrics_p.add_argument("--end", help="Range end (ISO 8601)")
    metrics_p.add_argument("--config", help="SimulatorConfig JSON file with thresholds")

    return parser


def _require_db(db_path: str) -> None:
    if not os.path.exists(db_path):
        print(f"Error: database not found: {db_path}", file=sys.stderr)
        sys.exit(1)


def _load_config(path: str | None):
    from auditdrill.config import SimulatorConfig

    if not path:
        return SimulatorConfig()
    try:
        with open(path) as f:
            return SimulatorConfig.from_json(f.read())
    except (OSError, ValueError, TypeError) as exc:
        print(f"Error: cannot load config: {exc}", file=sys.stderr)
        sys.exit(1)


def _cmd_cohort(args: argparse.Namespace) -> None:
    from auditdrill.attempt_store import AttemptStore
    from auditdrill.cohort import CohortAggregator
    from auditdrill.reporting import cohort_report_text

    _require_db(args.db_path)
    config = _load_config(args.config)
    store = AttemptStore(args.db_path)
    try:
        report = CohortAggregator(store, config).report(args.case_id)
        if args.fmt == "json":
            print(json.dumps(asdict(report), indent=2))
        else:
            print(cohort_report_text(report, args.case_id))
    finally:
        store.close()


def _cmd_attempts(args: argparse.Namespace) -> None:
    from auditdrill.attempt_store import AttemptStore
    from auditdrill.reporting import attempt_history_text

    _require_db(args.db_path)
    store = AttemptStore(args.db_path)
    try:
        print(attempt_history_text(store.list_attempts(args.trainee_id, args.case_id)))
    finally:
        store.close()


def _cmd_metrics(args: argparse.Namespace) -> None:
    from auditdrill.attempt_store import AttemptStore
    from auditdrill.cohort import CohortAggregator
    from auditdrill.reporting import value_metrics_text

    _require_db(args.db_path)
    config = _load_config(args.config)
    store = AttemptStore(args.db_path)
    try:
        metrics = CohortAggregator(store, config).value_metrics(args.case_id, args.start, args.end)
        print(value_metrics_text(metrics))
    finally:
        store.close()


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "cohort":
        _cmd_cohort(args)
    elif args.command == "attempts":
        _cmd_attempts(args)
    elif args.command == "metrics":
        _cmd_metrics(args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
