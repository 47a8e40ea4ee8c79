"""Run a correlation analysis over a JSON metrics export.

Usage:
    python -m query_correlation.cli metrics.json
    python -m query_correlation.cli metrics.json --target 0xABC --ratio 0.3 --json

The input file holds ``{"queries": [...], "snapshots": [...]}`` where each
query is a ``QueryMetricRecord`` and each snapshot a ``HistoricalSnapshot``.
"""

import argparse
import logging
import sys
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from query_correlation.config import get_settings
from query_correlation.engine.analyzer import analyze_correlations
from query_correlation.engine.models import HistoricalSnapshot, QueryMetricRecord

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


class AnalysisInput(BaseModel):
    """Shape of the input file."""

    queries: list[QueryMetricRecord] = Field(default_factory=list)
    snapshots: list[HistoricalSnapshot] = Field(default_factory=list)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Analyze query correlations from a JSON metrics export")
    parser.add_argument("input", type=Path, help="JSON file with queries and snapshots")
    parser.add_argument("--target", help="Query hash to predict optimization impact for")
    parser.add_argument("--ratio", type=float, help="Assumed improvement ratio of the target (0-1)")
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Load the input file, run the analysis and print the outcome."""
    args = _parse_args(argv)

    try:
        data = AnalysisInput.model_validate_json(args.input.read_text())
    except (OSError, ValidationError) as e:
        print(f"Failed to read {args.input}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        result = analyze_correlations(
            data.queries,
            data.snapshots,
            settings=get_settings(),
            target_hash=args.target,
            improvement_ratio=args.ratio,
        )
    except ValueError as e:
        print(f"Invalid analysis request: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(result.model_dump_json(indent=2))
        return

    print(result.summary)
    if result.execution_plan is not None and result.execution_plan.steps:
        print(f"\n{result.execution_plan.summary}")
    if result.impact is not None:
        print(f"\nImpact ({result.impact.risk_level.value} risk): {result.impact.summary}")


if __name__ == "__main__":
    main()
