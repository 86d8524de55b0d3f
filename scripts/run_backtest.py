"""
run_backtest.py: Replay a frozen data snapshot through the walk-forward harness.

Runs the baseline model over every test season and prints the backtest
report as JSON.  With ``--candidate`` the named rating variant is run too
and the promotion gate decides keep / reject.

Settings (bootstrap size and seed, stake, bet lead time, book) come from
``EDGE_*`` environment variables or a ``.env`` file; see
``edge_engine/core/settings.py``.

Usage
-----
  python scripts/run_backtest.py data/snapshot.json --test-start-season 2023
  python scripts/run_backtest.py data/snapshot.json --test-start-season 2023 \\
      --candidate dynamic_k
  python scripts/run_backtest.py data/snapshot.json --test-start-season 2023 --drift
  python scripts/run_backtest.py data/snapshot.json --test-start-season 2023 \\
      --projection market
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

# Ensure the project root (one level up from scripts/) is on sys.path so that
# `from edge_engine.xxx import ...` resolves when the script is run directly.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from edge_engine.core.model_config import ModelConfig, RatingConfig  # noqa: E402
from edge_engine.core.settings import EngineSettings, configure_logging  # noqa: E402
from edge_engine.services.backtest import (  # noqa: E402
    PROJECTION_ENSEMBLE, PROJECTION_MARKET, BacktestConfig, BacktestHarness,
)
from edge_engine.services.feeds import feeds_from_snapshot  # noqa: E402
from edge_engine.services.monitoring import check_performance_alerts, drift_report  # noqa: E402

logger = logging.getLogger("run_backtest")

CANDIDATES = {
    "dynamic_k": ("v1.1-dynamic-k", RatingConfig.dynamic_k),
    "margin_weighted": ("v1.1-margin", RatingConfig.margin_weighted),
    "recency_weighted": ("v1.1-recency", RatingConfig.recency_weighted),
}


def _candidate_config(name: str) -> ModelConfig:
    version, factory = CANDIDATES[name]
    baseline = ModelConfig.baseline()
    return replace(baseline, version=version, rating=factory(),
                   description=f"Baseline with {name} rating updates")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Walk-forward backtest over a frozen data snapshot."
    )
    parser.add_argument("snapshot", type=Path, help="JSON file with games, lines and metrics.")
    parser.add_argument(
        "--test-start-season",
        type=int,
        required=True,
        help="First held-out season.  Earlier seasons only train ratings.",
    )
    parser.add_argument(
        "--candidate",
        choices=sorted(CANDIDATES),
        help="Rating variant to validate against the baseline.",
    )
    parser.add_argument(
        "--projection",
        choices=(PROJECTION_ENSEMBLE, PROJECTION_MARKET),
        default=PROJECTION_ENSEMBLE,
        help="Price spreads from the rating ensemble or anchor them on the market line.",
    )
    parser.add_argument(
        "--drift",
        action="store_true",
        help="Also print the calibration drift report and alerts for the graded picks.",
    )
    parser.add_argument("--output", type=Path, help="Write the JSON output here instead of stdout.")
    args = parser.parse_args()

    settings = EngineSettings.from_env()
    configure_logging(settings.log_level)

    try:
        data = json.loads(args.snapshot.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("Cannot read snapshot %s: %s", args.snapshot, exc)
        return 1

    games, markets, metrics = feeds_from_snapshot(data)
    harness = BacktestHarness(
        games, markets, metrics,
        config=BacktestConfig.from_settings(
            settings, args.test_start_season, projection=args.projection,
        ),
    )
    baseline_config = ModelConfig.baseline()

    output = {}
    if args.candidate:
        baseline, candidate, decision = harness.validate(
            baseline_config, _candidate_config(args.candidate)
        )
        output["baseline"] = baseline.report.model_dump(mode="json")
        output["candidate"] = candidate.report.model_dump(mode="json")
        output["decision"] = {
            "decision": decision.decision,
            "criteria_improved": decision.criteria_improved,
            "sign_flips": decision.sign_flips,
            "notes": decision.notes,
        }
        graded = baseline.results
    else:
        run = harness.run(baseline_config)
        output["baseline"] = run.report.model_dump(mode="json")
        graded = run.results

    if args.drift:
        table = baseline_config.calibration
        output["drift"] = drift_report(graded, table)
        output["alerts"] = [a.to_dict() for a in check_performance_alerts(graded, table)]

    text = json.dumps(output, indent=2, sort_keys=True)
    if args.output:
        args.output.write_text(text + "\n", encoding="utf-8")
        logger.info("Report written to %s", args.output)
    else:
        print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
