"""
main.py
--------
Entry point for the Spending Reflection Engine.

Loads a user's transactions, runs the requested detection operations and
writes the results to the outputs/ folder.

Usage (from the project root):
    python main.py --user demo --sample

    # With optional arguments:
    python main.py --user u1 --input path/to/transactions.csv
    python main.py --user u1 --input txns.csv --db reflection.db --mode deviations
"""

import sys
import os
import argparse
import logging
from datetime import datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.frame import load_transactions_csv
from core.sample_data import generate_sample_transactions
from pipeline import ReflectionPipeline, build_store, deviations_to_frame, patterns_to_frame
from storage.sqlite_store import SqliteStore


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


MODES = ["baselines", "patterns", "deviations", "stories", "all"]


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Spending Reflection Engine: detect spending patterns and weekly deviations."
    )
    parser.add_argument(
        "--user", type=str, required=True,
        help="User id to run for. Transactions for other users in the input are skipped."
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--input", type=str, default=None,
        help="Transactions CSV (user_id, timestamp, amount, merchant, category, ...)."
    )
    source.add_argument(
        "--sample", action="store_true", default=False,
        help="Generate seeded mock transactions for the user instead of reading a file."
    )
    parser.add_argument(
        "--db", type=str, default=None,
        help="SQLite database path. Defaults to the backend configured in config.yaml."
    )
    parser.add_argument(
        "--mode", type=str, default="all", choices=MODES,
        help="Which operation(s) to run. Default: all."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    store = SqliteStore(args.db) if args.db else build_store()
    pipeline = ReflectionPipeline(store=store)
    now = pipeline.clock()

    # --- Load transactions ---
    if args.sample:
        transactions = generate_sample_transactions(args.user, now)
        logger.info(f"Generated {len(transactions):,} sample transactions for {args.user}.")
    elif args.input:
        if not os.path.exists(args.input):
            logger.error(f"Input file not found: {args.input}")
            sys.exit(1)
        transactions = [t for t in load_transactions_csv(args.input) if t.user_id == args.user]
        logger.info(f"Loaded {len(transactions):,} transactions for {args.user} from {args.input}.")
    else:
        transactions = []

    if transactions:
        pipeline.ingest_transactions(args.user, transactions)

    timestamp = now.strftime("%Y%m%d_%H%M%S")

    # --- Run operations ---
    if args.mode in ("baselines", "all"):
        result = pipeline.calculate_baselines(args.user)
        for b in result["baselines"]:
            print(f"    baseline {b.category:15s} {b.baseline_amount:>10,.0f} / week  ({b.baseline_count} txns)")

    if args.mode in ("patterns", "all"):
        result = pipeline.detect_patterns(args.user)
        df = patterns_to_frame(result["patterns"])
        path = os.path.join(output_dir, f"patterns_{timestamp}.csv")
        df.to_csv(path, index=False)
        logger.info(f"Patterns saved to: {path}")
        _print_patterns(df)

    if args.mode in ("deviations", "all"):
        result = pipeline.run_deviation_scan(args.user)
        if result.get("message"):
            logger.info(result["message"])
        df = deviations_to_frame(result["deviations"])
        path = os.path.join(output_dir, f"deviations_{timestamp}.csv")
        df.to_csv(path, index=False)
        logger.info(f"Deviations saved to: {path}")
        for event in result["deviations"]:
            print(f"    {event.category:15s} +{event.deviation_percentage}%  {event.narrative}")

    if args.mode in ("stories", "all"):
        result = pipeline.generate_stories(args.user)
        for story in result["stories"]:
            print(f"\n  {story.title}\n    {story.narrative}")
        if result.get("message"):
            logger.info(result["message"])


def _print_patterns(df):
    """Prints a clean summary table to the console."""
    if df.empty:
        print("\n  No patterns to display.\n")
        return

    print("\n" + "=" * 80)
    print("  SPENDING PATTERNS")
    print("=" * 80)
    for _, row in df.iterrows():
        print(
            f"    {row['title']:35s} {row['confidence']:9s} {row['occurrences']:>4}x  "
            f"avg {row['average_amount']:>7,}  {row['trend']:10s} {row['time_range']}"
        )
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
