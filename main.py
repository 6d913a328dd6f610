"""
main.py
--------
Entry point for the household categorization engine.

Reads a family's transactions, suggests categories for each one, mines
recurring expenses and lists the ones missing from the target month, then
writes everything to the outputs/ folder.

Usage (from the project root):
    python main.py --input path/to/transactions.csv --family-id fam-1 --user-id user-1

    # With optional arguments:
    python main.py --input tx.csv --family-id fam-1 --month 3 --year 2025
    python main.py --input tx.csv --family-id fam-1 --output-dir /tmp/out
"""

import sys
import os
import argparse
import logging
import pandas as pd
from datetime import datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.models import RequestContext
from pipeline import CategorizationPipeline, missing_to_frame, patterns_to_frame


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Household categorization engine: suggest categories and find missing recurring expenses."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to input transactions CSV (description, amount, date, optional category_id/subcategory_id/type)."
    )
    parser.add_argument(
        "--family-id", type=str, required=True,
        help="Family the transactions belong to."
    )
    parser.add_argument(
        "--user-id", type=str, default=None,
        help="Acting user. Without it, learned rules are skipped."
    )
    parser.add_argument(
        "--month", type=int, default=None, choices=range(1, 13), metavar="1-12",
        help="Month to check for missing recurring expenses. Defaults to the current month."
    )
    parser.add_argument(
        "--year", type=int, default=None,
        help="Year to check for missing recurring expenses. Defaults to the current year."
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

    # --- Load transactions ---
    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    # --- Resolve paths ---
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    transactions = pd.read_csv(args.input)
    logger.info(f"Loaded {len(transactions):,} transactions.")

    # --- Run pipeline ---
    logger.info("Initializing pipeline...")
    pipeline = CategorizationPipeline()
    pipeline.load_transactions(transactions, family_id=args.family_id, user_id=args.user_id)

    context = RequestContext(user_id=args.user_id, family_id=args.family_id)
    categorized = pipeline.run(transactions, context)

    # --- Recurring patterns ---
    now = datetime.now()
    month = args.month or now.month
    year = args.year or now.year
    patterns = pipeline.detect_recurring(args.family_id)
    missing = pipeline.find_missing(args.family_id, month, year)

    # --- Output ---
    timestamp = now.strftime("%Y%m%d_%H%M%S")
    outputs = {
        "categorized": categorized,
        "recurring_patterns": patterns_to_frame(patterns),
        "missing_recurring": missing_to_frame(missing),
    }
    for name, df in outputs.items():
        path = os.path.join(output_dir, f"{name}_{timestamp}.csv")
        df.to_csv(path, index=False)
        logger.info(f"{name} saved to: {path}")

    _print_summary(pipeline.source_summary(), outputs["recurring_patterns"], outputs["missing_recurring"])


def _print_summary(sources: dict, patterns: pd.DataFrame, missing: pd.DataFrame):
    """Prints a clean summary table to the console."""
    total = sum(sources.values())

    print("\n" + "=" * 80)
    print("  CATEGORIZATION SUMMARY")
    print("=" * 80)

    print("\n  Suggestions by Source:")
    print("  " + "-" * 60)
    for source, count in sources.items():
        pct = (count / total * 100) if total > 0 else 0
        print(f"    {source:12s}  {count:>5,}  ({pct:.1f}%)")

    print("\n  Recurring Patterns:")
    print("  " + "-" * 60)
    if patterns.empty:
        print("    None detected.")
    for _, row in patterns.iterrows():
        sub = f"/{row['subcategory_id']}" if row["subcategory_id"] else ""
        print(
            f"    {row['category_id'] + sub:30s}  {row['occurrence_count']:>2} months  "
            f"avg {row['average_amount']:>10,.2f}  (confidence {row['confidence']:.2f})"
        )

    print(f"\n  Missing this month: {len(missing):,}")
    for _, row in missing.iterrows():
        print(f"    {row['category_id']:30s}  {row['confirmation_status']}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
