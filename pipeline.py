"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. Transaction loading          →  seeds the store with a family's history
    2. CategorizationEngine         →  learned rules, then dictionary
    3. HistorySuggester             →  the family's own past categorizations
    4. RecurringPatternDetector     →  monthly patterns and missing expenses
    5. FeedbackPipeline             →  user corrections feeding back into 2

This is the single entry point for batch runs and the CLI. Everything else
is internal machinery sharing one store and one cache.

Usage:
    from pipeline import CategorizationPipeline

    pipeline = CategorizationPipeline()
    pipeline.load_transactions(transactions_df, family_id="fam-1", user_id="user-1")
    categorized_df = pipeline.run(transactions_df, RequestContext("user-1", "fam-1"))
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

import pandas as pd

from core.cache import TTLCache
from core.categorization_engine import CategorizationEngine
from core.descriptor_dictionary import DescriptorDictionary
from core.feedback import FeedbackPipeline
from core.history_suggester import HistorySuggester
from core.models import (
    CategorizationSuggestion,
    MissingRecurringExpense,
    PredictionSource,
    RecurringPattern,
    RequestContext,
    TransactionClassification,
)
from core.recurring_pattern_detector import RecurringPatternDetector
from core.rule_store import LearnedRuleStore
from core.store import RelationalStore, SQLiteStore

logger = logging.getLogger(__name__)

SUGGESTION_COLUMNS = [
    "suggested_category_id",
    "suggested_subcategory_id",
    "suggestion_confidence",
    "suggestion_source",
]


class CategorizationPipeline:
    """
    End-to-end categorization and recurring-expense pipeline.

    Orchestrates suggestion → detection without exposing internal objects
    to callers.
    """

    def __init__(
        self,
        store: Optional[RelationalStore] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store or SQLiteStore()
        self.cache = cache if cache is not None else TTLCache()
        self.clock = clock

        self.dictionary = DescriptorDictionary()
        self.rule_store = LearnedRuleStore(self.store, self.cache, clock=clock)
        self.engine = CategorizationEngine(self.rule_store, self.dictionary, self.cache)
        self.history = HistorySuggester(self.store, self.dictionary, self.cache, clock=clock)
        self.feedback = FeedbackPipeline(self.rule_store, self.cache)
        self.detector = RecurringPatternDetector(self.store, self.cache, clock=clock)

        self._last_sources: pd.Series = pd.Series(dtype=object)

        logger.info(
            f"Pipeline initialized. Dictionary entries: {len(self.dictionary)}. "
            f"Conflict policy: {self.rule_store.conflict_policy}."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def load_transactions(self, transactions: pd.DataFrame, family_id: str, user_id: Optional[str] = None) -> int:
        """
        Seeds the store's transactions table from a DataFrame.

        Args:
            transactions: DataFrame with at least description, amount, date.
                Optional: id, category_id, subcategory_id, classification,
                type, created_at.

        Returns:
            Number of rows inserted.
        """
        rows = self._prepare_transactions(transactions, family_id, user_id)
        count = self.store.bulk_insert("transactions", rows)
        if self.cache is not None:
            self.cache.invalidate([
                ("category-history", family_id),
                ("recurring-patterns", family_id),
                ("missing-recurring", family_id),
            ])
        logger.info(f"Loaded {count:,} transactions for family {family_id}.")
        return count

    def run(self, transactions: pd.DataFrame, context: Optional[RequestContext] = None) -> pd.DataFrame:
        """
        Suggests a category for every transaction.

        Args:
            transactions: DataFrame with a description column.
            context: Caller identity; anonymous callers get dictionary and
                history suggestions only.

        Returns:
            Copy of the input with the suggestion columns appended.
        """
        if "description" not in transactions.columns:
            raise ValueError("Missing required columns: ['description']")

        context = context or RequestContext()
        logger.info(f"Pipeline starting. Input: {len(transactions):,} transactions.")

        # --- Stage 1: Learned cascade, then history ---
        suggestions = [self.suggest(d, context) for d in transactions["description"].fillna("")]
        logger.info("Stage 1 complete. Suggestions computed.")

        # --- Stage 2: Serialize to DataFrame ---
        output_df = self._serialize_suggestions(transactions, suggestions)
        self._last_sources = output_df["suggestion_source"]
        logger.info(f"Pipeline complete. Categorized: {int((output_df['suggestion_source'] != 'fallback').sum()):,}.")

        return output_df

    def suggest(self, description: str, context: Optional[RequestContext] = None) -> CategorizationSuggestion:
        """
        Learned rules, then the family's own history, then the dictionary.

        A learned rule always wins. Anything else the engine returns (a
        dictionary hit or the fallback) gives way to a history match.
        """
        context = context or RequestContext()
        suggestion = self.engine.suggest(description, context)
        if suggestion.source != PredictionSource.LEARNED and context.family_id:
            history_suggestion = self.history.suggest(description, context.family_id)
            if history_suggestion.source == PredictionSource.HISTORY:
                return history_suggestion
        return suggestion

    def detect_recurring(self, family_id: str, as_of: Optional[date] = None) -> List[RecurringPattern]:
        return self.detector.detect_patterns(family_id, as_of)

    def find_missing(
        self, family_id: str, month: int, year: int, as_of: Optional[date] = None
    ) -> List[MissingRecurringExpense]:
        return self.detector.find_missing(family_id, month, year, as_of)

    def source_summary(self) -> Dict[str, int]:
        """Suggestion counts per source for the last run()."""
        counts = self._last_sources.value_counts()
        return {source.value: int(counts.get(source.value, 0)) for source in PredictionSource}

    # -------------------------------------------------------------------------
    # INTERNAL: INPUT PREPARATION
    # -------------------------------------------------------------------------

    def _prepare_transactions(
        self, transactions: pd.DataFrame, family_id: str, user_id: Optional[str]
    ) -> List[dict]:
        """
        Validates input and converts it to store rows. Dates become
        datetime.date, created_at becomes datetime.
        """
        required_cols = ["description", "amount", "date"]
        missing = [c for c in required_cols if c not in transactions.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        df = transactions.copy()
        df["date"] = pd.to_datetime(df["date"]).dt.date

        if "created_at" in df.columns:
            df["created_at"] = pd.to_datetime(df["created_at"])
        else:
            df["created_at"] = pd.to_datetime(df["date"])

        if "type" not in df.columns:
            df["type"] = TransactionClassification.EXPENSE.value
        df["type"] = df["type"].fillna(TransactionClassification.EXPENSE.value)

        keep = [
            "id", "description", "category_id", "subcategory_id",
            "classification", "type", "amount", "date", "created_at",
        ]
        df = df[[c for c in keep if c in df.columns]]
        df = df.astype(object).where(df.notna(), None)

        rows = []
        for record in df.to_dict("records"):
            if isinstance(record["created_at"], pd.Timestamp):
                record["created_at"] = record["created_at"].to_pydatetime()
            record["amount"] = float(record["amount"]) if record["amount"] is not None else 0.0
            record["family_id"] = family_id
            record["user_id"] = user_id
            rows.append(record)
        return rows

    # -------------------------------------------------------------------------
    # INTERNAL: OUTPUT SERIALIZATION
    # -------------------------------------------------------------------------

    def _serialize_suggestions(
        self, transactions: pd.DataFrame, suggestions: List[CategorizationSuggestion]
    ) -> pd.DataFrame:
        df = transactions.copy()
        if not suggestions:
            for column in SUGGESTION_COLUMNS:
                df[column] = pd.Series(dtype=object)
            return df

        df["suggested_category_id"] = [s.category_id for s in suggestions]
        df["suggested_subcategory_id"] = [s.subcategory_id for s in suggestions]
        df["suggestion_confidence"] = [s.confidence for s in suggestions]
        df["suggestion_source"] = [s.source.value for s in suggestions]
        return df


def patterns_to_frame(patterns: List[RecurringPattern]) -> pd.DataFrame:
    """Flat DataFrame of detected patterns, one row each."""
    columns = [
        "category_id", "subcategory_id", "pattern_type", "average_amount",
        "occurrence_count", "recent_occurrence_count", "last_occurrence_date",
        "amount_consistency", "confidence",
    ]
    rows = [{c: getattr(p, c) for c in columns} for p in patterns]
    return pd.DataFrame(rows, columns=columns)


def missing_to_frame(missing: List[MissingRecurringExpense]) -> pd.DataFrame:
    columns = [
        "category_id", "subcategory_id", "pattern_type", "average_amount",
        "last_occurrence", "month_ref", "confirmation_status", "confidence",
    ]
    rows = [{c: getattr(m, c) for c in columns} for m in missing]
    return pd.DataFrame(rows, columns=columns)
