"""
recurring_pattern_detector.py
------------------------------
Recurring expense mining over a family's transaction history.

Answers two questions:

    "Which (category, subcategory) pairs produce an expense every month?"
    "Which of those have nothing recorded yet for a given month?"

Design decisions:
    - Grouping key is (category_id, subcategory_id). Merchants change
      descriptors over time; the category a family files them under does not.
    - Calendar-month binning, not gap analysis: household bills are due once
      per month regardless of the exact day.
    - A pattern needs support both overall (3 of the last 12 months) and
      recently (3 of the last 6), so cancelled subscriptions age out.
    - Confirmations are the user's verdict per (pattern, month). Only
      "ignored" hides a missing expense; the other verdicts ride along as
      its status.
    - All thresholds and weights are read from config.yaml.
"""

import logging
import re
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from config.config_loader import get_cache_config, get_recurring_detection_config
from core.cache import TTLCache
from core.models import (
    ConfirmationResult,
    ConfirmationType,
    MissingRecurringExpense,
    RecurringConfirmation,
    RecurringPattern,
    RequestContext,
    TransactionClassification,
)
from core.store import RelationalStore, StoreError

logger = logging.getLogger(__name__)

MONTH_REF_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

# Stand-in for a missing subcategory inside groupby keys
_NO_SUBCATEGORY = ""


class RecurringPatternDetector:
    """
    Detects monthly recurring expenses and the months they are missing from.

    Usage:
        detector = RecurringPatternDetector(store)
        patterns = detector.detect_patterns("fam-1")
        missing = detector.find_missing("fam-1", month=3, year=2025)
        detector.confirm(context, "streaming", None, "2025-03", "ignored")
    """

    TRANSACTIONS_TABLE = "transactions"
    CONFIRMATIONS_TABLE = "recurring_expense_confirmations"

    def __init__(
        self,
        store: RelationalStore,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.cache = cache
        self.clock = clock
        self.config = get_recurring_detection_config()
        cache_config = get_cache_config()
        self.patterns_ttl = cache_config["recurring_patterns_ttl_seconds"]
        self.missing_ttl = cache_config["missing_recurring_ttl_seconds"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect_patterns(self, family_id: str, as_of: Optional[date] = None) -> List[RecurringPattern]:
        """
        Mines recurring expense patterns for a family.

        Args:
            family_id: Family whose expenses are scanned.
            as_of: Any day of the last month in the window. Defaults to today.

        Returns:
            RecurringPattern list sorted by confidence, highest first. Empty
            when the store is unavailable.
        """
        as_of = self._as_date(as_of)
        if self.cache is None:
            return self._detect(family_id, as_of)

        cache_key = ("recurring-patterns", family_id, as_of.strftime("%Y-%m"))
        return self.cache.get_or_compute(
            cache_key, lambda: self._detect(family_id, as_of), ttl=self.patterns_ttl
        )

    def find_missing(
        self, family_id: str, month: int, year: int, as_of: Optional[date] = None
    ) -> List[MissingRecurringExpense]:
        """
        Recurring patterns with no expense recorded in the target month.

        Args:
            month: 1-12.
            year: Four-digit year.
            as_of: Anchors pattern detection; defaults to today.
        """
        if not 1 <= int(month) <= 12:
            raise ValueError(f"month must be between 1 and 12, got {month}")
        month_ref = f"{int(year):04d}-{int(month):02d}"
        as_of = self._as_date(as_of)

        if self.cache is None:
            return self._find_missing(family_id, month_ref, as_of)

        cache_key = ("missing-recurring", family_id, month_ref, as_of.strftime("%Y-%m"))
        return self.cache.get_or_compute(
            cache_key, lambda: self._find_missing(family_id, month_ref, as_of), ttl=self.missing_ttl
        )

    def confirm(
        self,
        context: RequestContext,
        category_id: str,
        subcategory_id: Optional[str],
        month_ref: str,
        confirmation_type,
    ) -> ConfirmationResult:
        """
        Records the user's verdict for a pattern in a month. Last write wins.

        Raises:
            ValueError: malformed month_ref or unknown confirmation type.
        """
        if not MONTH_REF_PATTERN.match(month_ref or ""):
            raise ValueError(f"month_ref must be YYYY-MM, got '{month_ref}'")
        confirmation_type = ConfirmationType(confirmation_type)

        if not context.is_authenticated:
            return ConfirmationResult(success=False, message="User not authenticated")
        if not context.family_id:
            return ConfirmationResult(success=False, message="No family selected")

        now = self.clock()
        row = {
            "family_id": context.family_id,
            "category_id": category_id,
            "subcategory_id": subcategory_id,
            "month_ref": month_ref,
            "confirmation_type": confirmation_type.value,
            "confirmed_by_user_id": context.user_id,
            "created_at": now,
            "updated_at": now,
        }
        try:
            stored, inserted = self.store.upsert(
                self.CONFIRMATIONS_TABLE,
                row,
                on_conflict=("family_id", "category_id", "subcategory_id", "month_ref"),
                update={
                    "confirmation_type": confirmation_type.value,
                    "confirmed_by_user_id": context.user_id,
                    "updated_at": now,
                },
            )
        except StoreError as exc:
            logger.error(f"Could not confirm {category_id}/{subcategory_id} for {month_ref}: {exc}")
            return ConfirmationResult(success=False, message=f"Store unavailable: {exc}")

        if self.cache is not None:
            self.cache.invalidate([
                ("recurring-patterns", context.family_id),
                ("missing-recurring", context.family_id),
            ])

        logger.info(
            f"{'Recorded' if inserted else 'Updated'} '{confirmation_type.value}' for "
            f"{category_id}/{subcategory_id} in {month_ref}."
        )
        return ConfirmationResult(success=True, confirmation=RecurringConfirmation.from_record(stored))

    def get_confirmations(self, family_id: str, month_ref: str) -> List[RecurringConfirmation]:
        df = self.store.select(
            self.CONFIRMATIONS_TABLE, where={"family_id": family_id, "month_ref": month_ref}
        )
        return [RecurringConfirmation.from_record(r) for r in df.to_dict("records")]

    # -------------------------------------------------------------------------
    # INTERNAL: PATTERN MINING
    # -------------------------------------------------------------------------

    def _detect(self, family_id: str, as_of: date) -> List[RecurringPattern]:
        window = self._window_months(as_of)
        try:
            df = self._load_expenses(family_id, window[0].start_time.date(), window[-1].end_time.date())
        except StoreError as exc:
            logger.warning(f"Recurring detection unavailable for family {family_id}: {exc}")
            return []

        if df.empty:
            return []

        recent = set(window[-self.config["recent_window_months"]:])
        monthly = df.groupby(["category_id", "subcategory_id", "month"])["amount"].sum()

        patterns: List[RecurringPattern] = []
        for (category_id, subcategory_id), totals in monthly.groupby(level=[0, 1]):
            months = totals.index.get_level_values("month")
            pattern = self._build_pattern(category_id, subcategory_id, months, totals.values, recent)
            if pattern is not None:
                patterns.append(pattern)

        patterns.sort(key=lambda p: p.confidence, reverse=True)
        logger.info(f"Detected {len(patterns)} recurring patterns for family {family_id}.")
        return patterns

    def _build_pattern(
        self,
        category_id: str,
        subcategory_id: str,
        months: pd.Index,
        totals: np.ndarray,
        recent: set,
    ) -> Optional[RecurringPattern]:
        """None when the group lacks support or confidence."""
        c = self.config
        occurrence_count = len(months)
        recent_count = sum(1 for m in months if m in recent)
        if occurrence_count < c["min_recurring_months"] or recent_count < c["min_recent_months"]:
            return None

        mean = float(np.mean(totals))
        consistency = self._amount_consistency(totals, mean)
        occurrence_rate = occurrence_count / c["window_months"]
        confidence = min(
            c["max_confidence"],
            occurrence_rate * c["occurrence_weight"] + consistency * c["consistency_weight"],
        )
        if confidence < c["min_confidence"]:
            return None

        month_refs = sorted(str(m) for m in months)
        return RecurringPattern(
            category_id=category_id,
            subcategory_id=subcategory_id or None,
            pattern_type=c["pattern_type"],
            average_amount=round(mean, 2),
            occurrence_count=occurrence_count,
            last_occurrence_date=month_refs[-1],
            confidence=round(confidence, 4),
            recent_occurrence_count=recent_count,
            amount_consistency=round(consistency, 4),
            months=month_refs,
        )

    @staticmethod
    def _amount_consistency(totals: np.ndarray, mean: float) -> float:
        """mean / max deviation, bounded to 1. Identical months score 1."""
        max_deviation = float(np.max(np.abs(totals - mean)))
        if max_deviation == 0 or mean <= 0:
            return 1.0 if max_deviation == 0 else 0.0
        return min(1.0, mean / max_deviation)

    # -------------------------------------------------------------------------
    # INTERNAL: MISSING EXPENSES
    # -------------------------------------------------------------------------

    def _find_missing(self, family_id: str, month_ref: str, as_of: date) -> List[MissingRecurringExpense]:
        patterns = self.detect_patterns(family_id, as_of)
        if not patterns:
            return []

        period = pd.Period(month_ref, freq="M")
        try:
            df = self._load_expenses(family_id, period.start_time.date(), period.end_time.date())
            confirmations = self.get_confirmations(family_id, month_ref)
        except StoreError as exc:
            logger.warning(f"Missing-expense check unavailable for family {family_id}: {exc}")
            return []

        present = set(zip(df["category_id"], df["subcategory_id"]))
        verdicts: Dict[Tuple[str, str], ConfirmationType] = {
            (c.category_id, c.subcategory_id or _NO_SUBCATEGORY): c.confirmation_type
            for c in confirmations
        }

        missing: List[MissingRecurringExpense] = []
        for pattern in patterns:
            key = (pattern.category_id, pattern.subcategory_id or _NO_SUBCATEGORY)
            if key in present:
                continue
            verdict = verdicts.get(key)
            if verdict == ConfirmationType.IGNORED:
                continue
            missing.append(MissingRecurringExpense(
                category_id=pattern.category_id,
                subcategory_id=pattern.subcategory_id,
                pattern_type=pattern.pattern_type,
                average_amount=pattern.average_amount,
                last_occurrence=pattern.last_occurrence_date,
                month_ref=month_ref,
                confirmation_status=verdict.value if verdict else "none",
                confidence=pattern.confidence,
            ))
        return missing

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _load_expenses(self, family_id: str, start: date, end: date) -> pd.DataFrame:
        """
        Categorised expenses between start and end (inclusive), with a
        calendar "month" period column and absolute amounts.
        """
        df = self.store.select(
            self.TRANSACTIONS_TABLE,
            where={"family_id": family_id, "type": TransactionClassification.EXPENSE.value},
            between={"date": (start, end)},
        )
        df = df[df["category_id"].notna() & (df["category_id"] != "")].copy()
        if df.empty:
            return df.assign(month=pd.Series(dtype="period[M]"))

        df["subcategory_id"] = df["subcategory_id"].fillna(_NO_SUBCATEGORY)
        df["amount"] = pd.to_numeric(df["amount"], errors="coerce").abs().fillna(0.0)
        df["month"] = pd.to_datetime(df["date"]).dt.to_period("M")
        return df

    def _window_months(self, as_of: date) -> List[pd.Period]:
        end = pd.Period(year=as_of.year, month=as_of.month, freq="M")
        size = self.config["window_months"]
        return [end - offset for offset in range(size - 1, -1, -1)]

    def _as_date(self, value: Optional[date]) -> date:
        if value is None:
            value = self.clock()
        if isinstance(value, datetime):
            return value.date()
        return value
