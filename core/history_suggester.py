"""
history_suggester.py
---------------------
History-based suggestions for contexts without learned rules.

Ranks purely by the family's own transaction history over a trailing
window: the most recent categorization of the same description key wins,
and confidence grows with how often that key was seen and shrinks with how
long ago it was last used:

    confidence = min(cap, base + per_match * count)
                 * max(recency_floor, 1 - days_since_last_use / window * recency_weight)

Falls back to the static descriptor dictionary, then to the empty
suggestion, exactly like the learned cascade.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pandas as pd

from config.config_loader import get_cache_config, get_history_suggestion_config, get_learning_config
from core.cache import TTLCache
from core.descriptor_dictionary import DescriptorDictionary
from core.models import CategorizationSuggestion, PredictionSource, TransactionClassification
from core.normalizer import description_key, meaningful_length
from core.store import RelationalStore, StoreError

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    category_id: str
    subcategory_id: Optional[str]
    classification: Optional[str]
    count: int
    last_used: datetime


class HistorySuggester:
    """
    Usage:
        suggester = HistorySuggester(store)
        suggestion = suggester.suggest("PADARIA CENTRAL 12/03", family_id="fam-1")
    """

    def __init__(
        self,
        store: RelationalStore,
        dictionary: Optional[DescriptorDictionary] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.dictionary = dictionary if dictionary is not None else DescriptorDictionary()
        self.cache = cache
        self.clock = clock
        self.config = get_history_suggestion_config()
        self.min_length = get_learning_config()["min_descriptor_length"]
        self.cache_ttl = get_cache_config()["category_history_ttl_seconds"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def suggest(
        self, description: str, family_id: Optional[str], now: Optional[datetime] = None
    ) -> CategorizationSuggestion:
        if not description or meaningful_length(description) < self.min_length:
            return CategorizationSuggestion.fallback()

        now = now or self.clock()
        key = description_key(description)

        if family_id and key:
            entry = self.history(family_id, now).get(key)
            if entry is not None:
                return CategorizationSuggestion(
                    category_id=entry.category_id,
                    subcategory_id=entry.subcategory_id,
                    classification=TransactionClassification(entry.classification) if entry.classification else None,
                    confidence=self.confidence(entry.count, entry.last_used, now),
                    source=PredictionSource.HISTORY,
                    match_count=entry.count,
                )

        match = self.dictionary.lookup(description)
        if match is not None:
            return CategorizationSuggestion(
                category_id=match.category_id,
                subcategory_id=match.subcategory_id,
                classification=match.classification,
                confidence=match.confidence,
                source=PredictionSource.REGEX,
            )

        return CategorizationSuggestion.fallback()

    def confidence(self, count: int, last_used: datetime, now: datetime) -> float:
        c = self.config
        base = min(c["max_confidence"], c["base_confidence"] + c["per_match_increment"] * count)
        days_since = max((now - last_used).days, 0)
        recency = max(c["recency_floor"], 1 - (days_since / c["window_days"]) * c["recency_weight"])
        return round(min(max(base * recency, 0.0), 1.0), 4)

    def history(self, family_id: str, now: Optional[datetime] = None) -> Dict[str, HistoryEntry]:
        """
        description_key -> latest categorization within the window.

        An unavailable store yields an empty history rather than an error.
        """
        now = now or self.clock()
        if self.cache is None:
            return self._load_history(family_id, now)

        return self.cache.get_or_compute(
            ("category-history", family_id),
            lambda: self._load_history(family_id, now),
            ttl=self.cache_ttl,
        )

    def recent_categories(
        self, family_id: str, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[str]:
        """Most used category ids over the recent window, for quick pickers."""
        now = now or self.clock()
        limit = limit or self.config["recent_categories_limit"]
        since = now - timedelta(days=self.config["recent_categories_days"])
        try:
            df = self.store.select(
                "transactions",
                where={"family_id": family_id},
                between={"created_at": (since, None)},
            )
        except StoreError as exc:
            logger.warning(f"Recent categories unavailable for family {family_id}: {exc}")
            return []

        df = df[df["category_id"].notna()]
        if df.empty:
            return []
        counts = df["category_id"].value_counts(sort=False)
        # Stable ordering: count descending, then first appearance
        ranked = counts.reset_index()
        ranked.columns = ["category_id", "n"]
        ranked = ranked.sort_values("n", ascending=False, kind="mergesort")
        return ranked["category_id"].head(limit).tolist()

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _load_history(self, family_id: str, now: datetime) -> Dict[str, HistoryEntry]:
        since = now - timedelta(days=self.config["window_days"])
        try:
            df = self.store.select(
                "transactions",
                where={"family_id": family_id},
                between={"created_at": (since, now)},
            )
        except StoreError as exc:
            logger.warning(f"Category history unavailable for family {family_id}: {exc}")
            return {}

        df = df[df["description"].notna() & df["category_id"].notna()]
        if df.empty:
            return {}

        df = df.assign(
            _key=df["description"].map(description_key),
            _created=pd.to_datetime(df["created_at"]),
        )
        df = df[df["_key"] != ""]

        history: Dict[str, HistoryEntry] = {}
        for key, group in df.groupby("_key", sort=False):
            latest = group.sort_values("_created", kind="mergesort").iloc[-1]
            history[key] = HistoryEntry(
                category_id=latest["category_id"],
                subcategory_id=latest["subcategory_id"] if pd.notna(latest["subcategory_id"]) else None,
                classification=latest["classification"] if pd.notna(latest["classification"]) else None,
                count=len(group),
                last_used=latest["_created"].to_pydatetime(),
            )
        return history
