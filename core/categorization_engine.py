"""
categorization_engine.py
-------------------------
Learned categorization cascade.

Cascades through tiers until one produces a suggestion:
1. Learned rules (user -> family -> global), confidence from the rule
2. Static descriptor dictionary, fixed per-entry confidence
3. Heuristics (extension point, currently falls through)
4. Fallback: empty category, zero confidence

A tier whose store is unavailable, or whose stored rows cannot be read,
is skipped, not fatal: the cascade logs and moves on to the next tier, so
the dictionary always answers.
"""

import logging
from typing import Optional

from config.config_loader import get_cache_config, get_learning_config
from core.cache import TTLCache
from core.descriptor_dictionary import DescriptorDictionary
from core.models import (
    CategorizationSuggestion,
    DescriptorFingerprint,
    PredictionSource,
    RequestContext,
)
from core.normalizer import generate_fingerprints, meaningful_length
from core.rule_store import LearnedRuleStore
from core.store import StoreError

logger = logging.getLogger(__name__)


# =============================================================================
# TIERS
# =============================================================================

class CascadeTier:
    """One step of the cascade. Returns None to fall through."""

    source: PredictionSource

    def lookup(
        self, fingerprints: DescriptorFingerprint, raw_descriptor: str, context: RequestContext
    ) -> Optional[CategorizationSuggestion]:
        raise NotImplementedError


class LearnedRuleTier(CascadeTier):
    source = PredictionSource.LEARNED

    def __init__(self, rule_store: LearnedRuleStore):
        self.rule_store = rule_store

    def lookup(self, fingerprints, raw_descriptor, context):
        if not context.is_authenticated or fingerprints.is_empty:
            return None

        rule = self.rule_store.lookup(
            context.user_id, context.family_id, fingerprints.strong, fingerprints.weak
        )
        if rule is None:
            return None

        return CategorizationSuggestion(
            category_id=rule.category_id,
            subcategory_id=rule.subcategory_id,
            confidence=rule.confidence_base,
            source=self.source,
            match_count=rule.examples_count,
            fingerprint_type=rule.fingerprint_type,
            scope=rule.scope_type,
            has_conflict=rule.conflict_count > 0,
        )


class DescriptorDictionaryTier(CascadeTier):
    source = PredictionSource.REGEX

    def __init__(self, dictionary: DescriptorDictionary):
        self.dictionary = dictionary

    def lookup(self, fingerprints, raw_descriptor, context):
        match = self.dictionary.lookup(raw_descriptor)
        if match is None:
            return None
        return CategorizationSuggestion(
            category_id=match.category_id,
            subcategory_id=match.subcategory_id,
            classification=match.classification,
            confidence=match.confidence,
            source=self.source,
        )


class HeuristicTier(CascadeTier):
    """No heuristics are defined yet; always falls through."""

    source = PredictionSource.HEURISTIC

    def lookup(self, fingerprints, raw_descriptor, context):
        return None


# =============================================================================
# ENGINE
# =============================================================================

class CategorizationEngine:
    """
    Suggests a category for a raw bank descriptor.

    Usage:
        engine = CategorizationEngine(LearnedRuleStore(store))
        suggestion = engine.suggest("IFOOD *RESTAURANTE", RequestContext("u1", "f1"))
    """

    def __init__(
        self,
        rule_store: Optional[LearnedRuleStore] = None,
        dictionary: Optional[DescriptorDictionary] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.min_length = get_learning_config()["min_descriptor_length"]
        self.cache = cache
        self.cache_ttl = get_cache_config()["suggestion_ttl_seconds"]

        self.tiers: list[CascadeTier] = []
        if rule_store is not None:
            self.tiers.append(LearnedRuleTier(rule_store))
        if dictionary is None:
            dictionary = DescriptorDictionary()
        self.tiers.append(DescriptorDictionaryTier(dictionary))
        self.tiers.append(HeuristicTier())

        self.stats = {source.value: 0 for source in PredictionSource}
        self.stats["errors"] = 0
        self.stats["total"] = 0

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def suggest(self, raw_descriptor: str, context: Optional[RequestContext] = None) -> CategorizationSuggestion:
        """
        Runs the cascade for one descriptor.

        Returns:
            CategorizationSuggestion. Never raises for store failures or
            unusable input; those produce the fallback suggestion.
        """
        context = context or RequestContext()
        self.stats["total"] += 1

        if not raw_descriptor or meaningful_length(raw_descriptor) < self.min_length:
            return self._count(CategorizationSuggestion.fallback())

        fingerprints = generate_fingerprints(raw_descriptor)
        cache_key = (
            "suggestion", context.family_id, context.user_id,
            fingerprints.normalized_descriptor, fingerprints.strong, fingerprints.weak,
        )
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return self._count(cached)

        suggestion = self._run_cascade(fingerprints, raw_descriptor, context)

        if self.cache is not None:
            self.cache.set(cache_key, suggestion, ttl=self.cache_ttl)
        return self._count(suggestion)

    def reset_statistics(self) -> None:
        for key in self.stats:
            self.stats[key] = 0

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _run_cascade(self, fingerprints, raw_descriptor, context) -> CategorizationSuggestion:
        for tier in self.tiers:
            try:
                suggestion = tier.lookup(fingerprints, raw_descriptor, context)
            except StoreError as exc:
                self.stats["errors"] += 1
                logger.warning(f"{tier.source.value} tier unavailable, skipping: {exc}")
                continue
            except ValueError as exc:
                # Malformed stored row (unknown scope, unknown column)
                self.stats["errors"] += 1
                logger.warning(f"{tier.source.value} tier returned an unreadable record, skipping: {exc}")
                continue

            if suggestion is not None and not suggestion.is_fallback:
                return suggestion

        return CategorizationSuggestion.fallback()

    def _count(self, suggestion: CategorizationSuggestion) -> CategorizationSuggestion:
        self.stats[suggestion.source.value] += 1
        return suggestion
