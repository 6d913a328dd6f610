"""
feedback.py
------------
The learning loop: the only mutating entry point into learned rules.

Turns a raw descriptor into fingerprints, delegates to the LearnedRuleStore,
and, after every successful write, invalidates cached suggestions, rule
lookups and history aggregates for the affected scope so the next
suggestion reflects the correction.
"""

import logging
from typing import List, Optional

from core.cache import ANY, TTLCache
from core.models import (
    FeedbackRequest,
    FeedbackResult,
    LearnedRule,
    LearningScope,
    RequestContext,
)
from core.normalizer import generate_fingerprints
from core.rule_store import LearnedRuleStore
from core.store import StoreError

logger = logging.getLogger(__name__)


class FeedbackPipeline:
    """
    Records user corrections and keeps caches coherent.

    Usage:
        feedback = FeedbackPipeline(rule_store, cache)
        result = feedback.record_feedback(context, FeedbackRequest(
            raw_descriptor="IFOOD *RESTAURANTE",
            predicted_category_id="alimentacao",
            user_category_id="lazer",
            apply_scope="user",
        ))
    """

    def __init__(self, rule_store: LearnedRuleStore, cache: Optional[TTLCache] = None):
        self.rule_store = rule_store
        self.cache = cache

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def record_feedback(self, context: RequestContext, request: FeedbackRequest) -> FeedbackResult:
        """
        Records one correction.

        Returns:
            FeedbackResult. Store failures come back as success=False.
        """
        fingerprints = generate_fingerprints(request.raw_descriptor)
        try:
            result = self.rule_store.record_feedback(context, request, fingerprints)
        except StoreError as exc:
            logger.error(f"Could not record feedback for '{request.raw_descriptor}': {exc}")
            return FeedbackResult(success=False, message=f"Store unavailable: {exc}")

        if result.success:
            self._invalidate(context, request.apply_scope)
        return result

    def archive_rule(self, context: RequestContext, rule_id: str) -> FeedbackResult:
        """Discards a rule. It stays in the store, archived."""
        if not context.is_authenticated:
            return FeedbackResult(success=False, message="User not authenticated")
        try:
            rule = self.rule_store.archive_rule(context, rule_id)
        except StoreError as exc:
            logger.error(f"Could not archive rule {rule_id}: {exc}")
            return FeedbackResult(success=False, message=f"Store unavailable: {exc}")

        if rule is None:
            return FeedbackResult(success=False, message=f"Rule {rule_id} not found")
        self._invalidate(context, rule.scope_type)
        return FeedbackResult(success=True, rule_id=rule.id, message="Rule archived")

    def resolve_conflict(
        self,
        context: RequestContext,
        rule_id: str,
        category_id: str,
        subcategory_id: Optional[str] = None,
    ) -> FeedbackResult:
        """The user's explicit decision on a flagged rule: pin it to a category."""
        if not context.is_authenticated:
            return FeedbackResult(success=False, message="User not authenticated")
        try:
            rule = self.rule_store.update_rule(context, rule_id, category_id, subcategory_id)
        except StoreError as exc:
            logger.error(f"Could not update rule {rule_id}: {exc}")
            return FeedbackResult(success=False, message=f"Store unavailable: {exc}")

        if rule is None:
            return FeedbackResult(success=False, message=f"Rule {rule_id} not found")
        self._invalidate(context, rule.scope_type)
        return FeedbackResult(success=True, learned=True, rule_id=rule.id, message="Rule updated")

    def list_rules(self, context: RequestContext) -> List[LearnedRule]:
        if not context.is_authenticated:
            return []
        try:
            return self.rule_store.list_rules(context)
        except StoreError as exc:
            logger.error(f"Could not list rules: {exc}")
            return []

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _invalidate(self, context: RequestContext, scope: LearningScope) -> None:
        """Drops cached state for everyone the scope reaches."""
        if self.cache is None:
            return

        if scope == LearningScope.GLOBAL:
            prefixes = [("learned-rules",), ("suggestion",)]
        elif scope == LearningScope.FAMILY:
            prefixes = [("learned-rules", context.family_id), ("suggestion", context.family_id)]
        else:
            # A user rule follows the user into every family and into no family.
            prefixes = [
                ("learned-rules", ANY, context.user_id),
                ("suggestion", ANY, context.user_id),
            ]
        prefixes.append(("category-history", context.family_id))

        dropped = self.cache.invalidate(prefixes)
        logger.debug(f"Invalidated {dropped} cached entries for {scope.value} scope.")
