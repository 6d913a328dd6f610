"""
rule_store.py
--------------
Learned merchant rules: scoped lookup, creation, reinforcement, conflict
tracking and archival.

A rule maps one fingerprint ("F:IFOOD" or "W:padaria_central") to a
category at one scope:

    - user:   only the user who taught it sees it
    - family: everyone in the family sees it
    - global: everyone sees it

Lookup priority (first non-empty tier wins):
    user/strong > user/weak > family/strong > family/weak > global/strong > global/weak
Ties inside a tier: highest examples_count, then most recent last_used_at.

Writes go through a single atomic upsert keyed on (scope, owner, fingerprint)
so concurrent corrections for the same key converge on one active rule.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

import pandas as pd

from config.config_loader import get_cache_config, get_learning_config
from core.cache import TTLCache
from core.models import (
    DescriptorFingerprint,
    FeedbackAction,
    FeedbackRequest,
    FeedbackResult,
    FingerprintType,
    LearnedRule,
    LearningScope,
    RequestContext,
)
from core.store import DuplicateKeyError, RelationalStore

logger = logging.getLogger(__name__)

CONFLICT_POLICIES = ("keep_and_flag", "overwrite")


class LearnedRuleStore:
    """
    Application-layer access to learned_merchant_rules.

    Usage:
        rules = LearnedRuleStore(store)
        rule = rules.lookup(user_id, family_id, "F:IFOOD", "W:ifood_restaurante")
    """

    TABLE = "learned_merchant_rules"
    FEEDBACK_TABLE = "categorization_feedback"

    def __init__(
        self,
        store: RelationalStore,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.cache = cache
        self.clock = clock
        self.config = get_learning_config()
        self.cache_ttl = get_cache_config()["learned_rules_ttl_seconds"]

        self.conflict_policy = self.config["conflict_policy"]
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(
                f"Unknown conflict_policy '{self.conflict_policy}'. "
                f"Available: {list(CONFLICT_POLICIES)}"
            )

        self.scope_rank = {
            LearningScope(s).value: i for i, s in enumerate(self.config["scope_priority"])
        }
        self.fingerprint_rank = {
            FingerprintType(t).value: i for i, t in enumerate(self.config["fingerprint_priority"])
        }

    # -------------------------------------------------------------------------
    # CONFIDENCE
    # -------------------------------------------------------------------------

    def compute_confidence(self, examples_count: int, conflict_count: int) -> float:
        """
        Business confidence stored on the rule:

            clamp(seed + step * (examples - 1) - penalty * conflicts, floor, cap)
        """
        c = self.config
        raw = (
            c["seed_confidence"]
            + c["reinforcement_step"] * max(examples_count - 1, 0)
            - c["conflict_penalty"] * max(conflict_count, 0)
        )
        return round(min(max(raw, c["min_confidence"]), c["max_confidence"]), 4)

    # -------------------------------------------------------------------------
    # LOOKUP
    # -------------------------------------------------------------------------

    def lookup(
        self,
        user_id: Optional[str],
        family_id: Optional[str],
        strong: Optional[str],
        weak: Optional[str],
    ) -> Optional[LearnedRule]:
        """
        Best active rule for the fingerprints, honoring scope priority.

        Raises:
            StoreError: If the backing store is unavailable.
        """
        fingerprints = [f for f in (strong, weak) if f]
        if not fingerprints:
            return None

        if self.cache is None:
            return self._lookup_uncached(user_id, family_id, fingerprints)

        key = ("learned-rules", family_id, user_id, strong, weak)
        return self.cache.get_or_compute(
            key,
            lambda: self._lookup_uncached(user_id, family_id, fingerprints),
            ttl=self.cache_ttl,
        )

    def _lookup_uncached(self, user_id, family_id, fingerprints) -> Optional[LearnedRule]:
        df = self.store.select(
            self.TABLE,
            where={"is_archived": False, "fingerprint": fingerprints},
        )
        df = self._visible(df, user_id, family_id)
        if df.empty:
            return None

        df = df.assign(
            _scope_rank=df["scope_type"].map(self.scope_rank),
            _fp_rank=df["fingerprint_type"].map(self.fingerprint_rank),
            _last_used=pd.to_datetime(df["last_used_at"]),
        )
        df = df.sort_values(
            ["_scope_rank", "_fp_rank", "examples_count", "_last_used"],
            ascending=[True, True, False, False],
            na_position="last",
            kind="mergesort",
        )
        best = df.drop(columns=["_scope_rank", "_fp_rank", "_last_used"]).iloc[0].to_dict()
        return LearnedRule.from_record(best)

    @staticmethod
    def _visible(df: pd.DataFrame, user_id: Optional[str], family_id: Optional[str]) -> pd.DataFrame:
        """Rows the caller may see: own user rules, own family rules, global rules."""
        if df.empty:
            return df
        mask = df["scope_type"] == LearningScope.GLOBAL.value
        if user_id:
            mask |= (df["scope_type"] == LearningScope.USER.value) & (df["user_id"] == user_id)
        if family_id:
            mask |= (df["scope_type"] == LearningScope.FAMILY.value) & (df["family_id"] == family_id)
        return df[mask]

    def list_rules(self, context: RequestContext, include_archived: bool = False) -> List[LearnedRule]:
        """Rules visible to the caller, most recently used first."""
        where = None if include_archived else {"is_archived": False}
        df = self._visible(self.store.select(self.TABLE, where=where), context.user_id, context.family_id)
        if df.empty:
            return []
        df = df.assign(_last_used=pd.to_datetime(df["last_used_at"]))
        df = df.sort_values("_last_used", ascending=False, na_position="last").drop(columns="_last_used")
        return [LearnedRule.from_record(r) for r in df.to_dict("records")]

    # -------------------------------------------------------------------------
    # FEEDBACK
    # -------------------------------------------------------------------------

    def record_feedback(
        self,
        context: RequestContext,
        request: FeedbackRequest,
        fingerprints: DescriptorFingerprint,
    ) -> FeedbackResult:
        """
        Records a correction and, when asked, learns from it.

        Returns:
            FeedbackResult. Conflicts are reported in the result, never raised.

        Raises:
            StoreError: If the backing store is unavailable.
        """
        if not context.is_authenticated:
            return FeedbackResult(success=False, message="User not authenticated")

        owner = self._owner_columns(request.apply_scope, context)
        if owner is None:
            return FeedbackResult(
                success=False,
                message=f"Scope '{request.apply_scope.value}' requires a family",
            )

        self._record_history(context, request, fingerprints)

        if not request.apply_to_future:
            return FeedbackResult(success=True, learned=False, message="Feedback recorded for history only")

        fingerprint, fingerprint_type = fingerprints.preferred()
        if not fingerprint or not fingerprint.strip():
            return FeedbackResult(
                success=True,
                learned=False,
                message="Descriptor has no usable fingerprint; recorded for history only",
            )

        return self._apply_rule(request, fingerprints, fingerprint, fingerprint_type, owner)

    def _owner_columns(self, scope: LearningScope, context: RequestContext) -> Optional[dict]:
        if scope == LearningScope.USER:
            return {"user_id": context.user_id, "family_id": None}
        if scope == LearningScope.FAMILY:
            if not context.family_id:
                return None
            return {"user_id": None, "family_id": context.family_id}
        return {"user_id": None, "family_id": None}

    def _record_history(self, context, request: FeedbackRequest, fingerprints: DescriptorFingerprint) -> None:
        self.store.insert(self.FEEDBACK_TABLE, {
            "transaction_id": request.transaction_id,
            "user_id": context.user_id,
            "family_id": context.family_id,
            "raw_descriptor": request.raw_descriptor,
            "normalized_descriptor": fingerprints.normalized_descriptor,
            "fingerprint_strong": fingerprints.strong,
            "fingerprint_weak": fingerprints.weak,
            "predicted_category_id": request.predicted_category_id,
            "predicted_subcategory_id": request.predicted_subcategory_id,
            "predicted_source": request.predicted_source.value if request.predicted_source else None,
            "predicted_confidence": request.predicted_confidence,
            "user_category_id": request.user_category_id,
            "user_subcategory_id": request.user_subcategory_id,
            "apply_scope": request.apply_scope.value,
            "apply_to_future": request.apply_to_future,
            "was_prediction_correct": request.was_prediction_correct,
            "created_at": self.clock(),
        })

    def _apply_rule(
        self,
        request: FeedbackRequest,
        fingerprints: DescriptorFingerprint,
        fingerprint: str,
        fingerprint_type: FingerprintType,
        owner: dict,
    ) -> FeedbackResult:
        now = self.clock()
        key = {"scope_type": request.apply_scope.value, **owner, "fingerprint": fingerprint}
        target = (request.user_category_id, request.user_subcategory_id or None)

        new_row = {
            **key,
            "fingerprint_type": fingerprint_type.value,
            "category_id": request.user_category_id,
            "subcategory_id": request.user_subcategory_id or None,
            "merchant_canon": fingerprints.merchant_canon,
            "confidence_base": self.compute_confidence(1, 0),
            "examples_count": 1,
            "conflict_count": 0,
            "is_archived": False,
            "last_used_at": now,
            "created_at": now,
            "updated_at": now,
        }
        outcome: dict = {}

        def merge(existing: dict) -> dict:
            examples = int(existing["examples_count"])
            conflicts = int(existing["conflict_count"])

            if (existing["category_id"], existing["subcategory_id"] or None) == target:
                outcome.update(action=FeedbackAction.REINFORCED, learned=True, conflict=False)
                return {
                    "examples_count": examples + 1,
                    "confidence_base": self.compute_confidence(examples + 1, conflicts),
                    "last_used_at": now,
                    "updated_at": now,
                }

            outcome.update(conflict=True, existing_category_id=existing["category_id"])
            if self.conflict_policy == "overwrite":
                outcome.update(action=FeedbackAction.OVERWRITTEN, learned=True)
                return {
                    "category_id": request.user_category_id,
                    "subcategory_id": request.user_subcategory_id or None,
                    "examples_count": 1,
                    "conflict_count": conflicts + 1,
                    "confidence_base": self.compute_confidence(1, conflicts + 1),
                    "last_used_at": now,
                    "updated_at": now,
                }
            outcome.update(action=None, learned=False)
            return {
                "conflict_count": conflicts + 1,
                "confidence_base": self.compute_confidence(examples, conflicts + 1),
                "updated_at": now,
            }

        try:
            stored, inserted = self.store.upsert(self.TABLE, new_row, on_conflict=list(key), update=merge)
        except DuplicateKeyError:
            # Another session inserted the same key first: take the update path.
            logger.info(f"Duplicate key on {fingerprint}; retrying as reinforcement.")
            outcome.clear()
            stored, inserted = self.store.upsert(self.TABLE, new_row, on_conflict=list(key), update=merge)

        if inserted:
            outcome = {"action": FeedbackAction.CREATED, "learned": True, "conflict": False}

        action = outcome.get("action")
        logger.info(
            f"Feedback on {fingerprint} ({request.apply_scope.value}): "
            f"{action.value if action else 'kept'}"
            f"{' with conflict' if outcome.get('conflict') else ''}."
        )

        message = None
        if outcome.get("conflict"):
            message = (
                f"Rule for {fingerprint} already maps to '{outcome['existing_category_id']}'"
                + ("; replaced." if action == FeedbackAction.OVERWRITTEN else "; kept and flagged.")
            )

        return FeedbackResult(
            success=True,
            learned=outcome["learned"],
            action=action,
            conflict=outcome["conflict"],
            existing_category_id=outcome.get("existing_category_id"),
            rule_id=stored["id"],
            message=message,
        )

    # -------------------------------------------------------------------------
    # MANAGEMENT
    # -------------------------------------------------------------------------

    def get_rule(self, context: RequestContext, rule_id: str) -> Optional[LearnedRule]:
        """The rule with this id, if the caller may see it."""
        df = self._visible(
            self.store.select(self.TABLE, where={"id": rule_id}),
            context.user_id,
            context.family_id,
        )
        if df.empty:
            return None
        return LearnedRule.from_record(df.iloc[0].to_dict())

    def archive_rule(self, context: RequestContext, rule_id: str) -> Optional[LearnedRule]:
        """Soft-deletes a rule. Returns the archived rule, or None if not found."""
        rule = self.get_rule(context, rule_id)
        if rule is None:
            return None
        self.store.update(self.TABLE, {"id": rule_id}, {"is_archived": True, "updated_at": self.clock()})
        return self.get_rule(context, rule_id)

    def update_rule(
        self,
        context: RequestContext,
        rule_id: str,
        category_id: str,
        subcategory_id: Optional[str] = None,
    ) -> Optional[LearnedRule]:
        """
        Explicitly sets a rule's category. This is how a flagged conflict is
        resolved, so the conflict counter is cleared.
        """
        rule = self.get_rule(context, rule_id)
        if rule is None or rule.is_archived:
            return None
        self.store.update(self.TABLE, {"id": rule_id}, {
            "category_id": category_id,
            "subcategory_id": subcategory_id or None,
            "conflict_count": 0,
            "confidence_base": self.compute_confidence(rule.examples_count, 0),
            "updated_at": self.clock(),
        })
        return self.get_rule(context, rule_id)
