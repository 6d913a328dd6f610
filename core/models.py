"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- DescriptorFingerprint / DetectedEntities: Output of the normalizer. Derived,
  never persisted.
- LearnedRule: A persisted (scope, fingerprint) -> category rule.
- CategorizationSuggestion: Output of the categorization cascade.
- FeedbackRequest / FeedbackResult: Input and output of the learning loop.
- RecurringPattern / MissingRecurringExpense: Output of the recurring
  expense detector, plus the persisted RecurringConfirmation.

Records read back from the store are converted with `from_record`, which
rejects unknown keys and unknown enum values instead of passing them through.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import pandas as pd


# =============================================================================
# ENUMS
# =============================================================================

class LearningScope(str, Enum):
    USER = "user"
    FAMILY = "family"
    GLOBAL = "global"


class FingerprintType(str, Enum):
    STRONG = "strong"
    WEAK = "weak"


class PredictionSource(str, Enum):
    LEARNED = "learned"
    REGEX = "regex"
    HEURISTIC = "heuristic"
    HISTORY = "history"
    FALLBACK = "fallback"


class TransactionClassification(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


class FeedbackAction(str, Enum):
    CREATED = "created"
    REINFORCED = "reinforced"
    OVERWRITTEN = "overwritten"


class ConfirmationType(str, Enum):
    NO_PAYMENT = "no_payment"
    REGISTERED = "registered"
    IGNORED = "ignored"


# =============================================================================
# RECORD HELPERS
# =============================================================================

def _clean_value(value: Any) -> Any:
    """Maps pandas missing markers to None and Timestamps to datetime."""
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.to_pydatetime()
    if isinstance(value, float) and pd.isna(value):
        return None
    if value is pd.NaT:
        return None
    return value


def _check_keys(cls, record: dict, required: set[str]) -> dict:
    """Validates a store record against a dataclass's fields."""
    known = {f.name for f in fields(cls)}
    unknown = set(record) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} fields: {sorted(unknown)}")
    missing = required - set(record)
    if missing:
        raise ValueError(f"Missing {cls.__name__} fields: {sorted(missing)}")
    return {k: _clean_value(v) for k, v in record.items()}


# =============================================================================
# REQUEST CONTEXT
# =============================================================================

@dataclass(frozen=True)
class RequestContext:
    """Who is asking. Both ids are None for an anonymous caller."""

    user_id: Optional[str] = None
    family_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


# =============================================================================
# CATEGORIZATION
# =============================================================================

@dataclass(frozen=True)
class DetectedEntities:
    """
    Identifiers spotted in a raw descriptor. Informational only: the cascade
    does not categorize on them.
    """

    cnpj: Optional[str] = None
    cpf: Optional[str] = None
    email: Optional[str] = None
    domain: Optional[str] = None
    platform: Optional[str] = None
    is_intermediary: bool = False
    is_pix: bool = False
    pix_key: Optional[str] = None
    is_bank_fee: bool = False


@dataclass(frozen=True)
class DescriptorFingerprint:
    """
    Normalized forms of a raw bank descriptor.

    strong is a curated merchant identity ("F:NETFLIX"), weak is the coarser
    description-key signature ("W:netflix_com"). Either may be None when the
    descriptor carries nothing usable.
    """

    normalized_descriptor: str
    description_key: str
    strong: Optional[str] = None
    weak: Optional[str] = None
    merchant_canon: Optional[str] = None
    entities: DetectedEntities = field(default_factory=DetectedEntities)

    @property
    def is_empty(self) -> bool:
        return not self.strong and not self.weak

    def preferred(self) -> tuple[Optional[str], Optional[FingerprintType]]:
        """The fingerprint feedback is learned against: strong, else weak."""
        if self.strong:
            return self.strong, FingerprintType.STRONG
        if self.weak:
            return self.weak, FingerprintType.WEAK
        return None, None


@dataclass(frozen=True)
class DescriptorMatch:
    """A hit in the static descriptor dictionary."""

    category_id: str
    confidence: float
    classification: Optional[TransactionClassification] = None
    subcategory_id: Optional[str] = None
    description: str = ""


@dataclass
class LearnedRule:
    """A persisted merchant rule. One active row per (scope, owner, fingerprint)."""

    id: str
    scope_type: LearningScope
    fingerprint_type: FingerprintType
    fingerprint: str
    category_id: str
    subcategory_id: Optional[str] = None
    merchant_canon: Optional[str] = None
    confidence_base: float = 0.85
    examples_count: int = 1
    conflict_count: int = 0
    is_archived: bool = False
    user_id: Optional[str] = None
    family_id: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    _REQUIRED = {"id", "scope_type", "fingerprint_type", "fingerprint", "category_id"}

    @classmethod
    def from_record(cls, record: dict) -> "LearnedRule":
        values = _check_keys(cls, record, cls._REQUIRED)
        values["scope_type"] = LearningScope(values["scope_type"])
        values["fingerprint_type"] = FingerprintType(values["fingerprint_type"])
        for key in ("examples_count", "conflict_count"):
            if values.get(key) is not None:
                values[key] = int(values[key])
        if values.get("confidence_base") is not None:
            values["confidence_base"] = float(values["confidence_base"])
        if values.get("is_archived") is not None:
            values["is_archived"] = bool(values["is_archived"])
        return cls(**values)


@dataclass
class CategorizationSuggestion:
    """
    Best guess for a descriptor.

    A fallback suggestion always carries an empty category and zero confidence.
    """

    category_id: str
    confidence: float
    source: PredictionSource
    subcategory_id: Optional[str] = None
    classification: Optional[TransactionClassification] = None
    match_count: Optional[int] = None
    fingerprint_type: Optional[FingerprintType] = None
    scope: Optional[LearningScope] = None
    has_conflict: Optional[bool] = None

    def __post_init__(self):
        self.source = PredictionSource(self.source)
        if self.source == PredictionSource.FALLBACK or not self.category_id:
            self.source = PredictionSource.FALLBACK
            self.category_id = ""
            self.confidence = 0.0
        self.confidence = round(min(max(float(self.confidence), 0.0), 1.0), 4)

    @classmethod
    def fallback(cls) -> "CategorizationSuggestion":
        return cls(category_id="", confidence=0.0, source=PredictionSource.FALLBACK)

    @property
    def is_fallback(self) -> bool:
        return self.source == PredictionSource.FALLBACK


# =============================================================================
# FEEDBACK
# =============================================================================

@dataclass
class FeedbackRequest:
    """A user's accept/override of a suggestion."""

    raw_descriptor: str
    user_category_id: str
    apply_scope: LearningScope = LearningScope.USER
    apply_to_future: bool = True
    user_subcategory_id: Optional[str] = None
    transaction_id: Optional[str] = None
    predicted_category_id: Optional[str] = None
    predicted_subcategory_id: Optional[str] = None
    predicted_source: Optional[PredictionSource] = None
    predicted_confidence: Optional[float] = None

    def __post_init__(self):
        self.apply_scope = LearningScope(self.apply_scope)
        if self.predicted_source is not None:
            self.predicted_source = PredictionSource(self.predicted_source)

    @property
    def was_prediction_correct(self) -> bool:
        return (
            self.predicted_category_id == self.user_category_id
            and (self.predicted_subcategory_id or None) == (self.user_subcategory_id or None)
        )


@dataclass
class FeedbackResult:
    """Structured outcome of a feedback call. Never raised, always returned."""

    success: bool
    learned: bool = False
    action: Optional[FeedbackAction] = None
    conflict: bool = False
    existing_category_id: Optional[str] = None
    rule_id: Optional[str] = None
    message: Optional[str] = None


# =============================================================================
# RECURRING EXPENSES
# =============================================================================

@dataclass
class RecurringPattern:
    """A (category, subcategory) pair expected to produce an expense monthly."""

    category_id: str
    subcategory_id: Optional[str]
    pattern_type: str                # currently always "monthly"
    average_amount: float            # Mean of monthly totals
    occurrence_count: int            # Months with at least one expense
    last_occurrence_date: str        # YYYY-MM of the latest month seen
    confidence: float                # 0.0 – 1.0
    recent_occurrence_count: int = 0
    amount_consistency: float = 0.0
    months: list[str] = field(default_factory=list)


@dataclass
class RecurringConfirmation:
    """A user's explicit verdict on a missing recurring expense for a month."""

    family_id: str
    category_id: str
    subcategory_id: Optional[str]
    month_ref: str
    confirmation_type: ConfirmationType
    confirmed_by_user_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    _REQUIRED = {"family_id", "category_id", "month_ref", "confirmation_type"}

    @classmethod
    def from_record(cls, record: dict) -> "RecurringConfirmation":
        values = _check_keys(cls, record, cls._REQUIRED)
        values["confirmation_type"] = ConfirmationType(values["confirmation_type"])
        values.setdefault("subcategory_id", None)
        return cls(**values)


@dataclass
class MissingRecurringExpense:
    """A recurring pattern with no expense in the target month."""

    category_id: str
    subcategory_id: Optional[str]
    pattern_type: str
    average_amount: float
    last_occurrence: str
    month_ref: str
    confirmation_status: str = "none"  # "none" | ConfirmationType value
    confidence: float = 0.0


@dataclass
class ConfirmationResult:
    success: bool
    confirmation: Optional[RecurringConfirmation] = None
    message: Optional[str] = None
