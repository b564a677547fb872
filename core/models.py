"""
models.py
----------
Core domain models. These are the typed contracts between engine layers
and the store.

- Transaction: immutable spending event. Only context tags may be appended.
- Baseline: expected weekly spend for one (user, category).
- PatternKey / Pattern: recurring behaviour; identity is the structured key,
  the display title is derived from it.
- DeviationEvent: a fired breach of a category baseline, with cooldown.
- Notification / WeeklyCheckin: side effects of a deviation scan.
- InsightFeedback / Insight: user feedback on a pattern, and the read-time
  view that joins the two.
- MomentStory: narrated wrapper around a top pattern.
- NotificationPreferences: typed per-user scan settings.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

from config.config_loader import get_deviation_config
from core.confidence import get_confidence
from core.exceptions import PreferencesValidationError
from core.taxonomy import Taxonomy, day_of_week, get_time_of_day


def new_id() -> str:
    return str(uuid.uuid4())


def round_half_up(value: float) -> int:
    """Rounds to the nearest whole unit, .5 always away from zero for positives."""
    return int(math.floor(value + 0.5))


# =============================================================================
# TRANSACTIONS
# =============================================================================

@dataclass(frozen=True)
class Transaction:
    """A single dated, categorized spending event."""

    id: str
    user_id: str
    timestamp: datetime
    amount: float                    # Positive, currency-agnostic unit
    merchant: str
    category: str                    # Closed enum, see taxonomy.categories
    is_recurring: bool = False
    context_tags: tuple[str, ...] = ()
    custom_tag: Optional[str] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Transaction {self.id}: amount must be positive, got {self.amount}")

    @property
    def time_of_day(self) -> str:
        return get_time_of_day(self.timestamp)

    @property
    def day_of_week(self) -> str:
        return day_of_week(self.timestamp)


# =============================================================================
# BASELINES
# =============================================================================

@dataclass
class Baseline:
    """Expected spend for one (user, category, time_period)."""

    user_id: str
    category: str
    time_period: str                 # Only "weekly" is produced today
    baseline_amount: float
    baseline_count: int
    calculated_at: datetime


# =============================================================================
# PATTERNS
# =============================================================================

PATTERN_KINDS = ("late_night", "weekend", "morning_routine", "regular_merchant")


@dataclass(frozen=True)
class PatternKey:
    """
    Structured pattern identity: (category, kind, merchant).

    merchant is only set for regular_merchant patterns.
    """

    category: str
    kind: str
    merchant: Optional[str] = None

    def __post_init__(self):
        if self.kind not in PATTERN_KINDS:
            raise ValueError(f"Unknown pattern kind '{self.kind}'. Expected one of: {PATTERN_KINDS}")
        if (self.kind == "regular_merchant") != (self.merchant is not None):
            raise ValueError("merchant must be set for regular_merchant patterns and only for them")

    @property
    def title(self) -> str:
        if self.kind == "late_night":
            return f"Late-night {self.category}"
        if self.kind == "weekend":
            return f"Weekend {self.category}"
        if self.kind == "morning_routine":
            return f"Morning {self.category} routine"
        return f"Regular at {self.merchant}"

    def as_string(self) -> str:
        """Stable string form used as a storage key."""
        return f"{self.category}|{self.kind}|{self.merchant or ''}"

    @classmethod
    def from_string(cls, value: str) -> "PatternKey":
        category, kind, merchant = value.split("|", 2)
        return cls(category=category, kind=kind, merchant=merchant or None)


@dataclass
class Pattern:
    """
    A recurring behavioural pattern for one user.

    Confidence is derived from occurrences on every read; it has no setter.
    """

    user_id: str
    key: PatternKey
    description: str
    occurrences: int
    time_range: str
    average_amount: int
    trend: str                       # "increasing" | "stable" | "decreasing"
    first_detected: datetime
    last_updated: datetime
    category: str = ""
    transaction_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.category:
            self.category = self.key.category

    @property
    def title(self) -> str:
        return self.key.title

    @property
    def confidence(self) -> str:
        return get_confidence(self.occurrences)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "pattern_key": self.key.as_string(),
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "time_range": self.time_range,
            "average_amount": self.average_amount,
            "trend": self.trend,
            "first_detected": self.first_detected.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


# =============================================================================
# DEVIATIONS & NOTIFICATIONS
# =============================================================================

@dataclass
class DeviationEvent:
    """A detected excess of current-week spend over the category baseline."""

    user_id: str
    category: str
    deviation_percentage: int        # Whole percent, e.g. 60 for +60%
    baseline_amount: float
    current_amount: float
    occurrence_count: int
    time_period: str
    narrative: str
    created_at: datetime
    cooldown_until: datetime
    acknowledged: bool = False
    acknowledged_response: Optional[str] = None
    id: str = field(default_factory=new_id)

    def is_cooling_down(self, now: datetime) -> bool:
        return self.cooldown_until > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "category": self.category,
            "deviation_percentage": self.deviation_percentage,
            "baseline_amount": self.baseline_amount,
            "current_amount": self.current_amount,
            "occurrence_count": self.occurrence_count,
            "time_period": self.time_period,
            "narrative": self.narrative,
            "created_at": self.created_at.isoformat(),
            "cooldown_until": self.cooldown_until.isoformat(),
            "acknowledged": self.acknowledged,
        }


@dataclass
class Notification:
    user_id: str
    type: str                        # "soft_nudge" | "weekly_digest"
    title: str
    body: str
    created_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    read: bool = False
    dismissed: bool = False
    id: str = field(default_factory=new_id)


@dataclass
class WeeklyCheckin:
    user_id: str
    week_start: date
    summary: str
    created_at: datetime
    category_changes: Dict[str, Dict[str, float]] = field(default_factory=dict)
    user_response: Optional[str] = None
    user_note: Optional[str] = None
    id: str = field(default_factory=new_id)


# =============================================================================
# INSIGHTS & STORIES
# =============================================================================

FEEDBACK_LABELS = ("accurate", "not_quite")


@dataclass
class InsightFeedback:
    """User feedback attached to one pattern. The only persisted insight state."""

    user_id: str
    pattern_key: PatternKey
    dismissed: bool = False
    user_feedback: Optional[str] = None     # "accurate" | "not_quite" | None

    def __post_init__(self):
        if self.user_feedback is not None and self.user_feedback not in FEEDBACK_LABELS:
            raise ValueError(
                f"Unknown feedback '{self.user_feedback}'. Expected one of: {FEEDBACK_LABELS}"
            )


@dataclass
class Insight:
    """Read-time view of a Pattern plus its feedback. Never persisted."""

    pattern: Pattern
    narrative: str
    dismissed: bool = False
    user_feedback: Optional[str] = None

    @property
    def title(self) -> str:
        return self.pattern.title

    @property
    def confidence(self) -> str:
        return self.pattern.confidence


@dataclass
class MomentStory:
    user_id: str
    title: str
    narrative: str
    pattern_type: str                # Category of the source pattern
    created_at: datetime
    heatmap_data: Dict[str, int] = field(default_factory=dict)
    related_transactions: list[str] = field(default_factory=list)
    dismissed: bool = False
    user_feedback: Optional[str] = None
    id: str = field(default_factory=new_id)


# =============================================================================
# PREFERENCES
# =============================================================================

SENSITIVITY_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True)
class NotificationPreferences:
    """
    Per-user deviation scan settings.

    Defaults (from config.yaml): weekly digest on, soft nudges off,
    medium sensitivity, nothing muted.
    """

    weekly_digest: bool = True
    soft_nudges: bool = False
    sensitivity: str = "medium"
    muted_categories: frozenset[str] = frozenset()

    @classmethod
    def defaults(cls) -> "NotificationPreferences":
        return cls.from_dict(get_deviation_config()["default_preferences"])

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "NotificationPreferences":
        """
        Validates a raw preference blob. Missing keys take the configured
        defaults; unknown keys are ignored.

        Raises:
            PreferencesValidationError: On a wrong type, unknown sensitivity
                or unknown category.
        """
        defaults = get_deviation_config()["default_preferences"]
        merged = {**defaults, **(raw or {})}

        for flag in ("weekly_digest", "soft_nudges"):
            if not isinstance(merged[flag], bool):
                raise PreferencesValidationError(f"'{flag}' must be a boolean, got {merged[flag]!r}")

        sensitivity = merged["sensitivity"]
        if sensitivity not in SENSITIVITY_LEVELS:
            raise PreferencesValidationError(
                f"Unknown sensitivity {sensitivity!r}. Expected one of: {SENSITIVITY_LEVELS}"
            )

        muted = merged["muted_categories"] or []
        if isinstance(muted, str) or not hasattr(muted, "__iter__"):
            raise PreferencesValidationError("'muted_categories' must be a list of categories")
        taxonomy = Taxonomy()
        unknown = [c for c in muted if not taxonomy.is_category(c)]
        if unknown:
            raise PreferencesValidationError(f"Unknown muted categories: {unknown}")

        return cls(
            weekly_digest=merged["weekly_digest"],
            soft_nudges=merged["soft_nudges"],
            sensitivity=sensitivity,
            muted_categories=frozenset(muted),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weekly_digest": self.weekly_digest,
            "soft_nudges": self.soft_nudges,
            "sensitivity": self.sensitivity,
            "muted_categories": sorted(self.muted_categories),
        }
