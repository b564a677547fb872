"""
store.py
---------
Persistence contract for the reflection engine, plus an in-memory
implementation used by tests and the CLI's default mode.

Every query is scoped to one user. Upsert keys:
    - Baseline:        (user_id, category, time_period)
    - Pattern:         (user_id, pattern_key)
    - InsightFeedback: (user_id, pattern_key)

insert_deviation_event() is the single place the "one active cooldown per
(user, category)" rule is enforced. It must check and insert atomically.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from core.exceptions import RecordNotFoundError
from core.models import (
    Baseline, DeviationEvent, InsightFeedback, MomentStory, Notification,
    Pattern, PatternKey, Transaction, WeeklyCheckin,
)


class BaseStore(ABC):
    """Abstract store. Concrete stores implement every method below."""

    # -------------------------------------------------------------------------
    # TRANSACTIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def add_transactions(self, transactions: Iterable[Transaction]) -> int:
        """Inserts transactions, ignoring ids already stored. Returns rows added."""
        ...

    @abstractmethod
    def get_transactions(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        """Transactions with timestamp >= since, oldest first."""
        ...

    @abstractmethod
    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        ...

    @abstractmethod
    def append_context_tags(
        self, user_id: str, transaction_id: str, tags: Iterable[str], custom_tag: Optional[str] = None
    ) -> Transaction:
        """Appends tags not already present. The only permitted transaction mutation."""
        ...

    # -------------------------------------------------------------------------
    # BASELINES
    # -------------------------------------------------------------------------

    @abstractmethod
    def upsert_baseline(self, baseline: Baseline) -> None:
        ...

    @abstractmethod
    def get_baselines(self, user_id: str) -> List[Baseline]:
        ...

    def get_baseline(self, user_id: str, category: str, time_period: str) -> Optional[Baseline]:
        for baseline in self.get_baselines(user_id):
            if baseline.category == category and baseline.time_period == time_period:
                return baseline
        return None

    # -------------------------------------------------------------------------
    # PATTERNS
    # -------------------------------------------------------------------------

    @abstractmethod
    def upsert_pattern(self, pattern: Pattern) -> Pattern:
        """
        Inserts or overwrites the pattern for (user_id, key). first_detected
        is kept from the existing row. Returns the stored pattern.
        """
        ...

    @abstractmethod
    def get_patterns(self, user_id: str) -> List[Pattern]:
        ...

    # -------------------------------------------------------------------------
    # DEVIATIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_active_deviation(self, user_id: str, category: str, now: datetime) -> Optional[DeviationEvent]:
        """The event for (user, category) whose cooldown_until is after now, if any."""
        ...

    @abstractmethod
    def insert_deviation_event(self, event: DeviationEvent, now: datetime) -> Optional[DeviationEvent]:
        """
        Atomically inserts the event unless an active cooldown exists for
        (user, category). Returns the stored event, or None when suppressed.
        """
        ...

    @abstractmethod
    def get_deviation_events(self, user_id: str) -> List[DeviationEvent]:
        ...

    @abstractmethod
    def acknowledge_deviation(self, user_id: str, event_id: str, response: Optional[str] = None) -> DeviationEvent:
        ...

    # -------------------------------------------------------------------------
    # NOTIFICATIONS & CHECK-INS
    # -------------------------------------------------------------------------

    @abstractmethod
    def add_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    def get_notifications(self, user_id: str) -> List[Notification]:
        ...

    @abstractmethod
    def add_weekly_checkin(self, checkin: WeeklyCheckin) -> WeeklyCheckin:
        ...

    @abstractmethod
    def get_weekly_checkins(self, user_id: str) -> List[WeeklyCheckin]:
        ...

    # -------------------------------------------------------------------------
    # PREFERENCES, FEEDBACK, STORIES
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_preferences(self, user_id: str) -> Optional[dict]:
        """Raw preference blob as stored, or None. Validation happens in the caller."""
        ...

    @abstractmethod
    def set_preferences(self, user_id: str, preferences: dict) -> None:
        ...

    @abstractmethod
    def upsert_insight_feedback(self, feedback: InsightFeedback) -> None:
        ...

    @abstractmethod
    def get_insight_feedback(self, user_id: str) -> Dict[PatternKey, InsightFeedback]:
        ...

    @abstractmethod
    def add_moment_story(self, story: MomentStory) -> MomentStory:
        ...

    @abstractmethod
    def get_moment_stories(self, user_id: str) -> List[MomentStory]:
        ...


class InMemoryStore(BaseStore):
    """
    Dict-backed store. A single re-entrant lock serializes every read and
    write, and reads copy inside it, so concurrent runs for different users
    (or duplicate triggers for the same user) are safe.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._transactions: Dict[str, Dict[str, Transaction]] = {}
        self._baselines: Dict[Tuple[str, str, str], Baseline] = {}
        self._patterns: Dict[Tuple[str, PatternKey], Pattern] = {}
        self._deviations: Dict[str, List[DeviationEvent]] = {}
        self._notifications: Dict[str, List[Notification]] = {}
        self._checkins: Dict[str, List[WeeklyCheckin]] = {}
        self._preferences: Dict[str, dict] = {}
        self._feedback: Dict[Tuple[str, PatternKey], InsightFeedback] = {}
        self._stories: Dict[str, List[MomentStory]] = {}

    # --- Transactions ---

    def add_transactions(self, transactions: Iterable[Transaction]) -> int:
        added = 0
        with self._lock:
            for txn in transactions:
                user_txns = self._transactions.setdefault(txn.user_id, {})
                if txn.id in user_txns:
                    continue
                user_txns[txn.id] = txn
                added += 1
        return added

    def get_transactions(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        with self._lock:
            txns = list(self._transactions.get(user_id, {}).values())
        if since is not None:
            txns = [t for t in txns if t.timestamp >= since]
        return sorted(txns, key=lambda t: t.timestamp)

    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        with self._lock:
            try:
                return self._transactions[user_id][transaction_id]
            except KeyError:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found for user {user_id}")

    def append_context_tags(
        self, user_id: str, transaction_id: str, tags: Iterable[str], custom_tag: Optional[str] = None
    ) -> Transaction:
        with self._lock:
            txn = self.get_transaction(user_id, transaction_id)
            merged = list(txn.context_tags)
            merged.extend(tag for tag in tags if tag not in merged)
            updated = replace(
                txn,
                context_tags=tuple(dict.fromkeys(merged)),
                custom_tag=custom_tag if custom_tag is not None else txn.custom_tag,
            )
            self._transactions[user_id][transaction_id] = updated
        return updated

    # --- Baselines ---

    def upsert_baseline(self, baseline: Baseline) -> None:
        with self._lock:
            self._baselines[(baseline.user_id, baseline.category, baseline.time_period)] = copy.copy(baseline)

    def get_baselines(self, user_id: str) -> List[Baseline]:
        with self._lock:
            return [copy.copy(b) for (uid, _, _), b in self._baselines.items() if uid == user_id]

    # --- Patterns ---

    def upsert_pattern(self, pattern: Pattern) -> Pattern:
        with self._lock:
            existing = self._patterns.get((pattern.user_id, pattern.key))
            stored = copy.deepcopy(pattern)
            if existing is not None:
                stored.first_detected = existing.first_detected
            self._patterns[(pattern.user_id, pattern.key)] = stored
        return copy.deepcopy(stored)

    def get_patterns(self, user_id: str) -> List[Pattern]:
        with self._lock:
            return [copy.deepcopy(p) for (uid, _), p in self._patterns.items() if uid == user_id]

    # --- Deviations ---

    def _find_active(self, user_id: str, category: str, now: datetime) -> Optional[DeviationEvent]:
        for event in self._deviations.get(user_id, []):
            if event.category == category and event.is_cooling_down(now):
                return event
        return None

    def get_active_deviation(self, user_id: str, category: str, now: datetime) -> Optional[DeviationEvent]:
        with self._lock:
            active = self._find_active(user_id, category, now)
        return copy.copy(active) if active else None

    def insert_deviation_event(self, event: DeviationEvent, now: datetime) -> Optional[DeviationEvent]:
        with self._lock:
            if self._find_active(event.user_id, event.category, now) is not None:
                return None
            self._deviations.setdefault(event.user_id, []).append(copy.copy(event))
        return copy.copy(event)

    def get_deviation_events(self, user_id: str) -> List[DeviationEvent]:
        with self._lock:
            return [copy.copy(e) for e in self._deviations.get(user_id, [])]

    def acknowledge_deviation(self, user_id: str, event_id: str, response: Optional[str] = None) -> DeviationEvent:
        with self._lock:
            for event in self._deviations.get(user_id, []):
                if event.id == event_id:
                    event.acknowledged = True
                    event.acknowledged_response = response
                    return copy.copy(event)
        raise RecordNotFoundError(f"Deviation event {event_id} not found for user {user_id}")

    # --- Notifications & check-ins ---

    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications.setdefault(notification.user_id, []).append(copy.deepcopy(notification))
        return notification

    def get_notifications(self, user_id: str) -> List[Notification]:
        with self._lock:
            return [copy.deepcopy(n) for n in self._notifications.get(user_id, [])]

    def add_weekly_checkin(self, checkin: WeeklyCheckin) -> WeeklyCheckin:
        with self._lock:
            self._checkins.setdefault(checkin.user_id, []).append(copy.deepcopy(checkin))
        return checkin

    def get_weekly_checkins(self, user_id: str) -> List[WeeklyCheckin]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._checkins.get(user_id, [])]

    # --- Preferences, feedback, stories ---

    def get_preferences(self, user_id: str) -> Optional[dict]:
        with self._lock:
            prefs = copy.deepcopy(self._preferences.get(user_id))
        return prefs

    def set_preferences(self, user_id: str, preferences: dict) -> None:
        with self._lock:
            self._preferences[user_id] = copy.deepcopy(preferences)

    def upsert_insight_feedback(self, feedback: InsightFeedback) -> None:
        with self._lock:
            self._feedback[(feedback.user_id, feedback.pattern_key)] = copy.copy(feedback)

    def get_insight_feedback(self, user_id: str) -> Dict[PatternKey, InsightFeedback]:
        with self._lock:
            return {key: copy.copy(fb) for (uid, key), fb in self._feedback.items() if uid == user_id}

    def add_moment_story(self, story: MomentStory) -> MomentStory:
        with self._lock:
            self._stories.setdefault(story.user_id, []).append(copy.deepcopy(story))
        return story

    def get_moment_stories(self, user_id: str) -> List[MomentStory]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._stories.get(user_id, [])]
