"""
deviation_engine.py
--------------------
Weekly deviation-from-baseline detection.

For every category with spend in the current week up to now (weeks start on
the most recent Sunday at 00:00 local time), the engine:

    1. skips muted categories;
    2. sums the week's amount and counts its transactions;
    3. skips categories with no baseline, or a zero baseline;
    4. computes deviation = (current - baseline) / baseline;
    5. fires only if deviation >= the sensitivity threshold AND the week has
       at least min_current_count transactions;
    6. suppresses firing while an earlier event for the same category is
       still inside its cooldown;
    7. on fire: narrates, stores the event with a fresh cooldown and, if
       soft nudges are on, a notification.

On Mondays, with the weekly digest enabled, a digest notification and a
WeeklyCheckin are written after the per-category pass.

Categories are evaluated independently; order does not change the result.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config.config_loader import get_deviation_config
from core.baseline_calculator import BaselineCalculator
from core.models import (
    Baseline, DeviationEvent, Notification, NotificationPreferences,
    Transaction, WeeklyCheckin, round_half_up,
)
from narrative.base_narrator import BaseNarrator, NarrativeFacts
from storage.store import BaseStore

logger = logging.getLogger(__name__)


BASELINES_CALCULATED = "Baselines calculated"

NUDGE_TITLE = "Noticed a change in your usual pattern"
DIGEST_TITLE = "Your Weekly Spending Story"
DIGEST_INTRO = "Your weekly Spending Story is ready. "
DIGEST_NO_CHANGES = "No major pattern changes this week, your spending aligned with your usual rhythm."


@dataclass
class DeviationScanResult:
    """Outcome of one scan for one user."""

    deviations: List[DeviationEvent] = field(default_factory=list)
    message: Optional[str] = None
    digest: Optional[WeeklyCheckin] = None

    @property
    def count(self) -> int:
        return len(self.deviations)


def week_start(now: datetime) -> datetime:
    """Midnight of the most recent Sunday (today, if today is Sunday)."""
    days_since_sunday = (now.weekday() + 1) % 7
    start = now - timedelta(days=days_since_sunday)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


class DeviationEngine:
    """
    Compares this week's spend to the stored weekly baselines.

    Usage:
        engine = DeviationEngine(store, narrator)
        result = engine.scan(user_id, now=datetime.now())
    """

    def __init__(self, store: BaseStore, narrator: BaseNarrator, baseline_calculator: Optional[BaselineCalculator] = None):
        self.store = store
        self.narrator = narrator
        self.baseline_calculator = baseline_calculator or BaselineCalculator(store)
        self.config = get_deviation_config()
        self.time_period = self.config["time_period"]
        self.min_current_count = self.config["min_current_count"]
        self.cooldown = timedelta(days=self.config["cooldown_days"])
        self.thresholds: Dict[str, float] = self.config["sensitivity_thresholds"]
        self.digest_weekday = self.config["digest_weekday"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def scan(self, user_id: str, now: datetime) -> DeviationScanResult:
        """
        Run one deviation scan for one user.

        Cold start: when the user has no baselines at all, baselines are
        calculated and the scan returns no deviations for this invocation.
        """
        prefs = self.load_preferences(user_id)

        baselines = {
            b.category: b for b in self.store.get_baselines(user_id) if b.time_period == self.time_period
        }
        if not baselines:
            self.baseline_calculator.calculate(user_id, now)
            logger.info(f"No baselines for user {user_id}; calculated them, skipping this scan.")
            return DeviationScanResult(message=BASELINES_CALCULATED)

        current_week = [
            t for t in self.store.get_transactions(user_id, since=week_start(now)) if t.timestamp <= now
        ]
        by_category: Dict[str, List[Transaction]] = {}
        for txn in current_week:
            by_category.setdefault(txn.category, []).append(txn)

        threshold = self.thresholds[prefs.sensitivity]
        fired: List[DeviationEvent] = []

        for category in sorted(by_category):
            event = self._evaluate_category(
                user_id, category, by_category[category], baselines.get(category), threshold, prefs, now
            )
            if event is not None:
                fired.append(event)

        result = DeviationScanResult(deviations=fired)
        if prefs.weekly_digest and now.weekday() == self.digest_weekday:
            result.digest = self._write_weekly_digest(user_id, fired, now)

        logger.info(f"Found {len(fired)} deviations for user {user_id}.")
        return result

    def load_preferences(self, user_id: str) -> NotificationPreferences:
        raw = self.store.get_preferences(user_id)
        if raw is None:
            return NotificationPreferences.defaults()
        return NotificationPreferences.from_dict(raw)

    # -------------------------------------------------------------------------
    # INTERNAL: PER-CATEGORY EVALUATION
    # -------------------------------------------------------------------------

    def _evaluate_category(
        self,
        user_id: str,
        category: str,
        transactions: List[Transaction],
        baseline: Optional[Baseline],
        threshold: float,
        prefs: NotificationPreferences,
        now: datetime,
    ) -> Optional[DeviationEvent]:
        if category in prefs.muted_categories:
            logger.debug(f"{category}: muted")
            return None

        current_amount = sum(float(t.amount) for t in transactions)
        current_count = len(transactions)

        if baseline is None:
            logger.debug(f"{category}: no baseline, cannot evaluate")
            return None
        if baseline.baseline_amount <= 0:
            logger.debug(f"{category}: zero baseline, treated as new spend rather than a deviation")
            return None

        deviation = (current_amount - baseline.baseline_amount) / baseline.baseline_amount
        if deviation < threshold or current_count < self.min_current_count:
            logger.debug(
                f"{category}: deviation {deviation:.2f} (threshold {threshold}), "
                f"count {current_count} (min {self.min_current_count}); not firing"
            )
            return None

        if self.store.get_active_deviation(user_id, category, now) is not None:
            logger.info(f"Skipping {category} deviation - in cooldown period")
            return None

        pct = round_half_up(deviation * 100)
        narrative = self.narrator.narrate_deviation(
            NarrativeFacts(category=category, occurrences=current_count, magnitude_pct=pct)
        )
        event = DeviationEvent(
            user_id=user_id,
            category=category,
            deviation_percentage=pct,
            baseline_amount=baseline.baseline_amount,
            current_amount=round(current_amount, 2),
            occurrence_count=current_count,
            time_period=self.time_period,
            narrative=narrative,
            created_at=now,
            cooldown_until=now + self.cooldown,
        )

        stored = self.store.insert_deviation_event(event, now)
        if stored is None:
            # A concurrent run inserted first.
            logger.info(f"Skipping {category} deviation - cooldown started concurrently")
            return None

        if prefs.soft_nudges:
            self.store.add_notification(Notification(
                user_id=user_id,
                type="soft_nudge",
                title=NUDGE_TITLE,
                body=stored.narrative,
                created_at=now,
                data={"deviation_id": stored.id, "category": category},
            ))
        return stored

    # -------------------------------------------------------------------------
    # INTERNAL: WEEKLY DIGEST
    # -------------------------------------------------------------------------

    def _write_weekly_digest(self, user_id: str, deviations: List[DeviationEvent], now: datetime) -> WeeklyCheckin:
        summary = build_digest_summary(deviations)

        self.store.add_notification(Notification(
            user_id=user_id,
            type="weekly_digest",
            title=DIGEST_TITLE,
            body=summary,
            created_at=now,
            data={"deviation_count": len(deviations)},
        ))

        checkin = WeeklyCheckin(
            user_id=user_id,
            week_start=(now - timedelta(days=7)).date(),
            summary=summary,
            created_at=now,
            category_changes={
                d.category: {"change": d.deviation_percentage, "amount": d.current_amount}
                for d in deviations
            },
        )
        self.store.add_weekly_checkin(checkin)
        logger.info(f"Weekly digest written for user {user_id} ({len(deviations)} deviations).")
        return checkin


def build_digest_summary(deviations: List[DeviationEvent]) -> str:
    """One-paragraph digest text listing the categories that changed."""
    if not deviations:
        return DIGEST_INTRO + DIGEST_NO_CHANGES
    categories = " and ".join(d.category for d in deviations)
    return DIGEST_INTRO + f"A couple of patterns changed this week, mainly in {categories}."
