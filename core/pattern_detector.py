"""
pattern_detector.py
--------------------
Recurring behaviour detection over a rolling window of transactions.

It answers one question per grouping axis:

    "Does this user repeat the same kind of spend often enough to call it
    a pattern?"

Axes, tested independently and unioned:
    - per category, three temporal sub-patterns (late night, weekend,
      morning routine), each with its own minimum count and time label;
    - per merchant, a "regular at X" pattern.

Every emitted pattern carries a rounded average amount, a trend and a
confidence tier derived from its occurrence count. Output is sorted
strongest-first, then by occurrences descending, and upserted on the
structured PatternKey so that re-running on identical data overwrites
rather than duplicates.

All thresholds and labels are read from config.yaml.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List

import numpy as np
import pandas as pd

from config.config_loader import get_pattern_detection_config
from core.confidence import confidence_rank
from core.frame import transactions_to_frame
from core.models import Pattern, PatternKey, Transaction, round_half_up
from storage.store import BaseStore

logger = logging.getLogger(__name__)


DESCRIPTIONS: Dict[str, str] = {
    "late_night": (
        "You tend to spend on {category} during late evenings. "
        "This might be linked to unwinding after work or late-night cravings."
    ),
    "weekend": (
        "It looks like your {category} spending peaks on weekends. "
        "This might reflect social activities or personal time."
    ),
    "morning_routine": (
        "It looks like you have a consistent morning {category} habit. "
        "It seems to be part of your daily routine."
    ),
    "regular_merchant": (
        "We noticed you visit {merchant} often. "
        "This might suggest it has become one of your regular spots."
    ),
}


def calculate_trend(transactions: pd.DataFrame, min_transactions: int = 3, threshold: float = 0.15) -> str:
    """
    Classifies the direction of spend within a pattern subset.

    Sorts chronologically, splits at floor(n / 2) and compares the mean of
    the second half to the mean of the first half.

    Returns:
        "increasing" if the change is above +threshold, "decreasing" if
        below -threshold, otherwise "stable". Fewer than min_transactions
        rows is always "stable".
    """
    if len(transactions) < min_transactions:
        return "stable"

    amounts = (
        transactions.sort_values("timestamp", kind="stable")["amount"].to_numpy(dtype=float)
    )
    mid = len(amounts) // 2
    first_mean = float(np.mean(amounts[:mid]))
    second_mean = float(np.mean(amounts[mid:]))

    if first_mean <= 0:
        return "increasing" if second_mean > 0 else "stable"

    change = (second_mean - first_mean) / first_mean
    if change > threshold:
        return "increasing"
    if change < -threshold:
        return "decreasing"
    return "stable"


class PatternDetector:
    """
    Detects and stores behavioural patterns.

    Usage:
        detector = PatternDetector(store)
        patterns = detector.detect(user_id, now=datetime.now())
    """

    def __init__(self, store: BaseStore):
        self.store = store
        self.config = get_pattern_detection_config()
        self.lookback_days = self.config["lookback_days"]
        self.category_rules = self.config["category_patterns"]
        self.merchant_rule = self.config["merchant_patterns"]
        self.trend_min = self.config["trend_min_transactions"]
        self.trend_threshold = self.config["trend_change_threshold"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(self, user_id: str, now: datetime) -> List[Pattern]:
        """
        Run detection for one user and upsert every emitted pattern.

        Returns:
            Stored patterns (first_detected preserved from earlier runs),
            in detection order.
        """
        since = now - timedelta(days=self.lookback_days)
        transactions = self.store.get_transactions(user_id, since=since)

        patterns = self.analyze(user_id, transactions, now)
        stored = [self.store.upsert_pattern(p) for p in patterns]

        logger.info(f"Detected {len(stored)} patterns for user {user_id} from {len(transactions)} transactions.")
        return stored

    def analyze(self, user_id: str, transactions: List[Transaction], now: datetime) -> List[Pattern]:
        """Pure detection step, no store access."""
        df = self._prepare(transactions, now)
        if df.empty:
            return []

        patterns: List[Pattern] = []
        for category, group in df.groupby("category", sort=True):
            patterns.extend(self._category_patterns(user_id, str(category), group, now))

        for merchant, group in df.groupby("merchant", sort=True):
            pattern = self._merchant_pattern(user_id, str(merchant), group, now)
            if pattern is not None:
                patterns.append(pattern)

        # Strongest tier first, then most frequent. sorted() is stable.
        return sorted(patterns, key=lambda p: (confidence_rank(p.confidence), -p.occurrences))

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(self, transactions: List[Transaction], now: datetime) -> pd.DataFrame:
        df = transactions_to_frame(transactions)
        if df.empty:
            return df
        cutoff = pd.Timestamp(now - timedelta(days=self.lookback_days))
        df = df[df["timestamp"] >= cutoff]
        return df.sort_values("timestamp", kind="stable").reset_index(drop=True)

    # -------------------------------------------------------------------------
    # INTERNAL: PATTERN CONSTRUCTION
    # -------------------------------------------------------------------------

    def _category_patterns(self, user_id: str, category: str, group: pd.DataFrame, now: datetime) -> List[Pattern]:
        found: List[Pattern] = []
        for kind, rule in self.category_rules.items():
            mask = pd.Series(True, index=group.index)
            if "time_of_day" in rule:
                mask &= group["time_of_day"].isin(rule["time_of_day"])
            if "day_of_week" in rule:
                mask &= group["day_of_week"].isin(rule["day_of_week"])
            subset = group[mask]

            if len(subset) < rule["min_occurrences"]:
                continue

            key = PatternKey(category=category, kind=kind)
            found.append(self._build_pattern(user_id, key, subset, rule["time_range"], now))
        return found

    def _merchant_pattern(self, user_id: str, merchant: str, group: pd.DataFrame, now: datetime) -> Pattern | None:
        if len(group) < self.merchant_rule["min_occurrences"]:
            return None
        key = PatternKey(category=self._latest_category(group), kind="regular_merchant", merchant=merchant)
        return self._build_pattern(user_id, key, group, self.merchant_rule["time_range"], now)

    def _build_pattern(
        self, user_id: str, key: PatternKey, subset: pd.DataFrame, time_range: str, now: datetime
    ) -> Pattern:
        return Pattern(
            user_id=user_id,
            key=key,
            description=DESCRIPTIONS[key.kind].format(category=key.category, merchant=key.merchant),
            occurrences=len(subset),
            time_range=time_range,
            average_amount=round_half_up(float(subset["amount"].mean())),
            trend=calculate_trend(subset, self.trend_min, self.trend_threshold),
            first_detected=now,
            last_updated=now,
            transaction_ids=subset["transaction_id"].astype(str).tolist(),
        )

    @staticmethod
    def _latest_category(group: pd.DataFrame) -> str:
        """Category of the merchant's most recent transaction in the window."""
        return str(group.sort_values("timestamp", kind="stable").iloc[-1]["category"])
