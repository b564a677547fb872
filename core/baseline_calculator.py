"""
baseline_calculator.py
-----------------------
Derives the expected weekly spend per category from trailing history.

For each category present in the lookback window (90 days by default):

    baseline_amount = round(sum(amounts) / divisor)
    baseline_count  = round(count / divisor)

With the default "fixed" divisor strategy the divisor is always 12, the
approximate number of weeks in 90 days, regardless of how much history the
user actually has. The "observed_weeks" strategy divides by the number of
weeks between the oldest transaction in the window and now (1..12).

Baselines are recomputed wholesale and upserted on (user, category,
time_period). No transactions in the window means no rows are written;
callers treat a missing baseline as "cannot evaluate", never as zero.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List

import pandas as pd

from config.config_loader import get_baseline_config
from core.frame import transactions_to_frame
from core.models import Baseline, Transaction, round_half_up
from storage.store import BaseStore

logger = logging.getLogger(__name__)


class BaselineCalculator:
    """
    Computes and stores weekly baselines.

    Usage:
        calculator = BaselineCalculator(store)
        baselines = calculator.calculate(user_id, now=datetime.now())
    """

    def __init__(self, store: BaseStore):
        self.store = store
        self.config = get_baseline_config()
        self.lookback_days = self.config["lookback_days"]
        self.time_period = self.config["time_period"]
        self.divisor_strategy = self.config["divisor_strategy"]
        self.weeks_divisor = self.config["weeks_divisor"]

        if self.divisor_strategy not in ("fixed", "observed_weeks"):
            raise ValueError(f"Unknown baseline divisor_strategy: {self.divisor_strategy!r}")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def calculate(self, user_id: str, now: datetime) -> List[Baseline]:
        """
        Recompute and upsert baselines for one user.

        Returns:
            The baselines written. Empty when the window holds no transactions.
        """
        since = now - timedelta(days=self.lookback_days)
        transactions = self.store.get_transactions(user_id, since=since)

        baselines = self.compute(user_id, transactions, now)
        for baseline in baselines:
            self.store.upsert_baseline(baseline)

        logger.info(f"Baselines for user {user_id}: {len(baselines)} categories from {len(transactions)} transactions.")
        return baselines

    def compute(self, user_id: str, transactions: List[Transaction], now: datetime) -> List[Baseline]:
        """Pure computation step, no store access."""
        df = transactions_to_frame(transactions)
        if df.empty:
            return []

        divisor = self._divisor(df, now)
        if self.divisor_strategy == "fixed" and (now - df["timestamp"].min()).days < self.lookback_days - 7:
            logger.debug(
                f"User {user_id} has less than {self.lookback_days} days of history; "
                f"fixed divisor {divisor} will understate weekly baselines."
            )

        summary = df.groupby("category")["amount"].agg(["sum", "count"])
        return [
            Baseline(
                user_id=user_id,
                category=str(category),
                time_period=self.time_period,
                baseline_amount=round_half_up(float(row["sum"]) / divisor),
                baseline_count=round_half_up(int(row["count"]) / divisor),
                calculated_at=now,
            )
            for category, row in summary.iterrows()
        ]

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _divisor(self, df: pd.DataFrame, now: datetime) -> int:
        if self.divisor_strategy == "fixed":
            return self.weeks_divisor
        span_days = (now - df["timestamp"].min()).days
        observed = math.ceil(max(span_days, 1) / 7)
        return max(1, min(self.weeks_divisor, observed))
