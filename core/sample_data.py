"""
sample_data.py
---------------
Seeded mock transaction generator for demos and the CLI's --sample mode.

Produces n_random transactions spread uniformly over the last 90 days
across every category except "other", plus n_late_night food orders
between 21:00 and 23:59 from the first two food merchants.
"""

from datetime import datetime, timedelta
from typing import List

import numpy as np

from core.models import Transaction


MERCHANTS = {
    "food": ["Swiggy", "Zomato", "Dominos", "Starbucks", "McDonalds", "Subway"],
    "transport": ["Uber", "Ola", "Metro Card", "Rapido", "BluSmart"],
    "shopping": ["Amazon", "Flipkart", "Myntra", "Nykaa", "Croma"],
    "entertainment": ["Netflix", "Spotify", "BookMyShow", "Steam", "Disney+"],
    "bills": ["Electricity Bill", "Internet Bill", "Phone Recharge", "Gas Bill"],
    "health": ["Apollo Pharmacy", "Practo", "Gym Membership", "Cult.fit"],
}


def generate_sample_transactions(
    user_id: str,
    now: datetime,
    n_random: int = 100,
    n_late_night: int = 15,
    seed: int = 42,
) -> List[Transaction]:
    """Returns transactions sorted newest first."""
    rng = np.random.RandomState(seed)
    window_seconds = 90 * 24 * 60 * 60
    start = now - timedelta(days=90)
    categories = list(MERCHANTS.keys())

    transactions: List[Transaction] = []
    for i in range(n_random):
        timestamp = start + timedelta(seconds=float(rng.uniform(0, window_seconds)))
        category = categories[rng.randint(len(categories))]
        merchants = MERCHANTS[category]
        transactions.append(Transaction(
            id=f"txn-{i}",
            user_id=user_id,
            timestamp=timestamp,
            amount=round(float(rng.uniform(50, 2050)), 2),
            merchant=merchants[rng.randint(len(merchants))],
            category=category,
            is_recurring=bool(rng.uniform() > 0.7),
        ))

    for i in range(n_late_night):
        day = start + timedelta(seconds=float(rng.uniform(0, window_seconds)))
        timestamp = day.replace(hour=21 + int(rng.randint(3)), minute=int(rng.randint(60)))
        if timestamp > now:
            timestamp -= timedelta(days=1)
        elif timestamp < start:
            timestamp += timedelta(days=1)
        transactions.append(Transaction(
            id=f"txn-latenight-{i}",
            user_id=user_id,
            timestamp=timestamp,
            amount=round(float(rng.uniform(200, 700)), 2),
            merchant=MERCHANTS["food"][rng.randint(2)],
            category="food",
        ))

    return sorted(transactions, key=lambda t: t.timestamp, reverse=True)
