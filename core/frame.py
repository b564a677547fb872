"""
frame.py
---------
Conversion between Transaction objects and the pandas DataFrame shape the
detection layers work on.

Columns:
    transaction_id, user_id, timestamp, amount, merchant, category,
    time_of_day, day_of_week, is_recurring
"""

from datetime import datetime
from typing import Iterable, List

import pandas as pd

from core.models import Transaction
from core.taxonomy import Taxonomy, day_of_week


TRANSACTION_COLUMNS = [
    "transaction_id", "user_id", "timestamp", "amount", "merchant",
    "category", "time_of_day", "day_of_week", "is_recurring",
]

REQUIRED_INPUT_COLUMNS = ["user_id", "timestamp", "amount", "merchant", "category"]


def transactions_to_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
    """Builds a DataFrame with derived time-of-day and day-of-week columns."""
    taxonomy = Taxonomy()
    rows = [
        {
            "transaction_id": t.id,
            "user_id": t.user_id,
            "timestamp": t.timestamp,
            "amount": float(t.amount),
            "merchant": t.merchant,
            "category": t.category,
            "time_of_day": taxonomy.time_of_day(t.timestamp.hour),
            "day_of_week": day_of_week(t.timestamp),
            "is_recurring": t.is_recurring,
        }
        for t in transactions
    ]
    if not rows:
        return pd.DataFrame(columns=TRANSACTION_COLUMNS)

    df = pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    return df


def frame_to_transactions(df: pd.DataFrame) -> List[Transaction]:
    """
    Builds Transaction objects from an ingestion DataFrame (e.g. a CSV export).

    Required columns: user_id, timestamp, amount, merchant, category.
    Optional: transaction_id (generated when absent), is_recurring,
    context_tags (pipe-separated).

    Raises:
        ValueError: If required columns are missing or a category is unknown.
    """
    missing = [c for c in REQUIRED_INPUT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    taxonomy = Taxonomy()
    df = df.copy()
    if not pd.api.types.is_datetime64_any_dtype(df["timestamp"]):
        df["timestamp"] = pd.to_datetime(df["timestamp"])

    transactions: List[Transaction] = []
    for i, row in enumerate(df.itertuples(index=False)):
        values = row._asdict()
        tags = values.get("context_tags")
        tag_tuple = tuple(
            taxonomy.validate_context_tag(tag)
            for tag in str(tags).split("|") if tag
        ) if isinstance(tags, str) else ()

        timestamp = values["timestamp"]
        transactions.append(Transaction(
            id=str(values.get("transaction_id") or f"txn-{i}"),
            user_id=str(values["user_id"]),
            timestamp=timestamp.to_pydatetime() if hasattr(timestamp, "to_pydatetime") else datetime.fromisoformat(str(timestamp)),
            amount=float(values["amount"]),
            merchant=str(values["merchant"]),
            category=taxonomy.validate_category(str(values["category"])),
            is_recurring=bool(values.get("is_recurring", False)),
            context_tags=tag_tuple,
        ))
    return transactions


def load_transactions_csv(path: str) -> List[Transaction]:
    """Reads a transactions CSV and converts it with frame_to_transactions()."""
    return frame_to_transactions(pd.read_csv(path))
