"""
taxonomy.py
------------
Transaction taxonomy layer.

Loads the closed category list, the context tag list and the hour buckets
from config.yaml, and derives the time-of-day and day-of-week labels that
every detection layer groups on.

Taxonomy updates happen in config.yaml; no code changes required.
"""

from datetime import datetime
from typing import Dict, Tuple

from config.config_loader import get_taxonomy_config


DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
WEEKEND_DAYS = frozenset({"saturday", "sunday"})
LATE_NIGHT = "late_night"


class Taxonomy:
    """
    Lookup for categories, context tags and time-of-day buckets.

    Built once at init from the config taxonomy block. Thread-safe for reads.
    """

    def __init__(self):
        cfg = get_taxonomy_config()
        self.categories: Tuple[str, ...] = tuple(cfg["categories"])
        self.context_tags: Tuple[str, ...] = tuple(cfg["context_tags"])
        self._buckets: Dict[str, Tuple[int, int]] = {
            name: (int(bounds[0]), int(bounds[1]))
            for name, bounds in cfg["time_of_day_buckets"].items()
        }

    def time_of_day(self, hour: int) -> str:
        """Maps an hour (0-23) to its bucket; hours outside every bucket are late_night."""
        for name, (start, end) in self._buckets.items():
            if start <= hour < end:
                return name
        return LATE_NIGHT

    def is_category(self, category: str) -> bool:
        return category in self.categories

    def validate_category(self, category: str) -> str:
        if category not in self.categories:
            raise ValueError(
                f"Unknown category '{category}'. Expected one of: {list(self.categories)}"
            )
        return category

    def validate_context_tag(self, tag: str) -> str:
        if tag not in self.context_tags:
            raise ValueError(
                f"Unknown context tag '{tag}'. Expected one of: {list(self.context_tags)}"
            )
        return tag

    def __repr__(self) -> str:
        return f"Taxonomy(categories={list(self.categories)}, buckets={self._buckets})"


def day_of_week(timestamp: datetime) -> str:
    """Lowercase English weekday name for a timestamp."""
    return DAY_NAMES[timestamp.weekday()]


def get_time_of_day(timestamp: datetime) -> str:
    """Shortcut: time-of-day bucket for a timestamp using the configured taxonomy."""
    return Taxonomy().time_of_day(timestamp.hour)
