"""
story_generator.py
-------------------
Builds "moment stories": short narrated cards for the user's top patterns.

Only strong and emerging patterns qualify. The top fetch_limit by
occurrences are considered and the first narrate_limit are narrated.
Emotion context for a story is the context tags on the user's transactions
in the same category, most recent first. The heatmap counts the pattern's
own supporting transactions per weekday.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from config.config_loader import get_narrative_config
from core.insights import pattern_facts
from core.models import MomentStory, Pattern, Transaction
from narrative.base_narrator import BaseNarrator
from storage.store import BaseStore

logger = logging.getLogger(__name__)


NOT_ENOUGH_PATTERNS = "Not enough patterns detected yet"
HEATMAP_DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
STORY_CONFIDENCE = ("strong", "emerging")


@dataclass
class StoryResult:
    stories: List[MomentStory] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def count(self) -> int:
        return len(self.stories)


class StoryGenerator:
    """
    Usage:
        generator = StoryGenerator(store, narrator)
        result = generator.generate(user_id, now=datetime.now())
    """

    def __init__(self, store: BaseStore, narrator: BaseNarrator):
        self.store = store
        self.narrator = narrator
        cfg = get_narrative_config()["stories"]
        self.fetch_limit = cfg["fetch_limit"]
        self.narrate_limit = cfg["narrate_limit"]
        self.emotion_tag_limit = cfg["emotion_tag_limit"]

    def generate(self, user_id: str, now: datetime) -> StoryResult:
        candidates = sorted(
            (p for p in self.store.get_patterns(user_id) if p.confidence in STORY_CONFIDENCE),
            key=lambda p: -p.occurrences,
        )[: self.fetch_limit]

        if not candidates:
            return StoryResult(message=NOT_ENOUGH_PATTERNS)

        transactions = self.store.get_transactions(user_id)
        by_id = {t.id: t for t in transactions}

        stories: List[MomentStory] = []
        for pattern in candidates[: self.narrate_limit]:
            tags = self._emotion_context(pattern, transactions)
            narrative = self.narrator.narrate_pattern(pattern_facts(pattern, tags))
            story = MomentStory(
                user_id=user_id,
                title=pattern.title,
                narrative=narrative.strip(),
                pattern_type=pattern.category,
                created_at=now,
                heatmap_data=weekday_heatmap(pattern, by_id),
                related_transactions=list(pattern.transaction_ids),
            )
            stories.append(self.store.add_moment_story(story))

        logger.info(f"Generated {len(stories)} stories for user {user_id}.")
        return StoryResult(stories=stories)

    def _emotion_context(self, pattern: Pattern, transactions: List[Transaction]) -> List[str]:
        tags: List[str] = []
        for txn in sorted(transactions, key=lambda t: t.timestamp, reverse=True):
            if txn.category != pattern.category:
                continue
            tags.extend(txn.context_tags)
            if len(tags) >= self.emotion_tag_limit:
                break
        return tags[: self.emotion_tag_limit]


def weekday_heatmap(pattern: Pattern, transactions_by_id: Dict[str, Transaction]) -> Dict[str, int]:
    """Count of the pattern's supporting transactions per weekday, Mon..Sun."""
    heatmap = {day: 0 for day in HEATMAP_DAYS}
    for txn_id in pattern.transaction_ids:
        txn = transactions_by_id.get(txn_id)
        if txn is not None:
            heatmap[HEATMAP_DAYS[txn.timestamp.weekday()]] += 1
    return heatmap
