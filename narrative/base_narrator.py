"""
base_narrator.py
-----------------
Abstract base class for narrative strategies.

The detection core hands a narrator structured facts only; the narrator
turns them into user-facing text under the tone policy in tone.py.

Concrete narrators implement:
    - narrate_deviation(): text for a fired DeviationEvent
    - narrate_pattern(): text for a Pattern or moment story
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class NarrativeFacts:
    """Structured input for a narrator. Carries facts, never opinions."""

    category: str
    occurrences: int
    magnitude_pct: Optional[int] = None     # Deviation size in whole percent
    trend: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    average_amount: Optional[float] = None
    time_range: Optional[str] = None
    emotion_tags: list[str] = field(default_factory=list)


class BaseNarrator(ABC):
    """Strategy interface for narrative generation."""

    name: str = "base"

    @abstractmethod
    def narrate_deviation(self, facts: NarrativeFacts) -> str:
        ...

    @abstractmethod
    def narrate_pattern(self, facts: NarrativeFacts) -> str:
        ...
