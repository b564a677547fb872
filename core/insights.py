"""
insights.py
------------
Read-time Insight view.

Insights are never stored. They are computed on each read by joining the
user's stored patterns with their feedback rows, so the narrative can never
drift from the pattern it describes.
"""

from typing import Dict, List

from core.confidence import confidence_rank
from core.models import Insight, InsightFeedback, Pattern, PatternKey
from narrative.base_narrator import BaseNarrator, NarrativeFacts


def pattern_facts(pattern: Pattern, emotion_tags: list[str] | None = None) -> NarrativeFacts:
    """Structured narrator input for a pattern."""
    return NarrativeFacts(
        category=pattern.category,
        occurrences=pattern.occurrences,
        trend=pattern.trend,
        title=pattern.title,
        description=pattern.description,
        average_amount=pattern.average_amount,
        time_range=pattern.time_range,
        emotion_tags=list(emotion_tags or []),
    )


def build_insights(
    patterns: List[Pattern],
    feedback: Dict[PatternKey, InsightFeedback],
    narrator: BaseNarrator,
    include_dismissed: bool = False,
) -> List[Insight]:
    """
    Joins patterns with feedback, strongest and most frequent first.

    Dismissed insights are dropped unless include_dismissed is set.
    """
    insights: List[Insight] = []
    ordered = sorted(patterns, key=lambda p: (confidence_rank(p.confidence), -p.occurrences, p.title))
    for pattern in ordered:
        fb = feedback.get(pattern.key)
        dismissed = fb.dismissed if fb else False
        if dismissed and not include_dismissed:
            continue
        insights.append(Insight(
            pattern=pattern,
            narrative=narrator.narrate_pattern(pattern_facts(pattern)),
            dismissed=dismissed,
            user_feedback=fb.user_feedback if fb else None,
        ))
    return insights
