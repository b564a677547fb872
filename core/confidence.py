"""
confidence.py
--------------
Confidence classification for detected patterns.

The tier is a pure, monotonic function of the occurrence count. It is the
only place confidence is computed: the pattern detector, stored patterns
and statement analysis all call get_confidence().
"""

from config.config_loader import get_confidence_tiers


CONFIDENCE_RANK = {"strong": 0, "emerging": 1, "weak": 2}


def get_confidence(occurrences: int) -> str:
    """
    Maps an occurrence count to "strong" | "emerging" | "weak".

    With the shipped config: >= 6 strong, 3-5 emerging, otherwise weak.
    """
    tiers = get_confidence_tiers()
    if occurrences >= tiers["strong"]:
        return "strong"
    if occurrences >= tiers["emerging"]:
        return "emerging"
    return "weak"


def confidence_rank(confidence: str) -> int:
    """Sort rank: strongest first."""
    return CONFIDENCE_RANK[confidence]
