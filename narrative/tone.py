"""
tone.py
--------
Narrative tone policy.

User-facing text must read as reflection, not judgment:
    - it must contain at least one tentative marker ("it looks like",
      "you tend to", "this might suggest", "we noticed", ...);
    - it must not contain prescriptive or absolute language ("you should",
      "overspending", "always", "must", "mistake").

Matching is case-insensitive and on word boundaries.
"""

import re
from typing import List

from core.exceptions import ToneViolationError


TENTATIVE_MARKERS = (
    "it looks like",
    "you tend to",
    "this might suggest",
    "we noticed",
    "it might",
    "this could",
    "it seems",
)

FORBIDDEN_PHRASES = (
    "you should",
    "overspending",
    "always",
    "must",
    "mistake",
)

_FORBIDDEN_RE = re.compile(
    r"\b(" + "|".join(re.escape(p) for p in FORBIDDEN_PHRASES) + r")\b", re.IGNORECASE
)


def find_violations(text: str) -> List[str]:
    """Returns every tone problem found in text. Empty list means the text is acceptable."""
    problems = [f"forbidden phrase '{m.group(1).lower()}'" for m in _FORBIDDEN_RE.finditer(text)]
    lowered = text.lower()
    if not any(marker in lowered for marker in TENTATIVE_MARKERS):
        problems.append("no tentative phrasing")
    return problems


def check_tone(text: str) -> str:
    """
    Validates text against the tone policy.

    Returns:
        The text, stripped.

    Raises:
        ToneViolationError: If any problem is found.
    """
    text = text.strip()
    problems = find_violations(text)
    if problems:
        raise ToneViolationError(f"Narrative rejected by tone policy: {', '.join(problems)}")
    return text
