"""
narrators.py
-------------
Concrete narrative strategies.

- TemplateNarrator: fixed tentative phrasings. The deviation phrasing is
  picked by a seeded random.Random so a given seed always yields the same
  sequence.
- AINarrator: asks the text-generation collaborator, checks the result
  against the tone policy, and falls back to a TemplateNarrator on any
  failure. It never raises for a generation problem.

The active strategy is chosen by narrative.strategy in config.yaml.
"""

import logging
import random
from typing import Any, Dict, Optional

from config.config_loader import get_narrative_config
from core.exceptions import TextGenerationError
from narrative.base_narrator import BaseNarrator, NarrativeFacts
from narrative.text_client import TextGenerationClient
from narrative.tone import check_tone

logger = logging.getLogger(__name__)


DEVIATION_TEMPLATES = (
    "This week, your {category} spending is {pct}% higher than your typical weeks, "
    "across {count} transactions. It might be a one-off, or a new pattern. Want to take a look?",
    "It looks like your {category} spending changed this week: {count} transactions, "
    "about {pct}% more than usual. Does this feel like a temporary shift?",
    "We noticed your {category} activity is higher than your baseline this week. "
    "This could reflect a change in routine, or just a busy week.",
)

SYSTEM_PROMPT = (
    "You are a warm, non-judgmental behavioral finance analyst who helps people "
    "reflect on their spending patterns."
)

TONE_RULES = (
    'Use tentative language ("It looks like...", "You tend to...", "This might suggest...", "We noticed..."). '
    'Never use "you should", "overspending", "always", "must" or "mistake". '
    "Focus on reflection, not judgment. Do NOT give advice or mention budgets."
)


# =============================================================================
# TEMPLATE NARRATOR
# =============================================================================
class TemplateNarrator(BaseNarrator):
    """Non-AI narrator. Also the fallback for AINarrator."""

    name = "template"

    def __init__(self, seed: Optional[int] = None):
        self._rng = random.Random(seed)

    def narrate_deviation(self, facts: NarrativeFacts) -> str:
        template = self._rng.choice(DEVIATION_TEMPLATES)
        return template.format(category=facts.category, pct=facts.magnitude_pct, count=facts.occurrences)

    def narrate_pattern(self, facts: NarrativeFacts) -> str:
        if facts.description:
            return facts.description
        return (
            f"It looks like {facts.category} shows up often in your spending, "
            f"{facts.occurrences} times in the last 90 days."
        )


# =============================================================================
# AI NARRATOR
# =============================================================================
class AINarrator(BaseNarrator):
    """
    Narrator backed by the text-generation collaborator.

    One attempt per narrative; timeouts, quota errors, empty output and tone
    violations all resolve to the template fallback.
    """

    name = "ai"

    def __init__(self, client: TextGenerationClient, fallback: Optional[BaseNarrator] = None):
        self.client = client
        self.fallback = fallback or TemplateNarrator()

    def narrate_deviation(self, facts: NarrativeFacts) -> str:
        prompt = (
            "Write one or two sentences telling the user about a change in their weekly spending.\n\n"
            f"- Category: {facts.category}\n"
            f"- Change vs. usual week: +{facts.magnitude_pct}%\n"
            f"- Transactions this week: {facts.occurrences}\n\n"
            f"{TONE_RULES}"
        )
        return self._generate(prompt, lambda: self.fallback.narrate_deviation(facts))

    def narrate_pattern(self, facts: NarrativeFacts) -> str:
        lines = [
            'Write a 2-3 sentence reflective "Moment That Matters" story about a spending pattern.',
            "",
            "Pattern details:",
            f"- Title: {facts.title}",
            f"- Description: {facts.description}",
            f"- Category: {facts.category}",
            f"- Occurrences: {facts.occurrences} times in last 90 days",
            f"- Average amount: {facts.average_amount}",
            f"- Trend: {facts.trend}",
            f"- Time range: {facts.time_range}",
        ]
        if facts.emotion_tags:
            lines.append(f"- Emotion tags on related transactions: {', '.join(facts.emotion_tags)}")
        lines.extend(["", TONE_RULES])
        return self._generate("\n".join(lines), lambda: self.fallback.narrate_pattern(facts))

    def _generate(self, prompt: str, fallback) -> str:
        try:
            return check_tone(self.client.generate(SYSTEM_PROMPT, prompt))
        except TextGenerationError as e:
            logger.warning(f"Narrative generation failed, using template fallback: {e}")
            return fallback()


# =============================================================================
# NARRATOR REGISTRY
# =============================================================================

NARRATOR_REGISTRY: dict[str, type[BaseNarrator]] = {
    "template": TemplateNarrator,
    "ai": AINarrator,
}


def get_narrator(config: Optional[Dict[str, Any]] = None, client: Optional[TextGenerationClient] = None) -> BaseNarrator:
    """
    Instantiates the configured narrator.

    "ai" without a client (and no API key in the environment) degrades to
    the template narrator.
    """
    cfg = config or get_narrative_config()
    strategy = cfg["strategy"]
    if strategy not in NARRATOR_REGISTRY:
        raise KeyError(
            f"No narrator '{strategy}'. Available: {list(NARRATOR_REGISTRY.keys())}"
        )

    template = TemplateNarrator(seed=cfg.get("template_seed"))
    if strategy == "template":
        return template

    client = client or TextGenerationClient.from_config(cfg)
    if client is None:
        logger.warning(f"Narrative strategy 'ai' configured but ${cfg['api_key_env']} is not set; using templates.")
        return template
    return AINarrator(client, fallback=template)
