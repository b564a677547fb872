"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. BaselineCalculator  →  weekly baselines per category
    2. PatternDetector     →  classified recurring patterns
    3. DeviationEngine     →  deviation events, nudges, weekly digest
    4. Narrators           →  user-facing text under the tone policy
    5. StoryGenerator      →  moment stories for the top patterns

Each public method is one per-user request/response operation. A caller
must pass an already-authenticated user id; a blank id is rejected before
the store is touched.

Usage:
    from pipeline import ReflectionPipeline

    pipeline = ReflectionPipeline()
    pipeline.ingest_transactions(user_id, transactions)
    result = pipeline.detect_patterns(user_id)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from config.config_loader import get_storage_config
from core.baseline_calculator import BaselineCalculator
from core.deviation_engine import DeviationEngine
from core.exceptions import AuthenticationError, RecordNotFoundError
from core.insights import build_insights
from core.models import (
    DeviationEvent, Insight, InsightFeedback, NotificationPreferences,
    Pattern, PatternKey, Transaction,
)
from core.pattern_detector import PatternDetector
from core.taxonomy import Taxonomy
from narrative.base_narrator import BaseNarrator
from narrative.narrators import get_narrator
from narrative.statement_analyzer import StatementAnalysis, StatementAnalyzer
from narrative.story_generator import StoryGenerator
from narrative.text_client import TextGenerationClient
from storage.sqlite_store import SqliteStore
from storage.store import BaseStore, InMemoryStore

logger = logging.getLogger(__name__)


NO_TRANSACTIONS = "No transactions found"


def build_store(config: Optional[Dict[str, Any]] = None) -> BaseStore:
    """Instantiates the configured storage backend."""
    cfg = config or get_storage_config()
    backend = cfg["backend"]
    if backend == "memory":
        return InMemoryStore()
    if backend == "sqlite":
        return SqliteStore(cfg["sqlite_path"])
    raise KeyError(f"Unknown storage backend '{backend}'. Available: ['memory', 'sqlite']")


class ReflectionPipeline:
    """
    Per-user entry points for the detection core.

    Runs for one user are sequential; runs for different users share nothing
    but the store and may execute concurrently.
    """

    def __init__(
        self,
        store: BaseStore | None = None,
        narrator: BaseNarrator | None = None,
        clock: Callable[[], datetime] = datetime.now,
        text_client: TextGenerationClient | None = None,
    ):
        """
        Args:
            store: Persistence backend. Defaults to the configured backend.
            narrator: Narrative strategy. Defaults to the configured strategy.
            clock: Returns "now" in local time. Injected for tests.
            text_client: Collaborator client for AI narration and statement
                analysis. Defaults to one built from config, if an API key is set.
        """
        self.store = store or build_store()
        self.clock = clock
        self.text_client = text_client
        self.narrator = narrator or get_narrator(client=text_client)
        self.taxonomy = Taxonomy()

        self.baseline_calculator = BaselineCalculator(self.store)
        self.pattern_detector = PatternDetector(self.store)
        self.deviation_engine = DeviationEngine(self.store, self.narrator, self.baseline_calculator)
        self.story_generator = StoryGenerator(self.store, self.narrator)

        logger.info(
            f"Pipeline initialized. Store: {type(self.store).__name__}. "
            f"Narrator: {self.narrator.name}."
        )

    # -------------------------------------------------------------------------
    # DETECTION OPERATIONS
    # -------------------------------------------------------------------------

    def calculate_baselines(self, user_id: str) -> Dict[str, Any]:
        """Recompute weekly baselines. Always reports calculated=True."""
        self._require_user(user_id)
        baselines = self.baseline_calculator.calculate(user_id, self.clock())
        return {"calculated": True, "baselines": baselines, "count": len(baselines)}

    def detect_patterns(self, user_id: str) -> Dict[str, Any]:
        """Detect, upsert and return patterns, strongest first."""
        self._require_user(user_id)
        now = self.clock()
        patterns = self.pattern_detector.detect(user_id, now)
        result: Dict[str, Any] = {"patterns": patterns, "count": len(patterns)}
        window_start = now - timedelta(days=self.pattern_detector.lookback_days)
        if not patterns and not self.store.get_transactions(user_id, since=window_start):
            result["message"] = NO_TRANSACTIONS
        return result

    def run_deviation_scan(self, user_id: str) -> Dict[str, Any]:
        """Compare this week to baselines; writes events and notifications."""
        self._require_user(user_id)
        scan = self.deviation_engine.scan(user_id, self.clock())
        result: Dict[str, Any] = {"deviations": scan.deviations, "count": scan.count}
        if scan.message:
            result["message"] = scan.message
        if scan.digest is not None:
            result["digest"] = scan.digest
        return result

    def generate_stories(self, user_id: str) -> Dict[str, Any]:
        self._require_user(user_id)
        stories = self.story_generator.generate(user_id, self.clock())
        result: Dict[str, Any] = {"stories": stories.stories, "count": stories.count}
        if stories.message:
            result["message"] = stories.message
        return result

    def analyze_statement(self, document_text: str) -> StatementAnalysis:
        """
        Send a statement's text to the collaborator for structured analysis.

        Raises:
            RuntimeError: If no text client is configured.
            TextGenerationError: On rate limit, quota or service failure.
        """
        client = self.text_client or TextGenerationClient.from_config()
        if client is None:
            raise RuntimeError("Statement analysis requires a configured text-generation API key")
        return StatementAnalyzer(client).analyze(document_text)

    # -------------------------------------------------------------------------
    # INGESTION & USER INPUT
    # -------------------------------------------------------------------------

    def ingest_transactions(self, user_id: str, transactions: Iterable[Transaction]) -> int:
        """Store transactions for this user. Rows for other users are rejected."""
        self._require_user(user_id)
        txns = list(transactions)
        foreign = [t.id for t in txns if t.user_id != user_id]
        if foreign:
            raise ValueError(f"Transactions belong to another user: {foreign[:5]}")
        for t in txns:
            self.taxonomy.validate_category(t.category)
        added = self.store.add_transactions(txns)
        logger.info(f"Ingested {added} new transactions for user {user_id} ({len(txns) - added} already stored).")
        return added

    def tag_transaction(
        self, user_id: str, transaction_id: str, tags: Iterable[str], custom_tag: Optional[str] = None
    ) -> Transaction:
        self._require_user(user_id)
        validated = [self.taxonomy.validate_context_tag(t) for t in tags]
        return self.store.append_context_tags(user_id, transaction_id, validated, custom_tag)

    def set_preferences(self, user_id: str, preferences: Dict[str, Any]) -> NotificationPreferences:
        """Validate and store notification preferences."""
        self._require_user(user_id)
        prefs = NotificationPreferences.from_dict(preferences)
        self.store.set_preferences(user_id, prefs.to_dict())
        return prefs

    def acknowledge_deviation(self, user_id: str, event_id: str, response: Optional[str] = None) -> DeviationEvent:
        self._require_user(user_id)
        return self.store.acknowledge_deviation(user_id, event_id, response)

    # -------------------------------------------------------------------------
    # INSIGHTS
    # -------------------------------------------------------------------------

    def get_insights(self, user_id: str, include_dismissed: bool = False) -> List[Insight]:
        self._require_user(user_id)
        return build_insights(
            self.store.get_patterns(user_id),
            self.store.get_insight_feedback(user_id),
            self.narrator,
            include_dismissed=include_dismissed,
        )

    def record_insight_feedback(self, user_id: str, pattern_key: PatternKey, feedback: Optional[str]) -> InsightFeedback:
        self._require_user(user_id)
        current = self._feedback_for(user_id, pattern_key)
        updated = InsightFeedback(
            user_id=user_id, pattern_key=pattern_key, dismissed=current.dismissed, user_feedback=feedback
        )
        self.store.upsert_insight_feedback(updated)
        return updated

    def dismiss_insight(self, user_id: str, pattern_key: PatternKey) -> InsightFeedback:
        self._require_user(user_id)
        current = self._feedback_for(user_id, pattern_key)
        updated = InsightFeedback(
            user_id=user_id, pattern_key=pattern_key, dismissed=True, user_feedback=current.user_feedback
        )
        self.store.upsert_insight_feedback(updated)
        return updated

    def _feedback_for(self, user_id: str, pattern_key: PatternKey) -> InsightFeedback:
        if not any(p.key == pattern_key for p in self.store.get_patterns(user_id)):
            raise RecordNotFoundError(f"Pattern {pattern_key.as_string()} not found for user {user_id}")
        existing = self.store.get_insight_feedback(user_id).get(pattern_key)
        return existing or InsightFeedback(user_id=user_id, pattern_key=pattern_key)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_user(user_id: str) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise AuthenticationError("Missing or invalid user identity")


# =============================================================================
# OUTPUT SERIALIZATION
# =============================================================================

def patterns_to_frame(patterns: List[Pattern]) -> pd.DataFrame:
    """Flat DataFrame of patterns, one row each, in the given order."""
    columns = [
        "user_id", "pattern_key", "title", "description", "category", "confidence",
        "occurrences", "time_range", "average_amount", "trend", "first_detected", "last_updated",
    ]
    if not patterns:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([p.to_dict() for p in patterns], columns=columns)


def deviations_to_frame(events: List[DeviationEvent]) -> pd.DataFrame:
    columns = [
        "id", "user_id", "category", "deviation_percentage", "baseline_amount", "current_amount",
        "occurrence_count", "time_period", "narrative", "created_at", "cooldown_until", "acknowledged",
    ]
    if not events:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([e.to_dict() for e in events], columns=columns)
