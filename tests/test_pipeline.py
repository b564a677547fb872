"""
test_pipeline.py
-----------------
End-to-end tests for ReflectionPipeline and the CLI entry point.

Run from the project root:
    python -m pytest tests/test_pipeline.py -v
"""

import sys
import os
import json
import pytest
from datetime import datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.deviation_engine import BASELINES_CALCULATED
from core.exceptions import AuthenticationError, PreferencesValidationError, RecordNotFoundError
from core.models import Baseline, PatternKey, Transaction
from core.sample_data import generate_sample_transactions
from main import main
from narrative.base_narrator import BaseNarrator
from narrative.narrators import TemplateNarrator
from narrative.story_generator import NOT_ENOUGH_PATTERNS
from pipeline import NO_TRANSACTIONS, ReflectionPipeline, build_store, deviations_to_frame, patterns_to_frame
from storage.sqlite_store import SqliteStore
from storage.store import InMemoryStore


NOW = datetime(2024, 6, 12, 12, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    reset_config()
    yield
    reset_config()


class _RecordingNarrator(BaseNarrator):
    """Captures the facts each call receives."""

    name = "recording"

    def __init__(self):
        self.facts = []

    def narrate_deviation(self, facts):
        self.facts.append(facts)
        return f"We noticed {facts.category} is up {facts.magnitude_pct}%."

    def narrate_pattern(self, facts):
        self.facts.append(facts)
        return f"It looks like {facts.title} is a pattern."


class _CannedClient:
    def __init__(self, reply):
        self.reply = reply

    def generate(self, system_prompt, user_prompt, max_tokens=None):
        return self.reply


def _make_pipeline(narrator=None, store=None, text_client=None) -> ReflectionPipeline:
    return ReflectionPipeline(
        store=store or InMemoryStore(),
        narrator=narrator or TemplateNarrator(seed=1),
        clock=lambda: NOW,
        text_client=text_client,
    )


def _late_night_orders(n: int = 7, user_id: str = "user-1"):
    return [
        Transaction(
            id=f"ln-{i}",
            user_id=user_id,
            timestamp=datetime(2024, 5, 6, 22) + timedelta(days=i),
            amount=300.0,
            merchant=f"Kitchen {i}",
            category="food",
        )
        for i in range(n)
    ]


# =============================================================================
# AUTH & INGESTION
# =============================================================================

class TestIngestion:
    @pytest.mark.parametrize("user_id", ["", "   ", None])
    def test_missing_user_rejected(self, user_id):
        pipeline = _make_pipeline()
        with pytest.raises(AuthenticationError):
            pipeline.calculate_baselines(user_id)
        with pytest.raises(AuthenticationError):
            pipeline.detect_patterns(user_id)

    def test_ingest_counts_new_rows(self):
        pipeline = _make_pipeline()
        assert pipeline.ingest_transactions("user-1", _late_night_orders(3)) == 3
        assert pipeline.ingest_transactions("user-1", _late_night_orders(5)) == 2

    def test_ingest_rejects_other_users_rows(self):
        pipeline = _make_pipeline()
        with pytest.raises(ValueError, match="another user"):
            pipeline.ingest_transactions("user-1", _late_night_orders(2, user_id="user-2"))

    def test_ingest_rejects_unknown_category(self):
        txn = Transaction("t", "user-1", NOW, 10.0, "Shop", "groceries")
        with pytest.raises(ValueError, match="Unknown category"):
            _make_pipeline().ingest_transactions("user-1", [txn])

    def test_tag_transaction(self):
        pipeline = _make_pipeline()
        pipeline.ingest_transactions("user-1", _late_night_orders(1))

        txn = pipeline.tag_transaction("user-1", "ln-0", ["work_stress"], custom_tag="deadline")
        assert txn.context_tags == ("work_stress",)
        assert txn.custom_tag == "deadline"

        with pytest.raises(ValueError):
            pipeline.tag_transaction("user-1", "ln-0", ["hungry"])
        with pytest.raises(RecordNotFoundError):
            pipeline.tag_transaction("user-1", "missing", ["boredom"])


# =============================================================================
# DETECTION OPERATIONS
# =============================================================================

class TestDetection:
    def test_patterns_without_transactions(self):
        result = _make_pipeline().detect_patterns("user-1")
        assert result["patterns"] == []
        assert result["count"] == 0
        assert result["message"] == NO_TRANSACTIONS

    def test_patterns_with_only_old_transactions(self):
        pipeline = _make_pipeline()
        pipeline.ingest_transactions("user-1", [
            Transaction(f"old{i}", "user-1", NOW - timedelta(days=120 + i), 300, "Swiggy", "food")
            for i in range(5)
        ])
        result = pipeline.detect_patterns("user-1")
        assert result["count"] == 0
        assert result["message"] == NO_TRANSACTIONS

    def test_baselines_always_report_calculated(self):
        result = _make_pipeline().calculate_baselines("user-1")
        assert result["calculated"] is True
        assert result["count"] == 0

    def test_sample_data_end_to_end(self):
        pipeline = _make_pipeline()
        transactions = generate_sample_transactions("demo", NOW)
        assert pipeline.ingest_transactions("demo", transactions) == 115

        baselines = pipeline.calculate_baselines("demo")
        assert baselines["count"] >= 1

        result = pipeline.detect_patterns("demo")
        assert result["count"] == len(result["patterns"])
        assert "message" not in result

        late = [p for p in result["patterns"] if p.title == "Late-night food"]
        assert len(late) == 1
        assert late[0].confidence == "strong"
        assert late[0].occurrences >= 15

        rank = {"strong": 0, "emerging": 1, "weak": 2}
        ranks = [rank[p.confidence] for p in result["patterns"]]
        assert ranks == sorted(ranks)

    def test_sample_data_is_seeded(self):
        a = generate_sample_transactions("demo", NOW)
        b = generate_sample_transactions("demo", NOW)
        assert [(t.id, t.timestamp, t.amount) for t in a] == [(t.id, t.timestamp, t.amount) for t in b]
        assert all(NOW - timedelta(days=90) <= t.timestamp <= NOW for t in a)
        assert a[0].timestamp >= a[-1].timestamp

    def test_deviation_scan_cold_start_then_fire(self):
        pipeline = _make_pipeline()
        pipeline.ingest_transactions("user-1", [
            Transaction(f"w{i}", "user-1", datetime(2024, 6, 10, 9 + i), 400.0, "Cafe", "food")
            for i in range(4)
        ])

        first = pipeline.run_deviation_scan("user-1")
        assert first["count"] == 0
        assert first["message"] == BASELINES_CALCULATED

        pipeline.store.upsert_baseline(Baseline("user-1", "food", "weekly", 1000, 3, NOW))
        second = pipeline.run_deviation_scan("user-1")
        assert second["count"] == 1
        assert second["deviations"][0].deviation_percentage == 60
        assert "digest" not in second

        acked = pipeline.acknowledge_deviation("user-1", second["deviations"][0].id, "guests")
        assert acked.acknowledged is True

    def test_acknowledge_unknown_event(self):
        with pytest.raises(RecordNotFoundError):
            _make_pipeline().acknowledge_deviation("user-1", "nope")

    def test_preferences_validated_and_applied(self):
        pipeline = _make_pipeline()
        with pytest.raises(PreferencesValidationError):
            pipeline.set_preferences("user-1", {"sensitivity": "extreme"})
        assert pipeline.store.get_preferences("user-1") is None

        prefs = pipeline.set_preferences("user-1", {"muted_categories": ["food"]})
        assert prefs.muted_categories == frozenset({"food"})
        assert pipeline.deviation_engine.load_preferences("user-1") == prefs


# =============================================================================
# INSIGHTS & STORIES
# =============================================================================

class TestInsights:
    def _pipeline_with_pattern(self):
        pipeline = _make_pipeline()
        pipeline.ingest_transactions("user-1", _late_night_orders(7))
        pipeline.detect_patterns("user-1")
        return pipeline

    def test_insights_derived_from_patterns(self):
        pipeline = self._pipeline_with_pattern()
        insights = pipeline.get_insights("user-1")

        assert [i.title for i in insights] == ["Late-night food"]
        assert insights[0].confidence == "strong"
        assert insights[0].narrative == insights[0].pattern.description
        assert insights[0].dismissed is False

    def test_dismiss_hides_insight(self):
        pipeline = self._pipeline_with_pattern()
        key = PatternKey("food", "late_night")
        pipeline.record_insight_feedback("user-1", key, "accurate")
        pipeline.dismiss_insight("user-1", key)

        assert pipeline.get_insights("user-1") == []
        shown = pipeline.get_insights("user-1", include_dismissed=True)
        assert shown[0].dismissed is True
        assert shown[0].user_feedback == "accurate"

    def test_feedback_keeps_dismissal(self):
        pipeline = self._pipeline_with_pattern()
        key = PatternKey("food", "late_night")
        pipeline.dismiss_insight("user-1", key)
        feedback = pipeline.record_insight_feedback("user-1", key, "not_quite")
        assert feedback.dismissed is True

    def test_insight_survives_redetection(self):
        pipeline = self._pipeline_with_pattern()
        key = PatternKey("food", "late_night")
        pipeline.record_insight_feedback("user-1", key, "accurate")
        pipeline.detect_patterns("user-1")
        assert pipeline.get_insights("user-1")[0].user_feedback == "accurate"

    def test_feedback_on_unknown_pattern(self):
        pipeline = self._pipeline_with_pattern()
        with pytest.raises(RecordNotFoundError):
            pipeline.dismiss_insight("user-1", PatternKey("shopping", "weekend"))

    def test_invalid_feedback_label(self):
        pipeline = self._pipeline_with_pattern()
        with pytest.raises(ValueError):
            pipeline.record_insight_feedback("user-1", PatternKey("food", "late_night"), "meh")


class TestStories:
    def test_no_patterns(self):
        result = _make_pipeline().generate_stories("user-1")
        assert result["stories"] == []
        assert result["message"] == NOT_ENOUGH_PATTERNS

    def test_story_for_pattern(self):
        narrator = _RecordingNarrator()
        pipeline = _make_pipeline(narrator=narrator)
        pipeline.ingest_transactions("user-1", _late_night_orders(7))
        pipeline.tag_transaction("user-1", "ln-6", ["work_stress"])
        pipeline.tag_transaction("user-1", "ln-5", ["boredom"])
        pipeline.detect_patterns("user-1")

        result = pipeline.generate_stories("user-1")

        assert result["count"] == 1
        story = result["stories"][0]
        assert story.title == "Late-night food"
        assert story.pattern_type == "food"
        assert story.narrative == "It looks like Late-night food is a pattern."
        assert sorted(story.related_transactions) == sorted(f"ln-{i}" for i in range(7))
        assert sum(story.heatmap_data.values()) == 7
        assert narrator.facts[-1].emotion_tags == ["work_stress", "boredom"]
        assert len(pipeline.store.get_moment_stories("user-1")) == 1

    def test_at_most_three_narrated(self):
        narrator = _RecordingNarrator()
        pipeline = _make_pipeline(narrator=narrator)
        pipeline.ingest_transactions("demo", generate_sample_transactions("demo", NOW))
        pipeline.detect_patterns("demo")

        result = pipeline.generate_stories("demo")
        assert 1 <= result["count"] <= 3
        assert result["stories"][0].title == "Late-night food"
        occurrences = {p.title: p.occurrences for p in pipeline.store.get_patterns("demo")}
        counts = [occurrences[s.title] for s in result["stories"]]
        assert counts == sorted(counts, reverse=True)


# =============================================================================
# STATEMENT ANALYSIS
# =============================================================================

class TestAnalyzeStatement:
    def test_requires_text_client(self, monkeypatch):
        monkeypatch.delenv("NARRATIVE_API_KEY", raising=False)
        with pytest.raises(RuntimeError):
            _make_pipeline().analyze_statement("01/05 SWIGGY 320.00")

    def test_uses_injected_client(self):
        reply = json.dumps({
            "summary": {"totalTransactions": 1, "totalSpent": 320},
            "patterns": [], "insights": [], "transactions": [],
        })
        analysis = _make_pipeline(text_client=_CannedClient(reply)).analyze_statement("01/05 SWIGGY 320.00")
        assert analysis.summary.total_transactions == 1
        assert not analysis.parse_failed


# =============================================================================
# OUTPUT & ENTRY POINT
# =============================================================================

class TestOutputs:
    def test_frames_have_fixed_columns_when_empty(self):
        assert "title" in patterns_to_frame([]).columns
        assert "deviation_percentage" in deviations_to_frame([]).columns

    def test_patterns_frame(self):
        pipeline = _make_pipeline()
        pipeline.ingest_transactions("user-1", _late_night_orders(7))
        df = patterns_to_frame(pipeline.detect_patterns("user-1")["patterns"])
        assert df.iloc[0]["title"] == "Late-night food"
        assert df.iloc[0]["pattern_key"] == "food|late_night|"

    def test_build_store(self, tmp_path):
        assert isinstance(build_store({"backend": "memory"}), InMemoryStore)
        sqlite = build_store({"backend": "sqlite", "sqlite_path": str(tmp_path / "r.db")})
        assert isinstance(sqlite, SqliteStore)
        sqlite.close()
        with pytest.raises(KeyError):
            build_store({"backend": "postgres"})

    def test_cli_sample_run_writes_csvs(self, tmp_path):
        main(["--user", "demo", "--sample", "--output-dir", str(tmp_path)])
        names = sorted(os.listdir(tmp_path))
        assert any(n.startswith("patterns_") and n.endswith(".csv") for n in names)
        assert any(n.startswith("deviations_") and n.endswith(".csv") for n in names)


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
