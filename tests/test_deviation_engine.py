"""
test_deviation_engine.py
-------------------------
Tests for the weekly deviation scan: thresholds, cooldown, cold start,
muting, soft nudges and the Monday digest.

Run from the project root:
    python -m pytest tests/test_deviation_engine.py -v
"""

import sys
import os
import pytest
from datetime import date, datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.deviation_engine import (
    BASELINES_CALCULATED, DIGEST_NO_CHANGES, DIGEST_TITLE, NUDGE_TITLE,
    DeviationEngine, build_digest_summary, week_start,
)
from core.exceptions import PreferencesValidationError
from core.models import Baseline, NotificationPreferences, Transaction
from narrative.narrators import TemplateNarrator
from storage.sqlite_store import SqliteStore
from storage.store import InMemoryStore


WEDNESDAY = datetime(2024, 6, 12, 12, 0)     # Week started Sunday 2024-06-09
MONDAY = datetime(2024, 6, 10, 9, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    reset_config()
    yield
    reset_config()


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield InMemoryStore()
    else:
        s = SqliteStore(":memory:")
        yield s
        s.close()


def _make_engine(store) -> DeviationEngine:
    return DeviationEngine(store, TemplateNarrator(seed=1))


def _set_baseline(store, category: str = "food", amount: float = 1000, count: int = 3, user_id: str = "user-1"):
    store.upsert_baseline(Baseline(
        user_id=user_id,
        category=category,
        time_period="weekly",
        baseline_amount=amount,
        baseline_count=count,
        calculated_at=WEDNESDAY - timedelta(days=1),
    ))


def _add_week_spend(store, first_day: datetime, n: int = 4, amount: float = 400.0, category: str = "food", tag: str = "w"):
    """n transactions, one per hour from first_day 08:00."""
    store.add_transactions(
        Transaction(
            id=f"{tag}-{category}-{i}",
            user_id="user-1",
            timestamp=first_day.replace(hour=8 + i, minute=0),
            amount=amount,
            merchant=f"Merchant {i}",
            category=category,
        )
        for i in range(n)
    )


# =============================================================================
# WEEK BOUNDARY TESTS
# =============================================================================

class TestWeekStart:
    @pytest.mark.parametrize("now", [
        datetime(2024, 6, 9, 0, 0),
        datetime(2024, 6, 9, 15, 30),
        datetime(2024, 6, 12, 12, 0),
        datetime(2024, 6, 15, 23, 59),
    ])
    def test_week_starts_on_sunday_midnight(self, now):
        assert week_start(now) == datetime(2024, 6, 9, 0, 0)

    def test_monday_belongs_to_week_started_yesterday(self):
        assert week_start(MONDAY) == datetime(2024, 6, 9, 0, 0)


# =============================================================================
# FIRING RULES
# =============================================================================

class TestDeviationFiring:
    def test_sixty_percent_over_fires_at_medium(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)

        result = _make_engine(store).scan("user-1", WEDNESDAY)

        assert result.count == 1
        event = result.deviations[0]
        assert event.category == "food"
        assert event.deviation_percentage == 60
        assert event.current_amount == 1600
        assert event.occurrence_count == 4
        assert event.cooldown_until == WEDNESDAY + timedelta(days=21)
        assert "food" in event.narrative
        assert len(store.get_deviation_events("user-1")) == 1

    def test_future_dated_spend_ignored(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 13), n=4, amount=400.0)   # Thursday, after now

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.count == 0
        assert store.get_deviation_events("user-1") == []

    def test_low_sensitivity_does_not_fire(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        store.set_preferences("user-1", {"sensitivity": "low"})

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.count == 0

    def test_high_sensitivity_fires_on_smaller_change(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=3, amount=430.0)   # +29%
        store.set_preferences("user-1", {"sensitivity": "high"})

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.count == 1
        assert result.deviations[0].deviation_percentage == 29

    def test_too_few_transactions_does_not_fire(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=2, amount=1500.0)  # +200%, count 2

        assert _make_engine(store).scan("user-1", WEDNESDAY).count == 0

    def test_exactly_at_threshold_fires(self, store):
        _set_baseline(store, amount=900)
        _add_week_spend(store, datetime(2024, 6, 10), n=3, amount=450.0)   # 1350 = +50%

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.count == 1
        assert result.deviations[0].deviation_percentage == 50

    def test_spend_before_week_start_ignored(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 8), n=4, amount=400.0)    # Saturday, last week

        assert _make_engine(store).scan("user-1", WEDNESDAY).count == 0

    def test_category_without_baseline_skipped(self, store):
        _set_baseline(store, category="food", amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=900.0, category="shopping")

        assert _make_engine(store).scan("user-1", WEDNESDAY).count == 0

    def test_zero_baseline_skipped(self, store):
        _set_baseline(store, amount=0)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)

        assert _make_engine(store).scan("user-1", WEDNESDAY).count == 0

    def test_muted_category_never_fires(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        store.set_preferences("user-1", {"muted_categories": ["food"]})

        assert _make_engine(store).scan("user-1", WEDNESDAY).count == 0
        assert store.get_deviation_events("user-1") == []

    def test_categories_evaluated_independently(self, store):
        _set_baseline(store, category="food", amount=1000)
        _set_baseline(store, category="transport", amount=100)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0, category="food")
        _add_week_spend(store, datetime(2024, 6, 11), n=3, amount=100.0, category="transport")

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert sorted(e.category for e in result.deviations) == ["food", "transport"]


# =============================================================================
# COOLDOWN & COLD START
# =============================================================================

class TestCooldown:
    def test_second_scan_in_cooldown_does_not_refire(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        engine = _make_engine(store)

        assert engine.scan("user-1", WEDNESDAY).count == 1
        assert engine.scan("user-1", WEDNESDAY + timedelta(hours=6)).count == 0
        assert len(store.get_deviation_events("user-1")) == 1

    def test_fires_again_after_cooldown_expires(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        engine = _make_engine(store)
        engine.scan("user-1", WEDNESDAY)

        later = WEDNESDAY + timedelta(days=22)                           # Thursday 2024-07-04
        _add_week_spend(store, datetime(2024, 7, 1), n=4, amount=400.0, tag="later")

        result = engine.scan("user-1", later)
        assert result.count == 1
        assert len(store.get_deviation_events("user-1")) == 2

    def test_cooldown_is_per_category(self, store):
        _set_baseline(store, category="food", amount=1000)
        _set_baseline(store, category="shopping", amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0, category="food")
        engine = _make_engine(store)
        engine.scan("user-1", WEDNESDAY)

        _add_week_spend(store, datetime(2024, 6, 11), n=4, amount=400.0, category="shopping")
        result = engine.scan("user-1", WEDNESDAY + timedelta(hours=1))
        assert [e.category for e in result.deviations] == ["shopping"]


class TestColdStart:
    def test_no_baselines_calculates_and_returns_nothing(self, store):
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)

        result = _make_engine(store).scan("user-1", WEDNESDAY)

        assert result.deviations == []
        assert result.message == BASELINES_CALCULATED
        assert store.get_deviation_events("user-1") == []
        assert store.get_baseline("user-1", "food", "weekly") is not None

    def test_user_without_transactions(self, store):
        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.message == BASELINES_CALCULATED
        assert store.get_baselines("user-1") == []


# =============================================================================
# NOTIFICATIONS & DIGEST
# =============================================================================

class TestNotifications:
    def test_no_nudge_by_default(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        _make_engine(store).scan("user-1", WEDNESDAY)

        assert store.get_notifications("user-1") == []

    def test_soft_nudge_written_when_enabled(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)
        store.set_preferences("user-1", {"soft_nudges": True})

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        notes = store.get_notifications("user-1")

        assert len(notes) == 1
        assert notes[0].type == "soft_nudge"
        assert notes[0].title == NUDGE_TITLE
        assert notes[0].body == result.deviations[0].narrative
        assert notes[0].data == {"deviation_id": result.deviations[0].id, "category": "food"}

    def test_monday_digest_lists_changed_categories(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 9), n=4, amount=400.0)    # Sunday

        result = _make_engine(store).scan("user-1", MONDAY)

        assert result.count == 1
        assert result.digest is not None
        assert result.digest.week_start == date(2024, 6, 3)
        assert result.digest.category_changes == {"food": {"change": 60, "amount": 1600}}
        assert "mainly in food" in result.digest.summary

        digests = [n for n in store.get_notifications("user-1") if n.type == "weekly_digest"]
        assert len(digests) == 1
        assert digests[0].title == DIGEST_TITLE
        assert digests[0].data == {"deviation_count": 1}
        assert len(store.get_weekly_checkins("user-1")) == 1

    def test_monday_digest_without_changes(self, store):
        _set_baseline(store, amount=1000)
        result = _make_engine(store).scan("user-1", MONDAY)

        assert result.count == 0
        assert result.digest.summary.endswith(DIGEST_NO_CHANGES)

    def test_no_digest_midweek(self, store):
        _set_baseline(store, amount=1000)
        _add_week_spend(store, datetime(2024, 6, 10), n=4, amount=400.0)

        result = _make_engine(store).scan("user-1", WEDNESDAY)
        assert result.digest is None
        assert store.get_weekly_checkins("user-1") == []

    def test_digest_disabled(self, store):
        _set_baseline(store, amount=1000)
        store.set_preferences("user-1", {"weekly_digest": False})

        result = _make_engine(store).scan("user-1", MONDAY)
        assert result.digest is None
        assert store.get_notifications("user-1") == []

    def test_digest_summary_joins_categories(self):
        class _Event:
            def __init__(self, category):
                self.category = category

        summary = build_digest_summary([_Event("food"), _Event("shopping")])
        assert summary.endswith("mainly in food and shopping.")
        assert "\u2014" not in summary


# =============================================================================
# PREFERENCES
# =============================================================================

class TestPreferences:
    def test_defaults(self):
        prefs = NotificationPreferences.defaults()
        assert prefs.weekly_digest is True
        assert prefs.soft_nudges is False
        assert prefs.sensitivity == "medium"
        assert prefs.muted_categories == frozenset()

    def test_partial_blob_merges_defaults(self):
        prefs = NotificationPreferences.from_dict({"sensitivity": "high"})
        assert prefs.sensitivity == "high"
        assert prefs.weekly_digest is True

    @pytest.mark.parametrize("raw", [
        {"sensitivity": "extreme"},
        {"soft_nudges": "yes"},
        {"weekly_digest": 1},
        {"muted_categories": ["groceries"]},
        {"muted_categories": "food"},
    ])
    def test_invalid_blob_rejected(self, raw):
        with pytest.raises(PreferencesValidationError):
            NotificationPreferences.from_dict(raw)

    def test_to_dict_round_trip(self):
        prefs = NotificationPreferences.from_dict({"muted_categories": ["shopping", "food"]})
        assert prefs.to_dict()["muted_categories"] == ["food", "shopping"]
        assert NotificationPreferences.from_dict(prefs.to_dict()) == prefs


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
