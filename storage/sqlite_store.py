"""
sqlite_store.py
----------------
Durable BaseStore backed by SQLite.

Lists and dicts are stored as JSON text; timestamps as fixed-width ISO
strings so they compare correctly as text. Upsert keys are UNIQUE indexes.

The deviation insert runs inside BEGIN IMMEDIATE, which takes the database
write lock before the cooldown check, so two processes racing on the same
(user, category) cannot both insert.
"""

import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from core.exceptions import RecordNotFoundError
from core.models import (
    Baseline, DeviationEvent, InsightFeedback, MomentStory, Notification,
    Pattern, PatternKey, Transaction, WeeklyCheckin,
)
from storage.store import BaseStore

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        amount REAL NOT NULL,
        merchant TEXT NOT NULL,
        category TEXT NOT NULL,
        is_recurring INTEGER NOT NULL DEFAULT 0,
        context_tags TEXT NOT NULL DEFAULT '[]',
        custom_tag TEXT,
        PRIMARY KEY (user_id, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_user_ts ON transactions(user_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS spending_baselines (
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        time_period TEXT NOT NULL,
        baseline_amount REAL NOT NULL,
        baseline_count INTEGER NOT NULL,
        calculated_at TEXT NOT NULL,
        UNIQUE(user_id, category, time_period)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spending_patterns (
        user_id TEXT NOT NULL,
        pattern_key TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL,
        confidence TEXT NOT NULL,
        occurrences INTEGER NOT NULL,
        time_range TEXT NOT NULL,
        average_amount INTEGER NOT NULL,
        trend TEXT NOT NULL,
        first_detected TEXT NOT NULL,
        last_updated TEXT NOT NULL,
        transaction_ids TEXT NOT NULL DEFAULT '[]',
        UNIQUE(user_id, pattern_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deviation_events (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        deviation_percentage INTEGER NOT NULL,
        baseline_amount REAL NOT NULL,
        current_amount REAL NOT NULL,
        occurrence_count INTEGER NOT NULL,
        time_period TEXT NOT NULL,
        narrative TEXT NOT NULL,
        created_at TEXT NOT NULL,
        cooldown_until TEXT NOT NULL,
        acknowledged INTEGER NOT NULL DEFAULT 0,
        acknowledged_response TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deviation_user_cat ON deviation_events(user_id, category, cooldown_until)",
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        body TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        read INTEGER NOT NULL DEFAULT 0,
        dismissed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS weekly_checkins (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        summary TEXT NOT NULL,
        category_changes TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        user_response TEXT,
        user_note TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_preferences (
        user_id TEXT PRIMARY KEY,
        preferences TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS insight_feedback (
        user_id TEXT NOT NULL,
        pattern_key TEXT NOT NULL,
        dismissed INTEGER NOT NULL DEFAULT 0,
        user_feedback TEXT,
        UNIQUE(user_id, pattern_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS moment_stories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        narrative TEXT NOT NULL,
        pattern_type TEXT NOT NULL,
        heatmap_data TEXT NOT NULL DEFAULT '{}',
        related_transactions TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        dismissed INTEGER NOT NULL DEFAULT 0,
        user_feedback TEXT
    )
    """,
]


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SqliteStore(BaseStore):
    """
    SQLite store. One connection per store, shared across threads behind a
    lock; autocommit mode with explicit transactions for multi-statement writes.

    Usage:
        store = SqliteStore("reflection.db")     # or ":memory:"
    """

    def __init__(self, database_path: str = ":memory:"):
        if database_path != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        self.database_path = database_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(database_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            for statement in SCHEMA:
                self._conn.execute(statement)
        logger.debug(f"SQLite schema ready at {self.database_path}")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        self._conn.close()

    # -------------------------------------------------------------------------
    # ROW MAPPING
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            timestamp=_parse_ts(row["timestamp"]),
            amount=row["amount"],
            merchant=row["merchant"],
            category=row["category"],
            is_recurring=bool(row["is_recurring"]),
            context_tags=tuple(json.loads(row["context_tags"])),
            custom_tag=row["custom_tag"],
        )

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> Pattern:
        return Pattern(
            user_id=row["user_id"],
            key=PatternKey.from_string(row["pattern_key"]),
            description=row["description"],
            occurrences=row["occurrences"],
            time_range=row["time_range"],
            average_amount=row["average_amount"],
            trend=row["trend"],
            first_detected=_parse_ts(row["first_detected"]),
            last_updated=_parse_ts(row["last_updated"]),
            category=row["category"],
            transaction_ids=json.loads(row["transaction_ids"]),
        )

    @staticmethod
    def _row_to_deviation(row: sqlite3.Row) -> DeviationEvent:
        return DeviationEvent(
            id=row["id"],
            user_id=row["user_id"],
            category=row["category"],
            deviation_percentage=row["deviation_percentage"],
            baseline_amount=row["baseline_amount"],
            current_amount=row["current_amount"],
            occurrence_count=row["occurrence_count"],
            time_period=row["time_period"],
            narrative=row["narrative"],
            created_at=_parse_ts(row["created_at"]),
            cooldown_until=_parse_ts(row["cooldown_until"]),
            acknowledged=bool(row["acknowledged"]),
            acknowledged_response=row["acknowledged_response"],
        )

    # -------------------------------------------------------------------------
    # TRANSACTIONS
    # -------------------------------------------------------------------------

    def add_transactions(self, transactions: Iterable[Transaction]) -> int:
        added = 0
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                for t in transactions:
                    cur = self._conn.execute(
                        "INSERT OR IGNORE INTO transactions "
                        "(id, user_id, timestamp, amount, merchant, category, is_recurring, context_tags, custom_tag) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (t.id, t.user_id, _ts(t.timestamp), float(t.amount), t.merchant, t.category,
                         int(t.is_recurring), json.dumps(list(t.context_tags)), t.custom_tag),
                    )
                    added += cur.rowcount
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return added

    def get_transactions(self, user_id: str, since: Optional[datetime] = None) -> List[Transaction]:
        if since is None:
            rows = self._fetchall(
                "SELECT * FROM transactions WHERE user_id = ? ORDER BY timestamp", (user_id,)
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM transactions WHERE user_id = ? AND timestamp >= ? ORDER BY timestamp",
                (user_id, _ts(since)),
            )
        return [self._row_to_transaction(r) for r in rows]

    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        rows = self._fetchall(
            "SELECT * FROM transactions WHERE user_id = ? AND id = ?", (user_id, transaction_id)
        )
        if not rows:
            raise RecordNotFoundError(f"Transaction {transaction_id} not found for user {user_id}")
        return self._row_to_transaction(rows[0])

    def append_context_tags(
        self, user_id: str, transaction_id: str, tags: Iterable[str], custom_tag: Optional[str] = None
    ) -> Transaction:
        txn = self.get_transaction(user_id, transaction_id)
        merged = list(dict.fromkeys([*txn.context_tags, *tags]))
        new_custom = custom_tag if custom_tag is not None else txn.custom_tag
        self._execute(
            "UPDATE transactions SET context_tags = ?, custom_tag = ? WHERE user_id = ? AND id = ?",
            (json.dumps(merged), new_custom, user_id, transaction_id),
        )
        return self.get_transaction(user_id, transaction_id)

    # -------------------------------------------------------------------------
    # BASELINES
    # -------------------------------------------------------------------------

    def upsert_baseline(self, baseline: Baseline) -> None:
        self._execute(
            "INSERT INTO spending_baselines "
            "(user_id, category, time_period, baseline_amount, baseline_count, calculated_at) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, category, time_period) DO UPDATE SET "
            "baseline_amount = excluded.baseline_amount, "
            "baseline_count = excluded.baseline_count, "
            "calculated_at = excluded.calculated_at",
            (baseline.user_id, baseline.category, baseline.time_period,
             baseline.baseline_amount, baseline.baseline_count, _ts(baseline.calculated_at)),
        )

    def get_baselines(self, user_id: str) -> List[Baseline]:
        rows = self._fetchall("SELECT * FROM spending_baselines WHERE user_id = ?", (user_id,))
        return [
            Baseline(
                user_id=r["user_id"],
                category=r["category"],
                time_period=r["time_period"],
                baseline_amount=r["baseline_amount"],
                baseline_count=r["baseline_count"],
                calculated_at=_parse_ts(r["calculated_at"]),
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # PATTERNS
    # -------------------------------------------------------------------------

    def upsert_pattern(self, pattern: Pattern) -> Pattern:
        key = pattern.key.as_string()
        self._execute(
            "INSERT INTO spending_patterns "
            "(user_id, pattern_key, title, description, category, confidence, occurrences, "
            "time_range, average_amount, trend, first_detected, last_updated, transaction_ids) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id, pattern_key) DO UPDATE SET "
            "title = excluded.title, description = excluded.description, "
            "category = excluded.category, confidence = excluded.confidence, "
            "occurrences = excluded.occurrences, time_range = excluded.time_range, "
            "average_amount = excluded.average_amount, trend = excluded.trend, "
            "last_updated = excluded.last_updated, transaction_ids = excluded.transaction_ids",
            (pattern.user_id, key, pattern.title, pattern.description, pattern.category,
             pattern.confidence, pattern.occurrences, pattern.time_range, pattern.average_amount,
             pattern.trend, _ts(pattern.first_detected), _ts(pattern.last_updated),
             json.dumps(pattern.transaction_ids)),
        )
        rows = self._fetchall(
            "SELECT * FROM spending_patterns WHERE user_id = ? AND pattern_key = ?",
            (pattern.user_id, key),
        )
        return self._row_to_pattern(rows[0])

    def get_patterns(self, user_id: str) -> List[Pattern]:
        rows = self._fetchall("SELECT * FROM spending_patterns WHERE user_id = ?", (user_id,))
        return [self._row_to_pattern(r) for r in rows]

    # -------------------------------------------------------------------------
    # DEVIATIONS
    # -------------------------------------------------------------------------

    def get_active_deviation(self, user_id: str, category: str, now: datetime) -> Optional[DeviationEvent]:
        rows = self._fetchall(
            "SELECT * FROM deviation_events WHERE user_id = ? AND category = ? AND cooldown_until > ? LIMIT 1",
            (user_id, category, _ts(now)),
        )
        return self._row_to_deviation(rows[0]) if rows else None

    def insert_deviation_event(self, event: DeviationEvent, now: datetime) -> Optional[DeviationEvent]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                active = self._conn.execute(
                    "SELECT 1 FROM deviation_events WHERE user_id = ? AND category = ? AND cooldown_until > ? LIMIT 1",
                    (event.user_id, event.category, _ts(now)),
                ).fetchone()
                if active is not None:
                    self._conn.execute("ROLLBACK")
                    return None
                self._conn.execute(
                    "INSERT INTO deviation_events "
                    "(id, user_id, category, deviation_percentage, baseline_amount, current_amount, "
                    "occurrence_count, time_period, narrative, created_at, cooldown_until, "
                    "acknowledged, acknowledged_response) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (event.id, event.user_id, event.category, event.deviation_percentage,
                     event.baseline_amount, event.current_amount, event.occurrence_count,
                     event.time_period, event.narrative, _ts(event.created_at),
                     _ts(event.cooldown_until), int(event.acknowledged), event.acknowledged_response),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return event

    def get_deviation_events(self, user_id: str) -> List[DeviationEvent]:
        rows = self._fetchall(
            "SELECT * FROM deviation_events WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [self._row_to_deviation(r) for r in rows]

    def acknowledge_deviation(self, user_id: str, event_id: str, response: Optional[str] = None) -> DeviationEvent:
        cur = self._execute(
            "UPDATE deviation_events SET acknowledged = 1, acknowledged_response = ? WHERE user_id = ? AND id = ?",
            (response, user_id, event_id),
        )
        if cur.rowcount == 0:
            raise RecordNotFoundError(f"Deviation event {event_id} not found for user {user_id}")
        rows = self._fetchall("SELECT * FROM deviation_events WHERE id = ?", (event_id,))
        return self._row_to_deviation(rows[0])

    # -------------------------------------------------------------------------
    # NOTIFICATIONS & CHECK-INS
    # -------------------------------------------------------------------------

    def add_notification(self, notification: Notification) -> Notification:
        self._execute(
            "INSERT INTO notifications (id, user_id, type, title, body, data, created_at, read, dismissed) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (notification.id, notification.user_id, notification.type, notification.title,
             notification.body, json.dumps(notification.data), _ts(notification.created_at),
             int(notification.read), int(notification.dismissed)),
        )
        return notification

    def get_notifications(self, user_id: str) -> List[Notification]:
        rows = self._fetchall(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [
            Notification(
                id=r["id"],
                user_id=r["user_id"],
                type=r["type"],
                title=r["title"],
                body=r["body"],
                data=json.loads(r["data"]),
                created_at=_parse_ts(r["created_at"]),
                read=bool(r["read"]),
                dismissed=bool(r["dismissed"]),
            )
            for r in rows
        ]

    def add_weekly_checkin(self, checkin: WeeklyCheckin) -> WeeklyCheckin:
        self._execute(
            "INSERT INTO weekly_checkins "
            "(id, user_id, week_start, summary, category_changes, created_at, user_response, user_note) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (checkin.id, checkin.user_id, checkin.week_start.isoformat(), checkin.summary,
             json.dumps(checkin.category_changes), _ts(checkin.created_at),
             checkin.user_response, checkin.user_note),
        )
        return checkin

    def get_weekly_checkins(self, user_id: str) -> List[WeeklyCheckin]:
        rows = self._fetchall(
            "SELECT * FROM weekly_checkins WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [
            WeeklyCheckin(
                id=r["id"],
                user_id=r["user_id"],
                week_start=date.fromisoformat(r["week_start"]),
                summary=r["summary"],
                category_changes=json.loads(r["category_changes"]),
                created_at=_parse_ts(r["created_at"]),
                user_response=r["user_response"],
                user_note=r["user_note"],
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # PREFERENCES, FEEDBACK, STORIES
    # -------------------------------------------------------------------------

    def get_preferences(self, user_id: str) -> Optional[dict]:
        rows = self._fetchall(
            "SELECT preferences FROM notification_preferences WHERE user_id = ?", (user_id,)
        )
        return json.loads(rows[0]["preferences"]) if rows else None

    def set_preferences(self, user_id: str, preferences: dict) -> None:
        self._execute(
            "INSERT INTO notification_preferences (user_id, preferences) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET preferences = excluded.preferences",
            (user_id, json.dumps(preferences)),
        )

    def upsert_insight_feedback(self, feedback: InsightFeedback) -> None:
        self._execute(
            "INSERT INTO insight_feedback (user_id, pattern_key, dismissed, user_feedback) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(user_id, pattern_key) DO UPDATE SET "
            "dismissed = excluded.dismissed, user_feedback = excluded.user_feedback",
            (feedback.user_id, feedback.pattern_key.as_string(),
             int(feedback.dismissed), feedback.user_feedback),
        )

    def get_insight_feedback(self, user_id: str) -> Dict[PatternKey, InsightFeedback]:
        rows = self._fetchall("SELECT * FROM insight_feedback WHERE user_id = ?", (user_id,))
        result: Dict[PatternKey, InsightFeedback] = {}
        for r in rows:
            key = PatternKey.from_string(r["pattern_key"])
            result[key] = InsightFeedback(
                user_id=r["user_id"],
                pattern_key=key,
                dismissed=bool(r["dismissed"]),
                user_feedback=r["user_feedback"],
            )
        return result

    def add_moment_story(self, story: MomentStory) -> MomentStory:
        self._execute(
            "INSERT INTO moment_stories "
            "(id, user_id, title, narrative, pattern_type, heatmap_data, related_transactions, "
            "created_at, dismissed, user_feedback) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (story.id, story.user_id, story.title, story.narrative, story.pattern_type,
             json.dumps(story.heatmap_data), json.dumps(story.related_transactions),
             _ts(story.created_at), int(story.dismissed), story.user_feedback),
        )
        return story

    def get_moment_stories(self, user_id: str) -> List[MomentStory]:
        rows = self._fetchall(
            "SELECT * FROM moment_stories WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [
            MomentStory(
                id=r["id"],
                user_id=r["user_id"],
                title=r["title"],
                narrative=r["narrative"],
                pattern_type=r["pattern_type"],
                heatmap_data=json.loads(r["heatmap_data"]),
                related_transactions=json.loads(r["related_transactions"]),
                created_at=_parse_ts(r["created_at"]),
                dismissed=bool(r["dismissed"]),
                user_feedback=r["user_feedback"],
            )
            for r in rows
        ]
