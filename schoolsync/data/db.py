"""
SchoolSync — SQLite storage.

Children (with their sender rules), synced emails with the events and
actions extracted from them, and the auto-sync scheduler's durable state
all live in one SQLite file, surviving bot restarts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from schoolsync.data.models import (
    ActionItem,
    CategoryType,
    Child,
    PersistedEmail,
    SchedulerMode,
    SchedulerState,
    SchoolEvent,
    SyncHistoryEntry,
    UrgencyLevel,
)

logger = logging.getLogger(__name__)


def to_storage_ts(value: datetime) -> str:
    """Canonical text form of a timestamp: UTC, ISO-8601, second precision.

    Naive datetimes are taken to be UTC. Dedup compares these strings
    exactly, so two instants one second apart never collide.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _from_storage_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class _SQLiteDB(ABC):
    """Shared connection handling for the repositories below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from schoolsync.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @abstractmethod
    def _init_db(self) -> None:
        """Create this repository's tables."""


class ChildDB(_SQLiteDB):
    """SQLite-backed storage for child profiles and their match rules."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS children (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    name        TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    school_name TEXT NOT NULL DEFAULT '',
                    color       TEXT NOT NULL DEFAULT '',
                    match_rules TEXT NOT NULL DEFAULT '[]'
                )
            """)
        logger.debug("Children table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_child(row: sqlite3.Row) -> Child:
        return Child(
            id=row["id"],
            name=row["name"],
            school_name=row["school_name"],
            color=row["color"],
            match_rules=json.loads(row["match_rules"] or "[]"),
        )

    @staticmethod
    def _clean_rules(rules: list[str]) -> list[str]:
        from schoolsync.core.rule_matcher import is_valid_rule, normalize_rule

        cleaned: list[str] = []
        for rule in rules:
            norm = normalize_rule(rule)
            if not norm:
                continue
            if not is_valid_rule(norm):
                raise ValueError(
                    f"Invalid rule {rule!r}: use an email (name@school.com) "
                    "or a domain (school.com)"
                )
            if norm not in cleaned:
                cleaned.append(norm)
        return cleaned

    def add_child(
        self,
        name: str,
        match_rules: list[str] | None = None,
        school_name: str = "",
        color: str = "",
    ) -> Child:
        """Insert a child. Names are unique case-insensitively."""
        name = name.strip()
        if not name:
            raise ValueError("Child name must not be empty")
        rules = self._clean_rules(match_rules or [])

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO children (name, school_name, color, match_rules) "
                    "VALUES (?, ?, ?, ?)",
                    (name, school_name.strip(), color.strip(), json.dumps(rules)),
                )
                child_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"A child named {name!r} already exists") from exc

        logger.info("Child added: #%d '%s' with %d rule(s)", child_id, name, len(rules))
        return Child(
            id=child_id, name=name, school_name=school_name.strip(),
            color=color.strip(), match_rules=rules,
        )

    def get_child(self, child_id: int) -> Child | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM children WHERE id = ?", (child_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_child(row)

    def find_by_name(self, name: str) -> Child | None:
        """Case-insensitive exact match on name."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM children WHERE name = ? COLLATE NOCASE", (name.strip(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_child(row)

    def list_children(self) -> list[Child]:
        """Return all children in creation order."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM children ORDER BY id").fetchall()
        return [self._row_to_child(r) for r in rows]

    def set_rules(self, child_id: int, match_rules: list[str]) -> Child:
        """Replace a child's rules. Raises ValueError if the child is unknown."""
        rules = self._clean_rules(match_rules)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE children SET match_rules = ? WHERE id = ?",
                (json.dumps(rules), child_id),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Child #{child_id} not found")
        logger.info("Child #%d rules updated: %s", child_id, rules)
        child = self.get_child(child_id)
        if child is None:
            raise ValueError(f"Child #{child_id} not found")
        return child

    def delete_child(self, child_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM children WHERE id = ?", (child_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Child #%d deleted", child_id)
        return deleted


class EmailDB(_SQLiteDB):
    """SQLite-backed storage for synced emails, events and action items."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS emails (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    raw_id             TEXT    NOT NULL,
                    subject            TEXT    NOT NULL,
                    sender             TEXT    NOT NULL,
                    preview            TEXT    NOT NULL DEFAULT '',
                    received_at        TEXT    NOT NULL,
                    is_processed       INTEGER NOT NULL DEFAULT 0,
                    child_id           INTEGER,
                    category           TEXT,
                    urgency            TEXT,
                    summary            TEXT,
                    attribution_source TEXT,
                    UNIQUE (subject, received_at)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id       INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_id INTEGER NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
                    child_id INTEGER,
                    title    TEXT NOT NULL,
                    date     TEXT NOT NULL DEFAULT '',
                    time     TEXT NOT NULL DEFAULT '',
                    location TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actions (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_id     INTEGER NOT NULL REFERENCES emails(id) ON DELETE CASCADE,
                    child_id     INTEGER,
                    title        TEXT    NOT NULL,
                    deadline     TEXT    NOT NULL DEFAULT '',
                    urgency      TEXT    NOT NULL,
                    is_completed INTEGER NOT NULL DEFAULT 0
                )
            """)
        logger.debug("Email tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> SchoolEvent:
        return SchoolEvent(
            id=row["id"],
            title=row["title"],
            date=row["date"],
            time=row["time"],
            location=row["location"],
            child_id=row["child_id"],
            email_id=row["email_id"],
            category=CategoryType(row["category"]),
        )

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> ActionItem:
        return ActionItem(
            id=row["id"],
            title=row["title"],
            deadline=row["deadline"],
            child_id=row["child_id"],
            email_id=row["email_id"],
            urgency=UrgencyLevel(row["urgency"]),
            is_completed=bool(row["is_completed"]),
        )

    def _row_to_email(self, conn: sqlite3.Connection, row: sqlite3.Row) -> PersistedEmail:
        events = conn.execute(
            "SELECT * FROM events WHERE email_id = ? ORDER BY id", (row["id"],),
        ).fetchall()
        actions = conn.execute(
            "SELECT * FROM actions WHERE email_id = ? ORDER BY id", (row["id"],),
        ).fetchall()
        return PersistedEmail(
            id=row["id"],
            raw_id=row["raw_id"],
            subject=row["subject"],
            sender=row["sender"],
            preview=row["preview"],
            received_at=_from_storage_ts(row["received_at"]),
            is_processed=bool(row["is_processed"]),
            child_id=row["child_id"],
            category=CategoryType(row["category"]) if row["category"] else None,
            urgency=UrgencyLevel(row["urgency"]) if row["urgency"] else None,
            summary=row["summary"],
            attribution_source=row["attribution_source"],
            events=[self._row_to_event(r) for r in events],
            actions=[self._row_to_action(r) for r in actions],
        )

    def email_exists(self, subject: str, received_at: datetime) -> bool:
        """Exact (subject, received_at) lookup backing the dedup guard."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM emails WHERE subject = ? AND received_at = ?",
                (subject, to_storage_ts(received_at)),
            ).fetchone()
        return row is not None

    def save_email(self, email: PersistedEmail) -> PersistedEmail:
        """Insert an email with its events and actions in one transaction.

        Returns the email with database ids filled in. Raises
        sqlite3.IntegrityError if (subject, received_at) is already stored.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO emails
                    (raw_id, subject, sender, preview, received_at, is_processed,
                     child_id, category, urgency, summary, attribution_source)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    email.raw_id, email.subject, email.sender, email.preview,
                    to_storage_ts(email.received_at), int(email.is_processed),
                    email.child_id,
                    email.category.value if email.category else None,
                    email.urgency.value if email.urgency else None,
                    email.summary, email.attribution_source,
                ),
            )
            email.id = cursor.lastrowid

            for event in email.events:
                event.email_id = email.id
                event.id = conn.execute(
                    """
                    INSERT INTO events
                        (email_id, child_id, title, date, time, location, category)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email.id, event.child_id, event.title, event.date,
                        event.time, event.location, event.category.value,
                    ),
                ).lastrowid

            for action in email.actions:
                action.email_id = email.id
                action.id = conn.execute(
                    """
                    INSERT INTO actions
                        (email_id, child_id, title, deadline, urgency, is_completed)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email.id, action.child_id, action.title, action.deadline,
                        action.urgency.value, int(action.is_completed),
                    ),
                ).lastrowid

        logger.info(
            "Email #%d saved: '%s' (child=%s, %d event(s), %d action(s))",
            email.id, email.subject, email.child_id,
            len(email.events), len(email.actions),
        )
        return email

    def get_email(self, email_id: int) -> PersistedEmail | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM emails WHERE id = ?", (email_id,),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_email(conn, row)

    def list_emails(self, limit: int | None = None) -> list[PersistedEmail]:
        """Return emails, most recently received first."""
        query = "SELECT * FROM emails ORDER BY received_at DESC, id DESC"
        params: list = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_email(conn, r) for r in rows]

    def list_events(self) -> list[SchoolEvent]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY date, time, id").fetchall()
        return [self._row_to_event(r) for r in rows]

    def list_actions(self) -> list[ActionItem]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM actions ORDER BY deadline, id").fetchall()
        return [self._row_to_action(r) for r in rows]

    def count_emails(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM emails").fetchone()[0]


class SchedulerStateDB(_SQLiteDB):
    """Durable auto-sync settings, trigger bookkeeping and sync history."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduler_state (
                    id                 INTEGER PRIMARY KEY CHECK (id = 1),
                    enabled            INTEGER NOT NULL DEFAULT 0,
                    mode               TEXT    NOT NULL DEFAULT 'interval',
                    interval_hours     INTEGER NOT NULL DEFAULT 1,
                    daily_time         TEXT    NOT NULL DEFAULT '09:00',
                    last_triggered_at  TEXT,
                    last_triggered_day TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_history (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    outcome         TEXT    NOT NULL,
                    message         TEXT    NOT NULL,
                    processed_count INTEGER NOT NULL DEFAULT 0,
                    started_at      TEXT    NOT NULL,
                    finished_at     TEXT    NOT NULL
                )
            """)
        logger.debug("Scheduler tables initialized at %s", self._db_path)

    def load_state(self) -> SchedulerState:
        """Return the persisted state, or defaults if nothing was saved yet."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scheduler_state WHERE id = 1").fetchone()
        if row is None:
            return SchedulerState()
        return SchedulerState(
            enabled=bool(row["enabled"]),
            mode=SchedulerMode(row["mode"]),
            interval_hours=row["interval_hours"],
            daily_time=row["daily_time"],
            last_triggered_at=_from_storage_ts(row["last_triggered_at"]),
            last_triggered_day=row["last_triggered_day"],
        )

    def save_state(self, state: SchedulerState) -> None:
        last_at = to_storage_ts(state.last_triggered_at) if state.last_triggered_at else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduler_state
                    (id, enabled, mode, interval_hours, daily_time,
                     last_triggered_at, last_triggered_day)
                VALUES (1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    enabled = excluded.enabled,
                    mode = excluded.mode,
                    interval_hours = excluded.interval_hours,
                    daily_time = excluded.daily_time,
                    last_triggered_at = excluded.last_triggered_at,
                    last_triggered_day = excluded.last_triggered_day
                """,
                (
                    int(state.enabled), state.mode.value, state.interval_hours,
                    state.daily_time, last_at, state.last_triggered_day,
                ),
            )
        logger.debug("Scheduler state saved: %s", state)

    def append_history(self, entry: SyncHistoryEntry, limit: int) -> None:
        """Record a finished run, keeping only the newest `limit` entries."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_history
                    (outcome, message, processed_count, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.outcome, entry.message, entry.processed_count,
                    to_storage_ts(entry.started_at), to_storage_ts(entry.finished_at),
                ),
            )
            conn.execute(
                """
                DELETE FROM sync_history WHERE id NOT IN (
                    SELECT id FROM sync_history ORDER BY id DESC LIMIT ?
                )
                """,
                (limit,),
            )

    def list_history(self) -> list[SyncHistoryEntry]:
        """Most recent run first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM sync_history ORDER BY id DESC").fetchall()
        return [
            SyncHistoryEntry(
                outcome=r["outcome"],
                message=r["message"],
                processed_count=r["processed_count"],
                started_at=_from_storage_ts(r["started_at"]),
                finished_at=_from_storage_ts(r["finished_at"]),
            )
            for r in rows
        ]
