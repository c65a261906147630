"""
SchoolSync — Data Models.

Children and their matching rules are configured by the parent; emails,
events and actions are produced by the sync loop. Everything here is plain
data: the repositories in `schoolsync.data.db` own persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class CategoryType(str, Enum):
    ACTION_REQUIRED = "Action Required"
    EVENT_ATTENDANCE = "Event - Attendance"
    EVENT_PARENT = "Event - Parent Attendance"
    DATE_TO_NOTE = "Date to Note"
    INFO_ONLY = "Information Only"
    PAYMENT_DUE = "Payment Due"


class UrgencyLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class SchedulerMode(str, Enum):
    INTERVAL = "interval"
    DAILY = "daily"


@dataclass
class Child:
    """A child profile with the sender rules that route mail to them.

    Rules are stored normalized (trimmed, lowercased) and are one of:
    a bare domain ("school.com"), an @-domain ("@school.com") or a full
    address ("office@school.com").
    """

    id: int
    name: str
    school_name: str = ""
    color: str = ""
    match_rules: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class InboxMessage:
    """A normalized message as returned by a MailSource. Never mutated."""

    raw_id: str
    sender: str                  # raw From header, any casing/format
    subject: str
    received_at: datetime        # timezone-aware
    body_text: str = ""
    preview: str = ""

    def text_for_analysis(self) -> str:
        """Best-effort plain text: full body, else the preview snippet."""
        return self.body_text.strip() or self.preview.strip()


@dataclass
class SchoolEvent:
    id: int | None
    title: str
    date: str                    # ISO date as extracted, may be ""
    time: str = ""
    location: str = ""
    child_id: int | None = None
    email_id: int | None = None
    category: CategoryType = CategoryType.EVENT_ATTENDANCE


@dataclass
class ActionItem:
    id: int | None
    title: str
    deadline: str                # ISO date as extracted, may be ""
    child_id: int | None = None
    email_id: int | None = None
    urgency: UrgencyLevel = UrgencyLevel.MEDIUM
    is_completed: bool = False


@dataclass
class PersistedEmail:
    """The durable record of one synced message.

    Exactly one row exists per distinct (subject, received_at) pair.
    """

    id: int | None
    raw_id: str
    subject: str
    sender: str
    received_at: datetime
    preview: str = ""
    is_processed: bool = False
    child_id: int | None = None
    category: CategoryType | None = None
    urgency: UrgencyLevel | None = None
    summary: str | None = None
    attribution_source: str | None = None
    events: list[SchoolEvent] = field(default_factory=list)
    actions: list[ActionItem] = field(default_factory=list)


@dataclass
class SchedulerState:
    """Auto-sync configuration plus its durable trigger bookkeeping."""

    enabled: bool = False
    mode: SchedulerMode = SchedulerMode.INTERVAL
    interval_hours: int = 1
    daily_time: str = "09:00"    # HH:MM, 24h, in settings.TIMEZONE
    last_triggered_at: datetime | None = None
    last_triggered_day: str | None = None   # ISO date of the last daily trigger


@dataclass
class SyncHistoryEntry:
    outcome: str
    message: str
    processed_count: int
    started_at: datetime
    finished_at: datetime
