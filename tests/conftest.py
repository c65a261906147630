"""Shared test fixtures and configuration.

Sets up fake environment variables so schoolsync.config doesn't sys.exit(),
and provides temp-file repositories plus in-memory fakes for the ports.
"""

import os

# Patch env vars BEFORE any schoolsync imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timedelta, timezone

import pytest

from schoolsync.core.classifier import ClassifierOutcome, ClassifierResult, EmailAnalysis
from schoolsync.data.models import InboxMessage


@pytest.fixture
def child_db(tmp_path):
    """Return a ChildDB instance backed by a temp file."""
    from schoolsync.data.db import ChildDB
    return ChildDB(db_path=str(tmp_path / "test_children.db"))


@pytest.fixture
def email_db(tmp_path):
    """Return an EmailDB instance backed by a temp file."""
    from schoolsync.data.db import EmailDB
    return EmailDB(db_path=str(tmp_path / "test_emails.db"))


@pytest.fixture
def state_db(tmp_path):
    """Return a SchedulerStateDB instance backed by a temp file."""
    from schoolsync.data.db import SchedulerStateDB
    return SchedulerStateDB(db_path=str(tmp_path / "test_state.db"))


# ---------------------------------------------------------------------------
# Builders & fakes shared by the core tests
# ---------------------------------------------------------------------------

BASE_TIME = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


def make_message(
    subject: str = "Trip letter",
    sender: str = "office@oakwood.edu",
    received_at: datetime | None = None,
    body_text: str = "Year 3 are going to the Science Museum on 12 March.",
    raw_id: str = "m1",
) -> InboxMessage:
    return InboxMessage(
        raw_id=raw_id,
        sender=sender,
        subject=subject,
        received_at=received_at or BASE_TIME,
        body_text=body_text,
        preview=body_text[:40],
    )


def make_messages(count: int) -> list[InboxMessage]:
    return [
        make_message(
            subject=f"Newsletter {i}",
            received_at=BASE_TIME + timedelta(minutes=i),
            raw_id=f"m{i}",
        )
        for i in range(1, count + 1)
    ]


def fake_classifier(child_name: str | None = None, **analysis_fields):
    """Build an async classifier that always names `child_name`.

    The returned callable records every call in `.calls` as
    (text, candidates, preferred) tuples and, like the real adapter,
    reports UNATTRIBUTED when the name is not a candidate.
    """
    calls: list[tuple] = []

    async def classify(text, candidates, preferred=None):
        calls.append((text, list(candidates), preferred))
        analysis = EmailAnalysis(
            childName=child_name,
            summary=analysis_fields.get("summary", "Trip to the museum."),
            category=analysis_fields.get("category", "Event - Attendance"),
            urgency=analysis_fields.get("urgency", "Medium"),
            events=analysis_fields.get("events", []),
            actions=analysis_fields.get("actions", []),
        )
        if child_name is not None and child_name in candidates:
            return ClassifierResult(
                outcome=ClassifierOutcome.ATTRIBUTED, analysis=analysis, child_name=child_name,
            )
        return ClassifierResult(outcome=ClassifierOutcome.UNATTRIBUTED, analysis=analysis)

    classify.calls = calls
    return classify


class FakeMailSource:
    """In-memory MailSource returning a fixed list of messages."""

    def __init__(self, messages=None, error: Exception | None = None):
        self.messages = list(messages or [])
        self.error = error
        self.calls: list[tuple[list[str], int]] = []

    async def search(self, query_terms, lookback_months):
        self.calls.append((list(query_terms), lookback_months))
        if self.error is not None:
            raise self.error
        return list(self.messages)


class RecordingListener:
    """SyncListener that records every notification it receives."""

    def __init__(self):
        self.progress: list[str] = []
        self.persisted = []
        self.reports = []

    async def on_progress(self, run):
        self.progress.append(run.last_message)

    async def on_email_persisted(self, email):
        self.persisted.append(email)

    async def on_sync_finished(self, report):
        self.reports.append(report)
