"""
SchoolSync — Dashboard Projection.

Best-effort in-memory view of what the parent sees: emails, events and
actions. Updated incrementally while a sync runs (it is a SyncListener),
and rebuildable from the store at any time, which stays the source of truth.
"""

from __future__ import annotations

import bisect
import logging
from datetime import date
from typing import TYPE_CHECKING

from schoolsync.data.models import ActionItem, PersistedEmail, SchoolEvent

if TYPE_CHECKING:
    from schoolsync.core.sync_orchestrator import SyncReport, SyncRun
    from schoolsync.ports.store_port import EmailRepository

logger = logging.getLogger(__name__)


def _newest_first(email: PersistedEmail) -> tuple[float, int]:
    # Ascending on this key means received_at DESC, id DESC, as in EmailDB.list_emails.
    return (-email.received_at.timestamp(), -(email.id or 0))


class DashboardProjection:
    def __init__(self) -> None:
        self.emails: list[PersistedEmail] = []
        self.events: list[SchoolEvent] = []
        self.actions: list[ActionItem] = []
        self.progress_text: str = ""
        self.last_report: SyncReport | None = None

    def reload(self, emails: EmailRepository) -> None:
        """Rebuild the whole projection from the store."""
        self.emails = emails.list_emails()
        self.events = emails.list_events()
        self.actions = emails.list_actions()
        logger.debug(
            "Projection reloaded: %d email(s), %d event(s), %d action(s)",
            len(self.emails), len(self.events), len(self.actions),
        )

    # SyncListener ---------------------------------------------------------

    async def on_progress(self, run: SyncRun) -> None:
        self.progress_text = run.last_message

    async def on_email_persisted(self, email: PersistedEmail) -> None:
        bisect.insort(self.emails, email, key=_newest_first)
        self.events.extend(email.events)
        self.actions.extend(email.actions)

    async def on_sync_finished(self, report: SyncReport) -> None:
        self.last_report = report
        self.progress_text = report.message

    # Queries --------------------------------------------------------------

    def upcoming_events(self, today: date | None = None) -> list[SchoolEvent]:
        """Events dated today or later (undated ones last), soonest first."""
        today_iso = (today or date.today()).isoformat()
        dated = [e for e in self.events if e.date and e.date[:10] >= today_iso]
        undated = [e for e in self.events if not e.date]
        return sorted(dated, key=lambda e: (e.date, e.time)) + undated

    def outstanding_actions(self) -> list[ActionItem]:
        """Open actions, earliest deadline first (no deadline last)."""
        pending = [a for a in self.actions if not a.is_completed]
        return sorted(pending, key=lambda a: (not a.deadline, a.deadline))

    def emails_for_child(self, child_id: int | None) -> list[PersistedEmail]:
        return [e for e in self.emails if e.child_id == child_id]
