"""Store ports — repository interfaces consumed by the sync core.

All methods are synchronous, matching the SQLite implementations in
`schoolsync.data.db`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from schoolsync.data.models import (
    ActionItem,
    Child,
    PersistedEmail,
    SchedulerState,
    SchoolEvent,
    SyncHistoryEntry,
)


class ChildRepository(Protocol):
    def list_children(self) -> list[Child]: ...


class EmailRepository(Protocol):
    def email_exists(self, subject: str, received_at: datetime) -> bool: ...

    def save_email(self, email: PersistedEmail) -> PersistedEmail: ...

    def list_emails(self, limit: int | None = None) -> list[PersistedEmail]: ...

    def list_events(self) -> list[SchoolEvent]: ...

    def list_actions(self) -> list[ActionItem]: ...


class SchedulerStateRepository(Protocol):
    def load_state(self) -> SchedulerState: ...

    def save_state(self, state: SchedulerState) -> None: ...


class SyncHistoryRepository(Protocol):
    def append_history(self, entry: SyncHistoryEntry, limit: int) -> None: ...

    def list_history(self) -> list[SyncHistoryEntry]: ...
