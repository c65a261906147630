"""Sync listener port — how the presentation layer follows a sync run.

The orchestrator pushes incremental updates to every registered listener;
listeners never mutate run state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from schoolsync.core.sync_orchestrator import SyncReport, SyncRun
    from schoolsync.data.models import PersistedEmail


class SyncListener(Protocol):
    """Subscriber to sync progress."""

    async def on_progress(self, run: SyncRun) -> None: ...

    async def on_email_persisted(self, email: PersistedEmail) -> None: ...

    async def on_sync_finished(self, report: SyncReport) -> None: ...
