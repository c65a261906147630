"""Mail port — abstract interface for fetching candidate school email.

The sync loop depends on this protocol, never on a specific mail provider.
"""

from __future__ import annotations

from typing import Protocol

from schoolsync.data.models import InboxMessage


class MailSourceError(Exception):
    """Raised when the mail provider cannot be reached or refuses the query."""


class MailSource(Protocol):
    """Abstract mail search used by the Sync Orchestrator."""

    async def search(
        self, query_terms: list[str], lookback_months: int
    ) -> list[InboxMessage]: ...
