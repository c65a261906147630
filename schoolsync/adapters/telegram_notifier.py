"""Telegram sync notifier — implements SyncListener.

Pushes a short summary to the parent's chat when a sync finishes, and a
heads-up for urgent emails as they are persisted. Per-message progress
is not pushed; /status shows it on demand.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from telegram import Bot

from schoolsync.data.models import PersistedEmail, UrgencyLevel

if TYPE_CHECKING:
    from schoolsync.core.sync_orchestrator import SyncReport, SyncRun

logger = logging.getLogger(__name__)

_URGENT = {UrgencyLevel.HIGH, UrgencyLevel.CRITICAL}


class TelegramSyncNotifier:
    """Telegram implementation of SyncListener."""

    def __init__(self, bot: Bot, chat_ids: list[int]) -> None:
        self._bot = bot
        self._chat_ids = list(chat_ids)

    async def _broadcast(self, text: str) -> None:
        for chat_id in self._chat_ids:
            try:
                await self._bot.send_message(chat_id=chat_id, text=text)
            except Exception as exc:
                logger.error("Failed to notify chat %d: %s", chat_id, exc)

    async def on_progress(self, run: SyncRun) -> None:
        return None

    async def on_email_persisted(self, email: PersistedEmail) -> None:
        if email.urgency in _URGENT:
            await self._broadcast(
                f"⚠️ {email.urgency.value}: {email.subject}\n{email.summary or ''}".strip()
            )

    async def on_sync_finished(self, report: SyncReport) -> None:
        await self._broadcast(f"📬 {report.message}")
