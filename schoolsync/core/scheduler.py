"""
SchoolSync — Auto-sync Scheduler.

Polls on a fixed cadence and decides *when* to start a sync without the
parent asking:

- interval mode: every `interval_hours` since the last automatic trigger;
- daily mode: once per calendar day, when the wall clock enters the
  [daily_time, daily_time + window) range.

Trigger bookkeeping (`last_triggered_at`, `last_triggered_day`) is saved
through the state repository *before* the sync is launched, so a restart
neither re-triggers immediately nor forgets how much time has elapsed.
The window must be wider than the poll interval or a daily trigger can be
missed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, time as dt_time, timedelta
from typing import TYPE_CHECKING, Callable
from zoneinfo import ZoneInfo

from schoolsync.data.models import SchedulerMode, SchedulerState

if TYPE_CHECKING:
    from schoolsync.core.sync_orchestrator import SyncOrchestrator, SyncReport
    from schoolsync.ports.store_port import SchedulerStateRepository

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    from schoolsync.config import settings

    return datetime.now(ZoneInfo(settings.TIMEZONE))


def parse_daily_time(value: str) -> dt_time:
    """Parse "HH:MM" (24h). Raises ValueError on anything else."""
    try:
        parsed = datetime.strptime(value.strip(), "%H:%M")
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Daily time must be HH:MM, got {value!r}") from exc
    return parsed.time()


def should_trigger(state: SchedulerState, now: datetime, daily_window_minutes: int = 5) -> bool:
    """Pure trigger decision for one poll tick at `now` (timezone-aware)."""
    if not state.enabled:
        return False

    if state.mode == SchedulerMode.INTERVAL:
        if state.last_triggered_at is None:
            return False
        return now - state.last_triggered_at >= timedelta(hours=state.interval_hours)

    target = parse_daily_time(state.daily_time)
    window_start = now.replace(
        hour=target.hour, minute=target.minute, second=0, microsecond=0,
    )
    window_end = window_start + timedelta(minutes=daily_window_minutes)
    if not (window_start <= now < window_end):
        return False
    return state.last_triggered_day != now.date().isoformat()


class AutoSyncScheduler:
    """Cancellable polling task that starts syncs on schedule."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        state_repo: SchedulerStateRepository,
        clock: Callable[[], datetime] = _local_now,
        poll_seconds: float = 30,
        daily_window_minutes: int = 5,
    ) -> None:
        self._orchestrator = orchestrator
        self._state_repo = state_repo
        self._clock = clock
        self._poll_seconds = poll_seconds
        self._window = daily_window_minutes
        self._task: asyncio.Task | None = None
        self._sync_task: asyncio.Task[SyncReport | None] | None = None

        if poll_seconds >= daily_window_minutes * 60:
            logger.warning(
                "Poll interval %ss is not finer than the %d-minute daily window; "
                "daily triggers may be missed",
                poll_seconds, daily_window_minutes,
            )

    @property
    def state(self) -> SchedulerState:
        return self._state_repo.load_state()

    @property
    def sync_task(self) -> asyncio.Task[SyncReport | None] | None:
        """The most recent sync this scheduler launched, if any."""
        return self._sync_task

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_settings(
        self,
        enabled: bool | None = None,
        mode: SchedulerMode | str | None = None,
        interval_hours: int | None = None,
        daily_time: str | None = None,
    ) -> SchedulerState:
        """Apply and persist new settings; they take effect on the next tick.

        Enabling the scheduler or switching modes clears the "already
        triggered today" marker and restarts the interval from now.
        """
        state = self._state_repo.load_state()
        was_enabled, old_mode = state.enabled, state.mode

        if interval_hours is not None:
            if int(interval_hours) < 1:
                raise ValueError("Interval must be at least 1 hour")
            state.interval_hours = int(interval_hours)
        if daily_time is not None:
            state.daily_time = parse_daily_time(daily_time).strftime("%H:%M")
        if mode is not None:
            state.mode = SchedulerMode(mode)
        if enabled is not None:
            state.enabled = enabled

        if (state.enabled and not was_enabled) or state.mode != old_mode:
            state.last_triggered_day = None
            if state.mode == SchedulerMode.INTERVAL:
                state.last_triggered_at = self._clock()

        self._state_repo.save_state(state)
        logger.info(
            "Auto-sync settings: enabled=%s mode=%s interval=%dh daily=%s",
            state.enabled, state.mode.value, state.interval_hours, state.daily_time,
        )
        return state

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _sync_in_flight(self) -> bool:
        if self._orchestrator.is_running:
            return True
        return self._sync_task is not None and not self._sync_task.done()

    async def tick(self) -> bool:
        """One poll. Returns True if a sync was launched."""
        state = self._state_repo.load_state()
        if not state.enabled:
            return False
        if self._sync_in_flight():
            logger.debug("Auto-sync tick skipped: sync in progress")
            return False

        now = self._clock()
        if state.mode == SchedulerMode.INTERVAL and state.last_triggered_at is None:
            # No baseline yet: start counting from now instead of firing.
            state.last_triggered_at = now
            self._state_repo.save_state(state)
            return False

        if not should_trigger(state, now, self._window):
            return False

        state.last_triggered_at = now
        if state.mode == SchedulerMode.DAILY:
            state.last_triggered_day = now.date().isoformat()
        self._state_repo.save_state(state)

        logger.info("Auto-sync triggered (%s mode)", state.mode.value)
        self._sync_task = asyncio.create_task(self._orchestrator.run())
        self._sync_task.add_done_callback(self._on_sync_done)
        return True

    @staticmethod
    def _on_sync_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Automatic sync crashed: %s", exc)
        elif task.result() is None:
            logger.info("Automatic sync skipped: a sync was already running")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Auto-sync tick failed")
            await asyncio.sleep(self._poll_seconds)

    def start(self) -> None:
        """Start polling. Must be called from a running event loop."""
        if self.is_polling:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="auto-sync-scheduler")
        logger.info("Auto-sync scheduler started (poll every %ss)", self._poll_seconds)

    async def stop(self) -> None:
        """Stop polling. A sync already launched is left to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Auto-sync scheduler stopped")
