"""Tests for schoolsync.bot.telegram_bot — Telegram command handlers.

Tests argument parsing, formatting, authorization and the handlers'
interaction with the orchestrator, scheduler and repositories. All
external dependencies (Gmail, LLM, Telegram) are mocked.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from schoolsync.bot.telegram_bot import (
    _format_children,
    _format_history,
    _format_schedule,
    _format_status,
    _parse_autosync_args,
    _parse_sync_args,
)
from schoolsync.data.models import Child, PersistedEmail, SchedulerMode, SchedulerState, SyncHistoryEntry

T0 = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Tests for argument parsing
# ---------------------------------------------------------------------------


class TestParseSyncArgs:
    def test_no_args(self):
        assert _parse_sync_args([]) == (None, None)

    def test_months_only(self):
        assert _parse_sync_args(["6"]) == (6, None)

    def test_months_and_child(self):
        assert _parse_sync_args(["3", "Mary", "Jane"]) == (3, "Mary Jane")

    def test_child_only(self):
        assert _parse_sync_args(["Sam"]) == (None, "Sam")

    def test_months_out_of_range(self):
        with pytest.raises(ValueError):
            _parse_sync_args(["0"])
        with pytest.raises(ValueError):
            _parse_sync_args(["99"])


class TestParseAutosyncArgs:
    def test_show(self):
        assert _parse_autosync_args([]) == {}

    def test_on_off(self):
        assert _parse_autosync_args(["ON"]) == {"enabled": True}
        assert _parse_autosync_args(["off"]) == {"enabled": False}

    def test_interval(self):
        assert _parse_autosync_args(["interval", "4"]) == {
            "enabled": True, "mode": SchedulerMode.INTERVAL, "interval_hours": 4,
        }

    def test_daily(self):
        assert _parse_autosync_args(["daily", "07:30"]) == {
            "enabled": True, "mode": SchedulerMode.DAILY, "daily_time": "07:30",
        }

    def test_invalid(self):
        for args in (["weekly"], ["interval"], ["interval", "x"], ["daily"]):
            with pytest.raises(ValueError, match="Usage"):
                _parse_autosync_args(args)


# ---------------------------------------------------------------------------
# Tests for formatting
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_children(self):
        text = _format_children([
            Child(id=1, name="Sam", match_rules=["oakwood.edu"]),
            Child(id=2, name="Mia"),
        ])
        assert "Sam (#1): oakwood.edu" in text
        assert "Mia (#2): no email sources" in text

    def test_no_children(self):
        assert "/addchild" in _format_children([])

    def test_schedule(self):
        assert _format_schedule(SchedulerState()) == "Auto-sync: off"
        assert _format_schedule(SchedulerState(enabled=True, interval_hours=3)) == "Auto-sync: every 3h"
        assert _format_schedule(
            SchedulerState(enabled=True, mode=SchedulerMode.DAILY, daily_time="07:00")
        ) == "Auto-sync: daily at 07:00"

    def test_history(self):
        entry = SyncHistoryEntry(
            outcome="completed", message="Synced 2 new email(s)", processed_count=2,
            started_at=T0, finished_at=T0,
        )
        assert _format_history([entry]) == "2026-03-02 08:30 [completed] Synced 2 new email(s)"
        assert _format_history([]) == "No syncs yet."

    def test_status_idle_never_run(self):
        orch = MagicMock(current_run=None, last_report=None)
        assert _format_status(orch, SchedulerState()).startswith("Idle. No sync has run yet.")

    def test_status_running(self):
        from schoolsync.core.sync_orchestrator import SyncRun

        run = SyncRun(started_at=T0, processed_count=2, last_message="Processing 3/5: Trip")
        orch = MagicMock(current_run=run)
        text = _format_status(orch, SchedulerState())
        assert "Sync running: Processing 3/5: Trip" in text
        assert "2 new" in text


# ---------------------------------------------------------------------------
# Handler helpers
# ---------------------------------------------------------------------------


def _make_update(user_id=12345):
    """Create a mock Update from an authorized user."""
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    return update


def _make_context(args=None, **bot_data):
    """Create a mock context with command args and bot_data ports."""
    context = MagicMock()
    context.args = args or []
    context.bot_data = bot_data
    context.application.create_task = MagicMock(side_effect=lambda coro: coro.close())
    return context


def _reply_text(update) -> str:
    return update.message.reply_text.call_args.args[0]


# ---------------------------------------------------------------------------
# Tests for authorization
# ---------------------------------------------------------------------------


class TestAuthorizedOnly:
    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self):
        from schoolsync.bot.telegram_bot import cmd_sync

        orch = MagicMock()
        update = _make_update(user_id=99999)
        await cmd_sync(update, _make_context(orchestrator=orch))
        update.message.reply_text.assert_not_called()
        orch.run.assert_not_called()


# ---------------------------------------------------------------------------
# Tests for command handlers
# ---------------------------------------------------------------------------


class TestSyncCommands:
    @pytest.mark.asyncio
    async def test_sync_starts_background_run(self):
        from schoolsync.bot.telegram_bot import cmd_sync

        orch = MagicMock(is_running=False)
        orch.run = AsyncMock()
        update = _make_update()
        context = _make_context(["6"], orchestrator=orch)

        await cmd_sync(update, context)

        orch.run.assert_called_once_with(lookback_months=6, child_id=None)
        context.application.create_task.assert_called_once()
        assert "Sync started" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_sync_for_named_child(self):
        from schoolsync.bot.telegram_bot import cmd_sync

        orch = MagicMock(is_running=False)
        orch.run = AsyncMock()
        child_db = MagicMock()
        child_db.find_by_name.return_value = Child(id=4, name="Mia")
        await cmd_sync(_make_update(), _make_context(["mia"], orchestrator=orch, child_db=child_db))
        orch.run.assert_called_once_with(lookback_months=None, child_id=4)

    @pytest.mark.asyncio
    async def test_sync_unknown_child(self):
        from schoolsync.bot.telegram_bot import cmd_sync

        orch = MagicMock(is_running=False)
        child_db = MagicMock()
        child_db.find_by_name.return_value = None
        update = _make_update()
        await cmd_sync(update, _make_context(["Max"], orchestrator=orch, child_db=child_db))
        assert "No child named 'Max'" in _reply_text(update)
        orch.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_already_running(self):
        from schoolsync.bot.telegram_bot import cmd_sync

        orch = MagicMock(is_running=True)
        update = _make_update()
        context = _make_context(orchestrator=orch)
        await cmd_sync(update, context)
        assert "already in progress" in _reply_text(update)
        context.application.create_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel(self):
        from schoolsync.bot.telegram_bot import cmd_cancel

        orch = MagicMock()
        orch.cancel.return_value = True
        update = _make_update()
        await cmd_cancel(update, _make_context(orchestrator=orch))
        assert "Cancelling" in _reply_text(update)

        orch.cancel.return_value = False
        await cmd_cancel(update, _make_context(orchestrator=orch))
        assert "No sync is running" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_history(self, state_db):
        from schoolsync.bot.telegram_bot import cmd_history

        update = _make_update()
        await cmd_history(update, _make_context(state_db=state_db))
        assert _reply_text(update) == "No syncs yet."


class TestChildCommands:
    @pytest.mark.asyncio
    async def test_addchild(self, child_db):
        from schoolsync.bot.telegram_bot import cmd_addchild

        update = _make_update()
        await cmd_addchild(update, _make_context(["Sam", "oakwood.edu"], child_db=child_db))
        assert "Added Sam" in _reply_text(update)
        assert child_db.find_by_name("sam").match_rules == ["oakwood.edu"]

    @pytest.mark.asyncio
    async def test_addchild_invalid_rule(self, child_db):
        from schoolsync.bot.telegram_bot import cmd_addchild

        update = _make_update()
        await cmd_addchild(update, _make_context(["Sam", "oakwood"], child_db=child_db))
        assert "Invalid rule" in _reply_text(update)
        assert child_db.list_children() == []

    @pytest.mark.asyncio
    async def test_rules_replaces(self, child_db):
        from schoolsync.bot.telegram_bot import cmd_rules

        child_db.add_child("Sam", ["oakwood.edu"])
        update = _make_update()
        await cmd_rules(update, _make_context(["Sam", "@elmfield.org"], child_db=child_db))
        assert child_db.find_by_name("Sam").match_rules == ["@elmfield.org"]

    @pytest.mark.asyncio
    async def test_children_lists(self, child_db):
        from schoolsync.bot.telegram_bot import cmd_children

        child_db.add_child("Sam", ["oakwood.edu"])
        update = _make_update()
        await cmd_children(update, _make_context(child_db=child_db))
        assert "Sam" in _reply_text(update)


class TestAutosyncCommand:
    @pytest.mark.asyncio
    async def test_updates_settings(self):
        from schoolsync.bot.telegram_bot import cmd_autosync

        scheduler = MagicMock()
        scheduler.update_settings.return_value = SchedulerState(
            enabled=True, mode=SchedulerMode.DAILY, daily_time="07:30",
        )
        update = _make_update()
        await cmd_autosync(update, _make_context(["daily", "07:30"], scheduler=scheduler))
        scheduler.update_settings.assert_called_once_with(
            enabled=True, mode=SchedulerMode.DAILY, daily_time="07:30",
        )
        assert _reply_text(update) == "Auto-sync: daily at 07:30"

    @pytest.mark.asyncio
    async def test_invalid_time_reported(self):
        from schoolsync.bot.telegram_bot import cmd_autosync

        scheduler = MagicMock()
        scheduler.update_settings.side_effect = ValueError("Daily time must be HH:MM, got 'noon'")
        update = _make_update()
        await cmd_autosync(update, _make_context(["daily", "noon"], scheduler=scheduler))
        assert "HH:MM" in _reply_text(update)


class TestLlmCommands:
    @pytest.mark.asyncio
    async def test_ask_uses_projection(self):
        from schoolsync.bot.telegram_bot import cmd_ask

        projection = MagicMock()
        projection.upcoming_events.return_value = []
        projection.outstanding_actions.return_value = []
        update = _make_update()
        with patch("schoolsync.core.classifier.ask_dashboard", AsyncMock(return_value="Nothing due.")) as mock_ask:
            await cmd_ask(update, _make_context(["what's", "due?"], projection=projection))
        mock_ask.assert_awaited_once_with("what's due?", [], [])
        assert _reply_text(update) == "Nothing due."

    @pytest.mark.asyncio
    async def test_draft(self):
        from schoolsync.bot.telegram_bot import cmd_draft

        email_db = MagicMock()
        email_db.get_email.return_value = PersistedEmail(
            id=3, raw_id="m3", subject="Trip", sender="office@oakwood.edu",
            received_at=T0, summary="Pay £15",
        )
        update = _make_update()
        with patch("schoolsync.core.classifier.generate_draft_reply", AsyncMock(return_value="Thanks!")) as mock_draft:
            await cmd_draft(update, _make_context(["3"], email_db=email_db))
        mock_draft.assert_awaited_once_with("Trip", "office@oakwood.edu", "Pay £15")
        assert _reply_text(update) == "Thanks!"

    @pytest.mark.asyncio
    async def test_draft_unknown_email(self):
        from schoolsync.bot.telegram_bot import cmd_draft

        email_db = MagicMock()
        email_db.get_email.return_value = None
        update = _make_update()
        await cmd_draft(update, _make_context(["42"], email_db=email_db))
        assert "not found" in _reply_text(update)
