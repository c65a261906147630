"""
SchoolSync — Telegram Bot.

Telegram is the parent's window onto the sync engine: trigger or cancel a
sync, watch its progress, manage children and their sender rules,
configure auto-sync, and ask questions about what is coming up.

Handlers only *request* runs; the SyncOrchestrator owns all run state.
Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from schoolsync.config import settings
from schoolsync.data.models import SchedulerMode

if TYPE_CHECKING:
    from schoolsync.core.scheduler import AutoSyncScheduler
    from schoolsync.core.sync_orchestrator import SyncOrchestrator
    from schoolsync.data.models import Child, SchedulerState, SyncHistoryEntry

logger = logging.getLogger(__name__)

_MAX_LOOKBACK_MONTHS = 24


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Argument parsing & formatting helpers
# ---------------------------------------------------------------------------


def _parse_sync_args(args: list[str]) -> tuple[int | None, str | None]:
    """Parse `/sync [months] [child name]`.

    Raises ValueError for an out-of-range month count.
    """
    months: int | None = None
    rest = list(args)
    if rest and rest[0].isdigit():
        months = int(rest.pop(0))
        if not 1 <= months <= _MAX_LOOKBACK_MONTHS:
            raise ValueError(f"Months must be between 1 and {_MAX_LOOKBACK_MONTHS}")
    child_name = " ".join(rest).strip() or None
    return months, child_name


def _parse_autosync_args(args: list[str]) -> dict:
    """Translate `/autosync ...` arguments into AutoSyncScheduler.update_settings kwargs.

    on | off | interval <hours> | daily <HH:MM>
    """
    if not args:
        return {}
    verb = args[0].lower()
    if verb == "on":
        return {"enabled": True}
    if verb == "off":
        return {"enabled": False}
    if verb == "interval" and len(args) == 2 and args[1].isdigit():
        return {"enabled": True, "mode": SchedulerMode.INTERVAL, "interval_hours": int(args[1])}
    if verb == "daily" and len(args) == 2:
        return {"enabled": True, "mode": SchedulerMode.DAILY, "daily_time": args[1]}
    raise ValueError("Usage: /autosync on|off|interval <hours>|daily <HH:MM>")


def _format_children(children: list[Child]) -> str:
    if not children:
        return "No children yet. Add one with /addchild <name> <rule> [rule...]"
    lines = []
    for child in children:
        rules = ", ".join(child.match_rules) if child.match_rules else "no email sources"
        lines.append(f"• {child.name} (#{child.id}): {rules}")
    return "\n".join(lines)


def _format_schedule(state: SchedulerState) -> str:
    if not state.enabled:
        return "Auto-sync: off"
    if state.mode == SchedulerMode.INTERVAL:
        return f"Auto-sync: every {state.interval_hours}h"
    return f"Auto-sync: daily at {state.daily_time}"


def _format_history(entries: list[SyncHistoryEntry]) -> str:
    if not entries:
        return "No syncs yet."
    return "\n".join(
        f"{e.finished_at:%Y-%m-%d %H:%M} [{e.outcome}] {e.message}" for e in entries
    )


def _format_status(orchestrator: SyncOrchestrator, state: SchedulerState) -> str:
    run = orchestrator.current_run
    if run is not None:
        head = (
            f"Sync {run.status.value}: {run.last_message}\n"
            f"{run.processed_count} new, {run.skipped_count} duplicate(s), "
            f"{run.error_count} error(s)"
        )
    elif orchestrator.last_report is not None:
        report = orchestrator.last_report
        head = f"Idle. Last sync {report.finished_at:%Y-%m-%d %H:%M}: {report.message}"
    else:
        head = "Idle. No sync has run yet."
    return f"{head}\n{_format_schedule(state)}"


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *SchoolSync*!\n\n"
        "I read school emails, work out which child they are about and pull "
        "out events and things you need to do.\n"
        "• /addchild to add a child and the addresses their school writes from\n"
        "• /sync to scan your inbox now\n"
        "• /autosync to scan automatically\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/sync [months] [child] — Scan the inbox now\n"
        "/cancel — Stop the running sync\n"
        "/status — Sync progress and schedule\n"
        "/history — Recent syncs\n"
        "/children — List children and their email sources\n"
        "/addchild <name> <rule> [rule...] — Add a child\n"
        "/rules <name> <rule> [rule...] — Replace a child's email sources\n"
        "/autosync on|off|interval <hours>|daily <HH:MM>\n"
        "/ask <question> — Ask about upcoming events and actions\n"
        "/draft <email id> — Draft a reply to an email\n"
        "/help — Show this message",
    )


@authorized_only
async def cmd_sync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /sync — start a sync in the background."""
    orchestrator: SyncOrchestrator = context.bot_data["orchestrator"]

    try:
        months, child_name = _parse_sync_args(context.args or [])
    except ValueError as exc:
        await update.message.reply_text(str(exc))
        return

    child_id = None
    if child_name:
        child = context.bot_data["child_db"].find_by_name(child_name)
        if child is None:
            await update.message.reply_text(f"No child named '{child_name}'.")
            return
        child_id = child.id

    if orchestrator.is_running:
        await update.message.reply_text("A sync is already in progress. /status to follow it.")
        return

    context.application.create_task(
        orchestrator.run(lookback_months=months, child_id=child_id)
    )
    await update.message.reply_text("Sync started. I'll message you when it's done.")


@authorized_only
async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel — request cooperative cancellation."""
    orchestrator: SyncOrchestrator = context.bot_data["orchestrator"]
    if orchestrator.cancel():
        await update.message.reply_text("Cancelling after the current email...")
    else:
        await update.message.reply_text("No sync is running.")


@authorized_only
async def cmd_status(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /status — current run and schedule."""
    scheduler: AutoSyncScheduler = context.bot_data["scheduler"]
    await update.message.reply_text(
        _format_status(context.bot_data["orchestrator"], scheduler.state)
    )


@authorized_only
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history — bounded, most-recent-first sync log."""
    entries = context.bot_data["state_db"].list_history()
    await update.message.reply_text(_format_history(entries))


@authorized_only
async def cmd_children(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /children — list child profiles."""
    children = context.bot_data["child_db"].list_children()
    await update.message.reply_text(_format_children(children))


@authorized_only
async def cmd_addchild(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addchild <name> <rule> [rule...]."""
    args = context.args or []
    if not args:
        await update.message.reply_text("Usage: /addchild <name> <rule> [rule...]")
        return
    try:
        child = context.bot_data["child_db"].add_child(args[0], args[1:])
    except ValueError as exc:
        await update.message.reply_text(str(exc))
        return
    await update.message.reply_text(f"Added {child.name}.\n{_format_children([child])}")


@authorized_only
async def cmd_rules(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /rules <name> <rule> [rule...] — replace a child's rules."""
    args = context.args or []
    if len(args) < 2:
        await update.message.reply_text("Usage: /rules <name> <rule> [rule...]")
        return
    child_db = context.bot_data["child_db"]
    child = child_db.find_by_name(args[0])
    if child is None:
        await update.message.reply_text(f"No child named '{args[0]}'.")
        return
    try:
        child = child_db.set_rules(child.id, args[1:])
    except ValueError as exc:
        await update.message.reply_text(str(exc))
        return
    await update.message.reply_text(_format_children([child]))


@authorized_only
async def cmd_autosync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /autosync — show or change the auto-sync schedule."""
    scheduler: AutoSyncScheduler = context.bot_data["scheduler"]
    try:
        changes = _parse_autosync_args(context.args or [])
        state = scheduler.update_settings(**changes) if changes else scheduler.state
    except ValueError as exc:
        await update.message.reply_text(str(exc))
        return
    await update.message.reply_text(_format_schedule(state))


@authorized_only
async def cmd_ask(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /ask <question> — answer from upcoming events and open actions."""
    from schoolsync.core.classifier import ask_dashboard

    question = " ".join(context.args or []).strip()
    if not question:
        await update.message.reply_text("Usage: /ask <question>")
        return
    projection = context.bot_data["projection"]
    answer = await ask_dashboard(
        question, projection.upcoming_events(), projection.outstanding_actions(),
    )
    await update.message.reply_text(answer)


@authorized_only
async def cmd_draft(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /draft <email id> — draft a reply with the LLM."""
    from schoolsync.core.classifier import generate_draft_reply

    args = context.args or []
    if len(args) != 1 or not args[0].isdigit():
        await update.message.reply_text("Usage: /draft <email id>")
        return
    email = context.bot_data["email_db"].get_email(int(args[0]))
    if email is None:
        await update.message.reply_text(f"Email #{args[0]} not found.")
        return
    draft = await generate_draft_reply(email.subject, email.sender, email.summary)
    await update.message.reply_text(draft)


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


async def _post_init(app: Application) -> None:
    app.bot_data["projection"].reload(app.bot_data["email_db"])
    app.bot_data["scheduler"].start()


async def _post_shutdown(app: Application) -> None:
    await app.bot_data["scheduler"].stop()


def build_app() -> Application:
    """Build and configure the Telegram Application with all handlers."""
    from schoolsync.adapters.gmail_source import GmailMailSource
    from schoolsync.adapters.telegram_notifier import TelegramSyncNotifier
    from schoolsync.core.projection import DashboardProjection
    from schoolsync.core.scheduler import AutoSyncScheduler
    from schoolsync.core.sync_orchestrator import SyncOrchestrator
    from schoolsync.data.db import ChildDB, EmailDB, SchedulerStateDB

    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )

    child_db = ChildDB()
    email_db = EmailDB()
    state_db = SchedulerStateDB()
    projection = DashboardProjection()

    orchestrator = SyncOrchestrator(
        mail_source=GmailMailSource(max_results=settings.SYNC_MAX_RESULTS),
        children=child_db,
        emails=email_db,
        history=state_db,
        listeners=[projection, TelegramSyncNotifier(app.bot, settings.ALLOWED_USER_IDS)],
        lookback_months=settings.SYNC_LOOKBACK_MONTHS,
        history_limit=settings.SYNC_HISTORY_LIMIT,
        classifier_timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        unattributed_policy=settings.UNATTRIBUTED_POLICY,
    )
    scheduler = AutoSyncScheduler(
        orchestrator,
        state_db,
        poll_seconds=settings.SCHEDULER_POLL_SECONDS,
        daily_window_minutes=settings.DAILY_WINDOW_MINUTES,
    )

    app.bot_data.update(
        child_db=child_db,
        email_db=email_db,
        state_db=state_db,
        projection=projection,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )

    for name, handler in (
        ("start", cmd_start),
        ("help", cmd_help),
        ("sync", cmd_sync),
        ("cancel", cmd_cancel),
        ("status", cmd_status),
        ("history", cmd_history),
        ("children", cmd_children),
        ("addchild", cmd_addchild),
        ("rules", cmd_rules),
        ("autosync", cmd_autosync),
        ("ask", cmd_ask),
        ("draft", cmd_draft),
    ):
        app.add_handler(CommandHandler(name, handler))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting SchoolSync bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
