"""
SchoolSync — Sync Orchestrator.

Drives one end-to-end sync pass:

    load children → fetch candidate mail → for each message:
        cancellation check → dedup → attribution → persist → notify

State machine: Idle → Running → (Completed | Cancelled | Failed) → Idle.
At most one run is in flight; a second `run()` while one is active is a
silent no-op. Cancellation is cooperative and checked between messages,
never in the middle of persisting one.

Failure policy:
- mail transport errors fail the whole run;
- "no rules configured" ends the run cleanly;
- anything that goes wrong with a single message is logged, counted and
  skipped. Already-persisted messages are never rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from schoolsync.core.attribution import (
    POLICY_FIRST_CHILD,
    Attribution,
    UnattributableError,
    resolve_attribution,
)
from schoolsync.core.classifier import Classifier, classify_email
from schoolsync.core.dedup import DedupGuard
from schoolsync.core.rule_matcher import collect_query_terms
from schoolsync.data.models import Child, InboxMessage, PersistedEmail, SyncHistoryEntry
from schoolsync.ports.mail_port import MailSource
from schoolsync.ports.store_port import (
    ChildRepository,
    EmailRepository,
    SyncHistoryRepository,
)
from schoolsync.ports.sync_listener_port import SyncListener

logger = logging.getLogger(__name__)

FAILED_MESSAGE = "Sync failed. Please try again later."
NO_RULES_MESSAGE = "No rules configured. Add an email source to a child profile first."

_PREVIEW_CHARS = 200


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"


class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    NO_RULES = "no_rules"


class CancellationToken:
    """Cooperative cancellation flag owned by exactly one run."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class SyncRun:
    """Ephemeral per-pass state; discarded when the run finishes."""

    started_at: datetime
    status: SyncStatus = SyncStatus.RUNNING
    processed_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    last_message: str = "Starting sync..."


@dataclass(frozen=True)
class SyncReport:
    outcome: SyncOutcome
    message: str
    processed_count: int
    skipped_count: int
    error_count: int
    started_at: datetime
    finished_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """Runs sync passes; the single owner of sync run state."""

    def __init__(
        self,
        mail_source: MailSource,
        children: ChildRepository,
        emails: EmailRepository,
        history: SyncHistoryRepository,
        classify: Classifier = classify_email,
        listeners: list[SyncListener] | None = None,
        lookback_months: int = 2,
        history_limit: int = 20,
        classifier_timeout: float | None = 60.0,
        unattributed_policy: str = POLICY_FIRST_CHILD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._mail = mail_source
        self._children = children
        self._emails = emails
        self._history = history
        self._dedup = DedupGuard(emails)
        self._classify = classify
        self._listeners: list[SyncListener] = list(listeners or [])
        self._lookback_months = lookback_months
        self._history_limit = history_limit
        self._classifier_timeout = classifier_timeout
        self._unattributed_policy = unattributed_policy
        self._clock = clock

        self._run: SyncRun | None = None
        self._token: CancellationToken | None = None
        self._last_report: SyncReport | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._run.status if self._run else SyncStatus.IDLE

    @property
    def is_running(self) -> bool:
        return self._run is not None

    @property
    def current_run(self) -> SyncRun | None:
        return self._run

    @property
    def last_report(self) -> SyncReport | None:
        return self._last_report

    @property
    def last_completed_at(self) -> datetime | None:
        return self._last_report.finished_at if self._last_report else None

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Request cancellation of the active run. False if nothing is running."""
        if self._run is None or self._token is None:
            return False
        self._token.cancel()
        self._run.status = SyncStatus.CANCELLING
        self._run.last_message = "Cancelling..."
        logger.info("Sync cancellation requested")
        return True

    async def run(
        self,
        token: CancellationToken | None = None,
        lookback_months: int | None = None,
        child_id: int | None = None,
    ) -> SyncReport | None:
        """Execute one sync pass. Returns None if a run is already in flight.

        Args:
            token: Cancellation token for this run; a fresh one if omitted.
            lookback_months: Search window; defaults to the configured value.
            child_id: Only search this child's sources. Attribution still
                considers every child.
        """
        # Idle check and transition happen before the first await.
        if self._run is not None:
            logger.info("Sync already in progress; ignoring new request")
            return None

        run = SyncRun(started_at=self._clock())
        self._run = run
        self._token = token or CancellationToken()
        logger.info("Sync started")

        try:
            outcome, message = await self._execute(
                run, self._token, lookback_months or self._lookback_months, child_id,
            )
        except Exception:
            logger.exception("Sync failed unexpectedly")
            outcome, message = SyncOutcome.FAILED, FAILED_MESSAGE
        finally:
            self._run = None
            self._token = None

        report = SyncReport(
            outcome=outcome,
            message=message,
            processed_count=run.processed_count,
            skipped_count=run.skipped_count,
            error_count=run.error_count,
            started_at=run.started_at,
            finished_at=self._clock(),
        )
        self._last_report = report
        self._record_history(report)
        logger.info(
            "Sync %s: %d new, %d duplicate(s), %d error(s)",
            outcome.value, run.processed_count, run.skipped_count, run.error_count,
        )
        await self._notify("on_sync_finished", report)
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: SyncRun,
        token: CancellationToken,
        lookback_months: int,
        child_id: int | None,
    ) -> tuple[SyncOutcome, str]:
        # Rules may have changed since the last run: always reload.
        children = self._children.list_children()
        scope = children if child_id is None else [c for c in children if c.id == child_id]
        terms = collect_query_terms(scope)
        if not terms:
            logger.warning("Sync aborted: no rules configured")
            return SyncOutcome.NO_RULES, NO_RULES_MESSAGE

        await self._progress(run, f"Searching {len(terms)} source(s) over {lookback_months} month(s)...")
        try:
            messages = await self._mail.search(terms, lookback_months)
        except Exception:
            logger.exception("Mail search failed for %d term(s)", len(terms))
            return SyncOutcome.FAILED, FAILED_MESSAGE

        logger.info("Fetched %d candidate message(s)", len(messages))
        total = len(messages)
        for index, message in enumerate(messages, start=1):
            if token.cancelled:
                return SyncOutcome.CANCELLED, (
                    f"Sync cancelled after {run.processed_count} new email(s)."
                )
            await self._progress(run, f"Processing {index}/{total}: {message.subject}")
            await self._process_message(run, message, children)

        if token.cancelled:
            return SyncOutcome.CANCELLED, (
                f"Sync cancelled after {run.processed_count} new email(s)."
            )
        return SyncOutcome.COMPLETED, (
            f"Synced {run.processed_count} new email(s); "
            f"{run.skipped_count} already synced, {run.error_count} failed."
        )

    async def _process_message(
        self, run: SyncRun, message: InboxMessage, children: list[Child],
    ) -> None:
        """Dedup, attribute and persist one message. Never raises."""
        try:
            if self._dedup.exists(message.subject, message.received_at):
                run.skipped_count += 1
                return
            attribution = await resolve_attribution(
                message,
                children,
                self._classify,
                timeout=self._classifier_timeout,
                unattributed_policy=self._unattributed_policy,
            )
            saved = self._emails.save_email(self._build_email(message, attribution))
        except UnattributableError as exc:
            run.error_count += 1
            logger.warning("Skipping message: %s", exc)
            return
        except Exception:
            run.error_count += 1
            logger.exception("Failed to process '%s' from %s", message.subject, message.sender)
            return

        run.processed_count += 1
        await self._notify("on_email_persisted", saved)

    @staticmethod
    def _build_email(message: InboxMessage, attribution: Attribution) -> PersistedEmail:
        decision = attribution.decision
        analysis = attribution.analysis
        child_id = decision.matched_child_id
        preview = message.preview or message.body_text[:_PREVIEW_CHARS]
        return PersistedEmail(
            id=None,
            raw_id=message.raw_id,
            subject=message.subject,
            sender=message.sender,
            received_at=message.received_at,
            preview=preview.strip(),
            is_processed=analysis is not None,
            child_id=child_id,
            category=analysis.category if analysis else None,
            urgency=analysis.urgency if analysis else None,
            summary=analysis.summary if analysis else None,
            attribution_source=decision.source.value,
            events=analysis.to_events(child_id) if analysis else [],
            actions=analysis.to_actions(child_id) if analysis else [],
        )

    async def _progress(self, run: SyncRun, text: str) -> None:
        if run.status == SyncStatus.RUNNING:
            run.last_message = text
        await self._notify("on_progress", run)

    async def _notify(self, method: str, payload: object) -> None:
        for listener in self._listeners:
            try:
                await getattr(listener, method)(payload)
            except Exception:
                logger.exception("Sync listener %r failed in %s", listener, method)

    def _record_history(self, report: SyncReport) -> None:
        entry = SyncHistoryEntry(
            outcome=report.outcome.value,
            message=report.message,
            processed_count=report.processed_count,
            started_at=report.started_at,
            finished_at=report.finished_at,
        )
        try:
            self._history.append_history(entry, self._history_limit)
        except Exception:
            logger.exception("Could not record sync history")
