"""Tests for schoolsync.core.sync_orchestrator — end-to-end sync passes.

Uses real SQLite repositories on temp files with an in-memory mail source
and a fake classifier, so every pass exercises dedup and persistence.
"""

import asyncio

import pytest

from conftest import FakeMailSource, RecordingListener, fake_classifier, make_message, make_messages
from schoolsync.core.sync_orchestrator import (
    FAILED_MESSAGE,
    NO_RULES_MESSAGE,
    CancellationToken,
    SyncOrchestrator,
    SyncOutcome,
    SyncStatus,
)
from schoolsync.data.models import UrgencyLevel
from schoolsync.ports.mail_port import MailSourceError


def _orchestrator(mail, child_db, email_db, state_db, classify=None, listeners=None, **kwargs):
    return SyncOrchestrator(
        mail_source=mail,
        children=child_db,
        emails=email_db,
        history=state_db,
        classify=classify or fake_classifier("Sam"),
        listeners=listeners,
        classifier_timeout=kwargs.pop("classifier_timeout", 5),
        **kwargs,
    )


class TestSyncHappyPath:
    @pytest.mark.asyncio
    async def test_persists_and_attributes(self, child_db, email_db, state_db):
        sam = child_db.add_child("Sam", ["oakwood.edu"])
        classify = fake_classifier(
            "Sam",
            urgency="High",
            events=[{"title": "Museum trip", "date": "2026-03-12"}],
            actions=[{"title": "Pay £15", "deadline": "2026-03-06"}],
        )
        listener = RecordingListener()
        orch = _orchestrator(
            FakeMailSource([make_message()]), child_db, email_db, state_db,
            classify=classify, listeners=[listener],
        )

        report = await orch.run()

        assert report.outcome == SyncOutcome.COMPLETED
        assert report.processed_count == 1
        stored = email_db.list_emails()[0]
        assert stored.child_id == sam.id
        assert stored.is_processed is True
        assert stored.urgency == UrgencyLevel.HIGH
        assert stored.attribution_source == "rule-exact"
        assert stored.events[0].child_id == sam.id
        assert stored.actions[0].title == "Pay £15"
        assert [e.subject for e in listener.persisted] == ["Trip letter"]
        assert listener.reports == [report]
        assert orch.status == SyncStatus.IDLE
        assert orch.last_completed_at == report.finished_at

    @pytest.mark.asyncio
    async def test_queries_union_of_rules_with_lookback(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        child_db.add_child("Mia", ["elmfield.org", "oakwood.edu"])
        mail = FakeMailSource([])
        orch = _orchestrator(mail, child_db, email_db, state_db, lookback_months=3)

        await orch.run()
        await orch.run(lookback_months=6)

        assert mail.calls == [(["oakwood.edu", "elmfield.org"], 3), (["oakwood.edu", "elmfield.org"], 6)]

    @pytest.mark.asyncio
    async def test_child_scope_limits_search_terms(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        mia = child_db.add_child("Mia", ["elmfield.org"])
        mail = FakeMailSource([])
        orch = _orchestrator(mail, child_db, email_db, state_db)

        await orch.run(child_id=mia.id)

        assert mail.calls[0][0] == ["elmfield.org"]

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        classify = fake_classifier("Sam")
        orch = _orchestrator(
            FakeMailSource(make_messages(4)), child_db, email_db, state_db, classify=classify,
        )

        first = await orch.run()
        calls_after_first = len(classify.calls)
        second = await orch.run()

        assert first.processed_count == 4
        assert second.processed_count == 0
        assert second.skipped_count == 4
        assert email_db.count_emails() == 4
        assert len(classify.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_timestamps_one_second_apart_are_both_stored(self, child_db, email_db, state_db):
        from datetime import timedelta
        from conftest import BASE_TIME

        child_db.add_child("Sam", ["oakwood.edu"])
        messages = [
            make_message(received_at=BASE_TIME, raw_id="a"),
            make_message(received_at=BASE_TIME + timedelta(seconds=1), raw_id="b"),
        ]
        orch = _orchestrator(FakeMailSource(messages), child_db, email_db, state_db)

        report = await orch.run()

        assert report.processed_count == 2
        assert email_db.count_emails() == 2


class TestSyncFailurePaths:
    @pytest.mark.asyncio
    async def test_no_rules_ends_cleanly(self, child_db, email_db, state_db):
        child_db.add_child("Sam")
        mail = FakeMailSource([make_message()])
        orch = _orchestrator(mail, child_db, email_db, state_db)

        report = await orch.run()

        assert report.outcome == SyncOutcome.NO_RULES
        assert report.message == NO_RULES_MESSAGE
        assert mail.calls == []
        assert state_db.list_history()[0].outcome == "no_rules"

    @pytest.mark.asyncio
    async def test_mail_error_fails_run_without_leaking_details(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        mail = FakeMailSource(error=MailSourceError("401 invalid_grant token=secret"))
        orch = _orchestrator(mail, child_db, email_db, state_db)

        report = await orch.run()

        assert report.outcome == SyncOutcome.FAILED
        assert report.message == FAILED_MESSAGE
        assert "secret" not in report.message
        assert orch.status == SyncStatus.IDLE


    @pytest.mark.asyncio
    async def test_persistence_error_skips_only_that_message(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])

        class FlakyEmails:
            """Delegates to the real repo but fails to save one subject."""

            def __getattr__(self, name):
                return getattr(email_db, name)

            def save_email(self, email):
                if email.subject == "Newsletter 2":
                    raise RuntimeError("disk full")
                return email_db.save_email(email)

        orch = _orchestrator(FakeMailSource(make_messages(3)), child_db, FlakyEmails(), state_db)

        report = await orch.run()

        assert report.outcome == SyncOutcome.COMPLETED
        assert report.processed_count == 2
        assert report.error_count == 1
        assert {e.subject for e in email_db.list_emails()} == {"Newsletter 1", "Newsletter 3"}

    @pytest.mark.asyncio
    async def test_failed_classification_persists_unprocessed(self, child_db, email_db, state_db):
        sam = child_db.add_child("Sam", ["oakwood.edu"])

        async def broken(text, candidates, preferred=None):
            raise RuntimeError("LLM down")

        orch = _orchestrator(FakeMailSource([make_message()]), child_db, email_db, state_db, classify=broken)

        report = await orch.run()

        stored = email_db.list_emails()[0]
        assert report.processed_count == 1
        assert stored.is_processed is False
        assert stored.child_id == sam.id
        assert stored.summary is None

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_abort_run(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])

        class Exploding(RecordingListener):
            async def on_email_persisted(self, email):
                raise RuntimeError("telegram down")

        recorder = RecordingListener()
        orch = _orchestrator(
            FakeMailSource(make_messages(2)), child_db, email_db, state_db,
            listeners=[Exploding(), recorder],
        )

        report = await orch.run()

        assert report.processed_count == 2
        assert len(recorder.persisted) == 2

    @pytest.mark.asyncio
    async def test_every_outcome_recorded_in_history(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        orch = _orchestrator(
            FakeMailSource(make_messages(1)), child_db, email_db, state_db, history_limit=2,
        )

        for _ in range(3):
            await orch.run()

        history = state_db.list_history()
        assert len(history) == 2
        assert all(h.outcome == "completed" for h in history)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_third_message(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        token = CancellationToken()

        class CancelAfterThree(RecordingListener):
            async def on_email_persisted(self, email):
                await super().on_email_persisted(email)
                if len(self.persisted) == 3:
                    token.cancel()

        listener = CancelAfterThree()
        orch = _orchestrator(
            FakeMailSource(make_messages(10)), child_db, email_db, state_db, listeners=[listener],
        )

        report = await orch.run(token=token)

        assert report.outcome == SyncOutcome.CANCELLED
        assert report.processed_count == 3
        assert email_db.count_emails() == 3
        assert state_db.list_history()[0].outcome == "cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_rerun_adds_only_handled_messages(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        mail = FakeMailSource(make_messages(3))
        orch = _orchestrator(mail, child_db, email_db, state_db)

        first = await orch.run()
        assert first.processed_count == 3

        # Same three messages plus four new ones.
        mail.messages = make_messages(7)
        token = CancellationToken()

        class CancelAfterTwo(RecordingListener):
            async def on_email_persisted(self, email):
                await super().on_email_persisted(email)
                if len(self.persisted) == 2:
                    token.cancel()

        orch.add_listener(CancelAfterTwo())
        second = await orch.run(token=token)

        assert second.outcome == SyncOutcome.CANCELLED
        assert second.skipped_count == 3
        assert second.processed_count == 2
        subjects = [e.subject for e in email_db.list_emails()]
        assert len(subjects) == len(set(subjects)) == 5
        assert sorted(subjects) == [f"Newsletter {i}" for i in range(1, 6)]

    @pytest.mark.asyncio
    async def test_cancel_via_orchestrator(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        orch = None

        class CancelOnFirst(RecordingListener):
            async def on_email_persisted(self, email):
                assert orch.cancel() is True
                assert orch.status == SyncStatus.CANCELLING

        orch = _orchestrator(
            FakeMailSource(make_messages(5)), child_db, email_db, state_db,
            listeners=[CancelOnFirst()],
        )

        report = await orch.run()

        assert report.outcome == SyncOutcome.CANCELLED
        assert report.processed_count == 1
        assert orch.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, child_db, email_db, state_db):
        orch = _orchestrator(FakeMailSource([]), child_db, email_db, state_db)
        assert orch.cancel() is False


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        release = asyncio.Event()
        inner = fake_classifier("Sam")

        async def gated(text, candidates, preferred=None):
            await release.wait()
            return await inner(text, candidates, preferred)

        mail = FakeMailSource(make_messages(2))
        orch = _orchestrator(mail, child_db, email_db, state_db, classify=gated)

        first = asyncio.create_task(orch.run())
        await asyncio.sleep(0)
        assert orch.is_running is True

        second = await orch.run()
        release.set()
        first_report = await first

        assert second is None
        assert len(mail.calls) == 1
        assert first_report.processed_count == 2
        assert orch.is_running is False

    @pytest.mark.asyncio
    async def test_new_run_allowed_after_completion(self, child_db, email_db, state_db):
        child_db.add_child("Sam", ["oakwood.edu"])
        mail = FakeMailSource([])
        orch = _orchestrator(mail, child_db, email_db, state_db)

        assert (await orch.run()) is not None
        assert (await orch.run()) is not None
        assert len(mail.calls) == 2
