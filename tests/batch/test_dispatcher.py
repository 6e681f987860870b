"""
Tests for backoffice_batch.services.dispatcher -- TriggerDispatcher.

Validates manual triggers, cron-tick dispatch, the per-schedule overlap
guard, concurrency across schedules and ledger recording.
"""

import threading
from datetime import datetime

import pytest

from backoffice_batch.domain.types import RunStatus
from backoffice_batch.services.dispatcher import ScheduleDefinition, TriggerDispatcher
from backoffice_kernel.domain.clock import DeterministicClock
from backoffice_kernel.exceptions import ScheduleNotFoundError


# =============================================================================
# Test doubles
# =============================================================================


class RecordingLedger:
    def __init__(self, fail: bool = False):
        self.entries: list[tuple[str, RunStatus, datetime, str | None]] = []
        self._fail = fail

    def record(self, context, status, ran_at, error=None):
        if self._fail:
            raise RuntimeError("ledger unavailable")
        self.entries.append((context.schedule_id, status, ran_at, error))


class BlockingJob:
    """Job body that blocks until released."""

    def __init__(self, processed: int = 1):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0
        self._processed = processed

    def __call__(self, context) -> int:
        self.calls += 1
        self.started.set()
        assert self.release.wait(timeout=5)
        return self._processed


def _definition(job, schedule_id="s-1", ledger=None, **kwargs) -> ScheduleDefinition:
    return ScheduleDefinition(
        schedule_id=schedule_id,
        name=f"job-{schedule_id}",
        cron_expression="0 2 * * *",
        job=job,
        ledger=ledger,
        **kwargs,
    )


@pytest.fixture
def dispatcher():
    d = TriggerDispatcher(clock=DeterministicClock(datetime(2024, 3, 1, 2, 0)))
    yield d
    d.shutdown(wait=True)


# =============================================================================
# Manual trigger
# =============================================================================


class TestTrigger:
    def test_runs_job_and_acknowledges(self, dispatcher):
        dispatcher.bind(_definition(lambda ctx: 3))

        outcome = dispatcher.trigger("s-1")

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.processed == 3
        assert outcome.trigger == "manual"
        assert outcome.message == "processed 3 items"

    def test_unknown_schedule(self, dispatcher):
        with pytest.raises(ScheduleNotFoundError):
            dispatcher.trigger("missing")

    def test_job_receives_context_config(self, dispatcher):
        seen = {}

        def job(ctx):
            seen.update(ctx.config)
            seen["name"] = ctx.name
            return 0

        dispatcher.bind(_definition(job, config={"retention_days": 7}))
        dispatcher.trigger("s-1")

        assert seen == {"retention_days": 7, "name": "job-s-1"}

    def test_job_failure_propagates_and_releases_guard(self, dispatcher):
        ledger = RecordingLedger()
        calls = []

        def job(ctx):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("selection failed")
            return 0

        dispatcher.bind(_definition(job, ledger=ledger))

        with pytest.raises(RuntimeError, match="selection failed"):
            dispatcher.trigger("s-1")
        assert ledger.entries[0][1] == RunStatus.FAILED
        assert ledger.entries[0][3] == "selection failed"

        assert dispatcher.trigger("s-1").status == RunStatus.COMPLETED
        assert not dispatcher.is_running("s-1")

    def test_released_schedule_is_unknown(self, dispatcher):
        dispatcher.bind(_definition(lambda ctx: 0))
        dispatcher.release("s-1")
        with pytest.raises(ScheduleNotFoundError):
            dispatcher.trigger("s-1")


# =============================================================================
# Overlap guard
# =============================================================================


class TestOverlapGuard:
    def test_manual_trigger_during_run_is_skipped(self, dispatcher, captured_logs):
        job = BlockingJob()
        dispatcher.bind(_definition(job))

        first = {}
        runner = threading.Thread(target=lambda: first.update(outcome=dispatcher.trigger("s-1")))
        runner.start()
        assert job.started.wait(timeout=5)

        second = dispatcher.trigger("s-1")

        assert second.status == RunStatus.SKIPPED
        assert second.processed == 0
        assert "already in progress" in second.message
        assert dispatcher.is_running("s-1")

        job.release.set()
        runner.join(timeout=5)
        assert first["outcome"].status == RunStatus.COMPLETED
        assert job.calls == 1
        assert any(r["message"] == "job_overlap_skipped" for r in captured_logs())

    def test_cron_tick_during_manual_run_is_skipped(self, dispatcher):
        job = BlockingJob()
        dispatcher.bind(_definition(job))

        runner = threading.Thread(target=dispatcher.trigger, args=("s-1",))
        runner.start()
        assert job.started.wait(timeout=5)

        tick = dispatcher.dispatch("s-1").result(timeout=5)
        assert tick.status == RunStatus.SKIPPED
        assert tick.trigger == "cron"

        job.release.set()
        runner.join(timeout=5)
        assert job.calls == 1

    def test_skipped_run_not_recorded(self, dispatcher):
        ledger = RecordingLedger()
        job = BlockingJob()
        dispatcher.bind(_definition(job, ledger=ledger))

        runner = threading.Thread(target=dispatcher.trigger, args=("s-1",))
        runner.start()
        assert job.started.wait(timeout=5)
        dispatcher.trigger("s-1")
        job.release.set()
        runner.join(timeout=5)

        assert [e[1] for e in ledger.entries] == [RunStatus.COMPLETED]

    def test_rebinding_keeps_guard(self, dispatcher):
        context = dispatcher.bind(_definition(lambda ctx: 1))
        assert context.try_acquire()
        try:
            rebound = dispatcher.bind(_definition(lambda ctx: 2, config={"x": 1}))
            assert rebound is context
            assert rebound.config == {"x": 1}
            assert dispatcher.trigger("s-1").status == RunStatus.SKIPPED
        finally:
            context.release()
        assert dispatcher.trigger("s-1").processed == 2

    def test_different_schedules_run_concurrently(self, dispatcher):
        barrier = threading.Barrier(2, timeout=5)

        def job(ctx):
            barrier.wait()
            return 1

        dispatcher.bind(_definition(job, schedule_id="a"))
        dispatcher.bind(_definition(job, schedule_id="b"))

        futures = [dispatcher.dispatch("a"), dispatcher.dispatch("b")]
        outcomes = [f.result(timeout=10) for f in futures]

        assert [o.status for o in outcomes] == [RunStatus.COMPLETED, RunStatus.COMPLETED]


# =============================================================================
# Ticks and ledger
# =============================================================================


class TestDispatch:
    def test_tick_failure_is_logged_not_raised(self, dispatcher, captured_logs):
        def job(ctx):
            raise RuntimeError("boom")

        dispatcher.bind(_definition(job))
        assert dispatcher.dispatch("s-1").result(timeout=5) is None
        assert any(r["message"] == "job_run_failed" for r in captured_logs())

    def test_tick_for_unknown_schedule(self, dispatcher):
        assert dispatcher.dispatch("missing") is None

    def test_tick_after_shutdown(self):
        dispatcher = TriggerDispatcher()
        dispatcher.bind(_definition(lambda ctx: 0))
        dispatcher.shutdown()
        assert dispatcher.dispatch("s-1") is None

    def test_long_runs_do_not_starve_other_schedules(self, dispatcher):
        blocked = [BlockingJob() for _ in range(6)]
        for index, job in enumerate(blocked):
            dispatcher.bind(_definition(job, schedule_id=f"long-{index}"))
        dispatcher.bind(_definition(lambda ctx: 7, schedule_id="quick"))

        try:
            pending = [dispatcher.dispatch(f"long-{i}") for i in range(len(blocked))]
            assert all(job.started.wait(timeout=5) for job in blocked)

            outcome = dispatcher.dispatch("quick").result(timeout=5)

            assert outcome.status == RunStatus.COMPLETED
            assert outcome.processed == 7
            assert not any(f.done() for f in pending)
        finally:
            for job in blocked:
                job.release.set()

        assert [f.result(timeout=5).status for f in pending] == [RunStatus.COMPLETED] * 6

    def test_tick_for_running_schedule_dropped_at_dispatch(self, dispatcher, captured_logs):
        ledger = RecordingLedger()
        job = BlockingJob()
        dispatcher.bind(_definition(job, ledger=ledger))

        first = dispatcher.dispatch("s-1")
        assert job.started.wait(timeout=5)
        second = dispatcher.dispatch("s-1")

        assert second.done()
        assert second.result().status == RunStatus.SKIPPED
        job.release.set()
        assert first.result(timeout=5).status == RunStatus.COMPLETED
        assert job.calls == 1
        assert [e[1] for e in ledger.entries] == [RunStatus.COMPLETED]
        assert any(r["message"] == "job_overlap_skipped" for r in captured_logs())

    def test_shutdown_waits_for_running_ticks(self):
        dispatcher = TriggerDispatcher()
        job = BlockingJob()
        dispatcher.bind(_definition(job))
        future = dispatcher.dispatch("s-1")
        assert job.started.wait(timeout=5)

        threading.Timer(0.1, job.release.set).start()
        dispatcher.shutdown(wait=True)

        assert future.done()
        assert future.result().status == RunStatus.COMPLETED

    def test_ledger_records_completion(self, dispatcher):
        ledger = RecordingLedger()
        dispatcher.bind(_definition(lambda ctx: 0, ledger=ledger))
        dispatcher.trigger("s-1")
        assert ledger.entries == [("s-1", RunStatus.COMPLETED, datetime(2024, 3, 1, 2, 0), None)]

    def test_ledger_failure_does_not_mask_outcome(self, dispatcher, captured_logs):
        dispatcher.bind(_definition(lambda ctx: 5, ledger=RecordingLedger(fail=True)))
        assert dispatcher.trigger("s-1").processed == 5
        assert any(r["message"] == "ledger_write_failed" for r in captured_logs())
