from __future__ import annotations

import multiprocessing
import os
import threading
import time
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from foreman.config import SchedulerConfig
from foreman.errors import CycleAbortedError, LockStorageError, SchedulerError
from foreman.events import CollectingEventSink
from foreman.jobs import JobDescriptor, JobOutcome
from foreman.locks import GLOBAL_LOCK, Lock, LockManager
from foreman.registry import JobRegistry
from foreman.resources import ResourceGuard
from foreman.results import (
    REASON_ALREADY_RUNNING,
    REASON_CRASHED,
    REASON_CYCLE_DEADLINE,
    REASON_EXCEPTION,
    REASON_RETURNED_FAILURE,
    REASON_TIMEOUT,
)
from foreman.scheduler import CycleState, CycleStatus, Scheduler

UTC = timezone.utc
AT = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingJobLocks(LockManager):
    def acquire(self, name: str, timeout: float, metadata: Optional[Dict[str, Any]] = None) -> Optional[Lock]:
        if name.startswith("job:") and name != "job:first":
            raise LockStorageError("disk full")
        return super().acquire(name, timeout, metadata)


def _sleep(seconds: float, marker: Optional[Path] = None) -> bool:
    time.sleep(seconds)
    if marker is not None:
        marker.write_text("done", encoding="utf-8")
    return True


def _record(path: Path, name: str) -> JobOutcome:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(name + "\n")
    return JobOutcome(success=True, message=f"{name} ran", metadata={"name": name})


def _boom() -> None:
    raise RuntimeError("boom")


def _refuse() -> bool:
    return False


def _crash() -> None:
    os._exit(7)


def _leave_thread_running() -> bool:
    threading.Thread(target=time.sleep, args=(20,)).start()
    return True


def _pool_abs() -> JobOutcome:
    with multiprocessing.get_context("fork").Pool(1) as pool:
        value = pool.apply(abs, (-4,))
    return JobOutcome(success=True, metadata={"value": value})


def _raise_memory_error() -> float:
    raise OSError("no /proc")


def _job(name: str, run: Any, schedule: str = "* * * * *", **overrides: Any) -> JobDescriptor:
    return JobDescriptor(name=name, schedule=schedule, run=run, **overrides)


def _scheduler(
    tmp_path: Path,
    jobs: List[JobDescriptor],
    clock: Any = time.time,
    guard: Optional[ResourceGuard] = None,
    events: Optional[CollectingEventSink] = None,
    lock_class: type = LockManager,
    **config: Any,
) -> Scheduler:
    settings: Dict[str, Any] = {
        "lock_directory": tmp_path / "locks",
        "lock_cleanup_interval": 0,
        "timezone": "UTC",
    }
    settings.update(config)
    scheduler_config = SchedulerConfig(**settings)
    return Scheduler(
        JobRegistry(jobs),
        lock_class(scheduler_config.lock_directory, clock=clock),
        scheduler_config,
        events=events if events is not None else CollectingEventSink(),
        guard=guard or ResourceGuard(load_probe=lambda: 0.1, memory_probe=lambda: 10.0),
    )


def test_runs_due_jobs_in_priority_order(tmp_path: Path) -> None:
    order_file = tmp_path / "order.txt"
    jobs = [
        _job("low", partial(_record, order_file, "low"), priority=30),
        _job("high", partial(_record, order_file, "high"), priority=10),
        _job("mid", partial(_record, order_file, "mid"), priority=20),
        _job("hourly", partial(_record, order_file, "hourly"), schedule="30 * * * *"),
    ]
    scheduler = _scheduler(tmp_path, jobs, max_concurrent_jobs=1)
    report = scheduler.run_cycle(AT)

    assert report.status == CycleStatus.COMPLETED
    assert [result.job_name for result in report.results] == ["high", "mid", "low"]
    assert order_file.read_text(encoding="utf-8").split() == ["high", "mid", "low"]
    assert all(result.success for result in report.results)
    assert report.results[0].metadata["name"] == "high"
    assert report.results[0].duration is not None
    assert report.results[0].memory_used is not None
    assert report.exit_code == 0
    assert report.states == [
        CycleState.START,
        CycleState.GLOBAL_LOCK_PENDING,
        CycleState.GLOBAL_LOCK_HELD,
        CycleState.RESOURCE_CHECK,
        CycleState.ADMITTED,
        CycleState.DISPATCH,
        CycleState.PER_JOB,
        CycleState.DRAIN,
        CycleState.CLEANUP,
        CycleState.DONE,
    ]
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)
    assert not scheduler.locks.is_locked("job:high")


def test_global_lock_held_elsewhere_returns_locked(tmp_path: Path) -> None:
    marker = tmp_path / "ran.txt"
    scheduler = _scheduler(tmp_path, [_job("work", partial(_sleep, 0, marker))])
    other = LockManager(tmp_path / "locks")
    held = other.acquire(GLOBAL_LOCK, 300)
    assert held is not None

    report = scheduler.run_cycle(AT)

    assert report.status == CycleStatus.LOCKED
    assert report.results == []
    assert report.exit_code == 0
    assert CycleState.GLOBAL_LOCK_DENIED in report.states
    assert not marker.exists()
    assert other.read(GLOBAL_LOCK) == held


def test_admission_denied_releases_global_lock(tmp_path: Path) -> None:
    marker = tmp_path / "ran.txt"
    guard = ResourceGuard(load_probe=lambda: 50.0, memory_probe=lambda: 10.0)
    scheduler = _scheduler(tmp_path, [_job("work", partial(_sleep, 0, marker))], guard=guard)

    report = scheduler.run_cycle(AT)

    assert report.status == CycleStatus.ADMISSION_DENIED
    assert report.exit_code == 3
    assert "load average" in report.admission.reason
    assert report.results == []
    assert not marker.exists()
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)


def test_concurrency_limit_serializes_jobs(tmp_path: Path) -> None:
    jobs = [_job("one", partial(_sleep, 1.0)), _job("two", partial(_sleep, 1.0))]
    scheduler = _scheduler(tmp_path, jobs, max_concurrent_jobs=1)

    started = time.monotonic()
    report = scheduler.run_cycle(AT)
    elapsed = time.monotonic() - started

    assert elapsed >= 2.0
    assert [result.success for result in report.results] == [True, True]


def test_jobs_run_in_parallel_up_to_limit(tmp_path: Path) -> None:
    jobs = [_job("one", partial(_sleep, 1.0)), _job("two", partial(_sleep, 1.0))]
    scheduler = _scheduler(tmp_path, jobs, max_concurrent_jobs=2)

    started = time.monotonic()
    report = scheduler.run_cycle(AT)
    elapsed = time.monotonic() - started

    assert elapsed < 1.9
    assert report.successful == 2


def test_results_follow_dispatch_order_not_completion_order(tmp_path: Path) -> None:
    jobs = [
        _job("slow", partial(_sleep, 0.6), priority=1),
        _job("fast", partial(_sleep, 0.05), priority=2),
    ]
    report = _scheduler(tmp_path, jobs).run_cycle(AT)
    assert [result.job_name for result in report.results] == ["slow", "fast"]


def test_timed_out_job_is_terminated_and_keeps_its_lock(tmp_path: Path) -> None:
    clock = FakeClock()
    marker = tmp_path / "finished.txt"
    scheduler = _scheduler(tmp_path, [_job("slow", partial(_sleep, 30, marker), timeout=1)], clock=clock)

    started = time.monotonic()
    report = scheduler.run_cycle(AT)
    elapsed = time.monotonic() - started

    result = report.result_for("slow")
    assert elapsed < 10
    assert result is not None
    assert not result.success
    assert result.reason == REASON_TIMEOUT
    assert result.status == "TIMEOUT"
    assert report.timed_out == 1
    assert report.exit_code == 3
    assert not marker.exists()

    assert scheduler.locks.is_locked("job:slow")
    clock.advance(2)
    assert not scheduler.locks.is_locked("job:slow")


def test_exception_is_captured(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path, [_job("broken", _boom)])
    report = scheduler.run_cycle(AT)

    result = report.results[0]
    assert not result.success
    assert result.reason == REASON_EXCEPTION
    assert result.exception.type == "RuntimeError"
    assert result.exception.message == "boom"
    assert "RuntimeError: boom" in result.exception.traceback
    assert "boom" in result.message
    assert report.failed == 1
    assert report.exit_code == 1
    assert not scheduler.locks.is_locked("job:broken")


def test_returned_false_is_failure(tmp_path: Path) -> None:
    report = _scheduler(tmp_path, [_job("refuses", _refuse)]).run_cycle(AT)
    assert report.results[0].reason == REASON_RETURNED_FAILURE
    assert report.exit_code == 1


def test_child_exit_without_result_is_crash(tmp_path: Path) -> None:
    report = _scheduler(tmp_path, [_job("crasher", _crash)]).run_cycle(AT)
    result = report.results[0]
    assert result.reason == REASON_CRASHED
    assert result.exit_code == 7
    assert report.exit_code == 1


def test_job_already_running_is_skipped(tmp_path: Path) -> None:
    marker = tmp_path / "busy.txt"
    jobs = [_job("busy", partial(_sleep, 0, marker)), _job("free", partial(_sleep, 0))]
    scheduler = _scheduler(tmp_path, jobs)
    other = LockManager(tmp_path / "locks")
    assert other.acquire("job:busy", 300) is not None

    report = scheduler.run_cycle(AT)

    busy = report.result_for("busy")
    assert busy.skipped
    assert busy.reason == REASON_ALREADY_RUNNING
    assert report.result_for("free").success
    assert not marker.exists()
    assert report.exit_code == 3
    assert other.is_locked("job:busy")


def test_cycle_deadline_stops_running_and_skips_pending(tmp_path: Path) -> None:
    jobs = [
        _job("long", partial(_sleep, 30), priority=1, timeout=60),
        _job("waiting", partial(_sleep, 0), priority=2),
    ]
    scheduler = _scheduler(tmp_path, jobs, global_timeout=1, max_concurrent_jobs=1)

    started = time.monotonic()
    report = scheduler.run_cycle(AT)
    elapsed = time.monotonic() - started

    assert elapsed < 10
    long_result = report.result_for("long")
    waiting = report.result_for("waiting")
    assert long_result.reason == REASON_CYCLE_DEADLINE and not long_result.skipped
    assert waiting.reason == REASON_CYCLE_DEADLINE and waiting.skipped
    assert [result.job_name for result in report.results] == ["long", "waiting"]
    assert report.exit_code == 3


def test_unknown_job_name_raises(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path, [_job("known", _refuse)])
    with pytest.raises(SchedulerError, match='Unknown job "nope"'):
        scheduler.run_cycle(AT, job_names=["nope"])
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)


def test_named_jobs_respect_schedule_unless_ignored(tmp_path: Path) -> None:
    order_file = tmp_path / "order.txt"
    jobs = [
        _job("yearly", partial(_record, order_file, "yearly"), schedule="0 0 1 6 *"),
        _job("minutely", partial(_record, order_file, "minutely")),
    ]
    scheduler = _scheduler(tmp_path, jobs)

    assert scheduler.run_cycle(AT, job_names=["yearly"]).results == []
    report = scheduler.run_cycle(AT, job_names=["yearly"], ignore_schedule=True)
    assert [result.job_name for result in report.results] == ["yearly"]
    assert order_file.read_text(encoding="utf-8").split() == ["yearly"]


def test_force_breaks_global_lock_and_runs_disabled_job(tmp_path: Path) -> None:
    order_file = tmp_path / "order.txt"
    scheduler = _scheduler(tmp_path, [_job("off", partial(_record, order_file, "off"), enabled=False)])
    assert LockManager(tmp_path / "locks").acquire(GLOBAL_LOCK, 300) is not None

    assert scheduler.run_cycle(AT, job_names=["off"], ignore_schedule=True).status == CycleStatus.LOCKED
    report = scheduler.run_cycle(AT, force=True, job_names=["off"], ignore_schedule=True)

    assert report.status == CycleStatus.COMPLETED
    assert report.results[0].success
    assert order_file.read_text(encoding="utf-8").split() == ["off"]


def test_cleanup_sweeps_stale_locks_once_per_interval(tmp_path: Path) -> None:
    ancient = LockManager(tmp_path / "locks", clock=lambda: 1000.0)
    assert ancient.acquire("job:ghost-1", 1) is not None
    scheduler = _scheduler(tmp_path, [], lock_cleanup_interval=300)

    first = scheduler.run_cycle(AT)
    assert first.cleaned == 1

    assert ancient.acquire("job:ghost-2", 1) is not None
    second = scheduler.run_cycle(AT)
    assert second.cleaned == 0
    assert (tmp_path / "locks" / "jobs" / "ghost-2.lock").exists()


def test_cleanup_disabled(tmp_path: Path) -> None:
    ancient = LockManager(tmp_path / "locks", clock=lambda: 1000.0)
    assert ancient.acquire("job:ghost", 1) is not None
    report = _scheduler(tmp_path, [], cleanup_stale_locks=False).run_cycle(AT)
    assert report.cleaned == 0
    assert CycleState.CLEANUP in report.states


def test_events_cover_cycle_and_jobs(tmp_path: Path) -> None:
    events = CollectingEventSink()
    jobs = [_job("ok", partial(_sleep, 0)), _job("broken", _boom)]
    report = _scheduler(tmp_path, jobs, events=events).run_cycle(AT)

    types = events.types()
    assert types[0] == "cycle.start"
    assert types[-1] == "cycle.done"
    assert types.count("job.started") == 2
    assert "job.succeeded" in types
    assert "job.failed" in types
    assert "cleanup.completed" in types
    assert {event.cycle_id for event in events.events} == {report.cycle_id}
    failed = events.of_type("job.failed")[0]
    assert failed.job_name == "broken"
    assert failed.metadata["reason"] == REASON_EXCEPTION
    assert failed.to_payload()["jobName"] == "broken"


def test_lock_storage_failure_aborts_cycle(tmp_path: Path) -> None:
    marker = tmp_path / "first.txt"
    events = CollectingEventSink()
    jobs = [
        _job("first", partial(_sleep, 2, marker), priority=1),
        _job("second", partial(_sleep, 0), priority=2),
    ]
    scheduler = _scheduler(tmp_path, jobs, events=events, lock_class=FailingJobLocks, max_concurrent_jobs=2)

    with pytest.raises(CycleAbortedError) as excinfo:
        scheduler.run_cycle(AT)

    assert isinstance(excinfo.value.__cause__, LockStorageError)
    assert events.types()[-1] == "cycle.aborted"
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)
    time.sleep(2.5)
    assert not marker.exists()


def test_job_leaving_a_thread_running_does_not_hold_the_cycle(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path, [_job("lingering", _leave_thread_running, timeout=2)], global_timeout=3)

    started = time.monotonic()
    report = scheduler.run_cycle(AT)
    elapsed = time.monotonic() - started

    assert elapsed < 10
    assert report.result_for("lingering").success
    assert report.exit_code == 0
    assert not scheduler.locks.is_locked("job:lingering")
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)


def test_job_can_use_a_process_pool(tmp_path: Path) -> None:
    report = _scheduler(tmp_path, [_job("pooled", _pool_abs)]).run_cycle(AT)
    result = report.result_for("pooled")
    assert result.success, result.message
    assert result.metadata["value"] == 4


def test_unreadable_memory_releases_global_lock(tmp_path: Path) -> None:
    guard = ResourceGuard(load_probe=lambda: 0.1, memory_probe=_raise_memory_error)
    scheduler = _scheduler(tmp_path, [_job("work", partial(_sleep, 0))], guard=guard)
    with pytest.raises(SchedulerError, match="memory usage"):
        scheduler.run_cycle(AT)
    assert not scheduler.locks.is_locked(GLOBAL_LOCK)


class ClockJumpingSink(CollectingEventSink):
    """Moves the lock clock past every expiry when the cycle reaches cleanup."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__()
        self.clock = clock

    def emit(self, event: Any) -> None:
        super().emit(event)
        if event.event_type == "cycle.cleanup":
            self.clock.advance(3600)


def test_cleanup_leaves_the_cycles_own_expired_global_lock(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    clock = FakeClock(time.time())
    scheduler = _scheduler(tmp_path, [], clock=clock, events=ClockJumpingSink(clock), global_timeout=60)

    report = scheduler.run_cycle(AT)

    assert report.cleaned == 0
    assert not (tmp_path / "locks" / "global.lock").exists()
    assert "taken over" not in caplog.text
    assert "no longer owned" not in caplog.text


def _cycle_in_process(tmp_path: Path, barrier: Any, outcomes: Any) -> None:
    scheduler = _scheduler(tmp_path, [_job("slow", partial(_sleep, 1.0))])
    barrier.wait()
    report = scheduler.run_cycle(AT)
    outcomes.put((report.status.value, [state.value for state in report.states]))


def test_two_cycle_processes_dispatch_once(tmp_path: Path) -> None:
    context = multiprocessing.get_context("fork")
    barrier = context.Barrier(2)
    outcomes = context.Queue()
    processes = [context.Process(target=_cycle_in_process, args=(tmp_path, barrier, outcomes)) for _ in range(2)]
    for process in processes:
        process.start()
    results = [outcomes.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)

    assert sorted(status for status, _ in results) == ["completed", "locked"]
    assert sum(CycleState.DISPATCH.value in states for _, states in results) == 1
    assert all(process.exitcode == 0 for process in processes)
