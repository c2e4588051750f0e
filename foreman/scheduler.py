"""
One scheduler cycle: take the global lock, admit, dispatch due jobs into
forked workers under a concurrency cap, drain, sweep stale locks, release.

Every job runs in its own child process so a job that overruns its timeout
(or the cycle deadline) can be terminated. A terminated job's lock is left in
place and expires on its own, which keeps a second copy from starting while
the first one might still be winding down.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import signal
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from multiprocessing.connection import Connection, wait
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from foreman import cron
from foreman.config import SchedulerConfig
from foreman.errors import CycleAbortedError, LockStorageError
from foreman.events import EventSink, make_event
from foreman.jobs import JobDescriptor
from foreman.locks import GLOBAL_LOCK, Lock, LockManager, job_lock_name
from foreman.registry import JobRegistry
from foreman.resources import AdmissionDecision, ResourceGuard, current_rss_bytes
from foreman.results import (
    REASON_ALREADY_RUNNING,
    REASON_CRASHED,
    REASON_CYCLE_DEADLINE,
    REASON_EXCEPTION,
    REASON_RETURNED_FAILURE,
    REASON_TIMEOUT,
    JobFailure,
    JobResult,
)

logger = logging.getLogger(__name__)

CLEANUP_MARKER = ".last_cleanup"
TERMINATE_GRACE_SECONDS = 5.0

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_DEGRADED = 3


class CycleState(str, Enum):
    START = "start"
    GLOBAL_LOCK_PENDING = "global_lock_pending"
    GLOBAL_LOCK_DENIED = "global_lock_denied"
    GLOBAL_LOCK_HELD = "global_lock_held"
    RESOURCE_CHECK = "resource_check"
    ADMISSION_DENIED = "admission_denied"
    ADMITTED = "admitted"
    DISPATCH = "dispatch"
    PER_JOB = "per_job"
    DRAIN = "drain"
    CLEANUP = "cleanup"
    DONE = "done"
    ABORTED = "aborted"


class CycleStatus(str, Enum):
    COMPLETED = "completed"
    LOCKED = "locked"
    ADMISSION_DENIED = "admission_denied"


@dataclass
class CycleReport:
    cycle_id: str
    at: datetime
    status: CycleStatus = CycleStatus.COMPLETED
    results: List[JobResult] = field(default_factory=list)
    cleaned: int = 0
    admission: Optional[AdmissionDecision] = None
    states: List[CycleState] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if result.failed_outright)

    @property
    def skipped(self) -> int:
        return sum(1 for result in self.results if result.skipped)

    @property
    def timed_out(self) -> int:
        return sum(1 for result in self.results if not result.skipped and result.timed_out)

    @property
    def exit_code(self) -> int:
        if self.status == CycleStatus.LOCKED:
            return EXIT_OK
        if self.status == CycleStatus.ADMISSION_DENIED:
            return EXIT_DEGRADED
        if self.failed:
            return EXIT_FAILURE
        if self.skipped or self.timed_out:
            return EXIT_DEGRADED
        return EXIT_OK

    def result_for(self, job_name: str) -> Optional[JobResult]:
        for result in self.results:
            if result.job_name == job_name:
                return result
        return None

    def summary(self) -> str:
        return (
            f"Cycle {self.cycle_id} {self.status.value}: {len(self.results)} job(s), "
            f"{self.successful} successful, {self.failed} failed, "
            f"{self.skipped} skipped, {self.timed_out} timed out, "
            f"{self.cleaned} stale lock(s) cleaned"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "at": self.at.isoformat(),
            "status": self.status.value,
            "exit_code": self.exit_code,
            "cleaned": self.cleaned,
            "admission_reason": self.admission.reason if self.admission else None,
            "results": [result.to_dict() for result in self.results],
        }


def _raise_system_exit(signum: int, frame: Any) -> None:
    raise SystemExit(128 + signum)


def _child_main(job: JobDescriptor, conn: Connection) -> None:
    # SystemExit unwinds through subprocess.run, which kills its own child.
    signal.signal(signal.SIGTERM, _raise_system_exit)
    payload: Dict[str, Any] = {"start_time": time.time(), "start_memory": current_rss_bytes()}
    try:
        outcome = job.execute()
    except Exception as exc:
        payload.update(
            success=False,
            message=f"Job threw exception: {exc}",
            failure=JobFailure.from_exception(exc),
            reason=REASON_EXCEPTION,
        )
    else:
        payload.update(
            success=outcome.success,
            message=outcome.message or ("Job completed successfully" if outcome.success else "Job returned failure"),
            exit_code=outcome.exit_code,
            output=outcome.output,
            metadata=dict(outcome.metadata),
            reason=None if outcome.success else REASON_RETURNED_FAILURE,
        )
    payload["end_memory"] = current_rss_bytes()
    payload["end_time"] = time.time()
    conn.send(payload)
    conn.close()


@dataclass
class _RunningJob:
    job: JobDescriptor
    lock: Lock
    process: multiprocessing.process.BaseProcess
    conn: Connection
    timeout: int
    started_at: float
    deadline: float


class Scheduler:
    def __init__(
        self,
        registry: JobRegistry,
        locks: LockManager,
        config: SchedulerConfig,
        events: Optional[EventSink] = None,
        guard: Optional[ResourceGuard] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.locks = locks
        self.config = config
        self.events = events
        self.guard = guard or ResourceGuard()
        self.clock = clock
        self._context = multiprocessing.get_context("fork")

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=self.config.zone)

    def plan(
        self,
        at: Optional[datetime] = None,
        *,
        force: bool = False,
        job_names: Optional[Iterable[str]] = None,
        ignore_schedule: bool = False,
    ) -> List[JobDescriptor]:
        """Jobs a cycle at ``at`` would dispatch, in dispatch order."""
        at = at or self.now()
        if job_names is not None:
            selected = self.registry.select(list(dict.fromkeys(job_names)), include_disabled=force)
            if not ignore_schedule:
                selected = [job for job in selected if cron.matches(job.schedule, at)]
            return JobRegistry.by_priority(selected)
        if ignore_schedule:
            return JobRegistry.by_priority(self.registry.enabled_jobs())
        return self.registry.due_jobs(at)

    def run_cycle(
        self,
        at: Optional[datetime] = None,
        *,
        force: bool = False,
        job_names: Optional[Iterable[str]] = None,
        ignore_schedule: bool = False,
    ) -> CycleReport:
        at = at or self.now()
        report = CycleReport(cycle_id=uuid.uuid4().hex[:12], at=at)
        self._transition(report, CycleState.START, at=at.isoformat())
        jobs = self.plan(at, force=force, job_names=job_names, ignore_schedule=ignore_schedule)

        running: Dict[str, _RunningJob] = {}
        global_lock: Optional[Lock] = None
        try:
            if force and self.locks.force_release(GLOBAL_LOCK):
                logger.warning("Forced release of the global scheduler lock.")

            self._transition(report, CycleState.GLOBAL_LOCK_PENDING)
            global_lock = self.locks.acquire(
                GLOBAL_LOCK,
                self.config.global_timeout,
                metadata={"cycle_id": report.cycle_id},
            )
            if global_lock is None:
                self._transition(report, CycleState.GLOBAL_LOCK_DENIED, level="WARNING")
                report.status = CycleStatus.LOCKED
                self._transition(report, CycleState.DONE, status=report.status.value)
                return report

            self._transition(report, CycleState.GLOBAL_LOCK_HELD)
            deadline = time.monotonic() + self.config.global_timeout

            self._transition(report, CycleState.RESOURCE_CHECK)
            decision = self.guard.evaluate(self.config)
            report.admission = decision
            if not decision.admitted:
                report.status = CycleStatus.ADMISSION_DENIED
                self._transition(report, CycleState.ADMISSION_DENIED, level="WARNING", reason=decision.reason)
            else:
                self._transition(report, CycleState.ADMITTED, load=decision.load, memory_mb=decision.memory_mb)
                self._transition(report, CycleState.DISPATCH, jobs=[job.name for job in jobs])
                report.results = self._dispatch(report, jobs, running, deadline)
                self._transition(report, CycleState.CLEANUP)
                report.cleaned = self._cleanup(report, global_lock)
        except LockStorageError as exc:
            self._terminate_all(running)
            self._transition(report, CycleState.ABORTED, level="ERROR", error=str(exc))
            raise CycleAbortedError(f"Cycle {report.cycle_id} aborted: {exc}") from exc
        finally:
            self._terminate_all(running)
            if global_lock is not None:
                self._release_global(global_lock)

        self._transition(report, CycleState.DONE, status=report.status.value, exit_code=report.exit_code)
        return report

    def _dispatch(
        self,
        report: CycleReport,
        jobs: List[JobDescriptor],
        running: Dict[str, _RunningJob],
        deadline: float,
    ) -> List[JobResult]:
        results: Dict[str, JobResult] = {}
        pending: Deque[JobDescriptor] = deque(jobs)
        self._transition(report, CycleState.PER_JOB)
        draining = False

        while pending or running:
            if time.monotonic() >= deadline:
                break

            while pending and len(running) < self.config.max_concurrent_jobs:
                job = pending.popleft()
                timeout = job.effective_timeout(self.config.default_job_timeout)
                lock = self.locks.acquire(
                    job_lock_name(job.name),
                    timeout,
                    metadata={"cycle_id": report.cycle_id},
                )
                if lock is None:
                    results[job.name] = JobResult.skipped_result(
                        job.name,
                        "Job is already running",
                        reason=REASON_ALREADY_RUNNING,
                    )
                    self._emit_result(report, results[job.name])
                    continue
                running[job.name] = self._start(report, job, lock, timeout, deadline)

            if not pending and not draining:
                draining = True
                self._transition(report, CycleState.DRAIN, running=sorted(running))

            if not running:
                continue

            now = time.monotonic()
            next_deadline = min(item.deadline for item in running.values())
            handles: List[Any] = []
            for item in running.values():
                handles.extend((item.conn, item.process.sentinel))
            ready = set(wait(handles, timeout=max(0.0, next_deadline - now)))

            for name, item in list(running.items()):
                if item.conn in ready or item.process.sentinel in ready:
                    results[name] = self._finish(item)
                elif time.monotonic() >= item.deadline and item.deadline < deadline:
                    results[name] = self._kill(item, REASON_TIMEOUT, f"Job exceeded timeout of {item.timeout}s")
                else:
                    # Jobs cut off by the cycle deadline are handled after the loop.
                    continue
                del running[name]
                self._emit_result(report, results[name])

        if not draining:
            self._transition(report, CycleState.DRAIN, running=sorted(running))
        if pending or running:
            logger.warning(
                "Cycle deadline of %ss reached with %s running and %s pending job(s).",
                self.config.global_timeout,
                len(running),
                len(pending),
            )
        for name, item in list(running.items()):
            results[name] = self._kill(item, REASON_CYCLE_DEADLINE, "Job stopped at the cycle deadline")
            del running[name]
            self._emit_result(report, results[name])
        while pending:
            job = pending.popleft()
            results[job.name] = JobResult.skipped_result(
                job.name,
                "Cycle deadline reached before the job could start",
                reason=REASON_CYCLE_DEADLINE,
            )
            self._emit_result(report, results[job.name])

        return [results[job.name] for job in jobs]

    def _start(
        self,
        report: CycleReport,
        job: JobDescriptor,
        lock: Lock,
        timeout: int,
        cycle_deadline: float,
    ) -> _RunningJob:
        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_child_main,
            args=(job, sender),
            name=f"foreman-job-{job.name}",
            daemon=False,
        )
        process.start()
        sender.close()
        started = time.monotonic()
        self._emit(
            report,
            "job.started",
            f"Job {job.name} started.",
            job_name=job.name,
            pid=process.pid,
            timeout=timeout,
            priority=job.priority,
        )
        return _RunningJob(
            job=job,
            lock=lock,
            process=process,
            conn=receiver,
            timeout=timeout,
            started_at=time.time(),
            deadline=min(started + timeout, cycle_deadline),
        )

    def _finish(self, item: _RunningJob) -> JobResult:
        payload: Optional[Dict[str, Any]] = None
        try:
            if item.conn.poll():
                payload = item.conn.recv()
        except EOFError:
            payload = None
        finally:
            item.conn.close()
        item.process.join(max(0.0, item.deadline - time.monotonic()))
        if item.process.is_alive():
            # Reported but still exiting, usually a non-daemon thread left running.
            logger.warning(
                "Job %s (pid=%s) did not exit after reporting; terminating it.",
                item.job.name,
                item.process.pid,
            )
            self._stop_process(item)

        if payload is None:
            result = JobResult.failed(
                item.job.name,
                f"Job process exited with code {item.process.exitcode} without reporting a result",
                reason=REASON_CRASHED,
            )
            result.exit_code = item.process.exitcode
            result.start_time = item.started_at
            result.end_time = time.time()
        else:
            result = JobResult(item.job.name, success=bool(payload["success"]), message=payload["message"])
            result.exception = payload.get("failure")
            result.exit_code = payload.get("exit_code")
            result.output = payload.get("output")
            result.metadata.update(payload.get("metadata") or {})
            if payload.get("reason"):
                result.metadata["reason"] = payload["reason"]
            result.start_time = payload["start_time"]
            result.start_memory = payload["start_memory"]
            result.end_time = payload["end_time"]
            result.end_memory = payload["end_memory"]

        self.locks.release(item.lock)
        return result

    def _kill(self, item: _RunningJob, reason: str, message: str) -> JobResult:
        logger.warning("Terminating job %s (pid=%s): %s", item.job.name, item.process.pid, message)
        self._stop_process(item)
        result = JobResult.failed(item.job.name, message, reason=reason)
        result.metadata["timeout"] = item.timeout
        result.start_time = item.started_at
        result.end_time = time.time()
        return result

    def _stop_process(self, item: _RunningJob) -> None:
        item.process.terminate()
        item.process.join(TERMINATE_GRACE_SECONDS)
        if item.process.is_alive():
            item.process.kill()
            item.process.join()
        item.conn.close()

    def _terminate_all(self, running: Dict[str, _RunningJob]) -> None:
        for item in running.values():
            if item.process.is_alive():
                self._stop_process(item)
            else:
                item.conn.close()
        running.clear()

    def _cleanup(self, report: CycleReport, global_lock: Lock) -> int:
        if not self.config.cleanup_stale_locks:
            return 0
        marker = self.locks.directory / CLEANUP_MARKER
        now = self.clock()
        try:
            last_sweep: Optional[float] = marker.stat().st_mtime
        except FileNotFoundError:
            last_sweep = None
        except OSError as exc:
            raise LockStorageError(f"Failed to read cleanup marker {marker}: {exc}") from exc
        if last_sweep is not None and now - last_sweep < self.config.lock_cleanup_interval:
            return 0

        cleaned = self.locks.cleanup_stale(keep=[global_lock])
        try:
            marker.touch()
            os.utime(marker, (now, now))
        except OSError as exc:
            raise LockStorageError(f"Failed to update cleanup marker {marker}: {exc}") from exc
        self._emit(report, "cleanup.completed", f"Cleaned up {cleaned} stale lock(s).", cleaned=cleaned)
        return cleaned

    def _release_global(self, lock: Lock) -> None:
        try:
            released = self.locks.release(lock)
        except LockStorageError as exc:
            logger.error("Failed to release the global lock; it will expire at %.0f: %s", lock.expires_at, exc)
            return
        if not released and lock.is_stale(self.locks.clock()):
            logger.warning("Global lock expired at %.0f before this cycle finished.", lock.expires_at)
        elif not released:
            logger.warning("Global lock was taken over before this cycle finished.")

    def _transition(self, report: CycleReport, state: CycleState, level: str = "INFO", **metadata: Any) -> None:
        report.states.append(state)
        logger.debug("Cycle %s -> %s", report.cycle_id, state.value)
        self._emit(report, f"cycle.{state.value}", f"Cycle {state.value.replace('_', ' ')}.", level=level, **metadata)

    def _emit_result(self, report: CycleReport, result: JobResult) -> None:
        if result.skipped:
            event_type, level = "job.skipped", "WARNING"
        elif result.success:
            event_type, level = "job.succeeded", "INFO"
        elif result.timed_out:
            event_type, level = "job.timeout", "ERROR"
        else:
            event_type, level = "job.failed", "ERROR"
        self._emit(
            report,
            event_type,
            result.summary(),
            level=level,
            job_name=result.job_name,
            reason=result.reason,
            duration=result.duration,
            memory_used=result.memory_used,
            exit_code=result.exit_code,
        )

    def _emit(
        self,
        report: CycleReport,
        event_type: str,
        message: str,
        level: str = "INFO",
        job_name: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        if self.events is None:
            return
        self.events.emit(
            make_event(
                event_type,
                message,
                level=level,
                job_name=job_name,
                cycle_id=report.cycle_id,
                **metadata,
            )
        )
