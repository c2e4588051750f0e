"""
Result records for one job execution attempt.
"""

from __future__ import annotations

import json
import traceback
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

REASON_ALREADY_RUNNING = "already_running"
REASON_TIMEOUT = "timeout"
REASON_CYCLE_DEADLINE = "cycle_deadline"
REASON_CRASHED = "crashed"
REASON_EXCEPTION = "exception"
REASON_RETURNED_FAILURE = "returned_failure"


@dataclass(frozen=True)
class JobFailure:
    """Picklable description of an exception raised by a job body."""

    type: str
    message: str
    traceback: str = ""

    @staticmethod
    def from_exception(exc: BaseException) -> "JobFailure":
        return JobFailure(
            type=type(exc).__name__,
            message=str(exc),
            traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class JobResult:
    """
    Outcome of one job in one cycle.

    ``duration`` and ``memory_used`` are derived from the end values the
    first time those are set, unless they were set explicitly before. Once
    present they are never recomputed.
    """

    def __init__(
        self,
        job_name: str,
        success: bool = False,
        message: str = "",
        skipped: bool = False,
    ) -> None:
        self.job_name = job_name
        self.success = success
        self.message = message
        self.skipped = skipped
        self.start_time: Optional[float] = None
        self.start_memory: Optional[int] = None
        self.exception: Optional[JobFailure] = None
        self.exit_code: Optional[int] = None
        self.output: Optional[str] = None
        self.metadata: Dict[str, Any] = {}
        self._end_time: Optional[float] = None
        self._duration: Optional[float] = None
        self._end_memory: Optional[int] = None
        self._memory_used: Optional[int] = None

    @staticmethod
    def succeeded(job_name: str, message: str = "Job completed successfully") -> "JobResult":
        return JobResult(job_name, success=True, message=message)

    @staticmethod
    def failed(
        job_name: str,
        message: str = "Job failed",
        exception: Optional[JobFailure] = None,
        reason: Optional[str] = None,
    ) -> "JobResult":
        result = JobResult(job_name, success=False, message=message)
        result.exception = exception
        if reason:
            result.metadata["reason"] = reason
        return result

    @staticmethod
    def skipped_result(job_name: str, message: str = "Job was skipped", reason: Optional[str] = None) -> "JobResult":
        result = JobResult(job_name, success=False, message=message, skipped=True)
        if reason:
            result.metadata["reason"] = reason
        return result

    @property
    def end_time(self) -> Optional[float]:
        return self._end_time

    @end_time.setter
    def end_time(self, value: float) -> None:
        self._end_time = value
        if self.start_time is not None and self._duration is None:
            self._duration = value - self.start_time

    @property
    def duration(self) -> Optional[float]:
        return self._duration

    @duration.setter
    def duration(self, value: float) -> None:
        self._duration = value

    @property
    def end_memory(self) -> Optional[int]:
        return self._end_memory

    @end_memory.setter
    def end_memory(self, value: int) -> None:
        self._end_memory = value
        if self.start_memory is not None and self._memory_used is None:
            self._memory_used = value - self.start_memory

    @property
    def memory_used(self) -> Optional[int]:
        return self._memory_used

    @memory_used.setter
    def memory_used(self, value: int) -> None:
        self._memory_used = value

    @property
    def reason(self) -> Optional[str]:
        return self.metadata.get("reason")

    @property
    def timed_out(self) -> bool:
        return self.reason in {REASON_TIMEOUT, REASON_CYCLE_DEADLINE}

    @property
    def failed_outright(self) -> bool:
        return not self.success and not self.skipped and not self.timed_out

    @property
    def memory_used_mb(self) -> Optional[float]:
        if self._memory_used is None:
            return None
        return round(self._memory_used / 1024 / 1024, 2)

    @property
    def formatted_duration(self) -> str:
        if self._duration is None:
            return "N/A"
        if self._duration < 1:
            return f"{int(round(self._duration * 1000))}ms"
        if self._duration < 60:
            return f"{round(self._duration, 2)}s"
        minutes = int(self._duration // 60)
        seconds = int(round(self._duration - minutes * 60))
        return f"{minutes}m {seconds}s"

    @property
    def formatted_memory(self) -> str:
        if self._memory_used is None:
            return "N/A"
        mb = self.memory_used_mb
        if mb is not None and abs(mb) < 1:
            return f"{int(round(self._memory_used / 1024))}KB"
        return f"{mb}MB"

    @property
    def status(self) -> str:
        if self.skipped:
            return "SKIPPED"
        if self.success:
            return "SUCCESS"
        if self.timed_out:
            return "TIMEOUT"
        return "FAILED"

    def summary(self) -> str:
        return (
            f"[{self.status}] {self.job_name} - {self.message} "
            f"(Duration: {self.formatted_duration}, Memory: {self.formatted_memory})"
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_name": self.job_name,
            "success": self.success,
            "skipped": self.skipped,
            "status": self.status,
            "message": self.message,
            "start_time": self.start_time,
            "end_time": self._end_time,
            "duration": self._duration,
            "formatted_duration": self.formatted_duration,
            "start_memory": self.start_memory,
            "end_memory": self._end_memory,
            "memory_used": self._memory_used,
            "memory_used_mb": self.memory_used_mb,
            "exit_code": self.exit_code,
            "output": self.output,
            "metadata": dict(self.metadata),
        }
        if self.exception is not None:
            payload["exception"] = self.exception.to_dict()
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __repr__(self) -> str:
        return f"JobResult({self.summary()!r})"
