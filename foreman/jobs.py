"""
Job descriptors and the job bodies foreman knows how to run.
"""

from __future__ import annotations

import importlib
import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from foreman.errors import JobRegistrationError
from foreman.locks import LockManager

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50
LOCK_CLEANUP_JOB = "lock:cleanup"
LOCK_CLEANUP_SCHEDULE = "*/5 * * * *"
LOCK_CLEANUP_TIMEOUT = 60
LOCK_CLEANUP_PRIORITY = 10
OUTPUT_LIMIT = 64 * 1024


@dataclass(frozen=True)
class JobOutcome:
    success: bool = True
    message: str = ""
    exit_code: Optional[int] = None
    output: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def coerce(value: Any) -> "JobOutcome":
        if isinstance(value, JobOutcome):
            return value
        if value is None or value is True:
            return JobOutcome(success=True, message="Job completed successfully")
        if value is False:
            return JobOutcome(success=False, message="Job returned failure")
        raise TypeError(f"Job returned unsupported value of type {type(value).__name__}.")


@dataclass(frozen=True)
class JobDescriptor:
    name: str
    schedule: str
    run: Callable[[], Any]
    priority: int = DEFAULT_PRIORITY
    timeout: Optional[int] = None
    enabled: bool = True
    description: str = ""
    kind: str = "callable"

    def execute(self) -> JobOutcome:
        return JobOutcome.coerce(self.run())

    def effective_timeout(self, default: int) -> int:
        return self.timeout if self.timeout is not None else default


@dataclass(frozen=True)
class ScriptSpec:
    path: str
    args: List[str]
    timeout: int
    resolved_path: Path


@dataclass
class ScriptRunResult:
    script: ScriptSpec
    success: bool
    return_code: int
    duration_seconds: float
    stdout: str
    stderr: str
    error: Optional[str] = None


def run_script(script: ScriptSpec, working_dir: Path) -> ScriptRunResult:
    command = [sys.executable, str(script.resolved_path), *script.args]
    started = time.monotonic()
    try:
        result = subprocess.run(
            command,
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=script.timeout,
            check=False,
            env=os.environ.copy(),
        )
    except subprocess.TimeoutExpired:
        return ScriptRunResult(
            script=script,
            success=False,
            return_code=-1,
            duration_seconds=time.monotonic() - started,
            stdout="",
            stderr=f"Timed out after {script.timeout} seconds.",
            error="timeout",
        )
    except OSError as exc:
        return ScriptRunResult(
            script=script,
            success=False,
            return_code=-2,
            duration_seconds=time.monotonic() - started,
            stdout="",
            stderr=str(exc),
            error="exception",
        )
    return ScriptRunResult(
        script=script,
        success=result.returncode == 0,
        return_code=result.returncode,
        duration_seconds=time.monotonic() - started,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


@dataclass(frozen=True)
class ScriptJob:
    """Runs a sequence of Python scripts, one subprocess each."""

    name: str
    scripts: List[ScriptSpec]
    working_dir: Path
    stop_on_failure: bool = True

    def __call__(self) -> JobOutcome:
        results: List[ScriptRunResult] = []
        for idx, script in enumerate(self.scripts, start=1):
            logger.info("[%s] [%s/%s] Running %s", self.name, idx, len(self.scripts), script.path)
            if script.args:
                logger.info("[%s] Args: %s", self.name, " ".join(shlex.quote(arg) for arg in script.args))
            outcome = run_script(script, self.working_dir)
            results.append(outcome)
            if outcome.success:
                logger.info("[%s] %s finished in %.2fs", self.name, script.path, outcome.duration_seconds)
                continue
            logger.error(
                "[%s] %s failed (return_code=%s): %s",
                self.name,
                script.path,
                outcome.return_code,
                outcome.stderr.strip() or outcome.error or "no output",
            )
            if self.stop_on_failure:
                break

        failures = [item for item in results if not item.success]
        output = "".join(item.stdout + item.stderr for item in results)[-OUTPUT_LIMIT:]
        last = failures[0] if failures else results[-1]
        if failures:
            message = f"Script {last.script.path} failed with exit code {last.return_code}"
        else:
            message = f"{len(results)} script(s) completed successfully"
        return JobOutcome(
            success=not failures,
            message=message,
            exit_code=last.return_code,
            output=output,
            metadata={
                "scripts_run": len(results),
                "scripts_total": len(self.scripts),
                "failed_scripts": [item.script.path for item in failures],
            },
        )


def load_callable(import_path: str) -> Callable[[], Any]:
    """Resolve ``"package.module:function"`` to the callable it names."""
    module_name, sep, attr_path = import_path.partition(":")
    if not sep or not module_name or not attr_path:
        raise JobRegistrationError(
            f'Error: callable "{import_path}" must look like "package.module:function".'
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise JobRegistrationError(f'Error: cannot import module "{module_name}": {exc}') from exc
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as exc:
            raise JobRegistrationError(f'Error: "{import_path}" has no attribute "{attr}".') from exc
    if not callable(target):
        raise JobRegistrationError(f'Error: "{import_path}" is not callable.')
    return target


def cleanup_locks(locks: LockManager) -> JobOutcome:
    cleaned = locks.cleanup_stale()
    return JobOutcome(
        success=True,
        message=f"Cleaned up {cleaned} stale lock(s)",
        metadata={"cleaned": cleaned, "lock_directory": str(locks.directory)},
    )


def lock_cleanup_job(
    locks: LockManager,
    schedule: str = LOCK_CLEANUP_SCHEDULE,
    timeout: int = LOCK_CLEANUP_TIMEOUT,
    priority: int = LOCK_CLEANUP_PRIORITY,
    enabled: bool = True,
) -> JobDescriptor:
    return JobDescriptor(
        name=LOCK_CLEANUP_JOB,
        schedule=schedule,
        run=partial(cleanup_locks, locks),
        priority=priority,
        timeout=timeout,
        enabled=enabled,
        description="Remove expired and unreadable lock files",
        kind="builtin",
    )
