"""
In-memory catalogue of job descriptors, keyed by name.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from foreman import cron
from foreman.errors import DuplicateJobError, JobRegistrationError, SchedulerError
from foreman.jobs import JobDescriptor

JOB_NAME_RE = re.compile(r"^[A-Za-z0-9_:-]+$")
MIN_PRIORITY = 0
MAX_PRIORITY = 100


def validate_descriptor(job: JobDescriptor) -> None:
    if not isinstance(job.name, str) or not JOB_NAME_RE.match(job.name):
        raise JobRegistrationError(
            f'Error: Invalid job name "{job.name}"; use letters, digits, "_", ":" or "-".'
        )
    cron.parse(job.schedule)
    if job.timeout is not None and (
        isinstance(job.timeout, bool) or not isinstance(job.timeout, (int, float)) or job.timeout <= 0
    ):
        raise JobRegistrationError(f'Error: Job "{job.name}" timeout must be a positive number.')
    if isinstance(job.priority, bool) or not isinstance(job.priority, int):
        raise JobRegistrationError(f'Error: Job "{job.name}" priority must be an integer.')
    if not MIN_PRIORITY <= job.priority <= MAX_PRIORITY:
        raise JobRegistrationError(
            f'Error: Job "{job.name}" priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.'
        )
    if not callable(job.run):
        raise JobRegistrationError(f'Error: Job "{job.name}" has nothing to run.')


class JobRegistry:
    def __init__(self, jobs: Iterable[JobDescriptor] = ()) -> None:
        self._jobs: Dict[str, JobDescriptor] = {}
        self.register_many(jobs)

    def register(self, job: JobDescriptor) -> JobDescriptor:
        if job.name in self._jobs:
            raise DuplicateJobError(job.name)
        validate_descriptor(job)
        self._jobs[job.name] = job
        return job

    def register_many(self, jobs: Iterable[JobDescriptor]) -> None:
        for job in jobs:
            self.register(job)

    def unregister(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def get(self, name: str) -> Optional[JobDescriptor]:
        return self._jobs.get(name)

    def jobs(self) -> List[JobDescriptor]:
        return list(self._jobs.values())

    def enabled_jobs(self) -> List[JobDescriptor]:
        return [job for job in self._jobs.values() if job.enabled]

    def due_jobs(self, at: datetime) -> List[JobDescriptor]:
        due = [job for job in self._jobs.values() if job.enabled and cron.matches(job.schedule, at)]
        return self.by_priority(due)

    def select(self, names: Iterable[str], include_disabled: bool = False) -> List[JobDescriptor]:
        selected: List[JobDescriptor] = []
        for name in names:
            job = self._jobs.get(name)
            if job is None:
                raise SchedulerError(f'Unknown job "{name}".')
            if job.enabled or include_disabled:
                selected.append(job)
        return selected

    @staticmethod
    def by_priority(jobs: Iterable[JobDescriptor]) -> List[JobDescriptor]:
        return sorted(jobs, key=lambda job: job.priority)

    def summary(self, count: int = 1, after: Optional[datetime] = None) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for job in self.by_priority(self._jobs.values()):
            rows.append(
                {
                    "name": job.name,
                    "kind": job.kind,
                    "schedule": job.schedule,
                    "schedule_description": cron.describe(job.schedule),
                    "priority": job.priority,
                    "timeout": job.timeout,
                    "enabled": job.enabled,
                    "description": job.description,
                    "next_runs": cron.upcoming_runs(job.schedule, count, after) if count > 0 else [],
                }
            )
        return rows

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __iter__(self):
        return iter(self.jobs())
