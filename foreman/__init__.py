"""
foreman: cron job scheduler and filesystem lock coordinator.
"""

from foreman.config import SchedulerConfig, load_config, setup_logging
from foreman.errors import (
    ConfigError,
    CycleAbortedError,
    DuplicateJobError,
    ForemanError,
    InvalidExpressionError,
    JobRegistrationError,
    LockStorageError,
    SchedulerError,
)
from foreman.jobs import JobDescriptor, JobOutcome
from foreman.locks import Lock, LockManager
from foreman.registry import JobRegistry
from foreman.resources import AdmissionDecision, ResourceGuard
from foreman.results import JobResult
from foreman.scheduler import CycleReport, CycleState, CycleStatus, Scheduler

__version__ = "0.1.0"

__all__ = [
    "AdmissionDecision",
    "ConfigError",
    "CycleAbortedError",
    "CycleReport",
    "CycleState",
    "CycleStatus",
    "DuplicateJobError",
    "ForemanError",
    "InvalidExpressionError",
    "JobDescriptor",
    "JobOutcome",
    "JobRegistrationError",
    "JobRegistry",
    "JobResult",
    "Lock",
    "LockManager",
    "LockStorageError",
    "ResourceGuard",
    "Scheduler",
    "SchedulerConfig",
    "SchedulerError",
    "load_config",
    "setup_logging",
]
