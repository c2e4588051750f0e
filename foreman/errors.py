"""
Exception hierarchy for foreman.
"""

from __future__ import annotations


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Config validation error."""


class InvalidExpressionError(ConfigError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f'Error: Invalid cron expression "{expression}": {reason}')
        self.expression = expression
        self.reason = reason


class JobRegistrationError(ConfigError):
    """Job descriptor rejected at registration time."""


class DuplicateJobError(JobRegistrationError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Error: Duplicate job name "{name}".')
        self.name = name


class LockStorageError(ForemanError):
    """Lock directory could not be read or written."""


class SchedulerError(ForemanError):
    """Scheduler could not run the requested cycle."""


class CycleAbortedError(SchedulerError):
    """Cycle stopped by an infrastructure fault."""
