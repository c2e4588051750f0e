"""
Host resource admission check run once per cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from foreman.config import SchedulerConfig
from foreman.errors import SchedulerError

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def current_load_average() -> float:
    return float(psutil.getloadavg()[0])


def current_memory_mb() -> float:
    return psutil.Process().memory_info().rss / BYTES_PER_MB


def current_rss_bytes() -> int:
    return int(psutil.Process().memory_info().rss)


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: str = ""
    load: Optional[float] = None
    memory_mb: Optional[float] = None


class ResourceGuard:
    def __init__(
        self,
        load_probe: Callable[[], float] = current_load_average,
        memory_probe: Callable[[], float] = current_memory_mb,
    ) -> None:
        self.load_probe = load_probe
        self.memory_probe = memory_probe

    def evaluate(self, config: SchedulerConfig) -> AdmissionDecision:
        load: Optional[float] = None
        if config.skip_on_high_load:
            try:
                load = self.load_probe()
            except OSError as exc:
                # Unreadable load never blocks a cycle.
                logger.warning("Load average unavailable: %s", exc)
                load = None
            if load is not None and load > config.max_load_average:
                return AdmissionDecision(
                    admitted=False,
                    reason=f"load average {load:.2f} exceeds {config.max_load_average:.2f}",
                    load=load,
                )

        try:
            memory_mb = self.memory_probe()
        except (OSError, psutil.Error) as exc:
            raise SchedulerError(f"Failed to read memory usage: {exc}") from exc
        if memory_mb > config.max_memory_usage:
            return AdmissionDecision(
                admitted=False,
                reason=f"memory usage {memory_mb:.1f}MB exceeds {config.max_memory_usage}MB",
                load=load,
                memory_mb=memory_mb,
            )
        return AdmissionDecision(admitted=True, load=load, memory_mb=memory_mb)

    def should_admit(self, config: SchedulerConfig) -> bool:
        return self.evaluate(config).admitted
