"""
Structured scheduler events and the sinks that receive them.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

UTC = timezone.utc

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class SchedulerEvent:
    event_type: str
    level: str
    message: str
    event_at: datetime
    job_name: Optional[str] = None
    cycle_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "eventType": self.event_type,
            "level": self.level,
            "message": self.message,
            "eventAt": self.event_at.astimezone(UTC).isoformat(),
            "metadata": self.metadata,
        }
        if self.job_name:
            payload["jobName"] = self.job_name
        if self.cycle_id:
            payload["cycleId"] = self.cycle_id
        return payload


def make_event(
    event_type: str,
    message: str,
    level: str = "INFO",
    job_name: Optional[str] = None,
    cycle_id: Optional[str] = None,
    **metadata: Any,
) -> SchedulerEvent:
    return SchedulerEvent(
        event_type=event_type,
        level=level,
        message=message,
        event_at=datetime.now(tz=UTC),
        job_name=job_name,
        cycle_id=cycle_id,
        metadata=metadata,
    )


class EventSink:
    def emit(self, event: SchedulerEvent) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class LoggingEventSink(EventSink):
    """Writes each event as one log line carrying its JSON payload."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("foreman.events")

    def emit(self, event: SchedulerEvent) -> None:
        self.logger.log(
            LEVELS.get(event.level, logging.INFO),
            "%s %s",
            event.message,
            json.dumps(event.to_payload(), separators=(",", ":"), default=str),
        )


class JsonlEventSink(EventSink):
    """Appends event payloads to a JSON-lines file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def emit(self, event: SchedulerEvent) -> None:
        line = json.dumps(event.to_payload(), separators=(",", ":"), default=str)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                logging.getLogger(__name__).warning("Failed to append event to %s: %s", self.path, exc)


class CollectingEventSink(EventSink):
    def __init__(self) -> None:
        self.events: List[SchedulerEvent] = []

    def emit(self, event: SchedulerEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]

    def of_type(self, event_type: str) -> List[SchedulerEvent]:
        return [event for event in self.events if event.event_type == event_type]


class FanOutEventSink(EventSink):
    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, event: SchedulerEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
