# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Progress events for an apply cycle and the operator-facing outcome table.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterator, List, Optional

from ..MODELS.state import ApplyRecord


class EventKind(str, Enum):
    """Kinds of progress events emitted during an apply cycle."""

    CYCLE_STARTED = "cycle_started"
    BATCH_STARTED = "batch_started"
    SERVICE_UNCHANGED = "service_unchanged"
    SERVICE_STARTING = "service_starting"
    SERVICE_STARTED = "service_started"
    SERVICE_RETRYING = "service_retrying"
    SERVICE_FAILED = "service_failed"
    SERVICE_CANCELLED = "service_cancelled"
    SERVICE_PLANNED = "service_planned"
    SERVICE_REMOVED = "service_removed"
    BATCH_COMPLETE = "batch_complete"
    CYCLE_CANCELLED = "cycle_cancelled"
    CYCLE_ABORTED = "cycle_aborted"
    CYCLE_COMPLETE = "cycle_complete"


@dataclass(frozen=True)
class StatusEvent:
    """A single progress event."""

    kind: EventKind
    service: Optional[str] = None
    batch: Optional[int] = None
    message: str = ""
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.batch is not None:
            parts.append(f"batch={self.batch}")
        if self.service:
            parts.append(self.service)
        if self.message:
            parts.append(self.message)
        return " ".join(parts)


class StatusReporter:
    """
    Collects events from reconciler threads and replays them to consumers.

    Iterating yields events lazily, blocking until new ones arrive, and ends
    once the reporter is closed. Each iteration starts again from the first
    event, so the sequence can be consumed more than once.
    """

    def __init__(self):
        self._events: List[StatusEvent] = []
        self._closed = False
        self._condition = threading.Condition()
        self._listeners: List[Callable[[StatusEvent], None]] = []

    def subscribe(self, listener: Callable[[StatusEvent], None]) -> None:
        """Registers a callback invoked synchronously for every new event."""
        with self._condition:
            self._listeners.append(listener)

    def emit(self, kind: EventKind, service: Optional[str] = None,
             batch: Optional[int] = None, message: str = "") -> StatusEvent:
        event = StatusEvent(kind=kind, service=service, batch=batch, message=message)
        with self._condition:
            if self._closed:
                raise RuntimeError("StatusReporter is closed")
            self._events.append(event)
            listeners = list(self._listeners)
            self._condition.notify_all()
        for listener in listeners:
            listener(event)
        return event

    def close(self) -> None:
        """Marks the end of the apply cycle; iterators finish after the last event."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def events(self) -> List[StatusEvent]:
        """Snapshot of every event emitted so far."""
        with self._condition:
            return list(self._events)

    def __iter__(self) -> Iterator[StatusEvent]:
        index = 0
        while True:
            with self._condition:
                while index >= len(self._events) and not self._closed:
                    self._condition.wait()
                if index >= len(self._events):
                    return
                event = self._events[index]
            index += 1
            yield event


def render_outcome_table(record: ApplyRecord) -> str:
    """
    Formats the per-service outcome of an apply cycle.

    :param record: The apply record to render.
    :return: A fixed-width table, one row per service.
    """
    lines = [f"{'SERVICE':15} {'STATUS':10} {'ACTION':9} {'ATTEMPTS':8} DETAIL", "-" * 60]
    for name in sorted(record.outcomes):
        outcome = record.outcomes[name]
        detail = outcome.error or (str(outcome.handle) if outcome.handle else "")
        lines.append(
            f"{name:15} {outcome.status.value:10} {outcome.action.value:9} {outcome.attempts:<8} {detail}"
        )
    return "\n".join(lines)
