"""Orchestration event channel: observers plus a bounded buffer the caller drains."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal

from loguru import logger

from remedybot.utils.helpers import utc_now

EventKind = Literal[
    "log",
    "plan_created",
    "twin_built",
    "task_started",
    "task_completed",
    "task_failed",
    "wave_completed",
    "approval_required",
    "completed",
]

Observer = Callable[["OrchestrationEvent"], None]


@dataclass
class OrchestrationEvent:
    kind: EventKind
    orchestration_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "orchestrationId": self.orchestration_id,
            "payload": self.payload,
            "at": self.at.isoformat(),
        }


class EventChannel:
    """
    Fan-out of orchestration events.

    Observers are called synchronously in subscription order; one that raises
    is logged and skipped, never aborting the run. Every event is also
    buffered (oldest dropped past max_buffer) until drain() is called.
    """

    def __init__(self, max_buffer: int = 1000) -> None:
        self._observers: list[Observer] = []
        self._buffer: deque[OrchestrationEvent] = deque(maxlen=max_buffer)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register observer; returns a function that unsubscribes it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def emit(self, kind: EventKind, orchestration_id: str, **payload: Any) -> OrchestrationEvent:
        event = OrchestrationEvent(kind=kind, orchestration_id=orchestration_id, payload=payload)
        self._buffer.append(event)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning(f"Event observer failed on {kind}: {e}")
        return event

    def drain(self) -> list[OrchestrationEvent]:
        """Return and clear buffered events."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def __len__(self) -> int:
        return len(self._buffer)
