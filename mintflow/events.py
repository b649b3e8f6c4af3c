from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PipelineEvent:
    """A side effect requested by a state transition.

    Transitions never notify anyone themselves; they return events and the
    outer shell decides what to do with them (log, broadcast, persist).
    """

    kind: str  # e.g. "capture.finalized", "mint.submitted", "access.granted"
    subject: str  # session id, mint request id or subject key
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "subject": self.subject,
            "message": self.message,
            **self.data,
        }


EventSink = Callable[[list[PipelineEvent]], None]


def log_sink(events: list[PipelineEvent]) -> None:
    """Default sink: one structured log line per event."""
    for event in events:
        logger.info(event.kind, subject=event.subject, message=event.message, **event.data)


class EventCollector:
    """Sink that keeps events in memory and fans them out to listeners.

    The route layer registers a listener to push updates to connected
    clients.  The most recent *max_events* are kept for inspection (tests
    assert the emitted sequence); pass 0 to keep none.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.events: deque[PipelineEvent] = deque(maxlen=max_events)
        self._listeners: list[EventSink] = []

    def subscribe(self, fn: EventSink) -> None:
        self._listeners.append(fn)

    def __call__(self, events: list[PipelineEvent]) -> None:
        self.events.extend(events)
        for fn in self._listeners:
            try:
                fn(events)
            except Exception:
                logger.exception("event_listener_failed")

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]
