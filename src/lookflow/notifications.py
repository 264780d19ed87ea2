from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .models import Run, ViewState

logger = logging.getLogger(__name__)


class ChangeTopic(str, Enum):
    VIEW_STATE = "view_state"
    RUN = "run"


@dataclass(frozen=True)
class ChangeEvent:
    """A persisted change, carrying the changed entities and the document revision.

    ``scope_id`` is the look id for view-state events and the batch id for run
    events. Delivery is at-least-once; observers compare per-entity revisions
    to drop stale or repeated payloads.
    """

    topic: ChangeTopic
    scope_id: str
    revision: int
    view_states: tuple[ViewState, ...] = field(default_factory=tuple)
    runs: tuple[Run, ...] = field(default_factory=tuple)


Subscriber = Callable[[ChangeEvent], None]


class ChangeBus:
    """In-process push channel for change events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[ChangeTopic | None, Subscriber]] = []

    def subscribe(self, callback: Subscriber, *, topic: ChangeTopic | None = None) -> Callable[[], None]:
        """Register *callback* for *topic* (all topics when ``None``).

        Returns:
            A function that removes the subscription.
        """
        entry = (topic, callback)
        with self._lock:
            self._subscribers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> int:
        """Deliver *event* to matching subscribers and return how many were called.

        A failing subscriber is logged and skipped; the write that produced the
        event has already been persisted.
        """
        with self._lock:
            targets = [cb for topic, cb in self._subscribers if topic is None or topic == event.topic]
        for callback in targets:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber %r failed on %s event for %s", callback, event.topic.value, event.scope_id)
        return len(targets)
