from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Union

from .languages import Language
from .models import Execution

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    STARTED = "started"
    OUTPUT_CHUNK = "output-chunk"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ExecutionStarted:
    execution_id: str
    language: Language
    kind: EventKind = EventKind.STARTED


@dataclass(frozen=True, slots=True)
class OutputChunk:
    execution_id: str
    text: str
    kind: EventKind = EventKind.OUTPUT_CHUNK


@dataclass(frozen=True, slots=True)
class ExecutionCompleted:
    """Published once per execution with the final record snapshot."""

    execution_id: str
    result: Execution
    kind: EventKind = EventKind.COMPLETED


@dataclass(frozen=True, slots=True)
class ExecutionCancelled:
    execution_id: str
    kind: EventKind = EventKind.CANCELLED


ExecutionEvent = Union[ExecutionStarted, OutputChunk, ExecutionCompleted, ExecutionCancelled]
EventCallback = Callable[[ExecutionEvent], None]


class Subscription:
    """Handle returned by `EventBus.subscribe`.

    Example:
        ```python
        sub = bus.subscribe(print)
        sub.unsubscribe()
        ```
    """

    def __init__(self, bus: "EventBus", token: int) -> None:
        """Bind the handle to its bus entry.

        Example:
            ```python
            sub = Subscription(bus, 1)
            ```
        """
        self._bus = bus
        self._token = token
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Calling it twice is harmless.

        Example:
            ```python
            sub.unsubscribe()
            ```
        """
        if self.active:
            self._bus._remove(self._token)  # noqa: SLF001 - bus owns the table
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class EventBus:
    """Synchronous publish/subscribe channel for execution lifecycle events.

    Callbacks run on the publishing thread. A failing callback is logged and
    skipped; it never affects the execution that produced the event.

    Example:
        ```python
        bus = EventBus()
        with bus.subscribe(handle, kinds=[EventKind.COMPLETED]):
            ...
        ```
    """

    def __init__(self) -> None:
        """Create a bus with no subscribers.

        Example:
            ```python
            bus = EventBus()
            ```
        """
        self._lock = threading.Lock()
        self._next_token = 0
        self._subscribers: dict[int, tuple[EventCallback, frozenset[EventKind] | None]] = {}

    def subscribe(
        self,
        callback: EventCallback,
        kinds: Iterable[EventKind | str] | None = None,
    ) -> Subscription:
        """Register a callback, optionally only for some event kinds.

        Example:
            ```python
            sub = bus.subscribe(on_chunk, kinds=["output-chunk"])
            ```
        """
        wanted = frozenset(EventKind(k) for k in kinds) if kinds is not None else None
        with self._lock:
            self._next_token += 1
            token = self._next_token
            self._subscribers[token] = (callback, wanted)
        return Subscription(self, token)

    def publish(self, event: ExecutionEvent) -> None:
        """Deliver an event to every interested subscriber.

        Example:
            ```python
            bus.publish(ExecutionCancelled("python_1_ab"))
            ```
        """
        with self._lock:
            targets = list(self._subscribers.values())
        for callback, wanted in targets:
            if wanted is not None and event.kind not in wanted:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s for %s", event.kind.value, event.execution_id)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _remove(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)
