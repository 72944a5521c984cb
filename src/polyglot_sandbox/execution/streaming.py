from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import IO, Callable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
RACE_TICK_SECONDS = 0.01


class RaceWinner(str, Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"
    CANCELLED = "cancelled"


class StreamPump:
    """Drain a binary pipe on a daemon thread, chunk by chunk.

    `on_chunk` returns False to stop reading (the output ceiling was hit);
    the pump then sets `overflowed` before `finished`.

    Example:
        ```python
        pump = StreamPump(proc.stdout, governor_accepts, name="exec-stdout")
        pump.start()
        pump.finished.wait()
        ```
    """

    def __init__(
        self,
        stream: IO[bytes],
        on_chunk: Callable[[bytes], bool],
        *,
        name: str,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        """Prepare a pump for one stream.

        Example:
            ```python
            pump = StreamPump(proc.stdout, lambda chunk: True, name="reader")
            ```
        """
        self._stream = stream
        self._on_chunk = on_chunk
        self._chunk_size = chunk_size
        self.finished = threading.Event()
        self.overflowed = threading.Event()
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "StreamPump":
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        read = getattr(self._stream, "read1", self._stream.read)
        try:
            while True:
                chunk = read(self._chunk_size)
                if not chunk:
                    break
                if not self._on_chunk(chunk):
                    self.overflowed.set()
                    break
        except (OSError, ValueError) as exc:
            # The pipe was closed under us by a kill; treat as end of stream.
            self.error = exc
        except Exception as exc:
            logger.exception("Stream pump %s failed", self._thread.name)
            self.error = exc
        finally:
            self.finished.set()


def race(
    pump: StreamPump,
    cancel_event: threading.Event,
    deadline: float,
    *,
    tick: float = RACE_TICK_SECONDS,
) -> RaceWinner:
    """Wait for whichever happens first: end of stream, ceiling, cancel or deadline.

    `deadline` is a `time.monotonic()` value.

    Example:
        ```python
        winner = race(pump, request.cancel_event, time.monotonic() + 5)
        ```
    """
    while True:
        if pump.overflowed.is_set():
            return RaceWinner.OUTPUT_LIMIT
        if pump.finished.is_set():
            return RaceWinner.COMPLETED
        if cancel_event.is_set():
            return RaceWinner.CANCELLED
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return RaceWinner.TIMEOUT
        pump.finished.wait(min(tick, remaining))
