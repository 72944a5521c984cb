from __future__ import annotations

import codecs
import threading


class ConcurrencyGovernor:
    """Bound the number of simultaneously running executions.

    Acquisition never blocks: callers that cannot get a slot are expected to
    fail fast instead of queueing.

    Example:
        ```python
        governor = ConcurrencyGovernor(limit=5)
        if governor.try_acquire():
            try:
                ...
            finally:
                governor.release()
        ```
    """

    def __init__(self, limit: int) -> None:
        """Create a governor with a fixed bound.

        Example:
            ```python
            governor = ConcurrencyGovernor(limit=2)
            ```
        """
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        self._limit = int(limit)
        self._active = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_acquire(self) -> bool:
        """Take a slot if one is free.

        Example:
            ```python
            ok = governor.try_acquire()
            ```
        """
        with self._lock:
            if self._active >= self._limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        """Give a slot back.

        Example:
            ```python
            governor.release()
            ```
        """
        with self._lock:
            if self._active == 0:
                raise RuntimeError("release() called without a matching acquire")
            self._active -= 1


class OutputGovernor:
    """Accumulate streamed output up to a byte ceiling.

    Bytes beyond the ceiling are dropped and the governor flips to
    `exceeded`; the captured text therefore never grows past the ceiling.
    Decoding is incremental so a multi-byte character split across chunks
    is not mangled.

    Example:
        ```python
        out = OutputGovernor(limit_bytes=1024)
        text = out.feed(b"hello\\n")
        out.exceeded  # False
        ```
    """

    def __init__(self, limit_bytes: int) -> None:
        """Create an empty buffer with the given ceiling.

        Example:
            ```python
            out = OutputGovernor(limit_bytes=1024 * 1024)
            ```
        """
        if limit_bytes < 0:
            raise ValueError("Output ceiling must not be negative")
        self._limit = int(limit_bytes)
        self._size = 0
        self._parts: list[str] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._exceeded = False
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def size(self) -> int:
        """Bytes captured so far."""
        with self._lock:
            return self._size

    @property
    def exceeded(self) -> bool:
        with self._lock:
            return self._exceeded

    @property
    def text(self) -> str:
        """Everything captured so far, decoded."""
        with self._lock:
            return "".join(self._parts)

    def feed(self, data: bytes | str) -> str:
        """Append a chunk and return the newly decoded text.

        Returns an empty string once the ceiling has been crossed.

        Example:
            ```python
            fresh = out.feed(chunk)
            ```
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            if self._exceeded:
                return ""
            room = self._limit - self._size
            if len(data) > room:
                data = data[:room]
                self._exceeded = True
            self._size += len(data)
            fresh = self._decoder.decode(data, final=self._exceeded)
            if fresh:
                self._parts.append(fresh)
            return fresh

    def close(self) -> str:
        """Flush any partial character left in the decoder.

        Example:
            ```python
            tail = out.close()
            ```
        """
        with self._lock:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._parts.append(tail)
            return tail
