"""Length-prefixed stream frames.

Every frame starts with an 8-byte header: one channel byte, three zero pad
bytes, then the payload length as a big-endian ``uint32``. This is the layout
the Docker engine uses to multiplex stdout and stderr on an attach stream;
the in-process worker speaks the same format to its host, adding a result
channel for the final summary.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Iterator

HEADER = struct.Struct(">BxxxL")
HEADER_SIZE = HEADER.size
MAX_FRAME_PAYLOAD = 16 * 1024 * 1024


class Channel(IntEnum):
    STDIN = 0
    STDOUT = 1
    STDERR = 2
    RESULT = 3


class FramingError(ValueError):
    """Raised when a stream does not follow the frame layout."""


def encode_frame(channel: Channel | int, payload: bytes) -> bytes:
    """Prefix a payload with its frame header.

    Example:
        ```python
        frame = encode_frame(Channel.STDOUT, b"hello\\n")
        ```
    """
    return HEADER.pack(int(channel), len(payload)) + payload


class FrameDecoder:
    """Incrementally split a byte stream into ``(channel, payload)`` frames.

    Chunks may end anywhere, including inside a header.

    Example:
        ```python
        decoder = FrameDecoder()
        for channel, payload in decoder.feed(chunk):
            ...
        ```
    """

    def __init__(self) -> None:
        """Start with an empty buffer.

        Example:
            ```python
            decoder = FrameDecoder()
            ```
        """
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes received but not yet part of a complete frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Iterator[tuple[Channel, bytes]]:
        """Consume a chunk and yield every frame it completes.

        Example:
            ```python
            frames = list(decoder.feed(encode_frame(Channel.STDERR, b"oops")))
            ```
        """
        self._buffer.extend(chunk)
        while len(self._buffer) >= HEADER_SIZE:
            raw_channel, length = HEADER.unpack_from(self._buffer)
            if length > MAX_FRAME_PAYLOAD:
                raise FramingError(f"Frame of {length} bytes exceeds the {MAX_FRAME_PAYLOAD} byte cap")
            try:
                channel = Channel(raw_channel)
            except ValueError:
                raise FramingError(f"Unknown stream channel {raw_channel}") from None
            end = HEADER_SIZE + length
            if len(self._buffer) < end:
                return
            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]
            yield channel, payload
