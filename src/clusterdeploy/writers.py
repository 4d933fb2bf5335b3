"""Byte sinks used to route and inspect command output."""

from __future__ import annotations

import re
from typing import BinaryIO, Callable, Protocol

from .buffer import CircularBuffer


class Sink(Protocol):
    """Anything that accepts bytes, e.g. ``sys.stdout.buffer`` or ``io.BytesIO``."""

    def write(self, data: bytes, /) -> int | None: ...


# Returns the captured value, or None when the window does not match.
CapturePredicate = Callable[[bytes], "bytes | None"]


def flush_sink(sink: object) -> None:
    """Flush a sink if it supports flushing."""
    flush = getattr(sink, "flush", None)
    if flush is not None:
        flush()


class DiscardWriter:
    """Sink that drops everything written to it."""

    def write(self, data: bytes) -> int:
        return len(data)

    def flush(self) -> None:
        pass


DISCARD = DiscardWriter()


class PrefixWriter:
    """Tags every line written through it with ``[prefix] ``.

    The prefix for a line is written lazily: if a write ends with a newline,
    the prefix for the following line is emitted at the start of the next
    write, so a finished stream never ends with a dangling prefix.

    Not safe to share between concurrent writers.
    """

    def __init__(self, prefix: str, sink: Sink | None) -> None:
        self.prefix = prefix
        self.sink = sink
        self._tag = f"[{prefix}] ".encode()
        self._has_written = False
        self._last_wrote_newline = False

    def write(self, data: bytes) -> int:
        if self.sink is None or not data:
            return len(data)
        out = bytearray()
        if not self._has_written or self._last_wrote_newline:
            out += self._tag
            self._has_written = True
        self._last_wrote_newline = False
        last = len(data) - 1
        for i, byte in enumerate(data):
            out.append(byte)
            if byte == 0x0A:
                if i != last:
                    out += self._tag
                else:
                    self._last_wrote_newline = True
        self.sink.write(bytes(out))
        return len(data)

    def flush(self) -> None:
        flush_sink(self.sink)


def new_prefix_writer(prefix: str, sink: Sink | None) -> PrefixWriter | None:
    """Wrap ``sink`` in a PrefixWriter; a missing sink stays missing."""
    if sink is None:
        return None
    return PrefixWriter(prefix, sink)


class CapturingPipe:
    """Pass-through sink that captures values out of the stream.

    Each byte is pushed into a ring of the last ``buffer_size`` bytes and the
    predicate is evaluated on the ring after every byte. A match is appended
    to ``captured`` and the ring is cleared. The predicate never sees more
    than ``buffer_size`` bytes, so longer patterns cannot be matched.
    """

    def __init__(
        self,
        sink: Sink | None,
        buffer_size: int,
        predicate: CapturePredicate,
    ) -> None:
        self.sink: Sink = sink if sink is not None else DISCARD
        self.captured: list[bytes] = []
        self._buf: CircularBuffer[int] = CircularBuffer(buffer_size)
        self._predicate = predicate

    def write(self, data: bytes) -> int:
        for byte in data:
            self._buf.add(byte)
            match = self._predicate(bytes(self._buf.get()))
            if match is not None:
                self.captured.append(bytes(match))
                self._buf.clear()
        self.sink.write(data)
        return len(data)

    def flush(self) -> None:
        flush_sink(self.sink)


def regex_predicate(pattern: str | bytes, group: int = 0) -> CapturePredicate:
    """Build a capture predicate returning the first regex match in the window.

    The window is checked after every byte, so a pattern should end with a
    terminator (e.g. ``\\n``); otherwise it fires on the shortest prefix that
    matches.
    """
    if isinstance(pattern, str):
        pattern = pattern.encode()
    compiled = re.compile(pattern)

    def predicate(window: bytes) -> bytes | None:
        match = compiled.search(window)
        if match is None:
            return None
        return match.group(group)

    return predicate


class NodeLogWriter:
    """Writes through to ``sink`` and appends the same bytes to a node's log file."""

    def __init__(self, sink: Sink | None, log: BinaryIO) -> None:
        self.sink = sink if sink is not None else DISCARD
        self.log = log

    def write(self, data: bytes) -> int:
        self.log.write(data)
        self.sink.write(data)
        return len(data)

    def flush(self) -> None:
        self.log.flush()
        flush_sink(self.sink)
