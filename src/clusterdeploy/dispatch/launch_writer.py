"""Terminal multiplexer for concurrent ``multipass launch`` progress.

multipass redraws a single progress line while it launches a VM. Running
several launches at once would interleave those redraws, so every node gets a
child writer and the parent keeps one line per node and redraws the whole
block on each update.
"""

from __future__ import annotations

import threading

from ..topology import Node
from ..writers import Sink, flush_sink

# What multipass writes to the terminal to clear its current line.
MULTIPASS_CLEAR_LINE = b"\x1b[2K\x1b[0A\x1b[0E"
# Move to the start of the previous line, then clear it.
_CURSOR_UP_CLEAR = b"\x1b[1F\x1b[2K"


class NodeLaunchWriter:
    """Child writer for one node.

    ``_matched`` is the number of bytes of MULTIPASS_CLEAR_LINE matched so
    far. A full match clears the node's line; a mismatch resets the state and
    emits the byte.
    """

    def __init__(self, parent: LaunchWriter, node: Node) -> None:
        self.parent = parent
        self.node = node
        self._matched = 0

    def write(self, data: bytes) -> int:
        to_write = bytearray()
        for byte in data:
            if byte == MULTIPASS_CLEAR_LINE[self._matched]:
                self._matched += 1
                if self._matched == len(MULTIPASS_CLEAR_LINE):
                    self.parent.clear_line(self.node)
                    self._matched = 0
                    to_write.clear()
            else:
                to_write.append(byte)
                self._matched = 0
        self.parent.append_line(self.node, bytes(to_write))
        return len(data)


class LaunchWriter:
    """Keeps one status line per node and redraws all of them on each update."""

    def __init__(self, sink: Sink) -> None:
        self.sink = sink
        self.nodes: list[Node] = []
        self._lines: dict[str, str] = {}
        self._lock = threading.RLock()
        self._has_written = False

    def node_writer(self, node: Node) -> NodeLaunchWriter:
        with self._lock:
            self.nodes.append(node)
            self._lines[node.name] = ""
        return NodeLaunchWriter(self, node)

    def line(self, node: Node) -> str:
        with self._lock:
            return self._lines[node.name]

    def clear_line(self, node: Node) -> None:
        """Blank a node's line without redrawing."""
        with self._lock:
            self._lines[node.name] = f"[{node.name}] "

    def set_line(self, node: Node, text: str) -> None:
        with self._lock:
            self._lines[node.name] = f"[{node.name}] {text}"
            self._redraw()

    def append_line(self, node: Node, data: bytes) -> None:
        with self._lock:
            if not self._lines[node.name]:
                self._lines[node.name] = f"[{node.name}] "
            text = data.decode(errors="replace").replace("\n", f"\n[{node.name}] ")
            self._lines[node.name] += text
            self._redraw()

    def _redraw(self) -> None:
        out = bytearray()
        if self._has_written:
            out += _CURSOR_UP_CLEAR * len(self.nodes)
        for node in self.nodes:
            out += self._lines[node.name].encode() + b"\n"
        self.sink.write(bytes(out))
        flush_sink(self.sink)
        self._has_written = True
