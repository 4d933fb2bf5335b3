"""Operator-facing output: phase headers, messages and per-node streams."""

from __future__ import annotations

import logging
import shutil
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Protocol

from .command import Option, with_stderr, with_stdout
from .topology import Node
from .writers import NodeLogWriter, PrefixWriter, Sink, flush_sink

logger = logging.getLogger(__name__)

GREEN_BOLD = "\x1b[32;1m"
RESET = "\x1b[0m"


class Console(Protocol):
    """Where the pipeline reports progress and routes node output."""

    def header(self, text: str) -> None: ...

    def info(self, text: str) -> None: ...

    def node_output(self, node: Node) -> Sequence[Option]:
        """Command options that route a node's stdout and stderr."""
        ...


def header(text: str) -> str:
    """Frame ``text`` between two green dividers."""
    width = max(40, len(text) + 5)
    divider = "-" * width
    return f"{GREEN_BOLD}{divider}\n{text}\n{divider}{RESET}"


class NodeLogs:
    """Per-node log files under a timestamped run directory."""

    def __init__(self, log_dir: Path, config_path: Path | None = None) -> None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = log_dir / timestamp
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._files: dict[str, BinaryIO] = {}

        # Keep a copy of the config next to the logs
        if config_path and config_path.exists():
            shutil.copy(config_path, self.run_dir / "config.yaml")
        logger.info("Writing node logs to %s", self.run_dir)

    def file_for(self, node: Node) -> BinaryIO:
        if node.name not in self._files:
            self._files[node.name] = open(self.run_dir / f"{node.name}.log", "ab")
        return self._files[node.name]

    def close(self) -> None:
        for handle in self._files.values():
            handle.close()
        self._files.clear()


class TerminalConsole:
    """Prints headers and node-prefixed output to the terminal."""

    def __init__(
        self,
        stdout: Sink | None = None,
        stderr: Sink | None = None,
        logs: NodeLogs | None = None,
    ) -> None:
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.logs = logs

    def _print(self, text: str) -> None:
        self.stdout.write(f"{text}\n".encode())
        flush_sink(self.stdout)

    def header(self, text: str) -> None:
        self._print(header(text))

    def info(self, text: str) -> None:
        self._print(text)

    def node_output(self, node: Node) -> Sequence[Option]:
        stdout: Sink = PrefixWriter(node.name, self.stdout)
        stderr: Sink = PrefixWriter(node.name, self.stderr)
        if self.logs is not None:
            log = self.logs.file_for(node)
            stdout = NodeLogWriter(stdout, log)
            stderr = NodeLogWriter(stderr, log)
        return (with_stdout(stdout), with_stderr(stderr))

    def close(self) -> None:
        if self.logs is not None:
            self.logs.close()
