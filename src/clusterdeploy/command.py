"""Command model shared by every dispatcher."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable

from .topology import Node
from .writers import DISCARD, Sink, new_prefix_writer


@dataclass(frozen=True)
class Command:
    """A shell command plus where its output goes.

    Build commands with :func:`new_command`; instances are immutable.
    """

    text: str
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    stdout: Sink | None = None
    stderr: Sink | None = None
    # Seconds; None means no deadline.
    timeout: float | None = None

    def shell_text(self) -> str:
        """The command text with environment bindings inlined in front of it."""
        bindings = build_env_bindings(self.env)
        return f"{bindings} {self.text}" if bindings else self.text


Option = Callable[[Command], Command]


def new_command(text: str, *options: Option) -> Command:
    """Create a command, applying ``options`` in order."""
    cmd = Command(text=text)
    for option in options:
        cmd = option(cmd)
    return replace(
        cmd,
        stdout=cmd.stdout if cmd.stdout is not None else DISCARD,
        stderr=cmd.stderr if cmd.stderr is not None else DISCARD,
    )


def new_commands(texts: Iterable[str], *options: Option) -> list[Command]:
    """Create a batch of commands that share the same options."""
    return [new_command(text, *options) for text in texts]


def with_timeout(seconds: float) -> Option:
    def option(cmd: Command) -> Command:
        return replace(cmd, timeout=seconds)

    return option


def with_os_pipe() -> Option:
    """Send stdout and stderr to this process's own stdout and stderr."""

    def option(cmd: Command) -> Command:
        return replace(cmd, stdout=sys.stdout.buffer, stderr=sys.stderr.buffer)

    return option


def with_stdout(sink: Sink | None) -> Option:
    def option(cmd: Command) -> Command:
        return replace(cmd, stdout=sink)

    return option


def with_stderr(sink: Sink | None) -> Option:
    def option(cmd: Command) -> Command:
        return replace(cmd, stderr=sink)

    return option


def with_prefix_writer(node: Node) -> Option:
    """Tag output lines with the node name. Must come after the sink options."""

    def option(cmd: Command) -> Command:
        return replace(
            cmd,
            stdout=new_prefix_writer(node.name, cmd.stdout),
            stderr=new_prefix_writer(node.name, cmd.stderr),
        )

    return option


def with_env(env: Mapping[str, str]) -> Option:
    """Merge environment bindings; later bindings win."""

    def option(cmd: Command) -> Command:
        merged = dict(cmd.env)
        merged.update(env)
        return replace(cmd, env=MappingProxyType(merged))

    return option


def build_env_bindings(env: Mapping[str, str]) -> str:
    """Render environment variables as space-separated ``KEY=VALUE`` bindings."""
    return " ".join(f"{key}={value}" for key, value in env.items())
