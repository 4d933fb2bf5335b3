"""The dispatcher contract shared by all cluster transports."""

from __future__ import annotations

import posixpath
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol, Sequence, runtime_checkable

from ..command import Command, Option, new_command, with_os_pipe, with_prefix_writer
from ..errors import SourceFormatError
from ..topology import Node
from ..writers import Sink

LOCAL_SCHEME = "local://"
PROJECTS_DIR = "~/projects"

_VCS_SCHEMES = ("https://", "http://", "ssh://", "git://", "file://")
_SCP_LIKE = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9.-]+:.+$")
_ANY_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


@runtime_checkable
class ClusterDispatcher(Protocol):
    """Runs commands, copies files and reports readiness for a cluster."""

    def get_nodes(self) -> list[Node]:
        """All nodes; the master is always first."""
        ...

    def get_master_node(self) -> Node: ...

    def get_worker_nodes(self) -> list[Node]: ...

    async def ready(self) -> bool:
        """Whether every node can currently accept commands."""
        ...

    async def send_commands(self, node: Node, *commands: Command) -> None:
        """Run commands on a node in order, stopping at the first failure."""
        ...

    async def send_file(self, node: Node, src: str, dst: str) -> None: ...

    async def download_project(self, node: Node, source: str) -> None:
        """Put the project into ``~/projects`` on the node.

        ``local://<path>`` sources are copied or mounted from this machine;
        anything else is treated as a git remote and cloned.
        """
        ...

    async def node_address(self, node: Node) -> str:
        """An address other nodes can reach this node on."""
        ...

    async def cleanup(self) -> None:
        """Release held resources. Safe to call more than once."""
        ...


@runtime_checkable
class SupportsTeardown(Protocol):
    """Dispatchers that can destroy the whole cluster."""

    async def teardown(self) -> None: ...


class SourceKind(Enum):
    LOCAL = "local"
    GIT = "git"


@dataclass(frozen=True)
class ProjectSource:
    kind: SourceKind
    location: str
    name: str

    @property
    def remote_dir(self) -> str:
        return f"{PROJECTS_DIR}/{shlex.quote(self.name)}"

    @property
    def home_dir(self) -> str:
        """``remote_dir`` spelled with $HOME, for places where ~ is not expanded."""
        return f"$HOME/projects/{shlex.quote(self.name)}"


def parse_project_source(source: str) -> ProjectSource:
    """Parse a ``local://<path>`` locator or a git remote URL."""
    source = source.strip()
    if source.startswith(LOCAL_SCHEME):
        raw = source[len(LOCAL_SCHEME):]
        if not raw:
            raise SourceFormatError(f"empty local project path: {source}")
        path = Path(raw).expanduser().resolve()
        return ProjectSource(SourceKind.LOCAL, str(path), path.name)

    if source.startswith(_VCS_SCHEMES) or _SCP_LIKE.match(source):
        tail = source.rstrip("/").rsplit(":", 1)[-1]
        name = posixpath.basename(tail)
        if name.endswith(".git"):
            name = name[: -len(".git")]
        if not name:
            raise SourceFormatError(f"cannot derive project name from: {source}")
        return ProjectSource(SourceKind.GIT, source, name)

    if _ANY_SCHEME.match(source):
        raise SourceFormatError(f"unsupported project source scheme: {source}")
    raise SourceFormatError(f"unrecognized project source: {source}")


# Options that route a node's output somewhere, e.g. the terminal or a dashboard panel.
OutputOptions = Callable[[Node], Sequence[Option]]


def terminal_output(node: Node) -> Sequence[Option]:
    """Node-prefixed output on this process's stdout and stderr."""
    return (with_os_pipe(), with_prefix_writer(node))


def output_sinks(output: OutputOptions, node: Node) -> tuple[Sink, Sink]:
    """Resolve output options to a (stdout, stderr) pair of sinks."""
    cmd = new_command("", *output(node))
    return cmd.stdout, cmd.stderr  # type: ignore[return-value]
