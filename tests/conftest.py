"""Shared fixtures: an in-memory dispatcher, a recording console and a fake multipass."""

from __future__ import annotations

import io
import stat
import textwrap
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from clusterdeploy.command import Command, Option, with_stderr, with_stdout
from clusterdeploy.errors import CommandFailedError
from clusterdeploy.topology import MASTER_KUBENAME, Node, worker_kubename

# Text of a command -> (stdout to emit, exit status)
Responder = Callable[[Node, Command], "tuple[bytes, int] | None"]


class FakeDispatcher:
    """Records every command and answers from registered responders."""

    def __init__(self, num_nodes: int = 3, ready_after: int = 0) -> None:
        self.nodes = [Node("master", MASTER_KUBENAME)] + [
            Node(f"worker{i}", worker_kubename(i)) for i in range(1, num_nodes)
        ]
        self.sent: list[tuple[str, str]] = []
        self.files: list[tuple[str, str, str]] = []
        self.downloads: list[tuple[str, str]] = []
        self.responders: list[Responder] = []
        self.ready_calls = 0
        self.ready_after = ready_after
        self.cleanups = 0

    def get_nodes(self) -> list[Node]:
        return list(self.nodes)

    def get_master_node(self) -> Node:
        return self.nodes[0]

    def get_worker_nodes(self) -> list[Node]:
        return self.nodes[1:]

    async def ready(self) -> bool:
        self.ready_calls += 1
        return self.ready_calls > self.ready_after

    async def send_commands(self, node: Node, *commands: Command) -> None:
        for cmd in commands:
            self.sent.append((node.name, cmd.shell_text()))
            for responder in self.responders:
                answer = responder(node, cmd)
                if answer is None:
                    continue
                output, status = answer
                if output:
                    cmd.stdout.write(output)
                if status != 0:
                    raise CommandFailedError(cmd.shell_text(), status)
                break

    async def send_file(self, node: Node, src: str, dst: str) -> None:
        self.files.append((node.name, src, dst))

    async def download_project(self, node: Node, source: str) -> None:
        self.downloads.append((node.name, source))

    async def node_address(self, node: Node) -> str:
        return f"10.0.0.{self.nodes.index(node) + 1}"

    async def cleanup(self) -> None:
        self.cleanups += 1

    def texts(self, node_name: str | None = None) -> list[str]:
        return [text for name, text in self.sent if node_name is None or name == node_name]


class RecordingConsole:
    """Console that keeps headers, messages and node output in memory."""

    def __init__(self) -> None:
        self.headers: list[str] = []
        self.messages: list[str] = []
        self.streams: dict[str, io.BytesIO] = {}

    def header(self, text: str) -> None:
        self.headers.append(text)

    def info(self, text: str) -> None:
        self.messages.append(text)

    def node_output(self, node: Node) -> Sequence[Option]:
        stream = self.streams.setdefault(node.name, io.BytesIO())
        return (with_stdout(stream), with_stderr(stream))


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def console() -> RecordingConsole:
    return RecordingConsole()


FAKE_MULTIPASS = textwrap.dedent(
    """\
    #!/usr/bin/env bash
    # Stand-in for multipass: records calls and runs exec'd commands locally.
    echo "$*" >> "$(dirname "$0")/calls.log"
    case "$1" in
      exec)
        while [ "$1" != "--" ]; do shift; done
        shift
        exec "$@"
        ;;
      info)
        name="$2"
        state="${FAKE_STATE:-Running}"
        printf '{"info": {"%s": {"state": "%s", "ipv4": ["10.1.2.3"]}}}\\n' "$name" "$state"
        ;;
      launch)
        printf 'Launching %s\\n' "$3"
        ;;
      stop|delete)
        for name in "${@:2}"; do
          case " ${FAKE_MISSING:-} " in
            *" $name "*) echo "instance '$name' does not exist" >&2; exit 2 ;;
          esac
          case " ${FAKE_BROKEN:-} " in
            *" $name "*) echo "cannot $1 $name" >&2; exit 1 ;;
          esac
        done
        ;;
      *)
        ;;
    esac
    """
)


@pytest.fixture
def fake_multipass(tmp_path: Path) -> Path:
    """Path to a fake multipass executable that logs its arguments to calls.log."""
    binary = tmp_path / "multipass"
    binary.write_text(FAKE_MULTIPASS)
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary


@pytest.fixture
def multipass_calls(fake_multipass: Path) -> Callable[[], list[str]]:
    """Returns a function listing the argument lines the fake multipass was called with."""
    log = fake_multipass.parent / "calls.log"

    def calls() -> list[str]:
        if not log.exists():
            return []
        return log.read_text().splitlines()

    return calls


@pytest.fixture
def make_dispatcher() -> Callable[..., FakeDispatcher]:
    return FakeDispatcher
