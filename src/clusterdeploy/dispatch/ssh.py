"""Dispatcher for remote hosts reached over SSH."""

from __future__ import annotations

import asyncio
import getpass
import io
import logging
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import Callable

import asyncssh

from ..command import Command, new_command, new_commands
from ..errors import CommandFailedError, CommandTimeoutError, DeployError, TransportError
from ..process import copy_stream, run_process
from ..topology import MASTER_KUBENAME, Node, UserQualifiedHostname, worker_kubename
from ..writers import DISCARD
from .base import (
    OutputOptions,
    SourceKind,
    output_sinks,
    parse_project_source,
    terminal_output,
)

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_FILE = "~/.ssh/id_rsa"
SSH_PORT = 22

PassphrasePrompt = Callable[[str], str]


def load_identity(key_file: str | Path, prompt: PassphrasePrompt = getpass.getpass) -> asyncssh.SSHKey:
    """Load a private key, asking for its passphrase once if it is encrypted."""
    path = Path(key_file).expanduser().resolve()
    try:
        return asyncssh.read_private_key(path)
    except asyncssh.KeyImportError as e:
        if "passphrase" not in str(e).lower():
            raise TransportError(f"Failed to parse private key {path}: {e}") from e
    except OSError as e:
        raise TransportError(f"Failed to read private key file {path}: {e}") from e

    passphrase = prompt(f"Enter passphrase for {path} (hidden for security): ")
    try:
        return asyncssh.read_private_key(path, passphrase)
    except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        raise TransportError(f"Failed to decrypt private key {path}: {e}") from e


class SshDispatcher:
    """Drives remote hosts over one SSH connection per host.

    The first remote is the master node. Host keys are not verified.
    """

    def __init__(
        self,
        remotes: Sequence[UserQualifiedHostname],
        private_key_file: str | Path = DEFAULT_IDENTITY_FILE,
        port: int = SSH_PORT,
        output: OutputOptions = terminal_output,
        passphrase_prompt: PassphrasePrompt = getpass.getpass,
    ) -> None:
        if not remotes:
            raise ValueError("Remote addresses must be provided for SSH deployments.")
        self.remotes = list(remotes)
        self.num_nodes = len(self.remotes)
        self.private_key_file = Path(private_key_file).expanduser()
        self.port = port
        self.output = output
        self.passphrase_prompt = passphrase_prompt
        self.connections: dict[str, asyncssh.SSHClientConnection] = {}

    async def init(self) -> None:
        """Load the identity and connect to every remote."""
        key = load_identity(self.private_key_file, self.passphrase_prompt)
        for remote in self.remotes:
            logger.debug("Connecting to %s:%d", remote, self.port)
            try:
                conn = await asyncssh.connect(
                    remote.host,
                    port=self.port,
                    username=remote.user,
                    client_keys=[key],
                    known_hosts=None,  # Host keys are accepted without verification
                    password=None,
                    kbdint_auth=False,
                )
            except (asyncssh.Error, OSError) as e:
                raise TransportError(f"Failed to connect to {remote}: {e}") from e
            self.connections[remote.host] = conn

    # Topology

    def get_nodes(self) -> list[Node]:
        return [self._node(i) for i in range(self.num_nodes)]

    def get_master_node(self) -> Node:
        return self._node(0)

    def get_worker_nodes(self) -> list[Node]:
        return [self._node(i) for i in range(1, self.num_nodes)]

    def _node(self, index: int) -> Node:
        remote = self.remotes[index]
        kubename = MASTER_KUBENAME if index == 0 else worker_kubename(index)
        return Node(name=remote.host, kubename=kubename, remote=remote)

    async def ready(self) -> bool:
        return len(self.connections) == self.num_nodes

    async def node_address(self, node: Node) -> str:
        return node.remote.host if node.remote else node.name

    # Commands and files

    async def send_commands(self, node: Node, *commands: Command) -> None:
        for cmd in commands:
            conn = self.connections.get(node.name)
            if conn is None:
                raise TransportError(f"no connection found for node {node.name}")
            await self._run(conn, node, cmd)

    async def _run(self, conn: asyncssh.SSHClientConnection, node: Node, cmd: Command) -> None:
        text = cmd.shell_text()
        logger.debug("[%s] %s", node.name, text)
        try:
            async with conn.create_process(text, encoding=None) as proc:

                async def communicate() -> asyncssh.SSHCompletedProcess:
                    await asyncio.gather(
                        copy_stream(proc.stdout, cmd.stdout or DISCARD),
                        copy_stream(proc.stderr, cmd.stderr or DISCARD),
                    )
                    return await proc.wait()

                try:
                    result = await asyncio.wait_for(communicate(), timeout=cmd.timeout)
                except asyncio.TimeoutError:
                    proc.send_signal("TERM")
                    raise CommandTimeoutError(cmd.text, cmd.timeout or 0) from None
                except asyncio.CancelledError:
                    proc.send_signal("TERM")
                    raise
        except asyncssh.Error as e:
            raise TransportError(f"failed to create session for {node.name}: {e}") from e

        if result.exit_status != 0:
            raise CommandFailedError(cmd.text, result.exit_status)

    async def send_file(self, node: Node, src: str, dst: str) -> None:
        errors = io.BytesIO()
        try:
            await run_process(
                "scp", "-i", str(self.private_key_file), "-P", str(self.port),
                src, f"{self._target(node)}:{dst}",
                stderr=errors,
            )
        except CommandFailedError as e:
            raise TransportError(errors.getvalue().decode(errors="replace").strip()) from e

    async def download_project(self, node: Node, source: str) -> None:
        project = parse_project_source(source)
        await self.send_commands(node, new_command("mkdir -p ~/projects", *self.output(node)))
        if project.kind is SourceKind.LOCAL:
            await self.send_commands(
                node, new_command(f"rm -rf {project.remote_dir}", *self.output(node))
            )
            stdout, stderr = output_sinks(self.output, node)
            await run_process(
                "scp", "-i", str(self.private_key_file), "-P", str(self.port), "-r",
                project.location, f"{self._target(node)}:{project.remote_dir}",
                stdout=stdout,
                stderr=stderr,
            )
            return

        await self.send_commands(
            node,
            *new_commands(
                [
                    f"rm -rf {project.remote_dir}",
                    f"(cd ~/projects && git clone {shlex.quote(project.location)} {shlex.quote(project.name)})",
                ],
                *self.output(node),
            ),
        )

    def _target(self, node: Node) -> str:
        return str(node.remote) if node.remote else node.name

    async def cleanup(self) -> None:
        """Close every open connection."""
        error: DeployError | None = None
        while self.connections:
            host, conn = self.connections.popitem()
            try:
                conn.close()
                await conn.wait_closed()
            except (asyncssh.Error, OSError) as e:
                logger.warning("Error closing connection to %s: %s", host, e)
                error = TransportError(f"failed to close connection to {host}: {e}")
        if error is not None:
            raise error
