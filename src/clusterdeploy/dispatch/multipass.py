"""Dispatcher for a local cluster of multipass virtual machines."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import shlex
import sys
from dataclasses import dataclass

from ..command import Command, new_commands
from ..errors import CommandFailedError, CommandTimeoutError, DeployError, TransportError
from ..fanout import fan_out
from ..process import capture_output, run_process
from ..topology import MASTER_KUBENAME, Node, worker_kubename
from ..writers import Sink
from .base import (
    OutputOptions,
    SourceKind,
    output_sinks,
    parse_project_source,
    terminal_output,
)
from .launch_writer import LaunchWriter

logger = logging.getLogger(__name__)

LAUNCH_TIMEOUT = 180.0
TEARDOWN_TIMEOUT = 60.0
INFO_TIMEOUT = 30.0
VM_HOME = "/home/ubuntu"


@dataclass
class VmResources:
    """Resources given to each VM at launch."""

    cpus: int = 2
    memory: str = "2G"
    disk: str = "20G"


class MultipassDispatcher:
    """Drives VMs through the ``multipass`` CLI.

    The master VM is named ``master_name``; workers are named
    ``<worker_name>-1`` .. ``<worker_name>-<num_nodes - 1>``.
    """

    def __init__(
        self,
        num_nodes: int,
        master_name: str = "master",
        worker_name: str = "worker",
        resources: VmResources | None = None,
        binary: str = "multipass",
        output: OutputOptions = terminal_output,
    ) -> None:
        if num_nodes <= 0:
            raise ValueError("Number of nodes must be greater than 0.")
        self.num_nodes = num_nodes
        self.master_name = master_name
        self.worker_name = worker_name
        self.resources = resources or VmResources()
        self.binary = binary
        self.output = output
        self._addresses: dict[str, str] = {}
        self._closed = False

    # Topology

    def get_nodes(self) -> list[Node]:
        return [self.get_master_node(), *self.get_worker_nodes()]

    def get_master_node(self) -> Node:
        return Node(name=self.master_name, kubename=MASTER_KUBENAME)

    def get_worker_nodes(self) -> list[Node]:
        return [
            Node(name=f"{self.worker_name}-{i}", kubename=worker_kubename(i))
            for i in range(1, self.num_nodes)
        ]

    # Status

    async def _info(self, node: Node) -> dict:
        raw = await capture_output(
            self.binary, "info", node.name, "--format", "json", timeout=INFO_TIMEOUT
        )
        try:
            return json.loads(raw)["info"][node.name]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Unexpected multipass info output for {node.name}") from e

    async def _is_running(self, node: Node) -> bool:
        try:
            info = await self._info(node)
        except DeployError as e:
            logger.debug("%s not ready: %s", node.name, e)
            return False
        return info.get("state") == "Running"

    async def ready(self) -> bool:
        states = await fan_out(self.get_nodes(), self._is_running)
        return all(states)

    async def node_address(self, node: Node) -> str:
        if node.name not in self._addresses:
            info = await self._info(node)
            addresses = info.get("ipv4") or []
            if not addresses:
                raise TransportError(f"No IPv4 address reported for {node.name}")
            self._addresses[node.name] = addresses[0]
        return self._addresses[node.name]

    # Commands and files

    async def send_commands(self, node: Node, *commands: Command) -> None:
        if self._closed:
            raise TransportError("Dispatcher has been cleaned up")
        for cmd in commands:
            await run_process(
                self.binary, "exec", node.name, "--", "/bin/bash", "-c", cmd.shell_text(),
                stdout=cmd.stdout,
                stderr=cmd.stderr,
                timeout=cmd.timeout,
            )

    async def send_file(self, node: Node, src: str, dst: str) -> None:
        stdout, stderr = output_sinks(self.output, node)
        await run_process(
            self.binary, "transfer", "--parents", src, f"{node.name}:{dst}",
            stdout=stdout,
            stderr=stderr,
        )

    async def download_project(self, node: Node, source: str) -> None:
        project = parse_project_source(source)
        if project.kind is SourceKind.LOCAL:
            target = f"{node.name}:{VM_HOME}/projects/{project.name}"
            try:
                await run_process(self.binary, "umount", target)
            except CommandFailedError:
                logger.debug("%s was not mounted", target)
            stdout, stderr = output_sinks(self.output, node)
            await run_process(
                self.binary, "mount", "--type=classic", project.location, target,
                stdout=stdout,
                stderr=stderr,
            )
            return

        await self.send_commands(
            node,
            *new_commands(
                [
                    f"rm -rf {project.remote_dir}",
                    f"mkdir -p ~/projects && git clone {shlex.quote(project.location)} {project.remote_dir}",
                ],
                *self.output(node),
            ),
        )

    # Lifecycle

    async def launch(self, sink: Sink | None = None, timeout: float = LAUNCH_TIMEOUT) -> None:
        """Launch every VM concurrently, showing one progress line per VM."""
        writer = LaunchWriter(sink if sink is not None else sys.stdout.buffer)

        async def launch_node(node: Node) -> None:
            errors = io.BytesIO()
            try:
                await run_process(
                    self.binary, "launch",
                    "--name", node.name,
                    "--cpus", str(self.resources.cpus),
                    "--memory", self.resources.memory,
                    "--disk", self.resources.disk,
                    stdout=node_writers[node.name],
                    stderr=errors,
                )
            except DeployError:
                message = errors.getvalue().decode(errors="replace").strip()
                writer.set_line(node, f"Error launching node: {message}")
                raise
            writer.set_line(node, "Node launched successfully!")

        node_writers = {node.name: writer.node_writer(node) for node in self.get_nodes()}
        try:
            await asyncio.wait_for(fan_out(self.get_nodes(), launch_node), timeout=timeout)
        except TimeoutError:
            raise CommandTimeoutError(f"{self.binary} launch", timeout) from None

    async def teardown(self) -> None:
        """Stop, delete and purge every VM.

        Works after a partial launch: a step that fails for the whole cluster
        is retried VM by VM, VMs that do not exist are skipped and purge always
        runs. The first error is raised once everything has been tried.
        """
        names = [node.name for node in self.get_nodes()]
        errors: list[DeployError] = []

        async def on_every_vm(*verb: str) -> None:
            try:
                await capture_output(self.binary, *verb, *names)
                return
            except DeployError as e:
                logger.debug("%s failed for the cluster, retrying per VM: %s", verb[0], e)
            for name in names:
                try:
                    await capture_output(self.binary, *verb, name)
                except CommandFailedError as e:
                    if "does not exist" in str(e):
                        logger.debug("Skipping %s: %s", name, e)
                        continue
                    errors.append(e)
                except DeployError as e:
                    errors.append(e)

        async def destroy() -> None:
            await on_every_vm("stop", "--force")
            await on_every_vm("delete")
            try:
                await capture_output(self.binary, "purge")
            except DeployError as e:
                errors.append(e)

        try:
            await asyncio.wait_for(destroy(), timeout=TEARDOWN_TIMEOUT)
        except TimeoutError:
            raise CommandTimeoutError(f"{self.binary} teardown", TEARDOWN_TIMEOUT) from None
        self._addresses.clear()
        if errors:
            first = errors[0]
            for other in errors[1:]:
                logger.warning("Teardown error: %s", other)
                first.add_note(f"also failed: {other}")
            raise first

    async def cleanup(self) -> None:
        self._closed = True
