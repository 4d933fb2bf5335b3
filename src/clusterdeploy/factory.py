"""Builds the dispatcher described by a config and manages its lifetime."""

from __future__ import annotations

import getpass
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .config import Config
from .dispatch import (
    ClusterDispatcher,
    MultipassDispatcher,
    OutputOptions,
    PassphrasePrompt,
    SshDispatcher,
    VmResources,
    terminal_output,
)
from .errors import ConfigError

logger = logging.getLogger(__name__)


def build_dispatcher(
    config: Config,
    output: OutputOptions = terminal_output,
    passphrase_prompt: PassphrasePrompt = getpass.getpass,
) -> MultipassDispatcher | SshDispatcher:
    """Construct (but do not connect) the dispatcher for ``config.method``."""
    if config.method == "multipass":
        mp = config.multipass
        return MultipassDispatcher(
            config.num_nodes,
            master_name=mp.master_name,
            worker_name=mp.worker_name,
            resources=VmResources(cpus=mp.cpus, memory=mp.memory, disk=mp.disk),
            output=output,
        )
    if config.method == "ssh":
        return SshDispatcher(
            config.ssh.remotes,
            config.ssh.identity_file,
            port=config.ssh.port,
            output=output,
            passphrase_prompt=passphrase_prompt,
        )
    raise ConfigError(f"Unknown deployment method: {config.method}")


@asynccontextmanager
async def open_dispatcher(
    config: Config,
    output: OutputOptions = terminal_output,
    passphrase_prompt: PassphrasePrompt = getpass.getpass,
) -> AsyncIterator[ClusterDispatcher]:
    """Build and initialize a dispatcher, always cleaning it up afterwards."""
    dispatcher = build_dispatcher(config, output, passphrase_prompt)
    try:
        if isinstance(dispatcher, SshDispatcher):
            await dispatcher.init()
        logger.debug("Dispatcher ready: %s with %d nodes", config.method, config.num_nodes)
        yield dispatcher
    finally:
        await dispatcher.cleanup()
