"""Idempotent "is this tool installed" checks."""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from ..command import Command
from ..dispatch import ClusterDispatcher
from ..errors import CommandFailedError
from ..topology import Node
from ..writers import DISCARD

# Shell exit status for "command not found"
COMMAND_NOT_FOUND = 127


async def check_install(
    dispatcher: ClusterDispatcher,
    node: Node,
    command: Command,
    post_check: Callable[[], bool] | None = None,
) -> bool:
    """Run ``command`` (e.g. ``helm version``) to see whether a tool is installed.

    Returns True when the command succeeds (or ``post_check()`` when given),
    False when the shell reports the command as not found. Any other failure
    is raised.
    """
    quiet = replace(command, stdout=DISCARD, stderr=DISCARD)
    try:
        await dispatcher.send_commands(node, quiet)
    except CommandFailedError as e:
        if e.exit_status == COMMAND_NOT_FOUND:
            return False
        raise
    if post_check is None:
        return True
    return post_check()
