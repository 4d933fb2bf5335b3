"""Sequential phase runner for bring-up and teardown."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..console import Console
from ..errors import DeployError, PhaseError, describe_error

logger = logging.getLogger(__name__)


class PhaseState(Enum):
    """Progress of a single phase."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Phase:
    """A named step of a run. Disabled phases are skipped."""

    name: str
    title: str
    run: Callable[[], Awaitable[None]]
    enabled: bool = True


# (phase name, new state) -> None
PhaseCallback = Callable[[str, PhaseState], None]


async def run_phases(
    phases: Sequence[Phase],
    console: Console,
    on_state: PhaseCallback | None = None,
) -> dict[str, PhaseState]:
    """Run phases in order; the first failure aborts the run.

    Nothing is retried and completed phases are not rolled back. A failure
    is raised as PhaseError chained to the original error.
    """
    states = {phase.name: PhaseState.PENDING for phase in phases}

    def emit(name: str, state: PhaseState) -> None:
        states[name] = state
        if on_state:
            on_state(name, state)

    for phase in phases:
        if not phase.enabled:
            logger.debug("Skipping phase %s", phase.name)
            emit(phase.name, PhaseState.SKIPPED)
            continue
        console.header(phase.title)
        emit(phase.name, PhaseState.RUNNING)
        try:
            await phase.run()
        except DeployError as e:
            emit(phase.name, PhaseState.FAILED)
            raise PhaseError(phase.name, f"{phase.name} failed: {describe_error(e)}") from e
        emit(phase.name, PhaseState.SUCCEEDED)
    return states


@contextmanager
def step(description: str) -> Iterator[None]:
    """Note on errors raised inside the block what was being done.

    The error keeps its type so callers can still tell a timeout from a
    failed command.
    """
    try:
        yield
    except DeployError as e:
        e.add_note(f"error {description}")
        raise

