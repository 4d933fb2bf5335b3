"""Exception types raised by cluster-deploy."""

from __future__ import annotations


class DeployError(Exception):
    """Base class for all cluster-deploy errors."""


class TransportError(DeployError):
    """A connection, session or process could not be established."""


class CommandFailedError(DeployError):
    """A command ran but exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int | None, detail: str = "") -> None:
        message = f"Command exited with status {exit_status}: {command}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.command = command
        self.exit_status = exit_status


class CommandTimeoutError(DeployError):
    """A command outlived its deadline and was terminated."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout


class WaitTimeoutError(DeployError):
    """A polled condition did not become true in time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s.")
        self.timeout = timeout


class ClusterNotReadyError(DeployError):
    """The cluster never reported ready."""

    def __init__(self) -> None:
        super().__init__(
            "Cluster not ready for deployment. Make sure the cluster is initialized first."
        )


class AddressFormatError(DeployError, ValueError):
    """A user-qualified hostname could not be parsed."""


class SourceFormatError(DeployError, ValueError):
    """A project source locator uses an unrecognized format."""


class ConfigError(DeployError, ValueError):
    """The configuration file is invalid."""


class PhaseError(DeployError):
    """A pipeline phase failed; the cause is chained."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(message)
        self.phase = phase


def describe_error(error: BaseException) -> str:
    """The error's message led by the steps noted on it, outermost first."""
    steps = [note for note in getattr(error, "__notes__", []) if note.startswith("error ")]
    return ": ".join([*reversed(steps), str(error)])
