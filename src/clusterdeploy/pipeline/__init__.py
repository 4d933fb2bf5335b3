"""Bring-up and teardown pipelines built on the dispatcher contract."""

from .deploy import Deployment, DeployOptions, await_ready
from .install import COMMAND_NOT_FOUND, check_install
from .phases import Phase, PhaseState, run_phases
from .secrets import VaultKeyCapture, VaultKeys
from .teardown import teardown_all, teardown_k3s, teardown_vault

__all__ = [
    "Deployment",
    "DeployOptions",
    "await_ready",
    "COMMAND_NOT_FOUND",
    "check_install",
    "Phase",
    "PhaseState",
    "run_phases",
    "VaultKeyCapture",
    "VaultKeys",
    "teardown_all",
    "teardown_k3s",
    "teardown_vault",
]
