"""clusterdeploy: Bring up a k3s cluster with vault on multipass VMs or SSH hosts."""

from .command import Command, new_command, new_commands
from .config import Config, load_config
from .dispatch import ClusterDispatcher, MultipassDispatcher, SshDispatcher
from .errors import DeployError
from .factory import build_dispatcher, open_dispatcher
from .pipeline import Deployment, DeployOptions, PhaseState
from .topology import Node, UserQualifiedHostname

__all__ = [
    "Command",
    "new_command",
    "new_commands",
    "Config",
    "load_config",
    "ClusterDispatcher",
    "MultipassDispatcher",
    "SshDispatcher",
    "DeployError",
    "build_dispatcher",
    "open_dispatcher",
    "Deployment",
    "DeployOptions",
    "PhaseState",
    "Node",
    "UserQualifiedHostname",
]
