"""Cluster dispatchers: one contract, one implementation per transport."""

from .base import (
    ClusterDispatcher,
    OutputOptions,
    ProjectSource,
    SourceKind,
    SupportsTeardown,
    parse_project_source,
    terminal_output,
)
from .multipass import MultipassDispatcher, VmResources
from .ssh import PassphrasePrompt, SshDispatcher, load_identity

__all__ = [
    "ClusterDispatcher",
    "OutputOptions",
    "ProjectSource",
    "SourceKind",
    "SupportsTeardown",
    "parse_project_source",
    "terminal_output",
    "MultipassDispatcher",
    "VmResources",
    "PassphrasePrompt",
    "SshDispatcher",
    "load_identity",
]
