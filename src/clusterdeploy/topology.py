"""Cluster topology: nodes and their remote addresses."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import AddressFormatError

MASTER_KUBENAME = "master"

_UQHN_PATTERN = re.compile(
    r"^([a-zA-Z0-9](?:[a-zA-Z0-9._%-]*[a-zA-Z0-9])?)"
    r"@("
    r"[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,63}"
    r"|(?:\d{1,3}\.){3}\d{1,3}"
    r")$"
)


@dataclass(frozen=True)
class UserQualifiedHostname:
    """A ``user@host`` address."""

    user: str
    host: str

    def __str__(self) -> str:
        return f"{self.user}@{self.host}"

    @classmethod
    def parse(cls, text: str) -> UserQualifiedHostname:
        match = _UQHN_PATTERN.match(text.strip())
        if match is None:
            raise AddressFormatError(f"invalid user qualified hostname: {text}")
        return cls(user=match.group(1), host=match.group(2))


@dataclass(frozen=True)
class Node:
    """A cluster member.

    ``kubename`` is the node's name inside the Kubernetes cluster: ``master``
    for the master node and ``worker-<n>`` (1-indexed) for workers.
    """

    name: str
    kubename: str
    remote: UserQualifiedHostname | None = None

    @property
    def is_master(self) -> bool:
        return self.kubename == MASTER_KUBENAME


def worker_kubename(index: int) -> str:
    return f"worker-{index}"
