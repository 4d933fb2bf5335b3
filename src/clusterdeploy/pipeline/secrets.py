"""Extraction and export of generated secrets."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from ..writers import CapturingPipe, Sink, regex_predicate

logger = logging.getLogger(__name__)

# Large enough for any single line of `vault operator init` output.
CAPTURE_WINDOW = 512

ROOT_TOKEN_PATTERN = r"Initial Root Token: (\S+)\r?\n"
RECOVERY_KEY_PATTERN = r"(?:Recovery|Unseal) Key \d+: (\S+)\r?\n"
JOIN_TOKEN_PATTERN = r"(K10\S+)\s"


@dataclass
class VaultKeys:
    """Credentials printed once by ``vault operator init``."""

    root_token: str
    unseal_keys: list[str] = field(default_factory=list)

    def save(self, path: Path) -> None:
        """Write the keys as JSON, readable only by the current user."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(asdict(self), f, indent=2)
            f.write("\n")
        logger.info("Saved vault keys to %s", path)

    @classmethod
    def load(cls, path: Path) -> VaultKeys:
        with open(path) as f:
            raw = json.load(f)
        return cls(root_token=raw["root_token"], unseal_keys=list(raw["unseal_keys"]))


class VaultKeyCapture:
    """Chain of capturing pipes pulling vault keys out of one output stream."""

    def __init__(self, sink: Sink | None, window: int = CAPTURE_WINDOW) -> None:
        self.recovery = CapturingPipe(sink, window, regex_predicate(RECOVERY_KEY_PATTERN, 1))
        self.root = CapturingPipe(self.recovery, window, regex_predicate(ROOT_TOKEN_PATTERN, 1))

    @property
    def sink(self) -> CapturingPipe:
        """The head of the chain; use it as the command's stdout."""
        return self.root

    def keys(self) -> VaultKeys | None:
        if not self.root.captured:
            return None
        return VaultKeys(
            root_token=self.root.captured[0].decode(),
            unseal_keys=[key.decode() for key in self.recovery.captured],
        )
