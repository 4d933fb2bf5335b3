"""Configuration loader for cluster-deploy."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import AddressFormatError, ConfigError
from .topology import UserQualifiedHostname

METHODS = ("multipass", "ssh")
ENVIRONMENTS = ("dev", "prod")


@dataclass
class MultipassSettings:
    """Naming and sizing of the local VMs."""

    master_name: str = "master"
    worker_name: str = "worker"
    cpus: int = 2
    memory: str = "2G"
    disk: str = "20G"


@dataclass
class SshSettings:
    """How to reach remote hosts."""

    remotes: list[UserQualifiedHostname] = field(default_factory=list)
    identity_file: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    port: int = 22


@dataclass
class DeploySettings:
    """What to deploy and how long to wait for the cluster."""

    env: str = "dev"
    source: str | None = None
    creds: Path | None = None
    keys_output_file: Path | None = None
    setup_k3s: bool = False
    ready_timeout: float = 5.0
    ready_poll: float = 1.0


@dataclass
class Config:
    """Main configuration for cluster-deploy."""

    method: str
    num_nodes: int
    multipass: MultipassSettings = field(default_factory=MultipassSettings)
    ssh: SshSettings = field(default_factory=SshSettings)
    deploy: DeploySettings = field(default_factory=DeploySettings)
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    no_logs: bool = False
    source_path: Path | None = None  # Path to the original config file

    def validate(self) -> None:
        if self.method not in METHODS:
            raise ConfigError(f"Unsupported deployment method. Must be one of {list(METHODS)}")
        if self.method == "ssh" and not self.ssh.remotes:
            raise ConfigError("Remote addresses must be provided for SSH deployments.")
        if self.num_nodes <= 0:
            raise ConfigError("Number of nodes must be greater than 0.")
        if self.method == "ssh" and len(self.ssh.remotes) != self.num_nodes:
            raise ConfigError("Number of remotes must match number of nodes.")
        hosts = [remote.host for remote in self.ssh.remotes]
        if self.method == "ssh" and len(set(hosts)) != len(hosts):
            # One connection is kept per host
            raise ConfigError("Each remote must be a different host.")
        if self.deploy.env not in ENVIRONMENTS:
            raise ConfigError("Environment must be either dev or prod.")
        if self.deploy.ready_poll <= 0 or self.deploy.ready_timeout <= 0:
            raise ConfigError("Readiness poll interval and timeout must be positive.")

    def validate_for_vault(self) -> None:
        """Extra checks needed before deploying the vault server."""
        if self.deploy.creds is None:
            raise ConfigError("Cloud credentials file must be provided.")
        if not self.deploy.creds.exists():
            raise ConfigError("Cloud credentials file does not exist.")

    def project_source(self) -> str:
        """The project locator to download onto the master node."""
        if self.deploy.source:
            return self.deploy.source
        if self.deploy.env == "prod":
            raise ConfigError("A project source must be configured for prod deployments.")
        base = self.source_path.parent if self.source_path else Path.cwd()
        return f"local://{base}"


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a mapping")

    config = _parse_config(raw, base_dir=config_path.parent)
    config.source_path = config_path
    config.validate()
    return config


def _parse_config(raw: dict[str, Any], base_dir: Path) -> Config:
    """Parse raw YAML data into Config object."""
    method = raw.get("method")
    if not method:
        raise ConfigError("Configuration must have a 'method' field")

    ssh = _parse_ssh(raw.get("ssh") or {})
    # SSH clusters default to one node per remote
    num_nodes = raw.get("nodes", len(ssh.remotes) if method == "ssh" else 3)

    log_dir = Path(raw.get("log_dir", "logs")).expanduser()
    if not log_dir.is_absolute():
        log_dir = base_dir / log_dir

    return Config(
        method=method,
        num_nodes=int(num_nodes),
        multipass=_parse_multipass(raw.get("multipass") or {}),
        ssh=ssh,
        deploy=_parse_deploy(raw.get("deploy") or {}, base_dir),
        log_dir=log_dir.resolve(),
        no_logs=bool(raw.get("no_logs", False)),
    )


def _parse_multipass(raw: dict[str, Any]) -> MultipassSettings:
    defaults = MultipassSettings()
    return MultipassSettings(
        master_name=raw.get("master_name", defaults.master_name),
        worker_name=raw.get("worker_name", defaults.worker_name),
        cpus=int(raw.get("cpus", defaults.cpus)),
        memory=str(raw.get("memory", defaults.memory)),
        disk=str(raw.get("disk", defaults.disk)),
    )


def _parse_ssh(raw: dict[str, Any]) -> SshSettings:
    remotes = []
    for remote in raw.get("remotes", []):
        try:
            remotes.append(UserQualifiedHostname.parse(str(remote)))
        except AddressFormatError as e:
            raise ConfigError(str(e)) from e

    return SshSettings(
        remotes=remotes,
        identity_file=Path(raw.get("identity_file", "~/.ssh/id_rsa")).expanduser(),
        port=int(raw.get("port", 22)),
    )


def _parse_deploy(raw: dict[str, Any], base_dir: Path) -> DeploySettings:
    defaults = DeploySettings()
    return DeploySettings(
        env=raw.get("env", defaults.env),
        source=raw.get("source"),
        creds=_optional_path(raw.get("creds"), base_dir),
        keys_output_file=_optional_path(raw.get("keys_output_file"), base_dir),
        setup_k3s=bool(raw.get("setup_k3s", defaults.setup_k3s)),
        ready_timeout=float(raw.get("ready_timeout", defaults.ready_timeout)),
        ready_poll=float(raw.get("ready_poll", defaults.ready_poll)),
    )


def _optional_path(value: str | None, base_dir: Path) -> Path | None:
    """Resolve a path relative to the config file's directory."""
    if value is None:
        return None
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()
