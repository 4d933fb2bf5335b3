#!/usr/bin/env python3
"""Main entry point for cluster-deploy."""

import argparse
import asyncio
import functools
import getpass
import logging
import sys
from pathlib import Path

from .config import Config, load_config
from .console import Console, NodeLogs, TerminalConsole
from .dashboard import Dashboard
from .dispatch import MultipassDispatcher, load_identity
from .errors import DeployError, describe_error
from .factory import build_dispatcher, open_dispatcher
from .pipeline import Deployment, DeployOptions, teardown_all, teardown_k3s, teardown_vault

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Override SSH key if provided (applies to all remotes)
    if args.key:
        config.ssh.identity_file = args.key.expanduser()
    if config.method == "ssh" and not config.ssh.identity_file.exists():
        print(f"Error: SSH key not found: {config.ssh.identity_file}", file=sys.stderr)
        return 1

    enable_logging = not (args.no_logs or config.no_logs)

    try:
        if args.command == "launch":
            return _launch(config)
        if args.command == "teardown":
            return _run_headless(config, enable_logging, functools.partial(_teardown, args.only))

        config.validate_for_vault()
        options = _deploy_options(config, setup_k3s=config.deploy.setup_k3s and args.command == "deploy")
        if getattr(args, "launch", False):
            _launch(config)
        if getattr(args, "dashboard", False):
            return _run_dashboard(config, enable_logging, options)
        return _run_headless(config, enable_logging, functools.partial(_deploy, options))
    except DeployError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {describe_error(e)}", file=sys.stderr)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cluster-deploy",
        description="Bring up a k3s cluster with vault on multipass VMs or SSH hosts",
    )
    parser.add_argument("config", type=Path, help="Path to YAML configuration file")
    parser.add_argument(
        "--key",
        type=Path,
        help="Override SSH key path from config",
    )
    parser.add_argument(
        "--no-logs",
        action="store_true",
        help="Disable logging node output to files",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print debug diagnostics to stderr",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("launch", help="Launch the multipass VMs")

    deploy = commands.add_parser("deploy", help="Deploy the project and its services")
    deploy.add_argument(
        "--launch",
        action="store_true",
        help="Launch the multipass VMs first (multipass only)",
    )
    deploy.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )

    commands.add_parser("deploy-vault", help="Deploy vault onto an existing cluster")

    teardown = commands.add_parser("teardown", help="Tear down the cluster or its services")
    teardown.add_argument(
        "--only",
        choices=("all", "vault", "k3s"),
        default="all",
        help="What to tear down (default: all)",
    )
    return parser


def _deploy_options(config: Config, setup_k3s: bool) -> DeployOptions:
    return DeployOptions(
        source=config.project_source(),
        creds=config.deploy.creds,
        keys_output_file=config.deploy.keys_output_file,
        setup_k3s=setup_k3s,
        ready_timeout=config.deploy.ready_timeout,
        ready_poll=config.deploy.ready_poll,
    )


def _launch(config: Config) -> int:
    """Launch the multipass VMs, drawing progress on the terminal."""
    dispatcher = build_dispatcher(config)
    if not isinstance(dispatcher, MultipassDispatcher):
        raise DeployError("Launch is only supported for multipass deployments.")
    asyncio.run(dispatcher.launch(sys.stdout.buffer))
    return 0


async def _deploy(options: DeployOptions, config: Config, console: Console, prompt=getpass.getpass) -> None:
    async with open_dispatcher(config, console.node_output, prompt) as dispatcher:
        deployment = Deployment(dispatcher, console, options)
        await deployment.run(getattr(console, "phase_state", None))


async def _teardown(only: str, config: Config, console: Console) -> None:
    async with open_dispatcher(config, console.node_output) as dispatcher:
        if only == "vault":
            await teardown_vault(dispatcher, console)
        elif only == "k3s":
            await teardown_k3s(dispatcher, console)
        else:
            await teardown_all(dispatcher, console)


def _node_logs(config: Config, enable_logging: bool) -> NodeLogs | None:
    if not enable_logging:
        return None
    return NodeLogs(config.log_dir, config.source_path)


def _run_headless(config: Config, enable_logging: bool, job) -> int:
    """Run a job printing node output to the terminal."""
    console = TerminalConsole(logs=_node_logs(config, enable_logging))
    try:
        asyncio.run(job(config, console))
    finally:
        console.close()
    return 0


def _run_dashboard(config: Config, enable_logging: bool, options: DeployOptions) -> int:
    """Run a deployment with the TUI dashboard."""
    prompt = getpass.getpass
    if config.method == "ssh":
        # Ask for any passphrase before the TUI takes over the terminal
        passphrase = _remember(getpass.getpass)
        load_identity(config.ssh.identity_file, passphrase)
        prompt = passphrase

    nodes = build_dispatcher(config).get_nodes()
    logs = _node_logs(config, enable_logging)
    app = Dashboard(
        nodes,
        functools.partial(_deploy, options, config, prompt=prompt),
        logs=logs,
    )
    try:
        app.run()
    finally:
        if logs is not None:
            logs.close()

    # Check final status
    if app.job_error is not None:
        print(f"Error: {describe_error(app.job_error)}", file=sys.stderr)
        return 1
    return 0


def _remember(prompt):
    """Wrap a passphrase prompt so it asks at most once."""
    answers: dict[str, str] = {}

    def ask(message: str) -> str:
        if "answer" not in answers:
            answers["answer"] = prompt(message)
        return answers["answer"]

    return ask


if __name__ == "__main__":
    sys.exit(main())
