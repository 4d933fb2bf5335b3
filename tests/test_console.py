"""Tests for terminal output and per-node log files."""

import io

from clusterdeploy.command import new_command
from clusterdeploy.console import NodeLogs, TerminalConsole, header
from clusterdeploy.topology import Node

MASTER = Node("master", "master")


def test_header_frames_text() -> None:
    framed = header("Deploying Vault...")
    lines = framed.split("\n")
    assert lines[0] == "\x1b[32;1m" + "-" * 40
    assert lines[1] == "Deploying Vault..."
    assert lines[2] == "-" * 40 + "\x1b[0m"


def test_header_grows_with_text() -> None:
    text = "x" * 50
    assert header(text).split("\n")[1] == text
    assert "-" * 55 in header(text)


class TestTerminalConsole:
    def test_messages(self) -> None:
        out = io.BytesIO()
        console = TerminalConsole(out, io.BytesIO())
        console.info("Cluster ready.")
        assert out.getvalue() == b"Cluster ready.\n"

    def test_node_output_is_prefixed(self) -> None:
        out, err = io.BytesIO(), io.BytesIO()
        console = TerminalConsole(out, err)
        cmd = new_command("ls", *console.node_output(MASTER))
        cmd.stdout.write(b"file\n")
        cmd.stderr.write(b"oops\n")
        assert out.getvalue() == b"[master] file\n"
        assert err.getvalue() == b"[master] oops\n"

    def test_node_output_is_logged(self, tmp_path) -> None:
        config = tmp_path / "cluster.yaml"
        config.write_text("method: multipass\n")
        logs = NodeLogs(tmp_path / "logs", config)
        console = TerminalConsole(io.BytesIO(), io.BytesIO(), logs)

        cmd = new_command("ls", *console.node_output(MASTER))
        cmd.stdout.write(b"out\n")
        cmd.stderr.write(b"err\n")
        console.close()

        assert (logs.run_dir / "config.yaml").read_text() == "method: multipass\n"
        assert (logs.run_dir / "master.log").read_bytes() == b"out\nerr\n"
        assert logs.run_dir.parent == tmp_path / "logs"
