"""Tests for the SSH dispatcher with asyncssh connections faked out."""

import asyncio
import io
from types import SimpleNamespace

import asyncssh
import pytest

from clusterdeploy.command import new_command, with_env, with_stderr, with_stdout, with_timeout
from clusterdeploy.dispatch import ClusterDispatcher, SshDispatcher, SupportsTeardown, load_identity
from clusterdeploy.dispatch import ssh as ssh_module
from clusterdeploy.errors import CommandFailedError, CommandTimeoutError, TransportError
from clusterdeploy.topology import UserQualifiedHostname

REMOTES = [
    UserQualifiedHostname("ubuntu", "master.example.com"),
    UserQualifiedHostname("ubuntu", "worker1.example.com"),
]


class FakeStream:
    def __init__(self, data: bytes) -> None:
        self.data = data

    async def read(self, n: int) -> bytes:
        chunk, self.data = self.data[:n], self.data[n:]
        return chunk


class FakeProcess:
    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", exit_status: int = 0, hang: bool = False):
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(stderr)
        self.exit_status = exit_status
        self.hang = hang
        self.signals: list[str] = []

    async def __aenter__(self) -> "FakeProcess":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def wait(self) -> SimpleNamespace:
        if self.hang:
            await asyncio.sleep(10)
        return SimpleNamespace(exit_status=self.exit_status)

    def send_signal(self, signal: str) -> None:
        self.signals.append(signal)


class FakeConnection:
    def __init__(self, host: str) -> None:
        self.host = host
        self.commands: list[str] = []
        self.processes: list[FakeProcess] = []
        self.next_process: FakeProcess | None = None
        self.closed = 0

    def create_process(self, command: str, encoding=None) -> FakeProcess:
        assert encoding is None
        self.commands.append(command)
        process = self.next_process or FakeProcess()
        self.next_process = None
        self.processes.append(process)
        return process

    def close(self) -> None:
        self.closed += 1

    async def wait_closed(self) -> None:
        return None


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "id_ed25519"
    asyncssh.generate_private_key("ssh-ed25519").write_private_key(str(path))
    return path


@pytest.fixture
def encrypted_key_file(tmp_path):
    path = tmp_path / "id_encrypted"
    key = asyncssh.generate_private_key("ssh-ed25519")
    key.write_private_key(str(path), format_name="pkcs8-pem", passphrase="open sesame")
    return path


@pytest.fixture
def connections(monkeypatch):
    """Replaces asyncssh.connect; returns the connections it made by host."""
    made: dict[str, FakeConnection] = {}
    calls: list[dict] = []

    async def fake_connect(host, **kwargs):
        calls.append({"host": host, **kwargs})
        made[host] = FakeConnection(host)
        return made[host]

    monkeypatch.setattr(asyncssh, "connect", fake_connect)
    made_calls = SimpleNamespace(by_host=made, calls=calls)
    return made_calls


@pytest.fixture
def ssh(key_file, console) -> SshDispatcher:
    return SshDispatcher(REMOTES, key_file, output=console.node_output)


class TestIdentity:
    def test_unencrypted_key_needs_no_prompt(self, key_file) -> None:
        def prompt(message: str) -> str:
            raise AssertionError("should not prompt")

        assert load_identity(key_file, prompt) is not None

    def test_encrypted_key_prompts_once(self, encrypted_key_file) -> None:
        prompts: list[str] = []

        def prompt(message: str) -> str:
            prompts.append(message)
            return "open sesame"

        assert load_identity(encrypted_key_file, prompt) is not None
        assert len(prompts) == 1
        assert prompts[0].endswith("(hidden for security): ")

    def test_wrong_passphrase(self, encrypted_key_file) -> None:
        with pytest.raises(TransportError):
            load_identity(encrypted_key_file, lambda message: "wrong")

    def test_missing_key(self, tmp_path) -> None:
        with pytest.raises(TransportError):
            load_identity(tmp_path / "missing")


class TestLifecycle:
    def test_topology(self, ssh) -> None:
        nodes = ssh.get_nodes()
        assert [node.name for node in nodes] == ["master.example.com", "worker1.example.com"]
        assert [node.kubename for node in nodes] == ["master", "worker-1"]
        assert nodes[1].remote == REMOTES[1]
        assert isinstance(ssh, ClusterDispatcher)
        assert not isinstance(ssh, SupportsTeardown)

    def test_requires_remotes(self, key_file) -> None:
        with pytest.raises(ValueError):
            SshDispatcher([], key_file)

    @pytest.mark.asyncio
    async def test_init_connects_every_remote(self, ssh, connections) -> None:
        assert not await ssh.ready()
        await ssh.init()
        assert await ssh.ready()
        assert [call["host"] for call in connections.calls] == [
            "master.example.com",
            "worker1.example.com",
        ]
        for call in connections.calls:
            assert call["username"] == "ubuntu"
            assert call["port"] == 22
            assert call["known_hosts"] is None
            assert len(call["client_keys"]) == 1

    @pytest.mark.asyncio
    async def test_encrypted_key_prompts_once_for_all_nodes(
        self, encrypted_key_file, connections
    ) -> None:
        prompts: list[str] = []

        def prompt(message: str) -> str:
            prompts.append(message)
            return "open sesame"

        dispatcher = SshDispatcher(REMOTES, encrypted_key_file, passphrase_prompt=prompt)
        await dispatcher.init()
        assert len(prompts) == 1
        assert len(connections.by_host) == 2

    @pytest.mark.asyncio
    async def test_connect_failure(self, ssh, monkeypatch) -> None:
        async def refuse(host, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(asyncssh, "connect", refuse)
        with pytest.raises(TransportError, match="ubuntu@master.example.com"):
            await ssh.init()

    @pytest.mark.asyncio
    async def test_cleanup_closes_each_connection_once(self, ssh, connections) -> None:
        await ssh.init()
        await ssh.cleanup()
        await ssh.cleanup()
        assert all(conn.closed == 1 for conn in connections.by_host.values())
        assert not await ssh.ready()


class TestCommands:
    @pytest.mark.asyncio
    async def test_output_and_env(self, ssh, connections) -> None:
        await ssh.init()
        master = ssh.get_master_node()
        conn = connections.by_host[master.name]
        conn.next_process = FakeProcess(stdout=b"pods\n", stderr=b"warning\n")
        out, err = io.BytesIO(), io.BytesIO()
        await ssh.send_commands(
            master,
            new_command("kubectl get pods", with_env({"KUBECONFIG": "/k"}), with_stdout(out), with_stderr(err)),
        )
        assert conn.commands == ["KUBECONFIG=/k kubectl get pods"]
        assert out.getvalue() == b"pods\n"
        assert err.getvalue() == b"warning\n"

    @pytest.mark.asyncio
    async def test_one_session_per_command(self, ssh, connections) -> None:
        await ssh.init()
        worker = ssh.get_worker_nodes()[0]
        await ssh.send_commands(worker, new_command("a"), new_command("b"))
        assert connections.by_host[worker.name].commands == ["a", "b"]

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, ssh, connections) -> None:
        await ssh.init()
        master = ssh.get_master_node()
        connections.by_host[master.name].next_process = FakeProcess(exit_status=127)
        with pytest.raises(CommandFailedError) as exc_info:
            await ssh.send_commands(master, new_command("helm version"))
        assert exc_info.value.exit_status == 127

    @pytest.mark.asyncio
    async def test_timeout_signals_session(self, ssh, connections) -> None:
        await ssh.init()
        master = ssh.get_master_node()
        conn = connections.by_host[master.name]
        conn.next_process = FakeProcess(hang=True)
        with pytest.raises(CommandTimeoutError):
            await ssh.send_commands(master, new_command("sleep 100", with_timeout(0.1)))
        assert conn.processes[0].signals == ["TERM"]

    @pytest.mark.asyncio
    async def test_no_connection(self, ssh) -> None:
        with pytest.raises(TransportError, match="no connection"):
            await ssh.send_commands(ssh.get_master_node(), new_command("true"))

    @pytest.mark.asyncio
    async def test_node_address(self, ssh) -> None:
        assert await ssh.node_address(ssh.get_worker_nodes()[0]) == "worker1.example.com"


class TestFiles:
    @pytest.fixture
    def local_runs(self, monkeypatch):
        runs: list[tuple[str, ...]] = []

        async def fake_run_process(*argv, **kwargs):
            runs.append(argv)

        monkeypatch.setattr(ssh_module, "run_process", fake_run_process)
        return runs

    @pytest.mark.asyncio
    async def test_send_file(self, ssh, key_file, local_runs) -> None:
        await ssh.send_file(ssh.get_master_node(), "creds.json", "etc/creds.json")
        assert local_runs == [
            ("scp", "-i", str(key_file), "-P", "22", "creds.json", "ubuntu@master.example.com:etc/creds.json")
        ]

    @pytest.mark.asyncio
    async def test_send_file_failure(self, ssh, monkeypatch) -> None:
        async def failing_scp(*argv, stderr=None, **kwargs):
            stderr.write(b"scp: permission denied\n")
            raise CommandFailedError(" ".join(argv), 1)

        monkeypatch.setattr(ssh_module, "run_process", failing_scp)
        with pytest.raises(TransportError, match="permission denied"):
            await ssh.send_file(ssh.get_master_node(), "a", "b")

    @pytest.mark.asyncio
    async def test_local_project_is_copied(self, ssh, connections, key_file, local_runs, tmp_path) -> None:
        await ssh.init()
        project = tmp_path / "log-console"
        project.mkdir()
        master = ssh.get_master_node()
        await ssh.download_project(master, f"local://{project}")
        assert connections.by_host[master.name].commands == [
            "mkdir -p ~/projects",
            "rm -rf ~/projects/log-console",
        ]
        assert local_runs == [
            (
                "scp", "-i", str(key_file), "-P", "22", "-r",
                str(project.resolve()), "ubuntu@master.example.com:~/projects/log-console",
            )
        ]

    @pytest.mark.asyncio
    async def test_git_project_is_cloned(self, ssh, connections) -> None:
        await ssh.init()
        master = ssh.get_master_node()
        await ssh.download_project(master, "git@github.com:acme/log-console.git")
        assert connections.by_host[master.name].commands == [
            "mkdir -p ~/projects",
            "rm -rf ~/projects/log-console",
            "(cd ~/projects && git clone git@github.com:acme/log-console.git log-console)",
        ]
