"""Phased bring-up of the cluster and the vault server."""

from __future__ import annotations

import asyncio
import io
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from ..command import new_command, new_commands, with_env, with_stderr, with_stdout, with_timeout
from ..console import Console
from ..dispatch import ClusterDispatcher, parse_project_source
from ..dispatch.base import ProjectSource, output_sinks
from ..errors import ClusterNotReadyError, DeployError, WaitTimeoutError
from ..fanout import fan_out
from ..topology import Node
from ..wait import wait_until
from ..writers import CapturingPipe, regex_predicate
from .install import check_install
from .phases import Phase, PhaseCallback, PhaseState, run_phases, step
from .secrets import CAPTURE_WINDOW, JOIN_TOKEN_PATTERN, VaultKeyCapture, VaultKeys

logger = logging.getLogger(__name__)

KUBE_ENV = {"KUBECONFIG": "/etc/rancher/k3s/k3s.yaml"}
VAULT_STORAGE_DIR = "/srv/cluster/storage/vault"
K3S_TOKEN_FILE = "/var/lib/rancher/k3s/server/node-token"
K3S_INSTALL = "curl -sfL https://get.k3s.io"
K3S_API_PORT = 6443
K3S_SERVER_TIMEOUT = 120.0
K3S_JOIN_TIMEOUT = 120.0
VAULT_POD_TIMEOUT = 330.0
# Labels every resource we create so teardown can find it again.
VAULT_LABEL_PATCH = """jq '.metadata += {"labels":{"app":"vault"}}'"""


@dataclass
class DeployOptions:
    """Inputs of a deployment run."""

    source: str
    creds: Path | None = None
    keys_output_file: Path | None = None
    setup_k3s: bool = False
    install_services: bool = True
    ready_timeout: float = 5.0
    ready_poll: float = 1.0


async def await_ready(dispatcher: ClusterDispatcher, timeout: float, poll: float) -> None:
    """Wait until every node accepts commands."""
    try:
        await wait_until(dispatcher.ready, timeout=timeout, poll=poll)
    except WaitTimeoutError as e:
        raise ClusterNotReadyError() from e


class Deployment:
    """Drives one bring-up run against a dispatcher."""

    def __init__(
        self,
        dispatcher: ClusterDispatcher,
        console: Console,
        options: DeployOptions,
    ) -> None:
        self.dispatcher = dispatcher
        self.console = console
        self.options = options
        # Parsed up front so a bad locator fails before anything runs
        self.project: ProjectSource = parse_project_source(options.source)
        self.vault_keys: VaultKeys | None = None

    @property
    def master(self) -> Node:
        return self.dispatcher.get_master_node()

    def phases(self) -> list[Phase]:
        return [
            Phase("await-ready", "Waiting for cluster to be ready...", self.await_ready),
            Phase("provision-nodes", "Preparing nodes...", self.provision_nodes),
            Phase("download-project", "Downloading project...", self.download_project),
            Phase(
                "install-runtime",
                "Setting up K3S on nodes...",
                self.install_runtime,
                enabled=self.options.setup_k3s,
            ),
            Phase(
                "install-dependent-services",
                "Deploying Vault...",
                self.install_services,
                enabled=self.options.install_services,
            ),
        ]

    async def run(self, on_state: PhaseCallback | None = None) -> dict[str, PhaseState]:
        states = await run_phases(self.phases(), self.console, on_state)
        self.console.info("Deployment complete.")
        return states

    # Phases

    async def await_ready(self) -> None:
        await await_ready(self.dispatcher, self.options.ready_timeout, self.options.ready_poll)
        self.console.info("Cluster ready. Beginning deployment...")

    async def provision_nodes(self) -> None:
        dirs = "mkdir -p ~/projects"
        if self.options.install_services:
            dirs += f" && sudo mkdir -p {VAULT_STORAGE_DIR}"

        async def provision(node: Node) -> None:
            await self.dispatcher.send_commands(
                node, new_command(dirs, *self.console.node_output(node))
            )

        with step("setting up node directories"):
            await fan_out(self.dispatcher.get_nodes(), provision)

    async def download_project(self) -> None:
        with step("downloading project"):
            await self.dispatcher.download_project(self.master, self.options.source)

    async def install_runtime(self) -> None:
        """Install the k3s server on the master and join every worker to it."""
        master = self.master
        with step("installing K3S server"):
            await self.dispatcher.send_commands(
                master,
                new_command(
                    f"{K3S_INSTALL} | K3S_NODE_NAME={master.kubename} K3S_KUBECONFIG_MODE=644 sh -",
                    *self.console.node_output(master),
                    with_timeout(K3S_SERVER_TIMEOUT),
                ),
            )

        with step("reading K3S join parameters"):
            url, token = await self._join_params()

        async def join(node: Node) -> None:
            await self.dispatcher.send_commands(
                node,
                new_command(
                    f"{K3S_INSTALL} | K3S_NODE_NAME={shlex.quote(node.kubename)} "
                    f"K3S_URL={shlex.quote(url)} K3S_TOKEN={shlex.quote(token)} sh -",
                    *self.console.node_output(node),
                    with_timeout(K3S_JOIN_TIMEOUT),
                ),
            )

        with step("joining workers to K3S"):
            try:
                await asyncio.wait_for(
                    fan_out(self.dispatcher.get_worker_nodes(), join, cancel_on_error=True),
                    timeout=K3S_JOIN_TIMEOUT,
                )
            except TimeoutError as e:
                raise WaitTimeoutError(K3S_JOIN_TIMEOUT) from e

    async def _join_params(self) -> tuple[str, str]:
        master = self.master
        address = await self.dispatcher.node_address(master)
        _, stderr = output_sinks(self.console.node_output, master)
        pipe = CapturingPipe(None, CAPTURE_WINDOW, regex_predicate(JOIN_TOKEN_PATTERN, 1))
        await self.dispatcher.send_commands(
            master,
            new_command(f"sudo cat {K3S_TOKEN_FILE}", with_stdout(pipe), with_stderr(stderr)),
        )
        if not pipe.captured:
            raise DeployError("no join token found in K3S token file")
        return f"https://{address}:{K3S_API_PORT}", pipe.captured[0].decode()

    async def install_services(self) -> None:
        self.console.header("Installing Helm...")
        await self.install_helm()
        self.console.header("Installing Cert-Manager...")
        await self.init_cert_manager()
        self.console.header("Creating Vault resources...")
        await self.make_vault_resources()
        self.console.header("Setting up TLS certificates...")
        await self.make_certificates()
        self.console.header("Initializing Vault...")
        await self.init_vault()
        self.console.header("Initializing Cert-Watcher...")
        await self.init_cert_watcher()

    # Service steps

    async def _run_master(self, description: str, *texts: str, kube: bool = True) -> None:
        options = [*self.console.node_output(self.master)]
        if kube:
            options.insert(0, with_env(KUBE_ENV))
        with step(description):
            await self.dispatcher.send_commands(self.master, *new_commands(texts, *options))

    async def install_helm(self) -> None:
        installed = await check_install(self.dispatcher, self.master, new_command("helm version"))
        if installed:
            self.console.info("Helm already installed.")
            return
        await self._run_master(
            "installing helm",
            "curl -fsSL -o /tmp/install-helm.sh "
            "https://raw.githubusercontent.com/helm/helm/master/scripts/get-helm-3",
            "chmod u+x /tmp/install-helm.sh",
            "/tmp/install-helm.sh",
            kube=False,
        )

    async def init_cert_manager(self) -> None:
        await self._run_master(
            "installing cert-manager",
            "helm repo add jetstack https://charts.jetstack.io",
            "helm upgrade cert-manager jetstack/cert-manager "
            "--install --namespace cert-manager --create-namespace "
            "--version v1.16.1 --set disableAutoApproval=true --set crds.enabled=true",
        )
        # Approver policy must be installed before trust manager
        await self._run_master(
            "installing cert-manager extensions",
            "helm upgrade cert-manager-approver-policy jetstack/cert-manager-approver-policy "
            "--install --namespace cert-manager --wait",
            "helm upgrade trust-manager jetstack/trust-manager "
            "--install --namespace cert-manager --wait "
            "--set app.webhook.tls.approverPolicy.enabled=true "
            "--set app.webhook.tls.approverPolicy.certManagerNamespace=cert-manager",
        )

        with step("checking go installation"):
            go_installed = await check_install(
                self.dispatcher, self.master, new_command("go version")
            )
        if not go_installed:
            await self._run_master("installing go", "sudo apt install golang-go --yes", kube=False)

        with step("checking cmctl installation"):
            cmctl_installed = await check_install(
                self.dispatcher, self.master, new_command("cmctl help")
            )
        if not cmctl_installed:
            await self._run_master(
                "installing cmctl", "go install github.com/cert-manager/cmctl/v2@latest", kube=False
            )

        await self._run_master(
            "performing wait check for cert-manager",
            "$(go env GOPATH)/bin/cmctl check api --wait=2m",
        )

    async def make_vault_resources(self) -> None:
        if self.options.creds is None:
            raise DeployError("Cloud credentials file must be provided.")
        creds_path = f"etc/{self.project.name}/credentials.json"
        with step("sending credentials file to master node"):
            await self.dispatcher.send_file(self.master, str(self.options.creds), creds_path)

        await self._run_master(
            "creating vault resources",
            f"kubectl apply -f {self.project.remote_dir}/k8s/vault/vault.yaml",
            f"kubectl create secret generic kms -n vault --from-file ~/{creds_path} "
            f"--dry-run=client -o json | {VAULT_LABEL_PATCH} | kubectl apply -f -",
        )

    async def make_certificates(self) -> None:
        master = self.master
        await self._run_master(
            "creating certificates",
            f"kubectl apply -f {self.project.remote_dir}/k8s/vault/certificates.yaml",
        )

        ca_cert_buf = io.BytesIO()
        _, stderr = output_sinks(self.console.node_output, master)
        with step("getting CA certificate"):
            await self.dispatcher.send_commands(
                master,
                new_command(
                    "kubectl get -n vault secrets tls-ca "
                    """-o go-template='{{index .data "tls.crt"}}' | base64 -d""",
                    with_env(KUBE_ENV),
                    with_stdout(ca_cert_buf),
                    with_stderr(stderr),
                ),
            )
        ca_cert = ca_cert_buf.getvalue().decode().strip()
        literal = shlex.quote(f"root.pem={ca_cert}")

        await self._run_master(
            "creating CA config maps",
            *(
                f"kubectl create -n cert-manager configmap {name} --from-literal={literal} "
                f"--dry-run=client -o json | {VAULT_LABEL_PATCH} | kubectl apply -f -"
                for name in ("tls-ca", "expiring-tls-ca")
            ),
        )
        await self._run_master(
            "creating trust bundle",
            f"kubectl apply -f {self.project.remote_dir}/k8s/vault/trust-bundle.yaml",
        )

    async def init_vault(self) -> None:
        await self._run_master(
            "installing vault",
            "helm repo add hashicorp https://helm.releases.hashicorp.com",
            "helm repo update",
            "helm install vault hashicorp/vault "
            f"-f {self.project.remote_dir}/k8s/vault/vault-overrides.yaml --namespace vault",
        )

        self.console.info("Waiting for vault pods to be running...")
        await self.wait_vault_pods()
        self.console.info("Vault pods running. Initializing vault...")

        stdout, stderr = output_sinks(self.console.node_output, self.master)
        capture = VaultKeyCapture(stdout)
        with step("initializing vault"):
            await self.dispatcher.send_commands(
                self.master,
                new_command(
                    "kubectl exec -n vault vault-0 -- /bin/ash -c "
                    '"export VAULT_SKIP_VERIFY=1; vault operator init"',
                    with_env(KUBE_ENV),
                    with_stdout(capture.sink),
                    with_stderr(stderr),
                ),
            )

        self.vault_keys = capture.keys()
        if self.vault_keys is None:
            logger.warning("No root token found in vault init output")
            return
        if self.options.keys_output_file is not None:
            self.vault_keys.save(self.options.keys_output_file)
            self.console.info(f"Vault keys written to {self.options.keys_output_file}")

    async def wait_vault_pods(self) -> None:
        output = io.BytesIO()
        _, stderr = output_sinks(self.console.node_output, self.master)
        with step("getting vault pod names"):
            await self.dispatcher.send_commands(
                self.master,
                new_command(
                    "kubectl get pods -n vault --template "
                    """'{{range .items}}{{.metadata.name}}{{"\\n"}}{{end}}' """
                    '| grep "^vault-[0-9]\\+"',
                    with_env(KUBE_ENV),
                    with_stdout(output),
                    with_stderr(stderr),
                ),
            )
        pods = output.getvalue().decode().split()
        if not pods:
            raise DeployError("no vault pods found")

        with step("waiting for vault pods to be ready"):
            await self.dispatcher.send_commands(
                self.master,
                new_command(
                    "kubectl wait --for=condition=Ready --timeout=300s -n vault "
                    + " ".join(f"pod/{name}" for name in pods),
                    with_env(KUBE_ENV),
                    *self.console.node_output(self.master),
                    with_timeout(VAULT_POD_TIMEOUT),
                ),
            )

    async def init_cert_watcher(self) -> None:
        await self._run_master(
            "initializing cert-watcher",
            "kubectl create configmap -n vault cert-watcher-script "
            f"--from-file=watcher.sh={self.project.home_dir}/k8s/vault/cert-watcher.sh "
            f"--dry-run=client -o json | {VAULT_LABEL_PATCH} | kubectl apply -f -",
            f"kubectl apply -f {self.project.remote_dir}/k8s/vault/cert-watcher.yaml",
        )
