"""Teardown of deployed services, the k3s runtime or the whole cluster."""

from __future__ import annotations

import logging

from ..command import new_command, new_commands, with_env
from ..console import Console
from ..dispatch import ClusterDispatcher, SupportsTeardown
from ..fanout import fan_out
from ..topology import Node
from .deploy import KUBE_ENV, VAULT_STORAGE_DIR
from .phases import step

logger = logging.getLogger(__name__)


async def teardown_vault(dispatcher: ClusterDispatcher, console: Console) -> None:
    """Uninstall vault and cert-manager and delete everything labelled app=vault."""
    master = dispatcher.get_master_node()
    with step("deleting vault resources"):
        await dispatcher.send_commands(
            master,
            *new_commands(
                [
                    "helm uninstall vault -n vault --ignore-not-found",
                    "helm uninstall cert-manager -n cert-manager --ignore-not-found",
                    "helm uninstall cert-manager-approver-policy -n cert-manager --ignore-not-found",
                    "helm uninstall trust-manager -n cert-manager --ignore-not-found",
                    "kubectl delete -l app=vault --all-namespaces "
                    "$(kubectl api-resources --verbs=delete -o name | tr \"\\n\" \",\" | sed -e 's/,$//')",
                ],
                with_env(KUBE_ENV),
                *console.node_output(master),
            ),
        )

    for node in dispatcher.get_nodes():
        with step(f"cleaning up vault storage on {node.name}"):
            await dispatcher.send_commands(
                node,
                new_command(f"sudo rm -rf {VAULT_STORAGE_DIR}", *console.node_output(node)),
            )


async def teardown_k3s(dispatcher: ClusterDispatcher, console: Console) -> None:
    """Uninstall the k3s server from the master and the agent from every worker."""
    master = dispatcher.get_master_node()
    with step("tearing down K3S"):
        await dispatcher.send_commands(
            master,
            new_command("/usr/local/bin/k3s-uninstall.sh", *console.node_output(master)),
        )

    async def uninstall_agent(node: Node) -> None:
        await dispatcher.send_commands(
            node,
            new_command("/usr/local/bin/k3s-agent-uninstall.sh", *console.node_output(node)),
        )

    with step("tearing down K3S"):
        await fan_out(dispatcher.get_worker_nodes(), uninstall_agent)


async def teardown_all(dispatcher: ClusterDispatcher, console: Console) -> None:
    """Destroy the cluster if the dispatcher can, otherwise remove deployed services."""
    if isinstance(dispatcher, SupportsTeardown):
        logger.debug("Using dispatcher teardown")
        await dispatcher.teardown()
        return
    await teardown_vault(dispatcher, console)
