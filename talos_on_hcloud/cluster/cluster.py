import logging
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Optional

from talos_on_hcloud import settings
from talos_on_hcloud.cluster.bootstrap import BootstrapSequencer
from talos_on_hcloud.cluster.scaler import NodePoolScaler
from talos_on_hcloud.exceptions import CommandError
from talos_on_hcloud.hcloud import HcloudClient, InfrastructureProvisioner
from talos_on_hcloud.hcloud.provisioner import PublicAddressLookup
from talos_on_hcloud.kubernetes import KubectlClient, KubernetesApi
from talos_on_hcloud.mixins import WarningMessagesMixin
from talos_on_hcloud.models import (
    ClusterSpec,
    ClusterStatusData,
    CreateClusterResult,
    DestroyClusterResult,
    NodeRole,
    NodeStatusData,
    ScaleResult,
    Timeouts,
)
from talos_on_hcloud.overlay import CiliumInstaller, OverlayInstaller
from talos_on_hcloud.talos import ConfigBundleStore, NodeConfigGenerator, TalosApi, TalosCtl
from talos_on_hcloud.utils import check_tool_installed, get_public_ipv4_address

logger = logging.getLogger(__name__)

TALOS_HEALTH_TIMEOUT = timedelta(seconds=30)


async def check_required_tools(with_helm: bool = False) -> None:
    """Fail before any mutation if an external tool the command needs is missing."""

    await check_tool_installed(
        settings.TALOSCTL_PATH,
        ["version", "--client"],
        "https://www.talos.dev/latest/talos-guides/install/talosctl/",
    )
    await check_tool_installed(
        settings.KUBECTL_PATH,
        ["version", "--client"],
        "https://kubernetes.io/docs/tasks/tools/",
    )

    if with_helm:
        await check_tool_installed(
            settings.HELM_PATH,
            ["version", "--short"],
            "https://helm.sh/docs/intro/install/",
        )


class Cluster(WarningMessagesMixin):
    """Top-level element that exposes one coroutine per command for a single cluster."""

    def __init__(
        self,
        spec: ClusterSpec,
        hcloud_client: HcloudClient,
        datadir: Optional[Path] = None,
        talos: Optional[TalosApi] = None,
        kubernetes: Optional[KubernetesApi] = None,
        overlay: Optional[OverlayInstaller] = None,
        get_public_address: Optional[PublicAddressLookup] = None,
        timeouts: Optional[Timeouts] = None,
    ) -> None:
        super().__init__()

        self._spec = spec
        self._timeouts = timeouts or Timeouts()

        self.store = ConfigBundleStore(settings.get_cluster_dir(spec.name, datadir))

        self._talos = talos or TalosCtl(self.store.talosconfig_path)
        self._kubernetes = kubernetes or KubectlClient(self.store.kubeconfig_path)
        self._overlay = overlay or CiliumInstaller(
            self._kubernetes,
            self.store.kubeconfig_path,
            chart_version=spec.overlay.chart_version,
        )

        self._provisioner = InfrastructureProvisioner(
            hcloud_client,
            spec,
            self.store.cluster_dir,
            self._timeouts,
            get_public_address or partial(get_public_ipv4_address, settings.PUBLIC_ADDRESS_URL),
        )
        self._generator = NodeConfigGenerator(self._talos, self.store)
        self._scaler = NodePoolScaler(
            spec,
            self._provisioner,
            self._talos,
            self._kubernetes,
            self.store,
            self._timeouts,
        )

    def __str__(self) -> str:
        return self._spec.name

    async def create(self) -> CreateClusterResult:
        sequencer = BootstrapSequencer(
            self._spec,
            self._provisioner,
            self._generator,
            self.store,
            self._talos,
            self._kubernetes,
            self._overlay,
            self._scaler,
            self._timeouts,
        )

        return await sequencer.run()

    async def scale(
        self, role: NodeRole, target: int, pool_name: Optional[str] = None
    ) -> ScaleResult:
        # bundle check goes first, so missing cluster never touches the provider
        self.store.ensure_exists(self._spec.name)

        pool = self._scaler.resolve_pool(role, pool_name)

        logger.info("Scaling `%s` pool of `%s` cluster to %s...", pool.name, self, target)

        result = await self._scaler.scale(pool, target)

        logger.info("Scaling `%s` pool of `%s` cluster to %s done", pool.name, self, target)

        return result

    async def destroy(self, purge: bool = False) -> DestroyClusterResult:
        """Delete every resource of the cluster.

        Servers are deleted concurrently without draining. Bundle files are kept unless `purge`
        is set, so credentials stay available for forensic recovery.
        """

        logger.info("Destroying `%s` cluster...", self)

        result = DestroyClusterResult(cluster_name=self._spec.name)

        servers = await self._provisioner.list_servers()
        await self._provisioner.delete_servers(servers)
        result.deleted_servers = [server.name for server in servers]

        result.deleted_firewall = await self._provisioner.delete_firewall()
        result.deleted_ssh_key = await self._provisioner.delete_key()
        result.deleted_network = await self._provisioner.delete_network()

        if purge:
            self.store.purge()
            result.purged = True

        logger.info("Destroying `%s` cluster done", self)

        return result

    async def status(self) -> ClusterStatusData:
        servers = await self._provisioner.list_servers()

        kubernetes_nodes = {}
        if self.store.kubeconfig_path.exists():
            try:
                kubernetes_nodes = {
                    node.name: node for node in await self._kubernetes.list_nodes()
                }
            except CommandError as e:
                self.add_warning_message("Can't read nodes from Kubernetes API: %s", e)

        nodes = []
        for server in servers:
            kubernetes_node = kubernetes_nodes.get(server.name)
            nodes.append(
                NodeStatusData(
                    name=server.name,
                    pool=server.pool,
                    server_id=server.id,
                    provider_status=server.status,
                    public_ip=server.public_ip,
                    private_ip=server.private_ip,
                    kubernetes_ready=kubernetes_node.ready if kubernetes_node else None,
                    schedulable=kubernetes_node.schedulable if kubernetes_node else None,
                )
            )

        bootstrapped = self.store.is_bootstrapped()

        talos_healthy = None
        control_planes = [
            server
            for server in servers
            if server.labels.get(settings.LABEL_ROLE) == NodeRole.control_plane.value
        ]
        if bootstrapped and control_planes and self.store.talosconfig_path.exists():
            talos_healthy = await self._talos.health(
                control_planes[0].public_ip, TALOS_HEALTH_TIMEOUT
            )

        return ClusterStatusData(
            cluster_name=self._spec.name,
            bootstrapped=bootstrapped,
            talos_healthy=talos_healthy,
            nodes=nodes,
        )
