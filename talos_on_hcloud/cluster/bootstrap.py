import asyncio
import logging
from typing import Dict, List, Optional

from talos_on_hcloud import settings
from talos_on_hcloud.cluster.nodes import ClusterNode
from talos_on_hcloud.cluster.scaler import NodePoolScaler
from talos_on_hcloud.exceptions import (
    BootstrapError,
    BootstrapTimeout,
    CommandError,
    PartialScaleFailure,
    TalosOnHcloudError,
)
from talos_on_hcloud.hcloud.provisioner import InfrastructureProvisioner
from talos_on_hcloud.kubernetes import KubernetesApi
from talos_on_hcloud.mixins import WarningMessagesMixin
from talos_on_hcloud.models import (
    ClusterSpec,
    CreateClusterResult,
    NodeRole,
    NodeState,
    ServerData,
    Timeouts,
)
from talos_on_hcloud.overlay import OverlayInstaller, get_cilium_values
from talos_on_hcloud.polling import poll_until
from talos_on_hcloud.talos import ConfigBundleStore, NodeConfigGenerator, TalosApi
from talos_on_hcloud.talos.config import ENDPOINT_PATH

logger = logging.getLogger(__name__)

STEP_NONE = "nothing"
STEP_CONFIG = "configuration generated"
STEP_RESOURCES = "network, firewall and ssh key provisioned"
STEP_FIRST_CONTROL_PLANE = "first control plane node provisioned"
STEP_BOOTSTRAP = "etcd bootstrapped"
STEP_KUBERNETES_API = "Kubernetes API available"
STEP_KUBECONFIG = "kubeconfig retrieved"
STEP_NODES = "remaining nodes provisioned"
STEP_OVERLAY = "network overlay installed"
STEP_READY = "all nodes Ready"


class BootstrapSequencer(WarningMessagesMixin):
    """Forms a new cluster, or finishes forming one after an interrupted run.

    Every step re-derives what is already done from the provider and from the persisted bundle,
    and etcd bootstrap is issued only when the bundle has no record of it.
    """

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: InfrastructureProvisioner,
        generator: NodeConfigGenerator,
        store: ConfigBundleStore,
        talos: TalosApi,
        kubernetes: KubernetesApi,
        overlay: OverlayInstaller,
        scaler: NodePoolScaler,
        timeouts: Timeouts,
        add_node_concurrency: int = settings.ADD_NODE_CONCURRENCY,
    ) -> None:
        super().__init__()

        self._spec = spec
        self._provisioner = provisioner
        self._generator = generator
        self._store = store
        self._talos = talos
        self._kubernetes = kubernetes
        self._overlay = overlay
        self._scaler = scaler
        self._timeouts = timeouts
        self._add_node_concurrency = add_node_concurrency

        self._result = CreateClusterResult(cluster_name=spec.name)
        self._first_control_plane: Optional[ServerData] = None
        self._nodes: List[ClusterNode] = []

    def __str__(self) -> str:
        return self._spec.name

    async def run(self) -> CreateClusterResult:
        logger.info("Creating `%s` cluster...", self)

        steps = (
            (STEP_CONFIG, self._generate_config),
            (STEP_RESOURCES, self._provision_resources),
            (STEP_FIRST_CONTROL_PLANE, self._provision_first_control_plane),
            (STEP_BOOTSTRAP, self._bootstrap),
            (STEP_KUBERNETES_API, self._wait_for_kubernetes_api),
            (STEP_KUBECONFIG, self._retrieve_kubeconfig),
            (STEP_NODES, self._provision_remaining_nodes),
            (STEP_OVERLAY, self._install_overlay),
            (STEP_READY, self._wait_for_nodes),
        )

        for step_name, step in steps:
            try:
                await step()
            except BootstrapTimeout:
                logger.error("Creating `%s` cluster failed on `%s`!", self, step_name)
                raise
            except TalosOnHcloudError as e:
                completed = self._result.completed_steps
                logger.error("Creating `%s` cluster failed on `%s`! %s", self, step_name, e)
                raise BootstrapError(completed[-1] if completed else STEP_NONE, e) from e

            self._result.completed_steps.append(step_name)
            logger.info("Creating `%s` cluster: %s", self, step_name)

        self.merge_warning_messages(*self._nodes)

        self._result.nodes = [node.get_result() for node in self._nodes]
        self._result.warnings = list(self.get_warning_messages())
        self._result.talosconfig_path = str(self._store.talosconfig_path)
        self._result.kubeconfig_path = str(self._store.kubeconfig_path)

        logger.info("Creating `%s` cluster done", self)

        return self._result

    async def _generate_config(self) -> None:
        await self._generator.generate(self._spec)

    async def _provision_resources(self) -> None:
        await self._provisioner.ensure_resources()

    async def _provision_first_control_plane(self) -> None:
        control_planes = await self._provisioner.list_servers(role=NodeRole.control_plane)

        if control_planes:
            logger.info("Not creating first control plane, `%s` exists", control_planes[0].name)
            self._first_control_plane = control_planes[0]
        else:
            pool = self._spec.get_pools(NodeRole.control_plane)[0]
            node = (await self._provision_nodes(pool.name, 1))[0]
            if node.error:
                raise node.error

            self._first_control_plane = node.server

        if not self._store.get_endpoint():
            await self._fix_endpoint(control_planes or [self._first_control_plane])

    async def _fix_endpoint(self, control_planes: List[ServerData]) -> None:
        """Point the cluster endpoint at the first control plane.

        Machine configuration is generated before any address is known, so both the persisted
        documents and control planes that already booted with the placeholder are patched.
        """

        endpoint = f"https://{self._first_control_plane.public_ip}:{settings.KUBERNETES_API_PORT}"

        logger.info("Setting cluster endpoint to `%s`...", endpoint)

        patch = [{"op": "replace", "path": f"/{ENDPOINT_PATH}", "value": endpoint}]
        for server in control_planes:
            await self._wait_for_talos_api(server)
            await self._talos.patch_machine_config(server.public_ip, patch)

        self._store.set_endpoint(endpoint)

        logger.info("Setting cluster endpoint to `%s` done", endpoint)

    async def _bootstrap(self) -> None:
        if self._store.is_bootstrapped():
            logger.info("Not bootstrapping `%s`, as it was bootstrapped before", self)
            return

        server = self._first_control_plane
        await self._wait_for_talos_api(server)

        logger.info("Bootstrapping etcd on `%s`...", server.name)

        if await self._talos.bootstrap(server.public_ip):
            self._result.bootstrapped_now = True
        else:
            self.add_warning_message("etcd on `%s` was already bootstrapped", server.name)

        self._store.mark_bootstrapped()

        logger.info("Bootstrapping etcd on `%s` done", server.name)

    async def _wait_for_kubernetes_api(self) -> None:
        address = self._first_control_plane.public_ip

        async def is_available() -> bool:
            return await self._kubernetes.api_available(address)

        await poll_until(
            is_available,
            self._timeouts.kubernetes_api,
            f"Kubernetes API at `{address}`",
            timeout_error=BootstrapTimeout,
            resource=self._first_control_plane.name,
            hint="Re-run `create` later, etcd bootstrap is not issued again",
        )

    async def _retrieve_kubeconfig(self) -> None:
        await self._talos.kubeconfig(
            self._first_control_plane.public_ip, self._store.kubeconfig_path
        )

    async def _provision_remaining_nodes(self) -> None:
        servers = await self._provisioner.list_servers()

        for server in servers:
            pool = self._spec.get_pool(server.pool)
            if pool is None:
                self.add_warning_message(
                    "Server `%s` belongs to pool `%s` which is not defined anymore",
                    server.name,
                    server.pool,
                )
                continue

            # booted nodes may still be on their way to Ready
            self._nodes.append(
                self._scaler.create_node(pool, server.index, server, state=NodeState.joining)
            )

        missing: Dict[str, int] = {}
        for pool in self._spec.node_pools:
            existing = len([server for server in servers if server.pool == pool.name])
            if existing < pool.count:
                missing[pool.name] = pool.count - existing

        for pool_name, count in missing.items():
            self._nodes.extend(await self._provision_nodes(pool_name, count))

        failed = [node for node in self._nodes if node.state == NodeState.failed]
        if failed:
            raise PartialScaleFailure([node.get_result() for node in failed])

        control_plane_addresses = [
            node.public_ip for node in self._nodes if node.pool.is_control_plane
        ]
        await self._talos.configure_endpoints(control_plane_addresses)

    async def _install_overlay(self) -> None:
        await self._overlay.install_prerequisites()
        await self._overlay.install(
            settings.CILIUM_CHART_REF,
            get_cilium_values(self._spec, self._spec.control_plane_count),
        )
        await self._overlay.wait_ready(self._timeouts.overlay_ready)

    async def _wait_for_nodes(self) -> None:
        pending = [node for node in self._nodes if node.state == NodeState.joining]

        await asyncio.gather(*[node.wait_ready() for node in pending])

        if any(node.state != NodeState.ready for node in self._nodes):
            raise PartialScaleFailure([node.get_result() for node in self._nodes])

    async def _provision_nodes(self, pool_name: str, count: int) -> List[ClusterNode]:
        pool = self._spec.get_pool(pool_name)
        servers = await self._provisioner.list_servers(pool_name=pool.name)
        indices = self._scaler.get_next_indices(pool, servers, count)
        self._store.record_index(pool.name, indices[-1])

        user_data = self._store.read_role_config(pool.role)
        semaphore = asyncio.Semaphore(self._add_node_concurrency)
        nodes = [self._scaler.create_node(pool, index) for index in indices]

        async def provision(node: ClusterNode) -> None:
            async with semaphore:
                await node.provision(user_data)

        await asyncio.gather(*[provision(node) for node in nodes])

        return nodes

    async def _wait_for_talos_api(self, server: ServerData) -> None:
        async def check_version() -> str:
            return await self._talos.version(server.public_ip, self._timeouts.talos_precheck)

        await poll_until(
            check_version,
            self._timeouts.talos_api,
            f"Talos API of `{server.name}`",
            retry_on=(CommandError,),
            resource=server.name,
            hint="Check the firewall allow-list for your current address",
        )
