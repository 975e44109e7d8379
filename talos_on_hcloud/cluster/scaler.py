import asyncio
import logging
from typing import List, Optional, Tuple

from talos_on_hcloud import settings
from talos_on_hcloud.cluster.nodes import ClusterNode
from talos_on_hcloud.exceptions import ClusterNotFound, NodeRemovalBlocked, PartialScaleFailure
from talos_on_hcloud.hcloud.provisioner import InfrastructureProvisioner
from talos_on_hcloud.kubernetes import KubernetesApi
from talos_on_hcloud.mixins import WarningMessagesMixin
from talos_on_hcloud.models import (
    ClusterSpec,
    NodePoolData,
    NodeResult,
    NodeRole,
    NodeState,
    ScaleResult,
    ServerData,
    Timeouts,
)
from talos_on_hcloud.talos import ConfigBundleStore, TalosApi

logger = logging.getLogger(__name__)


def get_quorum_warnings(current: int, target: int) -> List[str]:
    """Advisory etcd quorum notes for control plane scale down from `current` to `target`."""

    warnings = []

    if target % 2 == 0:
        warnings.append(
            f"{target} control plane node(s) will remain, odd count is recommended as an even"
            " member doesn't add failure tolerance"
        )

    tolerance = (current - 1) // 2
    removed = current - target
    if removed > tolerance:
        warnings.append(
            f"removing {removed} of {current} control plane nodes exceeds the failure tolerance"
            f" of {tolerance}, nodes are removed one by one so etcd membership is updated in"
            " between"
        )

    return warnings


class NodePoolScaler(WarningMessagesMixin):
    """Brings a single pool from its live node count to the target count."""

    def __init__(
        self,
        spec: ClusterSpec,
        provisioner: InfrastructureProvisioner,
        talos: TalosApi,
        kubernetes: KubernetesApi,
        store: ConfigBundleStore,
        timeouts: Timeouts,
        add_node_concurrency: int = settings.ADD_NODE_CONCURRENCY,
    ) -> None:
        super().__init__()

        self._spec = spec
        self._provisioner = provisioner
        self._talos = talos
        self._kubernetes = kubernetes
        self._store = store
        self._timeouts = timeouts
        self._add_node_concurrency = add_node_concurrency

    def resolve_pool(self, role: NodeRole, pool_name: Optional[str] = None) -> NodePoolData:
        """Pick the pool to scale, by name or as the only pool of given role."""

        pools = self._spec.get_pools(role)

        if pool_name is not None:
            pool = self._spec.get_pool(pool_name)
            if pool is None or pool.role != role:
                raise ClusterNotFound(
                    f"no `{role.value}` pool named `{pool_name}`",
                    resource=self._spec.name,
                    hint="Available pools: " + ", ".join(p.name for p in pools),
                )
            return pool

        if len(pools) != 1:
            raise ClusterNotFound(
                f"{len(pools)} `{role.value}` pools defined, pick one",
                resource=self._spec.name,
                hint="Use `--pool` with one of: " + ", ".join(p.name for p in pools),
            )

        return pools[0]

    def create_node(
        self,
        pool: NodePoolData,
        index: int,
        server: Optional[ServerData] = None,
        state: Optional[NodeState] = None,
    ) -> ClusterNode:
        return ClusterNode(
            cluster_name=self._spec.name,
            pool=pool,
            index=index,
            provisioner=self._provisioner,
            talos=self._talos,
            kubernetes=self._kubernetes,
            timeouts=self._timeouts,
            server=server,
            state=state,
        )

    def get_next_indices(self, pool: NodePoolData, servers: List[ServerData], count: int):
        """Indices for `count` new nodes, never reusing one held now or handed out before."""

        live_max = max((server.index or 0 for server in servers), default=0)
        start = max(live_max, self._store.get_index_high_water_mark(pool.name))

        return list(range(start + 1, start + count + 1))

    async def scale(self, pool: NodePoolData, target: int) -> ScaleResult:
        """Scale given pool to `target` nodes.

        Current count is always read from the provider. Scale up runs node additions with
        bounded concurrency and raises `PartialScaleFailure` if any of them failed. Scale down
        removes nodes with the highest indices one by one and stops on the first failure.
        """

        self._store.ensure_exists(self._spec.name)

        if target < 1:
            raise NodeRemovalBlocked(
                f"pool `{pool.name}` can't be scaled below 1 node",
                resource=pool.name,
                hint="Use `talos-on-hcloud destroy` to remove the whole cluster",
            )

        servers = await self._provisioner.list_servers(pool_name=pool.name)
        current = len(servers)

        result = ScaleResult(pool=pool.name, current=current, target=target)

        if target == current:
            logger.info("Not scaling `%s` pool, as it already has %s node(s)", pool.name, current)
            return result

        if target > current:
            result.added = await self._scale_up(pool, servers, target - current)
        else:
            result.removed, result.abandoned = await self._scale_down(
                pool, servers, current - target
            )

        result.warnings.extend(self.get_warning_messages())

        if not result.succeeded:
            raise PartialScaleFailure(
                result.results, abandoned=result.abandoned, warnings=result.warnings
            )

        return result

    async def _scale_up(
        self, pool: NodePoolData, servers: List[ServerData], count: int
    ) -> List[NodeResult]:
        indices = self.get_next_indices(pool, servers, count)

        logger.info("Scaling up `%s` pool with indices %s...", pool.name, indices)

        # reserve indices before any server exists, so an interruption never reuses them
        self._store.record_index(pool.name, indices[-1])

        user_data = self._store.read_role_config(pool.role)
        semaphore = asyncio.Semaphore(self._add_node_concurrency)
        nodes = [self.create_node(pool, index) for index in indices]

        async def add_node(node: ClusterNode) -> NodeResult:
            async with semaphore:
                return await node.add(user_data)

        results = await asyncio.gather(*[add_node(node) for node in nodes])

        self.merge_warning_messages(*nodes)

        logger.info("Scaling up `%s` pool done", pool.name)

        return list(results)

    async def _scale_down(
        self,
        pool: NodePoolData,
        servers: List[ServerData],
        count: int,
    ) -> Tuple[List[NodeResult], List[str]]:
        to_remove = sorted(servers, key=lambda server: server.index or 0, reverse=True)[:count]

        if pool.is_control_plane:
            await self._check_control_plane_removal(count)

        logger.info(
            "Scaling down `%s` pool by removing %s...",
            pool.name,
            [server.name for server in to_remove],
        )

        removed: List[NodeResult] = []

        for position, server in enumerate(to_remove):
            node = self.create_node(pool, server.index, server=server)
            node_result = await node.remove()
            removed.append(node_result)

            if not node_result.succeeded:
                abandoned = [s.name for s in to_remove[position + 1 :]]
                logger.error(
                    "Scaling down `%s` pool stopped on `%s`, not attempted: %s",
                    pool.name,
                    node.name,
                    abandoned,
                )
                return removed, abandoned

        logger.info("Scaling down `%s` pool done", pool.name)

        return removed, []

    async def _check_control_plane_removal(self, count: int) -> None:
        control_planes = await self._provisioner.list_servers(role=NodeRole.control_plane)
        current = len(control_planes)
        target = current - count

        if target < 1:
            raise NodeRemovalBlocked(
                "removing every control plane node would leave the cluster unrecoverable",
                resource=self._spec.name,
            )

        for warning in get_quorum_warnings(current, target):
            logger.warning(warning)
            self.add_warning_message(warning)
