import logging
from typing import Dict, FrozenSet, Optional

from talos_on_hcloud.exceptions import (
    CommandError,
    ManagementApiUnreachable,
    NodeRemovalBlocked,
    ReadinessTimeout,
    TalosOnHcloudError,
)
from talos_on_hcloud.hcloud.provisioner import InfrastructureProvisioner, get_node_name
from talos_on_hcloud.kubernetes import KubernetesApi
from talos_on_hcloud.mixins import WarningMessagesMixin
from talos_on_hcloud.models import (
    NodeData,
    NodePoolData,
    NodeResult,
    NodeState,
    ResetOutcome,
    ServerData,
    Timeouts,
)
from talos_on_hcloud.polling import poll_until
from talos_on_hcloud.talos import TalosApi

logger = logging.getLogger(__name__)

KUBELET_LOG_TAIL = 20

TRANSITIONS: Dict[NodeState, FrozenSet[NodeState]] = {
    NodeState.provisioning: frozenset({NodeState.joining, NodeState.failed}),
    NodeState.joining: frozenset({NodeState.ready, NodeState.failed}),
    NodeState.ready: frozenset({NodeState.precheck_ok, NodeState.blocked}),
    NodeState.precheck_ok: frozenset({NodeState.draining, NodeState.blocked}),
    NodeState.draining: frozenset({NodeState.cordoned, NodeState.blocked}),
    NodeState.cordoned: frozenset({NodeState.removing, NodeState.blocked}),
    NodeState.removing: frozenset({NodeState.removed, NodeState.blocked}),
    NodeState.failed: frozenset(),
    NodeState.removed: frozenset(),
    NodeState.blocked: frozenset(),
}


class InvalidNodeTransition(TalosOnHcloudError):
    message = "Invalid node state transition"


class ClusterNode(WarningMessagesMixin):
    """Single Talos node of a pool together with its lifecycle.

    New nodes go through `provisioning -> joining -> ready`, nodes being removed go through
    `ready -> precheck_ok -> draining -> cordoned -> removing -> removed`. Any step may end the
    lifecycle in `failed` (addition) or `blocked` (removal). Every transition is recorded in
    `state_log`.
    """

    def __init__(
        self,
        cluster_name: str,
        pool: NodePoolData,
        index: int,
        provisioner: InfrastructureProvisioner,
        talos: TalosApi,
        kubernetes: KubernetesApi,
        timeouts: Timeouts,
        server: Optional[ServerData] = None,
        state: Optional[NodeState] = None,
    ) -> None:
        super().__init__()

        self.pool = pool
        self.index = index
        self.name = get_node_name(cluster_name, pool.name, index)
        self.server = server
        if state is None:
            state = NodeState.ready if server else NodeState.provisioning
        self.state = state
        self.state_log = []

        self._provisioner = provisioner
        self._talos = talos
        self._kubernetes = kubernetes
        self._timeouts = timeouts

        self._error: Optional[TalosOnHcloudError] = None
        self._timed_out = False

    def __str__(self) -> str:
        return self.name

    @property
    def error(self) -> Optional[TalosOnHcloudError]:
        return self._error

    @property
    def public_ip(self) -> Optional[str]:
        return self.server.public_ip if self.server else None

    def get_data(self) -> NodeData:
        """Return model-related data from the node."""

        return NodeData(
            name=self.name,
            pool=self.pool.name,
            index=self.index,
            role=self.pool.role,
            server_id=self.server.id if self.server else None,
            public_ip=self.public_ip,
            private_ip=self.server.private_ip if self.server else None,
            state=self.state,
            state_log=list(self.state_log),
        )

    def get_result(self) -> NodeResult:
        return NodeResult(
            node_name=self.name,
            state=self.state,
            error=self._error.get_message() if self._error else None,
            hint=self._error.hint if self._error else None,
            timed_out=self._timed_out,
            state_log=list(self.state_log),
        )

    async def add(self, user_data: str) -> NodeResult:
        """Create the node and wait until the cluster reports it Ready."""

        if await self.provision(user_data):
            await self.wait_ready()

        return self.get_result()

    async def provision(self, user_data: str) -> bool:
        """Create the server with machine configuration as its boot payload.

        The node joins the cluster on its own once booted, so no explicit join is issued.
        """

        logger.info("Provisioning `%s` node...", self)

        self._add_state_log("[1/3] Creating server...")

        try:
            self.server = await self._provisioner.create_server(
                self.pool.name, self.index, user_data
            )
        except TalosOnHcloudError as e:
            self._fail(NodeState.failed, e)
            logger.error("Provisioning `%s` node failed! %s", self, e)
            return False

        self._set_state(
            NodeState.joining,
            f"[2/3] Server `{self.server.id}` created with address `{self.public_ip}`,"
            " waiting for the node to join...",
        )

        logger.info("Provisioning `%s` node done", self)

        return True

    async def wait_ready(self) -> bool:
        logger.info("Waiting for `%s` node to become Ready...", self)

        try:
            await poll_until(
                self._is_ready,
                self._timeouts.node_ready,
                f"node `{self.name}` to report Ready",
                retry_on=(CommandError,),
                resource=self.name,
                hint="The node may still join later, check it with `talos-on-hcloud status`",
            )
        except ReadinessTimeout as e:
            self._timed_out = True
            await self._collect_kubelet_logs()
            self._fail(NodeState.failed, e)
            logger.warning("Waiting for `%s` node to become Ready failed with timeout!", self)
            return False

        self._set_state(NodeState.ready, "[3/3] Node is Ready")

        logger.info("Waiting for `%s` node to become Ready done", self)

        return True

    async def remove(self) -> NodeResult:
        """Gracefully take the node out of the cluster and delete its server.

        Cluster API deletion happens only after the node is confirmed NotReady and unschedulable,
        and server deletion only after the cluster API deletion.
        """

        logger.info("Removing `%s` node...", self)

        steps = (
            self._precheck,
            self._reset,
            self._wait_cordoned,
            self._delete,
        )

        for step in steps:
            try:
                await step()
            except TalosOnHcloudError as e:
                self._fail(NodeState.blocked, e)
                logger.error("Removing `%s` node failed! %s", self, e)
                return self.get_result()

        logger.info("Removing `%s` node done", self)

        return self.get_result()

    async def _precheck(self) -> None:
        self._add_state_log("[1/5] Checking Talos API connectivity...")

        try:
            version = await self._talos.version(
                self.public_ip, timeout=self._timeouts.talos_precheck
            )
        except CommandError as e:
            raise ManagementApiUnreachable(
                self.name, self.public_ip, (e.stderr or str(e)).strip()
            ) from e

        self._set_state(NodeState.precheck_ok, f"[1/5] Talos API reachable ({version})")

    async def _reset(self) -> None:
        self._add_state_log("[2/5] Issuing graceful reset...")

        outcome = await self._talos.reset(self.public_ip, self._timeouts.talos_reset)

        if outcome == ResetOutcome.unreachable_from_start:
            raise ManagementApiUnreachable(
                self.name, self.public_ip, "reset request could not be delivered"
            )

        if outcome == ResetOutcome.rejected:
            raise NodeRemovalBlocked(
                "node rejected the reset request",
                resource=self.name,
                hint=f"Inspect the node with `talosctl --nodes {self.public_ip} dmesg`",
            )

        self._set_state(NodeState.draining, f"[2/5] Reset accepted ({outcome.value})")

    async def _wait_cordoned(self) -> None:
        self._add_state_log("[3/5] Waiting for NotReady,SchedulingDisabled...")

        try:
            await poll_until(
                self._is_cordoned,
                self._timeouts.node_cordon,
                f"node `{self.name}` to report NotReady,SchedulingDisabled",
                retry_on=(CommandError,),
                resource=self.name,
                hint="Check the node with `kubectl describe node` and re-run the scale command",
            )
        except ReadinessTimeout:
            self._timed_out = True
            raise

        self._set_state(NodeState.cordoned, "[3/5] Node is NotReady,SchedulingDisabled")

    async def _delete(self) -> None:
        self._set_state(NodeState.removing, "[4/5] Deleting node from the cluster API...")
        await self._kubernetes.delete_node(self.name)

        self._add_state_log(f"[5/5] Deleting server `{self.server.id}`...")
        await self._provisioner.delete_server(self.server.id)

        self._set_state(NodeState.removed, "[5/5] Node removed")

    async def _is_ready(self) -> bool:
        status = await self._kubernetes.get_node(self.name)
        return status is not None and status.ready

    async def _is_cordoned(self) -> bool:
        status = await self._kubernetes.get_node(self.name)

        # node object already gone means someone finished the job for us
        return status is None or status.cordoned

    async def _collect_kubelet_logs(self) -> None:
        if not self.public_ip:
            return

        try:
            logs = await self._talos.logs(self.public_ip, "kubelet", tail=KUBELET_LOG_TAIL)
        except CommandError as e:
            self.add_warning_message("Can't fetch kubelet logs of `%s`: %s", self.name, e)
            return

        self._add_state_log(f"Last kubelet log lines:\n{logs.rstrip()}")

    def _set_state(self, state: NodeState, log_entry: str) -> None:
        if state not in TRANSITIONS[self.state]:
            raise InvalidNodeTransition(
                f"`{self.state.value}` -> `{state.value}`", resource=self.name
            )

        logger.debug("Node `%s` state: `%s` -> `%s`", self, self.state.value, state.value)

        self.state = state
        self._add_state_log(log_entry)

    def _fail(self, state: NodeState, error: TalosOnHcloudError) -> None:
        self._error = error
        self._set_state(state, f"{type(error).__name__}: {error}")

    def _add_state_log(self, log_entry: str) -> None:
        self.state_log.append(log_entry)
