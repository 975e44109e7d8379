from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from talos_on_hcloud import settings
from talos_on_hcloud.polling import PollingConfig

Labels = Dict[str, str]

# location -> network zone
SUPPORTED_LOCATIONS: Dict[str, str] = {
    "fsn1": "eu-central",
    "nbg1": "eu-central",
    "hel1": "eu-central",
    "ash": "us-east",
    "hil": "us-west",
    "sin": "ap-southeast",
}


class NodeRole(Enum):
    control_plane = "control-plane"
    worker = "worker"


class NodeState(Enum):
    provisioning = "provisioning"
    joining = "joining"
    ready = "ready"
    failed = "failed"
    precheck_ok = "precheck_ok"
    draining = "draining"
    cordoned = "cordoned"
    removing = "removing"
    removed = "removed"
    blocked = "blocked"


class ResetOutcome(Enum):
    completed = "completed"
    acknowledged_then_unreachable = "acknowledged_then_unreachable"
    rejected = "rejected"
    unreachable_from_start = "unreachable_from_start"


class NodePoolData(BaseModel):
    name: str
    server_type: str
    count: int = Field(1, ge=1)
    role: NodeRole = NodeRole.worker
    labels: Labels = {}

    model_config = ConfigDict(extra="forbid")

    @property
    def is_control_plane(self) -> bool:
        return self.role == NodeRole.control_plane


class NetworkData(BaseModel):
    network_cidr: str = "10.0.0.0/16"
    subnet_cidr: str = "10.0.1.0/24"
    pod_cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.96.0.0/12"

    model_config = ConfigDict(extra="forbid")


class TalosData(BaseModel):
    version: str = "v1.9.5"
    kubernetes_version: str = "1.32.3"
    # id of the Hetzner snapshot holding the Talos disk image
    image: Optional[str] = None
    cluster_endpoint: Optional[str] = None
    config_patches: List[Dict[str, Any]] = []

    model_config = ConfigDict(extra="forbid")

    @field_validator("image", mode="before")
    @classmethod
    def validate_image(cls, value):
        # snapshot ids are numeric, but YAML users rarely quote them
        if isinstance(value, int):
            return str(value)

        return value


class OverlayData(BaseModel):
    chart_version: Optional[str] = None
    hubble: bool = True
    ipv6: bool = False
    helm_values: Dict[str, Any] = {}

    model_config = ConfigDict(extra="forbid")


class ClusterSpec(BaseModel):
    name: str
    location: str
    network_zone: Optional[str] = None
    hcloud_token: Optional[str] = None
    network: NetworkData = Field(default_factory=NetworkData)
    talos: TalosData = Field(default_factory=TalosData)
    overlay: OverlayData = Field(default_factory=OverlayData)
    node_pools: List[NodePoolData]

    model_config = ConfigDict(extra="forbid")

    def get_pool(self, name: str) -> Optional[NodePoolData]:
        for pool in self.node_pools:
            if pool.name == name:
                return pool

        return None

    def get_pools(self, role: Optional[NodeRole] = None) -> List[NodePoolData]:
        return [pool for pool in self.node_pools if role is None or pool.role == role]

    @property
    def control_plane_count(self) -> int:
        return sum(pool.count for pool in self.get_pools(NodeRole.control_plane))


class ServerData(BaseModel):
    """Subset of the Hetzner server resource we care about."""

    id: int
    name: str
    status: str
    labels: Labels = {}
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ServerData":
        public_net = data.get("public_net") or {}
        private_net = data.get("private_net") or []

        return cls(
            id=data["id"],
            name=data["name"],
            status=data.get("status", "unknown"),
            labels=data.get("labels") or {},
            public_ip=(public_net.get("ipv4") or {}).get("ip"),
            private_ip=private_net[0].get("ip") if private_net else None,
        )

    @property
    def pool(self) -> Optional[str]:
        return self.labels.get(settings.LABEL_POOL)

    @property
    def index(self) -> Optional[int]:
        """Node index from the label, falling back to the numeric suffix of the name."""

        raw_index = self.labels.get(settings.LABEL_INDEX)
        if raw_index is None:
            raw_index = self.name.rsplit("-", 1)[-1]

        try:
            return int(raw_index)
        except ValueError:
            return None


class ClusterResources(BaseModel):
    network_id: Optional[int] = None
    firewall_id: Optional[int] = None
    ssh_key_id: Optional[int] = None
    server_ids: List[int] = []


class KubernetesNodeStatus(BaseModel):
    name: str
    ready: bool
    schedulable: bool

    @property
    def cordoned(self) -> bool:
        return not self.ready and not self.schedulable


class NodeData(BaseModel):
    name: str
    pool: str
    index: int
    role: NodeRole
    server_id: Optional[int] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    state: NodeState = NodeState.provisioning
    state_log: List[str] = []

    model_config = ConfigDict(extra="ignore")


class NodeResult(BaseModel):
    node_name: str
    state: NodeState
    error: Optional[str] = None
    hint: Optional[str] = None
    timed_out: bool = False
    state_log: List[str] = []

    @property
    def succeeded(self) -> bool:
        return self.state in (NodeState.ready, NodeState.removed)


class ScaleResult(BaseModel):
    pool: str
    current: int
    target: int
    added: List[NodeResult] = []
    removed: List[NodeResult] = []
    abandoned: List[str] = []
    warnings: List[str] = []

    @property
    def results(self) -> List[NodeResult]:
        return self.added + self.removed

    @property
    def succeeded(self) -> bool:
        return not self.abandoned and all(result.succeeded for result in self.results)


class CreateClusterResult(BaseModel):
    cluster_name: str
    completed_steps: List[str] = []
    bootstrapped_now: bool = False
    nodes: List[NodeResult] = []
    warnings: List[str] = []
    talosconfig_path: Optional[str] = None
    kubeconfig_path: Optional[str] = None


class DestroyClusterResult(BaseModel):
    cluster_name: str
    deleted_servers: List[str] = []
    deleted_network: bool = False
    deleted_firewall: bool = False
    deleted_ssh_key: bool = False
    purged: bool = False


class NodeStatusData(BaseModel):
    name: str
    pool: Optional[str]
    server_id: int
    provider_status: str
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    kubernetes_ready: Optional[bool] = None
    schedulable: Optional[bool] = None


class ClusterStatusData(BaseModel):
    cluster_name: str
    bootstrapped: bool = False
    talos_healthy: Optional[bool] = None
    nodes: List[NodeStatusData] = []


def _polling(timeout: timedelta, interval: timedelta) -> PollingConfig:
    return PollingConfig(timeout=timeout, interval=interval)


class Timeouts(BaseModel):
    """Every bounded wait used by the orchestration."""

    server_action: PollingConfig = _polling(
        settings.SERVER_ACTION_TIMEOUT, settings.SERVER_ACTION_INTERVAL
    )
    talos_api: PollingConfig = _polling(settings.TALOS_API_TIMEOUT, settings.TALOS_API_INTERVAL)
    kubernetes_api: PollingConfig = _polling(
        settings.KUBERNETES_API_TIMEOUT, settings.KUBERNETES_API_INTERVAL
    )
    node_ready: PollingConfig = _polling(settings.NODE_READY_TIMEOUT, settings.NODE_READY_INTERVAL)
    node_cordon: PollingConfig = _polling(
        settings.NODE_CORDON_TIMEOUT, settings.NODE_CORDON_INTERVAL
    )
    overlay_ready: PollingConfig = _polling(
        settings.OVERLAY_READY_TIMEOUT, settings.OVERLAY_READY_INTERVAL
    )
    firewall_delete: PollingConfig = _polling(
        settings.FIREWALL_DELETE_RETRY_INTERVAL * settings.FIREWALL_DELETE_RETRY_COUNT,
        settings.FIREWALL_DELETE_RETRY_INTERVAL,
    )
    talos_precheck: timedelta = settings.TALOS_PRECHECK_TIMEOUT
    talos_reset: timedelta = settings.TALOS_RESET_TIMEOUT

    model_config = ConfigDict(extra="forbid")
