from talos_on_hcloud.cluster.bootstrap import BootstrapSequencer
from talos_on_hcloud.cluster.cluster import Cluster, check_required_tools
from talos_on_hcloud.cluster.nodes import ClusterNode
from talos_on_hcloud.cluster.scaler import NodePoolScaler

__all__ = (
    "BootstrapSequencer",
    "Cluster",
    "ClusterNode",
    "NodePoolScaler",
    "check_required_tools",
)
