from talos_on_hcloud.hcloud.client import HcloudClient
from talos_on_hcloud.hcloud.provisioner import InfrastructureProvisioner, get_node_name

__all__ = (
    "HcloudClient",
    "InfrastructureProvisioner",
    "get_node_name",
)
