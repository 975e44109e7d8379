from talos_on_hcloud.kubernetes.client import KubectlClient, KubernetesApi, parse_node_status

__all__ = (
    "KubectlClient",
    "KubernetesApi",
    "parse_node_status",
)
