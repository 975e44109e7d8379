import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

import appdirs
from yarl import URL

HCLOUD_TOKEN = os.getenv("HCLOUD_TOKEN")
HCLOUD_API_URL = URL(os.getenv("HCLOUD_API_URL", "https://api.hetzner.cloud/v1"))
HCLOUD_REQUEST_TIMEOUT = timedelta(seconds=30)
HCLOUD_PAGE_SIZE = 50

# used to detect the address that is put on the firewall allow-list
PUBLIC_ADDRESS_URL = URL(os.getenv("PUBLIC_ADDRESS_URL", "https://ipv4.icanhazip.com"))

TALOSCTL_PATH = Path(os.getenv("TALOSCTL_PATH", "talosctl"))
KUBECTL_PATH = Path(os.getenv("KUBECTL_PATH", "kubectl"))
HELM_PATH = Path(os.getenv("HELM_PATH", "helm"))
SSH_KEYGEN_PATH = Path(os.getenv("SSH_KEYGEN_PATH", "ssh-keygen"))

TALOS_API_PORT = 50000
KUBERNETES_API_PORT = 6443
KUBEPRISM_PORT = 7445

# used in the generated machine configuration until the first control plane address is known
PLACEHOLDER_ENDPOINT = f"https://127.0.0.1:{KUBERNETES_API_PORT}"

MANAGED_BY = "talos-on-hcloud"

LABEL_CLUSTER = "cluster"
LABEL_POOL = "pool"
LABEL_INDEX = "index"
LABEL_ROLE = "role"
LABEL_MANAGED_BY = "managed-by"
LABEL_TALOS_VERSION = "talos-version"

# how long and how often we wait for a provider action (server creation etc.) to finish
SERVER_ACTION_TIMEOUT = timedelta(minutes=5)
SERVER_ACTION_INTERVAL = timedelta(seconds=2)

# how long and how often we wait for the Talos API of a fresh node
TALOS_API_TIMEOUT = timedelta(minutes=5)
TALOS_API_INTERVAL = timedelta(seconds=5)

# how long and how often we wait for the Kubernetes API after bootstrap
KUBERNETES_API_TIMEOUT = timedelta(minutes=5)
KUBERNETES_API_INTERVAL = timedelta(seconds=5)

# how long and how often we wait for a node to report Ready
NODE_READY_TIMEOUT = timedelta(minutes=5)
NODE_READY_INTERVAL = timedelta(seconds=5)

# how long and how often we wait for a node to report NotReady,SchedulingDisabled after reset
NODE_CORDON_TIMEOUT = timedelta(minutes=2)
NODE_CORDON_INTERVAL = timedelta(seconds=2)

# how long and how often we wait for the overlay network pods
OVERLAY_READY_TIMEOUT = timedelta(minutes=5)
OVERLAY_READY_INTERVAL = timedelta(seconds=10)

# how long a single precheck call to the Talos API may take
TALOS_PRECHECK_TIMEOUT = timedelta(seconds=30)

# how long a graceful reset may take before talosctl gives up
TALOS_RESET_TIMEOUT = timedelta(minutes=10)

# firewall deletion is retried while servers are still being deleted
FIREWALL_DELETE_RETRY_COUNT = 12
FIREWALL_DELETE_RETRY_INTERVAL = timedelta(seconds=5)

# how many new nodes are provisioned at the same time during scale up
ADD_NODE_CONCURRENCY = 3

GATEWAY_API_CRDS_URL = (
    "https://github.com/kubernetes-sigs/gateway-api/releases/download/v1.2.1/experimental-install.yaml"
)
CILIUM_HELM_REPO_NAME = "cilium"
CILIUM_HELM_REPO_URL = "https://helm.cilium.io/"
CILIUM_CHART_REF = "cilium/cilium"
CILIUM_RELEASE_NAME = "cilium"
CILIUM_NAMESPACE = "kube-system"

DEFAULT_CLUSTER_FILE = Path("cluster.yaml")

LOGGING_BACKUP_COUNT = 99
LOG_FILENAME = "talos-on-hcloud.log"

APPLICATION_NAME = "talos_on_hcloud"
APPLICATION_AUTHOR = "talos-on-hcloud"

DEFAULT_DATADIR = Path(
    os.getenv(
        "TALOS_ON_HCLOUD_DATADIR", appdirs.user_data_dir(APPLICATION_NAME, APPLICATION_AUTHOR)
    )
)


def get_datadir(datadir: Optional[Path] = None) -> Path:
    if not datadir:
        datadir = DEFAULT_DATADIR
    datadir.mkdir(parents=True, exist_ok=True)
    return datadir


def get_cluster_dir(cluster_name: str, datadir: Optional[Path] = None) -> Path:
    return get_datadir(datadir) / cluster_name


def get_log_path(datadir: Optional[Path] = None) -> Path:
    return get_datadir(datadir) / LOG_FILENAME


def get_logging_config(datadir: Optional[Path] = None, verbose: bool = False):
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "compact": {
                "format": "[%(asctime)s] [%(levelname)-7s] [%(name)s] %(message)s",
            },
            "verbose": {
                "format": "[%(asctime)s] [%(levelname)-7s] [%(name)s:%(lineno)d] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG" if verbose else "INFO",
                "formatter": "verbose" if verbose else "compact",
            },
            "file": {
                "class": "talos_on_hcloud.log.ZippingRotatingFileHandler",
                "level": "DEBUG",
                "formatter": "verbose",
                "filename": get_log_path(datadir),
                "backupCount": LOGGING_BACKUP_COUNT,
                "rollover_on_start": True,
            },
        },
        "root": {
            "level": "INFO",
            "handlers": [
                "console",
                "file",
            ],
        },
        "loggers": {
            "talos_on_hcloud": {
                "level": "DEBUG",
            },
            "aiohttp": {
                "level": "WARNING",
            },
        },
    }
