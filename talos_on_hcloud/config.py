import logging
from pathlib import Path

import yaml

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import TalosOnHcloudError, ValidationError
from talos_on_hcloud.models import ClusterSpec
from talos_on_hcloud.validation import validate_cluster_spec

logger = logging.getLogger(__name__)

EXAMPLE_CONFIG = """\
# Talos Linux cluster on Hetzner Cloud
# The API token is read from the HCLOUD_TOKEN environment variable.

name: {cluster_name}

# one of: fsn1, nbg1, hel1 (eu-central), ash (us-east), hil (us-west), sin (ap-southeast)
location: fsn1

network:
  network_cidr: 10.0.0.0/16
  subnet_cidr: 10.0.1.0/24
  pod_cidr: 10.244.0.0/16
  service_cidr: 10.96.0.0/12

talos:
  version: v1.9.5
  kubernetes_version: 1.32.3
  # id of a Hetzner snapshot created from the Talos Image Factory `hcloud-amd64.raw.xz` image
  image: null
  config_patches: []
  # - op: add
  #   path: /machine/time/servers
  #   value: [ntp1.hetzner.de]

overlay:
  hubble: true
  ipv6: false
  helm_values: {{}}

node_pools:
  - name: control-plane
    role: control-plane
    server_type: cx22
    count: 3
  - name: worker
    role: worker
    server_type: cx32
    count: 2
    labels:
      workload: general
"""


def load_cluster_spec(path: Path) -> ClusterSpec:
    """Read and validate the cluster file."""

    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ValidationError([f"{path}: can't read the cluster file: {e}"]) from e
    except yaml.YAMLError as e:
        raise ValidationError([f"{path}: not a valid YAML document: {e}"]) from e

    return validate_cluster_spec(raw if raw is not None else {})


def get_hcloud_token(spec: ClusterSpec) -> str:
    token = spec.hcloud_token or settings.HCLOUD_TOKEN

    if not token:
        raise ValidationError(
            ["hcloud_token: set the HCLOUD_TOKEN environment variable to a read & write API token"]
        )

    return token


def write_example_config(path: Path, cluster_name: str = "talos") -> Path:
    if path.exists():
        raise TalosOnHcloudError(
            f"`{path}` already exists",
            hint="Remove it or pass another path",
        )

    logger.info("Writing example cluster file `%s`...", path)

    path.write_text(EXAMPLE_CONFIG.format(cluster_name=cluster_name))

    logger.info("Writing example cluster file `%s` done", path)

    return path
