import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import dpath
import yaml
from dpath.exceptions import PathNotFound
from pydantic import BaseModel

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import ClusterNotFound, TalosOnHcloudError
from talos_on_hcloud.models import ClusterSpec, NodeRole
from talos_on_hcloud.talos.client import TalosApi

logger = logging.getLogger(__name__)

ENDPOINT_PATH = "cluster/controlPlane/endpoint"

ROLE_CONFIG_FILENAMES = {
    NodeRole.control_plane: "controlplane.yaml",
    NodeRole.worker: "worker.yaml",
}


class BundleState(BaseModel):
    """Small mutable part of the bundle, kept next to the generated documents."""

    bootstrapped: bool = False
    endpoint: Optional[str] = None
    # highest index ever handed out per pool, including nodes removed since
    pool_indices: Dict[str, int] = {}


class ConfigBundleStore:
    """Durable storage of the generated configuration bundle of a single cluster."""

    def __init__(self, cluster_dir: Path) -> None:
        self.cluster_dir = cluster_dir

    def __str__(self) -> str:
        return str(self.cluster_dir)

    @property
    def secrets_path(self) -> Path:
        return self.cluster_dir / "secrets.yaml"

    @property
    def talosconfig_path(self) -> Path:
        return self.cluster_dir / "talosconfig"

    @property
    def kubeconfig_path(self) -> Path:
        return self.cluster_dir / "kubeconfig"

    @property
    def state_path(self) -> Path:
        return self.cluster_dir / "state.yaml"

    @property
    def patches_dir(self) -> Path:
        return self.cluster_dir / "patches"

    def get_role_config_path(self, role: NodeRole) -> Path:
        return self.cluster_dir / ROLE_CONFIG_FILENAMES[role]

    def exists(self) -> bool:
        return all(
            path.exists()
            for path in (
                self.secrets_path,
                self.talosconfig_path,
                self.get_role_config_path(NodeRole.control_plane),
                self.get_role_config_path(NodeRole.worker),
            )
        )

    def ensure_exists(self, cluster_name: str) -> None:
        """Fail unless the bundle and the Kubernetes API credentials are both in place.

        `exists` only covers the generated bundle. Nodes can't be confirmed Ready or cordoned
        without the kubeconfig, which is retrieved only after the etcd bootstrap.
        """

        if not self.exists():
            raise ClusterNotFound(
                f"configuration bundle not found in `{self.cluster_dir}`",
                resource=cluster_name,
            )

        if not self.kubeconfig_path.exists():
            raise ClusterNotFound(
                f"kubeconfig not found in `{self.cluster_dir}`, cluster creation did not finish",
                resource=cluster_name,
                hint="Re-run `talos-on-hcloud create` to finish creating the cluster",
            )

    def read_role_config(self, role: NodeRole) -> str:
        return self.get_role_config_path(role).read_text()

    def update_role_configs(self, mutate: Callable[[Dict[str, Any]], None]) -> None:
        """Apply `mutate` to the machine configuration document of every role and save it."""

        for role in ROLE_CONFIG_FILENAMES:
            path = self.get_role_config_path(role)
            documents = list(yaml.safe_load_all(path.read_text()))

            for document in documents:
                if isinstance(document, dict) and "machine" in document:
                    mutate(document)

            path.write_text(yaml.safe_dump_all(documents, sort_keys=False))

    def load_state(self) -> BundleState:
        if not self.state_path.exists():
            return BundleState()

        return BundleState.model_validate(yaml.safe_load(self.state_path.read_text()) or {})

    def save_state(self, state: BundleState) -> None:
        self.cluster_dir.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(yaml.safe_dump(state.model_dump(), sort_keys=False))

    def is_bootstrapped(self) -> bool:
        return self.load_state().bootstrapped

    def mark_bootstrapped(self) -> None:
        state = self.load_state()
        state.bootstrapped = True
        self.save_state(state)

    def get_index_high_water_mark(self, pool_name: str) -> int:
        return self.load_state().pool_indices.get(pool_name, 0)

    def record_index(self, pool_name: str, index: int) -> None:
        state = self.load_state()
        state.pool_indices[pool_name] = max(state.pool_indices.get(pool_name, 0), index)
        self.save_state(state)

    def get_endpoint(self) -> Optional[str]:
        return self.load_state().endpoint

    def set_endpoint(self, endpoint: str) -> None:
        """Persist cluster endpoint into both role documents so later nodes boot with it."""

        def mutate(document: Dict[str, Any]) -> None:
            dpath.new(document, ENDPOINT_PATH, endpoint)

        self.update_role_configs(mutate)

        state = self.load_state()
        state.endpoint = endpoint
        self.save_state(state)

    def purge(self) -> None:
        logger.info("Removing configuration bundle `%s`...", self)

        shutil.rmtree(self.cluster_dir, ignore_errors=True)

        logger.info("Removing configuration bundle `%s` done", self)


def get_generation_patches(spec: ClusterSpec) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return machine configuration patches for all nodes and for control plane nodes only."""

    common = {
        "machine": {
            "kubelet": {
                "nodeIP": {"validSubnets": [spec.network.subnet_cidr]},
            },
            "features": {
                "kubePrism": {"enabled": True, "port": settings.KUBEPRISM_PORT},
            },
        },
        "cluster": {
            "network": {
                "cni": {"name": "none"},
                "podSubnets": [spec.network.pod_cidr],
                "serviceSubnets": [spec.network.service_cidr],
            },
            "proxy": {"disabled": True},
        },
    }

    control_plane = {
        "cluster": {
            "etcd": {"advertisedSubnets": [spec.network.subnet_cidr]},
        },
    }

    return common, control_plane


def apply_config_patches(document: Dict[str, Any], patches: List[Dict[str, Any]]) -> None:
    """Apply JSON-pointer style `{op, path, value}` patches in place."""

    for patch in patches:
        op = patch.get("op", "add")
        path = patch.get("path", "").strip("/")

        if not path:
            raise TalosOnHcloudError(f"config patch `{patch}` has no path")

        if op in ("add", "replace"):
            dpath.new(document, path, patch.get("value"))
        elif op == "remove":
            try:
                dpath.delete(document, path)
            except PathNotFound as e:
                raise TalosOnHcloudError(f"config patch can't remove missing `/{path}`") from e
        else:
            raise TalosOnHcloudError(
                f"config patch operation `{op}` is not supported, use `add`, `replace` or `remove`"
            )


class NodeConfigGenerator:
    """Generates the configuration bundle once and leaves it alone afterwards."""

    def __init__(self, talos: TalosApi, store: ConfigBundleStore) -> None:
        self._talos = talos
        self._store = store

    async def generate(self, spec: ClusterSpec) -> bool:
        """Generate the bundle unless it already exists. Return whether anything was generated."""

        if self._store.exists():
            logger.info("Not generating configuration of `%s`, as it already exists", spec.name)
            return False

        logger.info("Generating configuration of `%s`...", spec.name)

        self._store.cluster_dir.mkdir(parents=True, exist_ok=True)
        self._store.patches_dir.mkdir(parents=True, exist_ok=True)

        if not self._store.secrets_path.exists():
            await self._talos.gen_secrets(self._store.secrets_path)

        common_patch, control_plane_patch = get_generation_patches(spec)
        common_patch_path = self._store.patches_dir / "common.yaml"
        control_plane_patch_path = self._store.patches_dir / "controlplane.yaml"
        common_patch_path.write_text(yaml.safe_dump(common_patch, sort_keys=False))
        control_plane_patch_path.write_text(yaml.safe_dump(control_plane_patch, sort_keys=False))

        endpoint = spec.talos.cluster_endpoint or settings.PLACEHOLDER_ENDPOINT

        await self._talos.gen_config(
            cluster_name=spec.name,
            endpoint=endpoint,
            secrets_path=self._store.secrets_path,
            output_dir=self._store.cluster_dir,
            kubernetes_version=spec.talos.kubernetes_version,
            talos_version=spec.talos.version,
            patches=[common_patch_path],
            control_plane_patches=[control_plane_patch_path],
        )

        if spec.talos.config_patches:
            self._store.update_role_configs(
                lambda document: apply_config_patches(document, spec.talos.config_patches)
            )

        if spec.talos.cluster_endpoint:
            state = self._store.load_state()
            state.endpoint = spec.talos.cluster_endpoint
            self._store.save_state(state)

        logger.info("Generating configuration of `%s` done in `%s`", spec.name, self._store)

        return True
