import logging
from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import dpath
import yaml
from dpath.types import MergeType

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import CommandError
from talos_on_hcloud.kubernetes import KubernetesApi
from talos_on_hcloud.models import ClusterSpec
from talos_on_hcloud.polling import PollingConfig, poll_until
from talos_on_hcloud.utils import run_subprocess_output

logger = logging.getLogger(__name__)

HELM_TIMEOUT = timedelta(minutes=10)
ROLLOUT_CHECK_TIMEOUT = timedelta(seconds=30)

# Talos mounts cgroup v2 itself and doesn't allow SYS_MODULE
TALOS_CILIUM_VALUES = {
    "cgroup": {
        "autoMount": {"enabled": False},
        "hostRoot": "/sys/fs/cgroup",
    },
    "securityContext": {
        "capabilities": {
            "ciliumAgent": [
                "CHOWN",
                "KILL",
                "NET_ADMIN",
                "NET_RAW",
                "IPC_LOCK",
                "SYS_ADMIN",
                "SYS_RESOURCE",
                "DAC_OVERRIDE",
                "FOWNER",
                "SETGID",
                "SETUID",
            ],
            "cleanCiliumState": ["NET_ADMIN", "SYS_ADMIN", "SYS_RESOURCE"],
        },
    },
}


def get_cilium_values(spec: ClusterSpec, control_plane_count: int) -> Dict[str, Any]:
    """Compute Helm values of the Cilium chart for given cluster."""

    values: Dict[str, Any] = deepcopy(TALOS_CILIUM_VALUES)

    dpath.merge(
        values,
        {
            "ipam": {"mode": "kubernetes"},
            "kubeProxyReplacement": True,
            # KubePrism load balances the API servers locally on every node
            "k8sServiceHost": "localhost",
            "k8sServicePort": settings.KUBEPRISM_PORT,
            "routingMode": "tunnel",
            "tunnelProtocol": "vxlan",
            "nodeIPAM": {"enabled": True},
            "defaultLBServiceIPAM": "nodeipam",
            "gatewayAPI": {"enabled": True},
            "operator": {"replicas": 2 if control_plane_count > 1 else 1},
            "hubble": {
                "enabled": spec.overlay.hubble,
                "relay": {"enabled": spec.overlay.hubble},
                "ui": {"enabled": spec.overlay.hubble},
            },
            "ipv6": {"enabled": spec.overlay.ipv6},
        },
    )

    dpath.merge(values, deepcopy(spec.overlay.helm_values), flags=MergeType.REPLACE)

    return values


class OverlayInstaller(ABC):
    """Installs the network overlay into a freshly bootstrapped cluster."""

    @abstractmethod
    async def install_prerequisites(self) -> None:
        ...

    @abstractmethod
    async def install(self, chart_ref: str, values: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def wait_ready(self, config: PollingConfig) -> None:
        ...


class CiliumInstaller(OverlayInstaller):
    """`OverlayInstaller` installing Cilium with `helm`."""

    def __init__(
        self,
        kubernetes: KubernetesApi,
        kubeconfig_path: Path,
        chart_version: Optional[str] = None,
        helm_path: Path = settings.HELM_PATH,
        kubectl_path: Path = settings.KUBECTL_PATH,
    ) -> None:
        self._kubernetes = kubernetes
        self._kubeconfig_path = kubeconfig_path
        self._chart_version = chart_version
        self._helm_path = helm_path
        self._kubectl_path = kubectl_path

    @property
    def values_path(self) -> Path:
        return self._kubeconfig_path.parent / "cilium-values.yaml"

    async def install_prerequisites(self) -> None:
        logger.info("Installing Gateway API CRDs...")

        await self._kubernetes.apply_manifest(settings.GATEWAY_API_CRDS_URL)

        logger.info("Installing Gateway API CRDs done")

    async def install(self, chart_ref: str, values: Dict[str, Any]) -> None:
        logger.info("Installing `%s` chart...", chart_ref)

        self.values_path.write_text(yaml.safe_dump(values, sort_keys=False))

        await self._helm(
            "repo",
            "add",
            settings.CILIUM_HELM_REPO_NAME,
            settings.CILIUM_HELM_REPO_URL,
            "--force-update",
        )

        args = [
            "upgrade",
            "--install",
            settings.CILIUM_RELEASE_NAME,
            chart_ref,
            "--namespace",
            settings.CILIUM_NAMESPACE,
            "--values",
            self.values_path,
        ]
        if self._chart_version:
            args.extend(["--version", self._chart_version])

        await self._helm(*args)

        logger.info("Installing `%s` chart done", chart_ref)

    async def wait_ready(self, config: PollingConfig) -> None:
        async def check_rollout() -> bool:
            for workload in ("daemonset/cilium", "deployment/cilium-operator"):
                await run_subprocess_output(
                    self._kubectl_path,
                    "rollout",
                    "status",
                    workload,
                    "--namespace",
                    settings.CILIUM_NAMESPACE,
                    "--timeout",
                    f"{int(ROLLOUT_CHECK_TIMEOUT.total_seconds())}s",
                    timeout=ROLLOUT_CHECK_TIMEOUT * 2,
                    env={"KUBECONFIG": str(self._kubeconfig_path)},
                )

            return True

        await poll_until(
            check_rollout,
            config,
            "Cilium rollout",
            retry_on=(CommandError,),
            resource=settings.CILIUM_RELEASE_NAME,
        )

    async def _helm(self, *args) -> str:
        return await run_subprocess_output(
            self._helm_path,
            *args,
            timeout=HELM_TIMEOUT,
            env={"KUBECONFIG": str(self._kubeconfig_path)},
        )
