import asyncio
import json
import logging
import ssl
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
from yarl import URL

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import CommandError
from talos_on_hcloud.models import KubernetesNodeStatus
from talos_on_hcloud.utils import is_not_found_error, run_subprocess_output

logger = logging.getLogger(__name__)

KUBECTL_TIMEOUT = timedelta(minutes=2)

# unauthenticated probe gets one of those once the API server is serving
API_AVAILABLE_STATUSES = (200, 401, 403)


def parse_node_status(node: Dict[str, Any]) -> KubernetesNodeStatus:
    """Read readiness and schedulability from a Kubernetes `Node` object."""

    conditions = node.get("status", {}).get("conditions", [])
    ready = any(
        condition.get("type") == "Ready" and condition.get("status") == "True"
        for condition in conditions
    )

    return KubernetesNodeStatus(
        name=node["metadata"]["name"],
        ready=ready,
        schedulable=not node.get("spec", {}).get("unschedulable", False),
    )


class KubernetesApi(ABC):
    """Cluster API operations needed by the orchestration."""

    @abstractmethod
    async def api_available(self, address: str) -> bool:
        ...

    @abstractmethod
    async def get_node(self, name: str) -> Optional[KubernetesNodeStatus]:
        """Return status of the node or `None` when it's not registered."""

    @abstractmethod
    async def list_nodes(self) -> List[KubernetesNodeStatus]:
        ...

    @abstractmethod
    async def delete_node(self, name: str) -> None:
        """Delete the node object, succeeding also when it doesn't exist anymore."""

    @abstractmethod
    async def apply_manifest(self, manifest: str) -> None:
        """Apply manifest given either as URL or as a local path."""


class KubectlClient(KubernetesApi):
    """`KubernetesApi` backed by the `kubectl` binary."""

    def __init__(self, kubeconfig_path: Path, kubectl_path: Path = settings.KUBECTL_PATH) -> None:
        self._kubeconfig_path = kubeconfig_path
        self._kubectl_path = kubectl_path

    async def api_available(self, address: str) -> bool:
        url = URL.build(
            scheme="https", host=address, port=settings.KUBERNETES_API_PORT, path="/version"
        )

        # cluster CA is not trusted before kubeconfig is fetched, only liveness matters here
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                async with session.get(url, ssl=ssl_context) as response:
                    logger.debug("Kubernetes API at `%s` answered `%s`", url, response.status)
                    return response.status in API_AVAILABLE_STATUSES
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Kubernetes API at `%s` not available: %s", url, e)
            return False

    async def get_node(self, name: str) -> Optional[KubernetesNodeStatus]:
        try:
            output = await self._run("get", "node", name, "--output", "json")
        except CommandError as e:
            if is_not_found_error(e):
                return None

            raise

        return parse_node_status(json.loads(output))

    async def list_nodes(self) -> List[KubernetesNodeStatus]:
        output = await self._run("get", "nodes", "--output", "json")
        return [parse_node_status(node) for node in json.loads(output).get("items", [])]

    async def delete_node(self, name: str) -> None:
        await self._run("delete", "node", name, "--ignore-not-found=true")

    async def apply_manifest(self, manifest: str) -> None:
        await self._run("apply", "--server-side", "--filename", manifest)

    async def _run(self, *args) -> str:
        return await run_subprocess_output(
            self._kubectl_path,
            *args,
            timeout=KUBECTL_TIMEOUT,
            env={"KUBECONFIG": str(self._kubeconfig_path)},
        )
