import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import ClusterNotFound, ProviderError
from talos_on_hcloud.hcloud.client import HcloudClient, JsonDict
from talos_on_hcloud.models import (
    ClusterResources,
    ClusterSpec,
    Labels,
    NodeRole,
    ServerData,
    Timeouts,
)
from talos_on_hcloud.polling import poll_until
from talos_on_hcloud.utils import run_subprocess_output

logger = logging.getLogger(__name__)

PublicAddressLookup = Callable[[], Awaitable[str]]

FIREWALL_IN_USE_CODE = "resource_in_use"
SSH_KEY_FILENAME = "id_ed25519"


def get_node_name(cluster_name: str, pool_name: str, index: int) -> str:
    return f"{cluster_name}-{pool_name}-{index}"


class InfrastructureProvisioner:
    """Creates and deletes every Hetzner resource owned by a single cluster.

    Ownership is tracked only by labels and resource names, so every call re-queries the provider
    instead of trusting a local plan.
    """

    def __init__(
        self,
        client: HcloudClient,
        spec: ClusterSpec,
        cluster_dir: Path,
        timeouts: Timeouts,
        get_public_address: PublicAddressLookup,
    ) -> None:
        self._client = client
        self._spec = spec
        self._cluster_dir = cluster_dir
        self._timeouts = timeouts
        self._get_public_address = get_public_address

        self._public_address: Optional[str] = None
        self._resources: Optional[ClusterResources] = None

    def __str__(self) -> str:
        return self._spec.name

    @property
    def network_name(self) -> str:
        return f"{self._spec.name}-network"

    @property
    def firewall_name(self) -> str:
        return f"{self._spec.name}-firewall"

    @property
    def ssh_key_name(self) -> str:
        return f"{self._spec.name}-{settings.MANAGED_BY}"

    @property
    def ssh_key_path(self) -> Path:
        return self._cluster_dir / SSH_KEY_FILENAME

    @property
    def label_selector(self) -> str:
        return (
            f"{settings.LABEL_CLUSTER}={self._spec.name},"
            f"{settings.LABEL_MANAGED_BY}={settings.MANAGED_BY}"
        )

    def get_cluster_labels(self) -> Labels:
        return {
            settings.LABEL_CLUSTER: self._spec.name,
            settings.LABEL_MANAGED_BY: settings.MANAGED_BY,
        }

    async def get_public_address(self) -> str:
        """Return the caller's public address, asking the lookup only once per invocation."""

        if self._public_address is None:
            self._public_address = await self._get_public_address()

        return self._public_address

    async def ensure_resources(self) -> ClusterResources:
        """Create cluster-wide resources that don't exist yet and return ids of all of them."""

        logger.info("Ensuring resources of `%s` cluster...", self)

        network_id = await self.create_network()
        firewall_id = await self.create_firewall()
        ssh_key_id = await self.create_key()

        self._resources = ClusterResources(
            network_id=network_id,
            firewall_id=firewall_id,
            ssh_key_id=ssh_key_id,
            server_ids=[server.id for server in await self.list_servers()],
        )

        logger.info("Ensuring resources of `%s` cluster done", self)

        return self._resources

    async def get_resources(self) -> ClusterResources:
        """Look up existing resources without creating anything."""

        network = await self._client.find_network(self.network_name)
        firewall = await self._client.find_firewall(self.firewall_name)
        ssh_key = await self._client.find_ssh_key(self.ssh_key_name)

        return ClusterResources(
            network_id=network["id"] if network else None,
            firewall_id=firewall["id"] if firewall else None,
            ssh_key_id=ssh_key["id"] if ssh_key else None,
            server_ids=[server.id for server in await self.list_servers()],
        )

    async def create_network(self) -> int:
        existing = await self._client.find_network(self.network_name)
        if existing:
            logger.debug("Not creating `%s` network, as it already exists", self.network_name)
            return existing["id"]

        logger.info("Creating `%s` network...", self.network_name)

        network = await self._client.create_network(
            {
                "name": self.network_name,
                "ip_range": self._spec.network.network_cidr,
                "labels": self.get_cluster_labels(),
                "subnets": [
                    {
                        "type": "cloud",
                        "ip_range": self._spec.network.subnet_cidr,
                        "network_zone": self._spec.network_zone,
                    }
                ],
            }
        )

        logger.info("Creating `%s` network done with id `%s`", self.network_name, network["id"])

        return network["id"]

    def get_firewall_rules(self, public_address: str) -> List[JsonDict]:
        caller = [f"{public_address}/32"]
        anywhere = ["0.0.0.0/0", "::/0"]

        return [
            self._tcp_rule(settings.TALOS_API_PORT, caller, "Talos API"),
            self._tcp_rule(settings.KUBERNETES_API_PORT, caller, "Kubernetes API"),
            self._tcp_rule(80, anywhere, "HTTP"),
            self._tcp_rule(443, anywhere, "HTTPS"),
        ]

    async def create_firewall(self) -> int:
        rules = self.get_firewall_rules(await self.get_public_address())

        existing = await self._client.find_firewall(self.firewall_name)
        if existing:
            logger.info("Updating `%s` firewall rules for current address...", self.firewall_name)

            actions = await self._client.set_firewall_rules(existing["id"], rules)
            for action in actions:
                await self._client.wait_for_action(
                    action, self._timeouts.server_action, resource=self.firewall_name
                )

            logger.info("Updating `%s` firewall rules done", self.firewall_name)

            return existing["id"]

        logger.info("Creating `%s` firewall...", self.firewall_name)

        firewall = await self._client.create_firewall(
            {
                "name": self.firewall_name,
                "labels": self.get_cluster_labels(),
                "rules": rules,
            }
        )

        logger.info("Creating `%s` firewall done with id `%s`", self.firewall_name, firewall["id"])

        return firewall["id"]

    async def create_key(self) -> int:
        existing = await self._client.find_ssh_key(self.ssh_key_name)
        if existing:
            logger.debug("Not creating `%s` ssh key, as it already exists", self.ssh_key_name)
            return existing["id"]

        public_key = await self._get_or_generate_public_key()

        logger.info("Uploading `%s` ssh key...", self.ssh_key_name)

        ssh_key = await self._client.create_ssh_key(
            {
                "name": self.ssh_key_name,
                "public_key": public_key,
                "labels": self.get_cluster_labels(),
            }
        )

        logger.info("Uploading `%s` ssh key done with id `%s`", self.ssh_key_name, ssh_key["id"])

        return ssh_key["id"]

    async def create_server(
        self,
        pool_name: str,
        index: int,
        user_data: str,
    ) -> ServerData:
        """Create a node of given pool with machine configuration as its boot payload.

        Returns the server once the provider reports its creation action finished.
        """

        pool = self._spec.get_pool(pool_name)
        if pool is None:
            raise ClusterNotFound(f"pool `{pool_name}` is not defined", resource=self._spec.name)

        resources = await self._get_required_resources()
        name = get_node_name(self._spec.name, pool.name, index)

        labels = {
            **pool.labels,
            **self.get_cluster_labels(),
            settings.LABEL_POOL: pool.name,
            settings.LABEL_INDEX: str(index),
            settings.LABEL_ROLE: pool.role.value,
            settings.LABEL_TALOS_VERSION: self._spec.talos.version,
        }

        logger.info("Creating `%s` server...", name)

        server, action = await self._client.create_server(
            {
                "name": name,
                "server_type": pool.server_type,
                "location": self._spec.location,
                "image": self._spec.talos.image,
                "ssh_keys": [resources.ssh_key_id] if resources.ssh_key_id else [],
                "networks": [resources.network_id],
                "firewalls": [{"firewall": resources.firewall_id}],
                "user_data": user_data,
                "labels": labels,
                "start_after_create": True,
                "public_net": {"enable_ipv4": True, "enable_ipv6": self._spec.overlay.ipv6},
            }
        )

        await self._client.wait_for_action(action, self._timeouts.server_action, resource=name)

        # private address is assigned only after the network attachment finishes
        server = await self._client.get_server(server.id)

        logger.info(
            "Creating `%s` server done with id `%s`, public `%s`, private `%s`",
            name,
            server.id,
            server.public_ip,
            server.private_ip,
        )

        return server

    async def delete_server(self, server_id: int) -> None:
        logger.info("Deleting `%s` server...", server_id)

        action = await self._client.delete_server(server_id)
        await self._client.wait_for_action(
            action, self._timeouts.server_action, resource=str(server_id)
        )

        logger.info("Deleting `%s` server done", server_id)

    async def list_servers(
        self, pool_name: Optional[str] = None, role: Optional[NodeRole] = None
    ) -> List[ServerData]:
        """List servers of the cluster ordered by pool and index."""

        label_selector = self.label_selector
        if pool_name is not None:
            label_selector += f",{settings.LABEL_POOL}={pool_name}"
        if role is not None:
            label_selector += f",{settings.LABEL_ROLE}={role.value}"

        servers = await self._client.list_servers(label_selector)

        return sorted(servers, key=lambda s: (s.pool or "", s.index or 0, s.name))

    async def delete_servers(self, servers: List[ServerData]) -> None:
        await asyncio.gather(*[self.delete_server(server.id) for server in servers])

    async def delete_network(self) -> bool:
        network = await self._client.find_network(self.network_name)
        if not network:
            logger.debug("Not deleting `%s` network, as it doesn't exist", self.network_name)
            return False

        logger.info("Deleting `%s` network...", self.network_name)
        await self._client.delete_network(network["id"])
        logger.info("Deleting `%s` network done", self.network_name)

        return True

    async def delete_firewall(self) -> bool:
        """Delete the firewall, retrying while it's still attached to servers being deleted."""

        firewall = await self._client.find_firewall(self.firewall_name)
        if not firewall:
            logger.debug("Not deleting `%s` firewall, as it doesn't exist", self.firewall_name)
            return False

        logger.info("Deleting `%s` firewall...", self.firewall_name)

        async def try_delete() -> bool:
            try:
                await self._client.delete_firewall(firewall["id"])
            except ProviderError as e:
                if e.code != FIREWALL_IN_USE_CODE:
                    raise

                logger.debug("Firewall `%s` still in use", self.firewall_name)
                return False

            return True

        await poll_until(
            try_delete,
            self._timeouts.firewall_delete,
            f"firewall `{self.firewall_name}` to be detached from deleted servers",
            resource=self.firewall_name,
            hint="Re-run `talos-on-hcloud destroy` once the servers are gone",
        )

        logger.info("Deleting `%s` firewall done", self.firewall_name)

        return True

    async def delete_key(self) -> bool:
        ssh_key = await self._client.find_ssh_key(self.ssh_key_name)
        if not ssh_key:
            logger.debug("Not deleting `%s` ssh key, as it doesn't exist", self.ssh_key_name)
            return False

        logger.info("Deleting `%s` ssh key...", self.ssh_key_name)
        await self._client.delete_ssh_key(ssh_key["id"])
        logger.info("Deleting `%s` ssh key done", self.ssh_key_name)

        return True

    async def _get_required_resources(self) -> ClusterResources:
        if self._resources is None:
            self._resources = await self.get_resources()

        if self._resources.network_id is None or self._resources.firewall_id is None:
            raise ClusterNotFound(
                "network or firewall is missing",
                resource=self._spec.name,
            )

        return self._resources

    async def _get_or_generate_public_key(self) -> str:
        public_key_path = self.ssh_key_path.with_suffix(".pub")

        if not self.ssh_key_path.exists():
            logger.info("Creating ssh key for `%s`...", self)

            self.ssh_key_path.parent.mkdir(parents=True, exist_ok=True)

            await run_subprocess_output(
                settings.SSH_KEYGEN_PATH,
                "-t",
                "ed25519",
                "-N",
                "",
                "-C",
                self.ssh_key_name,
                "-f",
                self.ssh_key_path,
            )

            logger.info("Creating ssh key for `%s` done with path `%s`", self, self.ssh_key_path)

        return public_key_path.read_text().strip()

    @staticmethod
    def _tcp_rule(port: int, source_ips: List[str], description: str) -> Dict:
        return {
            "direction": "in",
            "protocol": "tcp",
            "port": str(port),
            "source_ips": source_ips,
            "description": description,
        }
