import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

import aiohttp
from yarl import URL

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import ProviderError
from talos_on_hcloud.models import ServerData
from talos_on_hcloud.polling import PollingConfig, poll_until

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

ACTION_RUNNING = "running"
ACTION_SUCCESS = "success"
ACTION_ERROR = "error"


class HcloudClient:
    """Thin asynchronous client of the Hetzner Cloud REST API.

    Only the endpoints needed for managing a single cluster are exposed. Every non-2xx response is
    turned into `ProviderError` carrying the status, Hetzner error code and the raw response body.
    """

    def __init__(
        self,
        token: str,
        api_url: URL = settings.HCLOUD_API_URL,
        request_timeout: timedelta = settings.HCLOUD_REQUEST_TIMEOUT,
        page_size: int = settings.HCLOUD_PAGE_SIZE,
    ) -> None:
        self._token = token
        self._api_url = api_url
        self._request_timeout = request_timeout
        self._page_size = page_size

        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HcloudClient":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._session is not None:
            return

        self._session = aiohttp.ClientSession(
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=aiohttp.ClientTimeout(total=self._request_timeout.total_seconds()),
        )

    async def stop(self) -> None:
        if self._session is None:
            return

        await self._session.close()
        self._session = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        payload: Optional[JsonDict] = None,
        resource: Optional[str] = None,
    ) -> JsonDict:
        if self._session is None:
            await self.start()

        url = self._api_url / path.lstrip("/")

        logger.debug("Hetzner API request: %s %s %s", method, url, params or "")

        try:
            async with self._session.request(method, url, params=params, json=payload) as response:
                body = await response.text()
                status = response.status
        except aiohttp.ClientError as e:
            raise ProviderError(f"{method} {url} failed: {e}", resource=resource) from e
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{method} {url} timed out after {self._request_timeout.total_seconds()}s",
                resource=resource,
                hint="Check connectivity to the Hetzner API and re-run the command",
            ) from e

        if status >= 400:
            raise self._get_provider_error(method, url, status, body, resource)

        if not body:
            return {}

        try:
            return json.loads(body)
        except ValueError as e:
            raise ProviderError(
                f"{method} {url.path} returned a body that is not JSON",
                status=status,
                body=body,
                resource=resource,
            ) from e

    async def get_all(
        self, path: str, key: str, params: Optional[Mapping[str, Any]] = None
    ) -> List[JsonDict]:
        """Collect every item of a paginated list endpoint."""

        items = []
        page: Optional[int] = 1

        while page is not None:
            data = await self.request(
                "GET", path, params={**(params or {}), "page": page, "per_page": self._page_size}
            )
            items.extend(data.get(key, []))
            page = data.get("meta", {}).get("pagination", {}).get("next_page")

        return items

    async def list_servers(self, label_selector: str) -> List[ServerData]:
        servers = await self.get_all("servers", "servers", {"label_selector": label_selector})
        return [ServerData.from_api(server) for server in servers]

    async def get_server(self, server_id: int) -> ServerData:
        data = await self.request("GET", f"servers/{server_id}", resource=str(server_id))
        return ServerData.from_api(data["server"])

    async def create_server(self, payload: JsonDict) -> Tuple[ServerData, Optional[JsonDict]]:
        data = await self.request("POST", "servers", payload=payload, resource=payload["name"])
        return ServerData.from_api(data["server"]), data.get("action")

    async def delete_server(self, server_id: int) -> Optional[JsonDict]:
        data = await self.request("DELETE", f"servers/{server_id}", resource=str(server_id))
        return data.get("action")

    async def find_network(self, name: str) -> Optional[JsonDict]:
        return await self._find_by_name("networks", name)

    async def create_network(self, payload: JsonDict) -> JsonDict:
        data = await self.request("POST", "networks", payload=payload, resource=payload["name"])
        return data["network"]

    async def delete_network(self, network_id: int) -> None:
        await self.request("DELETE", f"networks/{network_id}", resource=str(network_id))

    async def find_firewall(self, name: str) -> Optional[JsonDict]:
        return await self._find_by_name("firewalls", name)

    async def create_firewall(self, payload: JsonDict) -> JsonDict:
        data = await self.request("POST", "firewalls", payload=payload, resource=payload["name"])
        return data["firewall"]

    async def set_firewall_rules(self, firewall_id: int, rules: List[JsonDict]) -> List[JsonDict]:
        data = await self.request(
            "POST",
            f"firewalls/{firewall_id}/actions/set_rules",
            payload={"rules": rules},
            resource=str(firewall_id),
        )
        return data.get("actions", [])

    async def delete_firewall(self, firewall_id: int) -> None:
        await self.request("DELETE", f"firewalls/{firewall_id}", resource=str(firewall_id))

    async def find_ssh_key(self, name: str) -> Optional[JsonDict]:
        return await self._find_by_name("ssh_keys", name)

    async def create_ssh_key(self, payload: JsonDict) -> JsonDict:
        data = await self.request("POST", "ssh_keys", payload=payload, resource=payload["name"])
        return data["ssh_key"]

    async def delete_ssh_key(self, ssh_key_id: int) -> None:
        await self.request("DELETE", f"ssh_keys/{ssh_key_id}", resource=str(ssh_key_id))

    async def get_action(self, action_id: int) -> JsonDict:
        data = await self.request("GET", f"actions/{action_id}", resource=f"action {action_id}")
        return data["action"]

    async def wait_for_action(
        self,
        action: Optional[JsonDict],
        config: PollingConfig,
        resource: Optional[str] = None,
    ) -> None:
        """Wait until given asynchronous action leaves the `running` status."""

        if not action or action.get("status") == ACTION_SUCCESS:
            return

        action_id = action["id"]

        async def check_action() -> Optional[JsonDict]:
            current = await self.get_action(action_id)
            if current["status"] == ACTION_RUNNING:
                return None

            return current

        finished = await poll_until(
            check_action,
            config,
            f"action `{action.get('command')}` ({action_id})",
            resource=resource,
        )

        if finished["status"] == ACTION_ERROR:
            error = finished.get("error") or {}
            raise ProviderError(
                f"action `{finished.get('command')}` failed: {error.get('message')}",
                code=error.get("code"),
                resource=resource,
            )

    async def _find_by_name(self, path: str, name: str) -> Optional[JsonDict]:
        items = await self.get_all(path, path, {"name": name})
        return items[0] if items else None

    @staticmethod
    def _get_provider_error(
        method: str, url: URL, status: int, body: str, resource: Optional[str]
    ) -> ProviderError:
        code = None
        message = None

        try:
            error = json.loads(body).get("error", {})
        except (ValueError, AttributeError):
            error = {}

        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message")

        return ProviderError(
            f"{method} {url.path} failed" + (f": {message}" if message else ""),
            status=status,
            code=code,
            body=body,
            resource=resource,
        )
