import asyncio
from datetime import timedelta
from unittest import mock

import pytest
from yarl import URL

from talos_on_hcloud.exceptions import ProviderError, ReadinessTimeout
from talos_on_hcloud.hcloud import HcloudClient
from talos_on_hcloud.polling import PollingConfig

FAST = PollingConfig(timeout=timedelta(milliseconds=30), interval=timedelta(milliseconds=5))

SERVER = {
    "id": 42,
    "name": "test-worker-1",
    "status": "running",
    "labels": {"cluster": "test", "pool": "worker", "index": "1"},
    "public_net": {"ipv4": {"ip": "203.0.113.42"}, "ipv6": None},
    "private_net": [{"network": 7, "ip": "10.0.1.3"}],
}


@pytest.mark.asyncio
async def test_get_all_follows_pagination():
    client = HcloudClient("token", page_size=1)
    pages = [
        {"servers": [SERVER], "meta": {"pagination": {"next_page": 2}}},
        {"servers": [{**SERVER, "id": 43}], "meta": {"pagination": {"next_page": None}}},
    ]

    with mock.patch.object(client, "request", mock.AsyncMock(side_effect=pages)) as request:
        servers = await client.list_servers("cluster=test")

    assert [server.id for server in servers] == [42, 43]
    assert servers[0].public_ip == "203.0.113.42"
    assert servers[0].private_ip == "10.0.1.3"
    assert servers[0].pool == "worker"
    assert servers[0].index == 1
    assert [call.kwargs["params"]["page"] for call in request.await_args_list] == [1, 2]
    assert request.await_args.kwargs["params"]["label_selector"] == "cluster=test"


def test_provider_error_from_response_body():
    body = '{"error": {"code": "uniqueness_error", "message": "name is already used"}}'

    error = HcloudClient._get_provider_error(
        "POST", URL("https://api.hetzner.cloud/v1/networks"), 409, body, "test-network"
    )

    assert error.status == 409
    assert error.code == "uniqueness_error"
    assert error.resource == "test-network"
    assert "name is already used" in str(error)


def test_provider_error_from_non_json_body():
    error = HcloudClient._get_provider_error(
        "GET", URL("https://api.hetzner.cloud/v1/servers"), 502, "Bad Gateway", None
    )

    assert error.status == 502
    assert error.code is None
    assert error.body == "Bad Gateway"


@pytest.mark.asyncio
async def test_wait_for_action():
    client = HcloudClient("token")
    action = {"id": 1, "command": "create_server", "status": "running"}
    get_action = mock.AsyncMock(
        side_effect=[{**action, "status": "running"}, {**action, "status": "success"}]
    )

    with mock.patch.object(client, "get_action", get_action):
        await client.wait_for_action(action, FAST)

    assert get_action.await_count == 2


@pytest.mark.asyncio
async def test_wait_for_action_error():
    client = HcloudClient("token")
    action = {"id": 1, "command": "create_server", "status": "running"}
    failed = {**action, "status": "error", "error": {"code": "placement_error", "message": "no"}}

    with mock.patch.object(client, "get_action", mock.AsyncMock(return_value=failed)):
        with pytest.raises(ProviderError) as exc_info:
            await client.wait_for_action(action, FAST, resource="test-worker-1")

    assert exc_info.value.code == "placement_error"
    assert exc_info.value.resource == "test-worker-1"


@pytest.mark.asyncio
async def test_wait_for_action_timeout():
    client = HcloudClient("token")
    action = {"id": 1, "command": "delete_server", "status": "running"}

    with mock.patch.object(client, "get_action", mock.AsyncMock(return_value=action)):
        with pytest.raises(ReadinessTimeout):
            await client.wait_for_action(action, FAST)


@pytest.mark.asyncio
async def test_wait_for_finished_action_makes_no_request():
    client = HcloudClient("token")

    with mock.patch.object(client, "get_action", mock.AsyncMock()) as get_action:
        await client.wait_for_action(None, FAST)
        await client.wait_for_action({"id": 1, "status": "success"}, FAST)

    get_action.assert_not_awaited()


def get_client_with_session(response=None, error=None) -> HcloudClient:
    client = HcloudClient("token", request_timeout=timedelta(seconds=2))
    session = mock.MagicMock()
    request_context = session.request.return_value
    if error is not None:
        request_context.__aenter__.side_effect = error
    else:
        request_context.__aenter__.return_value = response
    client._session = session

    return client


@pytest.mark.asyncio
async def test_request_timeout_is_provider_error():
    client = get_client_with_session(error=asyncio.TimeoutError())

    with pytest.raises(ProviderError) as exc_info:
        await client.request("POST", "servers", payload={}, resource="test-worker-3")

    assert exc_info.value.resource == "test-worker-3"
    assert "timed out after 2.0s" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_request_with_non_json_body_is_provider_error():
    response = mock.MagicMock(status=200)
    response.text = mock.AsyncMock(return_value="<html>maintenance</html>")
    client = get_client_with_session(response=response)

    with pytest.raises(ProviderError) as exc_info:
        await client.request("GET", "servers/42", resource="42")

    assert exc_info.value.status == 200
    assert exc_info.value.body == "<html>maintenance</html>"
    assert exc_info.value.resource == "42"
