import json
from pathlib import Path
from unittest import mock

import pytest

from talos_on_hcloud.exceptions import CommandError
from talos_on_hcloud.kubernetes import KubectlClient, parse_node_status


def get_node(name="test-worker-1", ready="True", unschedulable=None):
    node = {
        "metadata": {"name": name},
        "spec": {},
        "status": {
            "conditions": [
                {"type": "MemoryPressure", "status": "False"},
                {"type": "Ready", "status": ready},
            ]
        },
    }
    if unschedulable is not None:
        node["spec"]["unschedulable"] = unschedulable
    return node


@pytest.mark.parametrize(
    "node, ready, schedulable, cordoned",
    (
        (get_node(), True, True, False),
        (get_node(ready="False"), False, True, False),
        (get_node(ready="Unknown", unschedulable=True), False, False, True),
        (get_node(unschedulable=True), True, False, False),
    ),
)
def test_parse_node_status(node, ready, schedulable, cordoned):
    status = parse_node_status(node)

    assert status.name == "test-worker-1"
    assert status.ready is ready
    assert status.schedulable is schedulable
    assert status.cordoned is cordoned


@pytest.mark.asyncio
async def test_get_node_not_found():
    client = KubectlClient(Path("/tmp/kubeconfig"))

    with mock.patch(
        "talos_on_hcloud.kubernetes.client.run_subprocess_output",
        new_callable=mock.AsyncMock,
        side_effect=CommandError(
            "failed", returncode=1, stderr='Error from server (NotFound): nodes "x" not found'
        ),
    ):
        assert await client.get_node("x") is None


@pytest.mark.asyncio
async def test_list_nodes():
    client = KubectlClient(Path("/tmp/kubeconfig"), kubectl_path=Path("kubectl"))
    output = json.dumps({"items": [get_node("a"), get_node("b", ready="False")]})

    with mock.patch(
        "talos_on_hcloud.kubernetes.client.run_subprocess_output",
        new_callable=mock.AsyncMock,
        return_value=output,
    ) as run_output:
        nodes = await client.list_nodes()

    assert [(node.name, node.ready) for node in nodes] == [("a", True), ("b", False)]
    assert run_output.await_args.kwargs["env"] == {"KUBECONFIG": "/tmp/kubeconfig"}
