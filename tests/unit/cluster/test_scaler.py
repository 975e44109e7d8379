import pytest
import pytest_asyncio

from talos_on_hcloud.cluster import NodePoolScaler
from talos_on_hcloud.cluster.scaler import get_quorum_warnings
from talos_on_hcloud.exceptions import ClusterNotFound, NodeRemovalBlocked, PartialScaleFailure
from talos_on_hcloud.models import NodeRole, NodeState, ResetOutcome
from talos_on_hcloud.talos import NodeConfigGenerator


@pytest.fixture
def scaler(spec, provisioner, talos, kubernetes, store, timeouts):
    return NodePoolScaler(spec, provisioner, talos, kubernetes, store, timeouts)


@pytest_asyncio.fixture
async def existing_cluster(spec, provisioner, talos, store, events):
    await NodeConfigGenerator(talos, store).generate(spec)
    await talos.kubeconfig("203.0.113.1", store.kubeconfig_path)
    await provisioner.ensure_resources()
    events.clear()


def get_events(events, *names):
    return [(name, value) for name, value in events if name in names]


def test_quorum_warnings():
    assert get_quorum_warnings(5, 3) == []
    assert len(get_quorum_warnings(3, 2)) == 1
    assert len(get_quorum_warnings(5, 2)) == 2


@pytest.mark.asyncio
async def test_scale_up_continues_indices(
    scaler, spec, existing_cluster, add_pool_servers, hcloud, store
):
    add_pool_servers("worker", 2)

    result = await scaler.scale(spec.get_pool("worker"), 5)

    assert [payload["name"] for payload in hcloud.created_servers] == [
        "test-worker-3",
        "test-worker-4",
        "test-worker-5",
    ]
    assert all(payload["labels"]["role"] == "worker" for payload in hcloud.created_servers)
    assert all(
        payload["user_data"] == store.read_role_config(NodeRole.worker)
        for payload in hcloud.created_servers
    )
    assert [node.state for node in result.added] == [NodeState.ready] * 3
    assert (result.current, result.target) == (2, 5)
    assert result.succeeded
    assert store.get_index_high_water_mark("worker") == 5


@pytest.mark.asyncio
async def test_scale_up_never_reuses_removed_index(
    scaler, spec, existing_cluster, add_pool_servers, hcloud, store
):
    add_pool_servers("worker", 2)
    store.record_index("worker", 7)

    await scaler.scale(spec.get_pool("worker"), 3)

    assert [payload["name"] for payload in hcloud.created_servers] == ["test-worker-8"]


@pytest.mark.asyncio
async def test_scale_up_partial_failure(
    scaler, spec, existing_cluster, add_pool_servers, hcloud
):
    add_pool_servers("worker", 1)
    hcloud.fail_create.add("test-worker-3")

    with pytest.raises(PartialScaleFailure) as exc_info:
        await scaler.scale(spec.get_pool("worker"), 3)

    states = {result.node_name: result.state for result in exc_info.value.results}
    assert states == {"test-worker-2": NodeState.ready, "test-worker-3": NodeState.failed}
    assert exc_info.value.resource == "test-worker-3"


@pytest.mark.asyncio
async def test_scale_up_node_never_ready(
    scaler, spec, existing_cluster, add_pool_servers, kubernetes
):
    add_pool_servers("worker", 1)
    kubernetes.never_ready.add("test-worker-2")

    with pytest.raises(PartialScaleFailure) as exc_info:
        await scaler.scale(spec.get_pool("worker"), 2)

    (result,) = exc_info.value.results
    assert result.state == NodeState.failed
    assert result.timed_out
    assert any("kubelet" in entry for entry in result.state_log)


@pytest.mark.asyncio
async def test_scale_down_removes_highest_indices_in_order(
    scaler, spec, existing_cluster, add_pool_servers, events
):
    servers = add_pool_servers("worker", 5)

    result = await scaler.scale(spec.get_pool("worker"), 2)

    assert [r.node_name for r in result.removed] == [
        "test-worker-5",
        "test-worker-4",
        "test-worker-3",
    ]
    assert all(r.state == NodeState.removed for r in result.removed)

    expected = []
    for server in reversed(servers[2:]):
        expected.extend(
            [
                ("talos.version", server.public_ip),
                ("talos.reset", server.public_ip),
                ("kubernetes.delete_node", server.name),
                ("hcloud.delete_server", server.id),
            ]
        )

    assert (
        get_events(
            events,
            "talos.version",
            "talos.reset",
            "kubernetes.delete_node",
            "hcloud.delete_server",
        )
        == expected
    )


@pytest.mark.asyncio
async def test_scale_down_stops_on_unreachable_node(
    scaler, spec, existing_cluster, add_pool_servers, talos, events
):
    servers = add_pool_servers("worker", 5)
    talos.unreachable.add(servers[3].public_ip)

    with pytest.raises(PartialScaleFailure) as exc_info:
        await scaler.scale(spec.get_pool("worker"), 2)

    error = exc_info.value
    assert [(r.node_name, r.state) for r in error.results] == [
        ("test-worker-5", NodeState.removed),
        ("test-worker-4", NodeState.blocked),
    ]
    assert error.abandoned == ["test-worker-3"]
    assert error.resource == "test-worker-4"
    assert "firewall" in error.hint
    assert "not attempted: test-worker-3" in str(error)

    assert get_events(events, "hcloud.delete_server") == [("hcloud.delete_server", servers[4].id)]
    assert get_events(events, "talos.reset") == [("talos.reset", servers[4].public_ip)]
    assert ("talos.version", servers[2].public_ip) not in events


@pytest.mark.asyncio
async def test_scale_down_rejected_reset_keeps_node(
    scaler, spec, existing_cluster, add_pool_servers, talos, events
):
    servers = add_pool_servers("worker", 2)
    talos.reset_outcomes[servers[1].public_ip] = ResetOutcome.rejected

    with pytest.raises(PartialScaleFailure) as exc_info:
        await scaler.scale(spec.get_pool("worker"), 1)

    assert exc_info.value.results[0].state == NodeState.blocked
    assert get_events(events, "kubernetes.delete_node", "hcloud.delete_server") == []


@pytest.mark.asyncio
async def test_scale_to_current_count_does_nothing(
    scaler, spec, existing_cluster, add_pool_servers, events
):
    add_pool_servers("worker", 2)

    result = await scaler.scale(spec.get_pool("worker"), 2)

    assert result.added == result.removed == []
    assert events == []


@pytest.mark.asyncio
async def test_scale_without_bundle(scaler, spec, add_pool_servers, events):
    add_pool_servers("worker", 2)

    with pytest.raises(ClusterNotFound):
        await scaler.scale(spec.get_pool("worker"), 4)

    assert events == []


@pytest.mark.parametrize("target", (1, 3))
@pytest.mark.asyncio
async def test_scale_without_kubeconfig(
    scaler, spec, existing_cluster, add_pool_servers, store, events, target
):
    add_pool_servers("worker", 2)
    store.kubeconfig_path.unlink()

    with pytest.raises(ClusterNotFound) as exc_info:
        await scaler.scale(spec.get_pool("worker"), target)

    assert "kubeconfig" in str(exc_info.value)
    assert "create" in exc_info.value.hint
    assert events == []


@pytest.mark.asyncio
async def test_scale_down_stops_when_node_never_cordons(
    scaler, spec, existing_cluster, add_pool_servers, kubernetes, hcloud, events
):
    servers = add_pool_servers("worker", 5)
    kubernetes.never_cordoned.add("test-worker-4")

    with pytest.raises(PartialScaleFailure) as exc_info:
        await scaler.scale(spec.get_pool("worker"), 2)

    error = exc_info.value
    assert [(r.node_name, r.state) for r in error.results] == [
        ("test-worker-5", NodeState.removed),
        ("test-worker-4", NodeState.blocked),
    ]
    assert error.results[1].timed_out
    assert error.abandoned == ["test-worker-3"]

    assert get_events(events, "hcloud.delete_server") == [("hcloud.delete_server", servers[4].id)]
    assert get_events(events, "kubernetes.delete_node") == [
        ("kubernetes.delete_node", "test-worker-5")
    ]
    assert servers[3].id in hcloud.servers
    assert ("talos.reset", servers[2].public_ip) not in events


@pytest.mark.asyncio
async def test_scale_below_one_node_is_blocked(scaler, spec, existing_cluster, add_pool_servers):
    add_pool_servers("control-plane", 3)

    with pytest.raises(NodeRemovalBlocked):
        await scaler.scale(spec.get_pool("control-plane"), 0)


@pytest.mark.asyncio
async def test_control_plane_scale_down_warns_about_quorum(
    scaler, spec, existing_cluster, add_pool_servers
):
    add_pool_servers("control-plane", 3)

    result = await scaler.scale(spec.get_pool("control-plane"), 2)

    assert [r.node_name for r in result.removed] == ["test-control-plane-3"]
    assert any("odd count is recommended" in warning for warning in result.warnings)


@pytest.mark.parametrize(
    "role, pool_name, expected",
    (
        (NodeRole.worker, None, "worker"),
        (NodeRole.control_plane, None, "control-plane"),
        (NodeRole.worker, "worker", "worker"),
    ),
)
def test_resolve_pool(scaler, role, pool_name, expected):
    assert scaler.resolve_pool(role, pool_name).name == expected


def test_resolve_pool_role_mismatch(scaler):
    with pytest.raises(ClusterNotFound) as exc_info:
        scaler.resolve_pool(NodeRole.control_plane, "worker")

    assert "control-plane" in exc_info.value.hint
