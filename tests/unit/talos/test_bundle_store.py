import pytest
import yaml

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import ClusterNotFound, TalosOnHcloudError
from talos_on_hcloud.models import NodeRole, TalosData
from talos_on_hcloud.talos import NodeConfigGenerator
from talos_on_hcloud.talos.config import apply_config_patches, get_generation_patches
from tests.factories.cluster import ClusterSpecFactory


@pytest.mark.asyncio
async def test_generate_once(talos, store, spec, events):
    generator = NodeConfigGenerator(talos, store)

    assert not store.exists()
    assert await generator.generate(spec) is True
    assert store.exists()
    assert await generator.generate(spec) is False

    assert [name for name, _ in events] == ["talos.gen_secrets", "talos.gen_config"]
    assert events[1][1] == settings.PLACEHOLDER_ENDPOINT
    assert store.get_endpoint() is None

    common_patch = yaml.safe_load((store.patches_dir / "common.yaml").read_text())
    assert common_patch["cluster"]["network"]["cni"] == {"name": "none"}
    assert common_patch["cluster"]["network"]["podSubnets"] == [spec.network.pod_cidr]


@pytest.mark.asyncio
async def test_generate_with_explicit_endpoint_and_patches(talos, store):
    spec = ClusterSpecFactory(
        talos=TalosData(
            image="1",
            cluster_endpoint="https://api.example.com:6443",
            config_patches=[
                {"op": "add", "path": "/machine/time/servers", "value": ["ntp1.hetzner.de"]},
            ],
        )
    )

    await NodeConfigGenerator(talos, store).generate(spec)

    assert store.get_endpoint() == "https://api.example.com:6443"
    for role in NodeRole:
        document = yaml.safe_load(store.read_role_config(role))
        assert document["machine"]["time"]["servers"] == ["ntp1.hetzner.de"]


@pytest.mark.asyncio
async def test_set_endpoint_patches_every_role_document(talos, store, spec):
    await NodeConfigGenerator(talos, store).generate(spec)

    store.set_endpoint("https://203.0.113.1:6443")

    assert store.get_endpoint() == "https://203.0.113.1:6443"
    for role in NodeRole:
        document = yaml.safe_load(store.read_role_config(role))
        assert document["cluster"]["controlPlane"]["endpoint"] == "https://203.0.113.1:6443"


def test_state_survives_new_store_instance(store):
    store.record_index("worker", 5)
    store.record_index("worker", 3)
    store.mark_bootstrapped()

    reopened = type(store)(store.cluster_dir)

    assert reopened.get_index_high_water_mark("worker") == 5
    assert reopened.get_index_high_water_mark("control-plane") == 0
    assert reopened.is_bootstrapped()


def test_ensure_exists_without_bundle(store):
    with pytest.raises(ClusterNotFound) as exc_info:
        store.ensure_exists("test")

    assert exc_info.value.resource == "test"
    assert "create" in exc_info.value.hint


@pytest.mark.asyncio
async def test_ensure_exists_requires_kubeconfig(talos, store, spec):
    await NodeConfigGenerator(talos, store).generate(spec)

    assert store.exists()
    with pytest.raises(ClusterNotFound) as exc_info:
        store.ensure_exists("test")

    assert "kubeconfig" in str(exc_info.value)

    store.kubeconfig_path.write_text("apiVersion: v1\n")
    store.ensure_exists("test")


@pytest.mark.asyncio
async def test_purge(talos, store, spec):
    await NodeConfigGenerator(talos, store).generate(spec)

    store.purge()

    assert not store.cluster_dir.exists()
    assert not store.exists()


def test_apply_config_patches():
    document = {"machine": {"type": "worker", "install": {"disk": "/dev/sda"}}}

    apply_config_patches(
        document,
        [
            {"op": "replace", "path": "/machine/install/disk", "value": "/dev/nvme0n1"},
            {"op": "add", "path": "/machine/kubelet/extraArgs", "value": {"v": "2"}},
            {"op": "remove", "path": "/machine/type"},
        ],
    )

    assert document == {
        "machine": {
            "install": {"disk": "/dev/nvme0n1"},
            "kubelet": {"extraArgs": {"v": "2"}},
        }
    }


@pytest.mark.parametrize(
    "patch",
    (
        {"op": "move", "path": "/machine/type"},
        {"op": "remove", "path": "/machine/missing"},
        {"op": "add", "value": 1},
    ),
)
def test_apply_config_patches_invalid(patch):
    with pytest.raises(TalosOnHcloudError):
        apply_config_patches({"machine": {"type": "worker"}}, [patch])


def test_generation_patches_use_cluster_networks(spec):
    common, control_plane = get_generation_patches(spec)

    assert common["machine"]["kubelet"]["nodeIP"]["validSubnets"] == [spec.network.subnet_cidr]
    assert common["cluster"]["network"]["serviceSubnets"] == [spec.network.service_cidr]
    assert common["cluster"]["proxy"] == {"disabled": True}
    assert control_plane["cluster"]["etcd"]["advertisedSubnets"] == [spec.network.subnet_cidr]
