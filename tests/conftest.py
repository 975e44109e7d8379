from datetime import timedelta
from pathlib import Path

import pytest

from talos_on_hcloud.hcloud import InfrastructureProvisioner, get_node_name
from talos_on_hcloud.models import ClusterSpec, Timeouts
from talos_on_hcloud.polling import PollingConfig
from talos_on_hcloud.talos import ConfigBundleStore
from tests.factories.cluster import ClusterSpecFactory
from tests.fakes import (
    FakeHcloudClient,
    FakeKubernetesApi,
    FakeOverlayInstaller,
    FakeTalosApi,
    get_test_public_address,
)

FAST_POLLING = PollingConfig(timeout=timedelta(milliseconds=50), interval=timedelta(milliseconds=5))


@pytest.fixture
def timeouts() -> Timeouts:
    return Timeouts(
        server_action=FAST_POLLING,
        talos_api=FAST_POLLING,
        kubernetes_api=FAST_POLLING,
        node_ready=FAST_POLLING,
        node_cordon=FAST_POLLING,
        overlay_ready=FAST_POLLING,
        firewall_delete=FAST_POLLING,
        talos_precheck=timedelta(seconds=1),
        talos_reset=timedelta(seconds=1),
    )


@pytest.fixture
def spec() -> ClusterSpec:
    return ClusterSpecFactory()


@pytest.fixture
def events():
    return []


@pytest.fixture
def hcloud(events) -> FakeHcloudClient:
    return FakeHcloudClient(events)


@pytest.fixture
def kubernetes(events, hcloud) -> FakeKubernetesApi:
    return FakeKubernetesApi(events, hcloud)


@pytest.fixture
def talos(events, hcloud, kubernetes) -> FakeTalosApi:
    return FakeTalosApi(events, hcloud, kubernetes)


@pytest.fixture
def overlay(events) -> FakeOverlayInstaller:
    return FakeOverlayInstaller(events)


@pytest.fixture
def cluster_dir(tmp_path, spec) -> Path:
    cluster_dir = tmp_path / spec.name
    cluster_dir.mkdir()

    # pre-generated key, so `ssh-keygen` is never executed
    (cluster_dir / "id_ed25519").write_text("private")
    (cluster_dir / "id_ed25519.pub").write_text("ssh-ed25519 AAAATEST test")

    return cluster_dir


@pytest.fixture
def store(cluster_dir) -> ConfigBundleStore:
    return ConfigBundleStore(cluster_dir)


@pytest.fixture
def provisioner(hcloud, spec, cluster_dir, timeouts) -> InfrastructureProvisioner:
    return InfrastructureProvisioner(hcloud, spec, cluster_dir, timeouts, get_test_public_address)


@pytest.fixture
def add_pool_servers(hcloud, spec, provisioner):
    """Put `count` running servers of given pool into the fake provider."""

    def _add_pool_servers(pool_name: str, count: int):
        pool = spec.get_pool(pool_name)
        return [
            hcloud.add_server(
                get_node_name(spec.name, pool.name, index),
                {
                    **provisioner.get_cluster_labels(),
                    "pool": pool.name,
                    "index": str(index),
                    "role": pool.role.value,
                },
            )
            for index in range(1, count + 1)
        ]

    return _add_pool_servers
