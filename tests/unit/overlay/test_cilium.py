from pathlib import Path
from unittest import mock

import pytest
import yaml

from talos_on_hcloud import settings
from talos_on_hcloud.models import OverlayData
from talos_on_hcloud.overlay import CiliumInstaller, get_cilium_values
from tests.factories.cluster import ClusterSpecFactory


def test_cilium_values_for_talos():
    values = get_cilium_values(ClusterSpecFactory(), control_plane_count=3)

    assert values["kubeProxyReplacement"] is True
    assert values["k8sServiceHost"] == "localhost"
    assert values["k8sServicePort"] == settings.KUBEPRISM_PORT
    assert values["cgroup"]["autoMount"]["enabled"] is False
    assert values["operator"]["replicas"] == 2
    assert values["hubble"]["relay"]["enabled"] is True
    assert values["ipv6"]["enabled"] is False


def test_cilium_values_user_overrides():
    spec = ClusterSpecFactory(
        overlay=OverlayData(
            hubble=False,
            helm_values={
                "operator": {"replicas": 3},
                "securityContext": {"capabilities": {"cleanCiliumState": ["NET_ADMIN"]}},
                "bpf": {"masquerade": True},
            },
        )
    )

    values = get_cilium_values(spec, control_plane_count=1)

    assert values["hubble"]["enabled"] is False
    assert values["operator"]["replicas"] == 3
    assert values["securityContext"]["capabilities"]["cleanCiliumState"] == ["NET_ADMIN"]
    assert "SYS_ADMIN" in values["securityContext"]["capabilities"]["ciliumAgent"]
    assert values["bpf"] == {"masquerade": True}


def test_cilium_values_single_control_plane():
    values = get_cilium_values(ClusterSpecFactory(), control_plane_count=1)

    assert values["operator"]["replicas"] == 1


@pytest.mark.asyncio
async def test_install_uses_values_file(tmp_path):
    kubernetes = mock.AsyncMock()
    installer = CiliumInstaller(
        kubernetes, tmp_path / "kubeconfig", chart_version="1.16.5", helm_path=Path("helm")
    )

    with mock.patch(
        "talos_on_hcloud.overlay.cilium.run_subprocess_output", new_callable=mock.AsyncMock
    ) as run_output:
        await installer.install_prerequisites()
        await installer.install("cilium/cilium", {"ipam": {"mode": "kubernetes"}})

    kubernetes.apply_manifest.assert_awaited_once_with(settings.GATEWAY_API_CRDS_URL)

    repo_add, upgrade = run_output.await_args_list
    assert repo_add.args[1:3] == ("repo", "add")
    assert upgrade.args[1:5] == ("upgrade", "--install", "cilium", "cilium/cilium")
    assert upgrade.args[-2:] == ("--version", "1.16.5")
    assert upgrade.kwargs["env"] == {"KUBECONFIG": str(tmp_path / "kubeconfig")}
    assert yaml.safe_load(installer.values_path.read_text()) == {"ipam": {"mode": "kubernetes"}}
