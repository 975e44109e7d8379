import factory

from talos_on_hcloud import settings
from talos_on_hcloud.models import (
    ClusterSpec,
    NetworkData,
    NodePoolData,
    NodeRole,
    ServerData,
    TalosData,
)


class NodePoolFactory(factory.Factory):
    class Meta:
        model = NodePoolData

    name = "worker"
    server_type = "cx32"
    count = 2
    role = NodeRole.worker
    labels = factory.LazyFunction(dict)


class ControlPlanePoolFactory(NodePoolFactory):
    name = "control-plane"
    server_type = "cx22"
    count = 3
    role = NodeRole.control_plane


class ClusterSpecFactory(factory.Factory):
    class Meta:
        model = ClusterSpec

    name = "test"
    location = "fsn1"
    network_zone = "eu-central"
    network = factory.LazyFunction(NetworkData)
    talos = factory.LazyFunction(lambda: TalosData(image="123456"))
    node_pools = factory.LazyFunction(lambda: [ControlPlanePoolFactory(), NodePoolFactory()])


class ServerDataFactory(factory.Factory):
    class Meta:
        model = ServerData

    id = factory.Sequence(lambda n: n + 1)
    status = "running"
    name = factory.LazyAttribute(lambda o: f"test-{o.pool}-{o.index}")
    labels = factory.LazyAttribute(
        lambda o: {
            settings.LABEL_CLUSTER: "test",
            settings.LABEL_MANAGED_BY: settings.MANAGED_BY,
            settings.LABEL_POOL: o.pool,
            settings.LABEL_INDEX: str(o.index),
            settings.LABEL_ROLE: o.role.value,
        }
    )
    public_ip = factory.LazyAttribute(lambda o: f"203.0.113.{o.id}")
    private_ip = factory.LazyAttribute(lambda o: f"10.0.1.{o.id}")

    class Params:
        pool = "worker"
        index = 1
        role = NodeRole.worker
