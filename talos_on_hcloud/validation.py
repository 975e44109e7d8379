import ipaddress
import logging
import re
from itertools import combinations
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from talos_on_hcloud.exceptions import ValidationError
from talos_on_hcloud.models import SUPPORTED_LOCATIONS, ClusterSpec, NetworkData, NodeRole

logger = logging.getLogger(__name__)

IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX_LENGTH = 63

CIDR_FIELDS = ("network_cidr", "subnet_cidr", "pod_cidr", "service_cidr")

# subnet lives inside network, every other pair must not share a single address
DISJOINT_EXEMPT_PAIRS = {("network_cidr", "subnet_cidr")}


def validate_cluster_spec(raw: Mapping[str, Any]) -> ClusterSpec:
    """Validate raw cluster specification and return it normalized.

    Every problem found is collected and reported in a single `ValidationError`. No network or
    provider calls are made.
    """

    if not isinstance(raw, Mapping):
        raise ValidationError(["cluster specification must be a mapping"])

    violations: List[str] = []
    spec: Optional[ClusterSpec] = None

    try:
        spec = ClusterSpec.model_validate(dict(raw))
    except PydanticValidationError as e:
        violations.extend(_format_pydantic_error(e))

    violations.extend(_check_name(raw.get("name")))
    violations.extend(_check_location(raw.get("location"), raw.get("network_zone")))
    violations.extend(_check_network(raw.get("network")))
    violations.extend(_check_node_pools(raw.get("node_pools")))
    violations.extend(_check_talos(raw.get("talos")))

    violations = _deduplicate(violations)
    if violations or spec is None:
        raise ValidationError(violations)

    if spec.network_zone is None:
        spec.network_zone = SUPPORTED_LOCATIONS[spec.location]

    control_plane_count = spec.control_plane_count
    if control_plane_count % 2 == 0:
        logger.warning(
            "Cluster `%s` has even number of control plane nodes (%s), odd count is recommended"
            " for etcd quorum",
            spec.name,
            control_plane_count,
        )

    return spec


def parse_cidr(value: Any) -> IpNetwork:
    if not isinstance(value, str):
        raise ValueError(f"expected CIDR string, got `{value!r}`")

    return ipaddress.ip_network(value, strict=True)


def find_overlapping_pairs(cidrs: Mapping[str, IpNetwork]) -> List[tuple]:
    """Return pairs of names whose networks share at least one address."""

    overlapping = []
    for (name_a, net_a), (name_b, net_b) in combinations(cidrs.items(), 2):
        if (name_a, name_b) in DISJOINT_EXEMPT_PAIRS:
            continue

        if net_a.version == net_b.version and net_a.overlaps(net_b):
            overlapping.append((name_a, name_b))

    return overlapping


def _format_pydantic_error(error: PydanticValidationError) -> List[str]:
    violations = []

    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        violations.append(f"{location}: {item['msg']}")

    return violations


def _deduplicate(violations: List[str]) -> List[str]:
    return list(dict.fromkeys(violations))


def _check_dns_label(value: Any, field: str) -> List[str]:
    if not isinstance(value, str) or not value:
        return []

    if len(value) > DNS_LABEL_MAX_LENGTH or not DNS_LABEL_RE.match(value):
        return [
            f"{field}: `{value}` must be a lowercase DNS label (a-z, 0-9 and `-`,"
            f" at most {DNS_LABEL_MAX_LENGTH} characters)"
        ]

    return []


def _check_name(name: Any) -> List[str]:
    return _check_dns_label(name, "name")


def _check_location(location: Any, network_zone: Any) -> List[str]:
    if not isinstance(location, str):
        return []

    if location not in SUPPORTED_LOCATIONS:
        return [
            f"location: `{location}` is not supported, use one of: "
            + ", ".join(sorted(SUPPORTED_LOCATIONS))
        ]

    expected_zone = SUPPORTED_LOCATIONS[location]
    if network_zone is not None and network_zone != expected_zone:
        return [
            f"network_zone: location `{location}` belongs to network zone `{expected_zone}`,"
            f" not `{network_zone}`"
        ]

    return []


def _check_network(raw_network: Any) -> List[str]:
    if raw_network is None:
        raw_network = {}

    if not isinstance(raw_network, Mapping):
        return []

    values: Dict[str, Any] = NetworkData().model_dump()
    values.update({key: value for key, value in raw_network.items() if key in CIDR_FIELDS})

    violations = []
    cidrs: Dict[str, IpNetwork] = {}

    for field in CIDR_FIELDS:
        try:
            cidrs[field] = parse_cidr(values[field])
        except ValueError as e:
            violations.append(f"network.{field}: `{values[field]}` is not a valid CIDR ({e})")

    network = cidrs.get("network_cidr")
    subnet = cidrs.get("subnet_cidr")
    if network is not None and subnet is not None:
        if network.version != subnet.version or not subnet.subnet_of(network):
            violations.append(
                f"network.subnet_cidr: `{subnet}` is not contained in"
                f" network.network_cidr `{network}`"
            )

    for name_a, name_b in find_overlapping_pairs(cidrs):
        violations.append(
            f"network.{name_a} `{cidrs[name_a]}` overlaps network.{name_b} `{cidrs[name_b]}`"
        )

    return violations


def _check_node_pools(raw_pools: Any) -> List[str]:
    if not isinstance(raw_pools, list):
        return []

    if not raw_pools:
        return ["node_pools: at least one node pool is required"]

    violations = []
    seen_names = set()
    has_control_plane = False

    for i, pool in enumerate(raw_pools):
        if not isinstance(pool, Mapping):
            continue

        name = pool.get("name")
        field = f"node_pools.{i}"

        violations.extend(_check_dns_label(name, f"{field}.name"))

        if isinstance(name, str):
            if name in seen_names:
                violations.append(f"{field}.name: pool name `{name}` is used more than once")
            seen_names.add(name)

        if pool.get("role") == NodeRole.control_plane.value:
            has_control_plane = True

    if not has_control_plane:
        violations.append(
            f"node_pools: at least one pool with role `{NodeRole.control_plane.value}` is required"
        )

    return violations


def _check_talos(raw_talos: Any) -> List[str]:
    if raw_talos is None:
        raw_talos = {}

    if not isinstance(raw_talos, Mapping):
        return []

    if not raw_talos.get("image"):
        return [
            "talos.image: id of the Hetzner snapshot with the Talos image is required,"
            " create one from the Talos Image Factory `hcloud-amd64.raw.xz` image first"
        ]

    return []
