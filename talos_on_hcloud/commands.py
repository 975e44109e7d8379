import asyncio
import logging
import logging.config
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click

from talos_on_hcloud.cli import with_cluster_file, with_datadir, with_verbose
from talos_on_hcloud.cluster import Cluster, check_required_tools
from talos_on_hcloud.config import get_hcloud_token, load_cluster_spec, write_example_config
from talos_on_hcloud.ctl import TalosOnHcloudCtl, TalosOnHcloudCtlConsoleLogger
from talos_on_hcloud.exceptions import TalosOnHcloudError
from talos_on_hcloud.hcloud import HcloudClient
from talos_on_hcloud.models import NodeRole
from talos_on_hcloud.settings import DEFAULT_CLUSTER_FILE, get_logging_config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _setup(verbose: bool, datadir: Optional[Path]) -> TalosOnHcloudCtl:
    logging.config.dictConfig(get_logging_config(datadir, verbose))

    return TalosOnHcloudCtl(TalosOnHcloudCtlConsoleLogger(verbose))


def _run_on_cluster(
    ctl: TalosOnHcloudCtl,
    cluster_file: Path,
    datadir: Optional[Path],
    action: Callable[[Cluster], Awaitable[T]],
    with_tools: bool = True,
    with_helm: bool = False,
) -> T:
    """Validate the cluster file, check local tools and run `action` on the cluster.

    Every known failure is reported to the operator and ends the process with a non-zero code.
    """

    async def inner() -> T:
        spec = load_cluster_spec(cluster_file)
        token = get_hcloud_token(spec)

        if with_tools:
            await check_required_tools(with_helm=with_helm)

        async with HcloudClient(token) as hcloud_client:
            cluster = Cluster(spec, hcloud_client, datadir)
            result = await action(cluster)

        for warning in cluster.get_warning_messages():
            logger.warning(warning)

        return result

    try:
        return asyncio.run(inner())
    except TalosOnHcloudError as e:
        logger.debug("Command failed", exc_info=True)
        ctl.report_error(e)
        sys.exit(1)


@click.command(
    help="Create the cluster described by the cluster file, or finish an interrupted creation.",
    context_settings={"show_default": True},
)
@with_cluster_file
@with_datadir
@with_verbose
def create(cluster_file: Path, datadir: Optional[Path], verbose: bool):
    ctl = _setup(verbose, datadir)

    async def action(cluster: Cluster):
        return await cluster.create()

    ctl.report_create(_run_on_cluster(ctl, cluster_file, datadir, action, with_helm=True))


@click.command(
    help="Scale the node pool of given role to COUNT nodes.",
    context_settings={"show_default": True},
)
@click.argument(
    "role",
    type=click.Choice([role.value for role in NodeRole]),
)
@click.option(
    "-n",
    "--count",
    type=int,
    required=True,
    help="Desired number of nodes in the pool.",
)
@click.option(
    "--pool",
    "pool_name",
    help="Pool to scale, required when more than one pool has the given role.",
)
@with_cluster_file
@with_datadir
@with_verbose
def scale(
    role: str,
    count: int,
    pool_name: Optional[str],
    cluster_file: Path,
    datadir: Optional[Path],
    verbose: bool,
):
    ctl = _setup(verbose, datadir)

    async def action(cluster: Cluster):
        return await cluster.scale(NodeRole(role), count, pool_name)

    ctl.report_scale(_run_on_cluster(ctl, cluster_file, datadir, action))


@click.command(
    help="Delete every cloud resource of the cluster.",
    context_settings={"show_default": True},
)
@click.option(
    "--purge",
    is_flag=True,
    help="Remove the local configuration bundle as well, including cluster secrets.",
)
@click.option(
    "-y",
    "--yes",
    is_flag=True,
    help="Don't ask for confirmation.",
)
@with_cluster_file
@with_datadir
@with_verbose
def destroy(purge: bool, yes: bool, cluster_file: Path, datadir: Optional[Path], verbose: bool):
    ctl = _setup(verbose, datadir)

    if not yes:
        click.confirm(
            f"Destroy every server of the cluster described in `{cluster_file}`?", abort=True
        )

    async def action(cluster: Cluster):
        return await cluster.destroy(purge=purge)

    ctl.report_destroy(_run_on_cluster(ctl, cluster_file, datadir, action, with_tools=False))


@click.command(
    help="Show servers of the cluster with their Kubernetes readiness.",
    context_settings={"show_default": True},
)
@with_cluster_file
@with_datadir
@with_verbose
def status(cluster_file: Path, datadir: Optional[Path], verbose: bool):
    ctl = _setup(verbose, datadir)

    async def action(cluster: Cluster):
        return await cluster.status()

    ctl.report_status(_run_on_cluster(ctl, cluster_file, datadir, action))


@click.command(
    help="Write an example cluster file.",
    context_settings={"show_default": True},
)
@click.option(
    "-o",
    "--output",
    type=Path,
    default=DEFAULT_CLUSTER_FILE,
    help="Where to write the cluster file.",
)
@click.option(
    "--name",
    "cluster_name",
    default="talos",
    help="Name of the cluster.",
)
def init(output: Path, cluster_name: str):
    ctl = TalosOnHcloudCtl(TalosOnHcloudCtlConsoleLogger())

    try:
        path = write_example_config(output, cluster_name)
    except TalosOnHcloudError as e:
        ctl.report_error(e)
        sys.exit(1)

    ctl.report_init(path)
