from pathlib import Path

import click


def with_datadir(cli_func):
    from talos_on_hcloud.settings import DEFAULT_DATADIR

    return click.option(
        "--datadir",
        type=Path,
        help="Directory keeping configuration bundles and logs."
        f" By default, uses a system data directory: {DEFAULT_DATADIR}",
    )(cli_func)


def with_cluster_file(cli_func):
    from talos_on_hcloud.settings import DEFAULT_CLUSTER_FILE

    return click.option(
        "-c",
        "--config",
        "cluster_file",
        type=Path,
        default=DEFAULT_CLUSTER_FILE,
        help="Cluster file describing the desired cluster.",
    )(cli_func)


def with_verbose(cli_func):
    return click.option(
        "-v",
        "--verbose",
        is_flag=True,
        help="Show debug logs and per-node state transitions.",
    )(cli_func)
