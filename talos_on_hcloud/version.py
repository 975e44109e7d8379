from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_distribution_version

import click

PACKAGE_NAME = "talos-on-hcloud"


def get_version() -> str:
    """Return the version of the package."""
    try:
        return get_distribution_version(PACKAGE_NAME)
    except PackageNotFoundError:
        return "unknown"


@click.command(
    short_help=f"Show `{PACKAGE_NAME}` version.",
)
def version():
    print(f"{PACKAGE_NAME} {get_version()}")
