import click

from talos_on_hcloud.commands import create, destroy, init, scale, status
from talos_on_hcloud.version import get_version, version


@click.group()
@click.version_option(get_version(), "--version", "-V")
def cli():
    pass


cli.add_command(init)
cli.add_command(create)
cli.add_command(scale)
cli.add_command(status)
cli.add_command(destroy)
cli.add_command(version)


def main():
    cli()


if __name__ == "__main__":
    main()
