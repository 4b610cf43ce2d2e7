"""Entry point for the ``hostdeploy`` command."""

from __future__ import annotations

import click

from hostdeploy import __version__
from hostdeploy.cli.commands.deploy import deploy, rollback
from hostdeploy.cli.commands.inspect import history, snapshots


@click.group()
@click.version_option(__version__, prog_name="hostdeploy")
def main() -> None:
    """Deploy, verify and roll back applications on a single host.

    Example:

        hostdeploy deploy hostdeploy.yaml

        hostdeploy rollback --snapshot latest --force
    """


main.add_command(deploy)
main.add_command(rollback)
main.add_command(snapshots)
main.add_command(history)


if __name__ == "__main__":
    main()
