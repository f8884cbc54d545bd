"""CLI entry point for kinkeeper (kk command)."""

import click

from kinkeeper import __version__
from kinkeeper.cli.backup_cmd import backup_group
from kinkeeper.cli.init_cmd import init_cmd
from kinkeeper.cli.settings_cmd import settings_group
from kinkeeper.cli.user_cmd import user_group


@click.group()
@click.version_option(version=__version__, prog_name="kinkeeper")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def cli(verbose: bool) -> None:
    """kinkeeper: family tree backups with conflict-aware restore."""


cli.add_command(init_cmd)
cli.add_command(user_group)
cli.add_command(backup_group)
cli.add_command(settings_group)


if __name__ == "__main__":
    cli()
