#!/usr/bin/env python3
"""appupgrade CLIs - stage appliance upgrades in copy-on-write containers."""

import typer
from rich.console import Console

from appupgrade.cli_container_commands import register_container_commands
from appupgrade.cli_upgrade_commands import register_upgrade_commands

container_app = typer.Typer(
    name="upgrade-container",
    help="""Manage ephemeral upgrade containers.

  upgrade-container create in-place      # prints the new container name
  upgrade-container start NAME
  upgrade-container run NAME -- COMMAND...
  upgrade-container stop NAME
  upgrade-container destroy NAME | convert-to-bootfs NAME
""",
    add_completion=False,
)

execute_app = typer.Typer(
    name="upgrade-execute",
    help="Run an in-place or not-in-place appliance upgrade.",
    add_completion=False,
)

# Diagnostics go to stderr; stdout carries command results only
console = Console(stderr=True)

register_container_commands(container_app, console)
register_upgrade_commands(execute_app, console)

if __name__ == "__main__":
    container_app()
