"""Container manager CLI commands (upgrade-container)."""
from __future__ import annotations

from typing import List, Optional

import typer
from rich.console import Console

from appupgrade.cli_support import (
    handle_cli_error,
    print_success,
    require_root,
    setup_file_logging,
)
from appupgrade.core.config import get_config
from appupgrade.core.errors import UpgradeError
from appupgrade.models.container import UpgradeMode
from appupgrade.services.bootloader import BootloaderPromoter
from appupgrade.services.nspawn.lifecycle import ContainerLifecycle


def _lifecycle() -> ContainerLifecycle:
    return ContainerLifecycle(get_config())


def register_container_commands(root: typer.Typer, console: Console) -> None:
    """Attach container lifecycle commands to the container manager CLI."""

    @root.callback()
    def main(
        verbose: bool = typer.Option(False, "--verbose", help="Debug-level file logging."),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file path."),
    ) -> None:
        """Manage ephemeral upgrade containers. Must be run as root."""
        if verbose or log_file:
            setup_file_logging(log_file=log_file, verbose=verbose)
        try:
            require_root()
        except UpgradeError as exc:
            handle_cli_error(exc, console)

    @root.command("create")
    def create_command(
        mode: UpgradeMode = typer.Argument(..., help="in-place clones the running root; not-in-place bootstraps from the image."),
    ) -> None:
        """Create a container and print its name on stdout."""
        try:
            container = _lifecycle().create(mode)
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        typer.echo(container.name)

    @root.command("start")
    def start_command(
        name: str = typer.Argument(..., help="Container name."),
    ) -> None:
        """Start a container and wait for it to finish booting."""
        try:
            lifecycle = _lifecycle()
            lifecycle.start(lifecycle.container(name))
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        print_success(console, f"Started {name}")

    @root.command("stop")
    def stop_command(
        name: str = typer.Argument(..., help="Container name."),
    ) -> None:
        """Stop a running container."""
        try:
            lifecycle = _lifecycle()
            lifecycle.stop(lifecycle.container(name))
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        print_success(console, f"Stopped {name}")

    @root.command("destroy")
    def destroy_command(
        name: str = typer.Argument(..., help="Container name."),
    ) -> None:
        """Remove every remaining artifact of a container."""
        try:
            lifecycle = _lifecycle()
            lifecycle.destroy(lifecycle.container(name))
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        print_success(console, f"Destroyed {name}")

    @root.command(
        "run",
        context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
    )
    def run_command(
        name: str = typer.Argument(..., help="Container name."),
        command: List[str] = typer.Argument(..., help="Command to run inside the container.", metavar="COMMAND..."),
    ) -> None:
        """Run a command inside a running container; exits with its status."""
        try:
            lifecycle = _lifecycle()
            result = lifecycle.run(lifecycle.container(name), command)
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        if result.returncode != 0:
            raise typer.Exit(result.returncode)

    @root.command("convert-to-bootfs")
    def convert_command(
        name: str = typer.Argument(..., help="Container name."),
    ) -> None:
        """Promote a stopped container to be the root filesystem at next boot."""
        try:
            lifecycle = _lifecycle()
            BootloaderPromoter(lifecycle).convert(lifecycle.container(name))
        except UpgradeError as exc:
            handle_cli_error(exc, console)
        print_success(console, f"{name} will be the root filesystem at next boot")

    @root.command("list")
    def list_command() -> None:
        """List managed containers."""
        for name in _lifecycle().list_containers():
            typer.echo(name)
