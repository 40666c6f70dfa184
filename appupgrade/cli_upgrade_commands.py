"""Upgrade orchestrator CLI command (upgrade-execute)."""
from __future__ import annotations

from typing import Optional

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
from appupgrade.services.upgrade import UpgradeOrchestrator


def register_upgrade_commands(root: typer.Typer, console: Console) -> None:
    """Attach the upgrade command to the orchestrator CLI."""

    @root.command()
    def execute(
        mode: UpgradeMode = typer.Argument(..., help="in-place or not-in-place."),
        skip_verify: bool = typer.Option(
            False, "-v", "--skip-verify",
            help="Skip upgrade verification (overrides SKIP_VERIFY).",
        ),
        verbose: bool = typer.Option(False, "--verbose", help="Debug-level file logging."),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Log file path."),
    ) -> None:
        """Stage an upgrade in a container, then discard it or promote it to the next root."""
        if verbose or log_file:
            setup_file_logging(log_file=log_file, verbose=verbose)

        try:
            require_root()
            orchestrator = UpgradeOrchestrator(config=get_config())
            orchestrator.execute(mode, skip_verify=True if skip_verify else None)
        except UpgradeError as exc:
            handle_cli_error(exc, console)

        print_success(console, f"{mode.value} upgrade complete")
