from __future__ import annotations

from pathlib import Path

import typer

from debrid_stack.reconcile import MenuChoice

from .stack_flow import InstallInputs, run_action


def backup():
    """Archive the current configuration into the backup directory."""
    run_action(MenuChoice.BACKUP, InstallInputs(non_interactive=True))


def restore(
        archive: Path | None = typer.Option(None, "--archive", help="Backup archive to restore."),
        non_interactive: bool = typer.Option(
            False, "--non-interactive", help="Restore the newest backup without prompting."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every confirmation."),
):
    """Restore configuration from a backup archive and restart the stack."""
    run_action(
        MenuChoice.RESTORE,
        InstallInputs(archive=archive, non_interactive=non_interactive, assume_yes=yes),
    )
