from __future__ import annotations

import typer

from debrid_stack.reconcile import MenuChoice

from .stack_flow import InstallInputs, run_action


def update(
        credential: str | None = typer.Option(
            None, "--credential", help="API key to use when none is found on disk."
        ),
        non_interactive: bool = typer.Option(False, "--non-interactive", help="Never prompt."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every confirmation."),
):
    """Back up, re-render and re-pull an existing stack."""
    run_action(
        MenuChoice.UPDATE,
        InstallInputs(credential=credential, non_interactive=non_interactive, assume_yes=yes),
    )


def repair(
        credential: str | None = typer.Option(
            None, "--credential", help="API key to use when none is found on disk."
        ),
        non_interactive: bool = typer.Option(False, "--non-interactive", help="Never prompt."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every confirmation."),
):
    """Rewrite configs and restart whatever is stopped."""
    run_action(
        MenuChoice.REPAIR,
        InstallInputs(credential=credential, non_interactive=non_interactive, assume_yes=yes),
    )
