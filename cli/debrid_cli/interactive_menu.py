from __future__ import annotations

import click
import typer
from questionary import Choice

from . import console
from .interactive import confirm_choice, select_item

MAIN_MENU: list[tuple[str, list[str] | None]] = [
    ("Install new stack", ["install"]),
    ("Update existing stack", ["update"]),
    ("Backup configuration", ["backup"]),
    ("Restore from backup", ["restore"]),
    ("Repair stack", ["repair"]),
    ("Exit", None),
]


def run_interactive_menu(app: typer.Typer) -> list[str] | None:
    choices = [Choice(title=title, value=str(index)) for index, (title, _) in enumerate(MAIN_MENU)]
    index = int(select_item("What do you want to do?", choices))
    tokens = MAIN_MENU[index][1]
    return list(tokens) if tokens else None


def _invoke(app: typer.Typer, tokens: list[str], prog_name: str) -> int:
    command = typer.main.get_command(app)
    try:
        result = command.main(args=tokens, prog_name=prog_name, standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code
    except click.Abort:
        console.err("Aborted by user.")
        return 1
    return result if isinstance(result, int) else 0


def run_menu_loop(app: typer.Typer, prog_name: str = "debrid-stack", *, verbose: bool = False) -> int:
    """Show the main menu until the user exits; returns the last exit code."""
    code = 0
    while True:
        tokens = run_interactive_menu(app)
        if not tokens:
            return code
        code = _invoke(app, ["--verbose", *tokens] if verbose else tokens, prog_name)
        if not confirm_choice("Return to main menu?", default=False):
            return code
