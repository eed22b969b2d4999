from __future__ import annotations

import sys

import typer

from .commands import backup_cmd, install_cmd, maintenance_cmd, probe_cmd, settings_cmd
from .logging_ import setup_logging


def _build_app() -> typer.Typer:
    app = typer.Typer(
        name="debrid-stack",
        help="Install and maintain a Zurg + rclone + cli_debrid media stack.",
        no_args_is_help=False,
    )

    app.command("install")(install_cmd.install)
    app.command("update")(maintenance_cmd.update)
    app.command("repair")(maintenance_cmd.repair)
    app.command("backup")(backup_cmd.backup)
    app.command("restore")(backup_cmd.restore)
    app.command("probe")(probe_cmd.probe)
    app.command("render")(probe_cmd.render_cmd)
    app.add_typer(settings_cmd.app, name="settings")

    @app.callback(invoke_without_command=True)
    def _main(
            ctx: typer.Context,
            verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logs."),
    ):
        setup_logging(verbose)
        if ctx.invoked_subcommand is None:
            from .interactive_menu import run_menu_loop

            raise typer.Exit(code=run_menu_loop(app, ctx.info_name or sys.argv[0], verbose=verbose))

    return app


app = _build_app()
