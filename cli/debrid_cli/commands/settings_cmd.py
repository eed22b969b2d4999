from __future__ import annotations

import typer

from .. import console
from ..config import SETTING_KEYS, config_path, load_config, resolve_install_dir, save_config, set_value

app = typer.Typer(help="Manage installer settings (~/.config/debrid-stack/config.toml).")


@app.command("show")
def show_settings():
    cfg = load_config()
    console.info(f"Config file: {config_path()}")
    for key in SETTING_KEYS:
        value = resolve_install_dir(cfg) if key == "install_dir" else getattr(cfg, key)
        console.console.print(f"{key}={'' if value is None else value}")


@app.command("get")
def get_setting(
        key: str = typer.Argument(..., help=f"Setting key ({', '.join(SETTING_KEYS)})."),
):
    cfg = load_config()
    k = key.strip().lower()
    if k not in SETTING_KEYS:
        console.err(f"Unknown setting: {key}")
        raise typer.Exit(code=2)
    value = resolve_install_dir(cfg) if k == "install_dir" else getattr(cfg, k)
    console.console.print("" if value is None else value)


@app.command("set")
def set_setting(
        key: str = typer.Argument(..., help="Setting key."),
        value: str = typer.Argument(..., help="New value."),
):
    cfg = load_config()
    try:
        set_value(cfg, key, value)
    except ValueError as exc:
        console.err(str(exc))
        raise typer.Exit(code=2)
    saved = save_config(cfg)
    console.ok(f"Settings updated: {saved}")
