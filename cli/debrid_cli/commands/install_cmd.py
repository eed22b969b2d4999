from __future__ import annotations

import typer

from debrid_stack.models import (
    CliDebridChannel,
    Flavor,
    MediaServer,
    OptionalComponent,
    RequestManager,
    ServiceId,
)
from debrid_stack.reconcile import MenuChoice
from debrid_stack.runner import local_runner

from .. import console
from .stack_flow import InstallInputs, offer_reboot, run_action


def parse_components(values: list[str] | None) -> frozenset[OptionalComponent] | None:
    """Accept component names or their service names; `none` selects nothing."""
    if not values:
        return None
    by_name = {c.value: c for c in OptionalComponent}
    by_name.update({c.service.value: c for c in OptionalComponent})
    picked: set[OptionalComponent] = set()
    for raw in values:
        for token in raw.split(","):
            key = token.strip().lower()
            if not key or key == "none":
                continue
            if key not in by_name:
                console.err(f"Unknown component: {token.strip()}")
                console.err(f"Expected one of: {', '.join(sorted(by_name))}, none")
                raise typer.Exit(code=2)
            picked.add(by_name[key])
    return frozenset(picked)


def parse_services(values: list[str] | None) -> frozenset[ServiceId] | None:
    if not values:
        return None
    picked: set[ServiceId] = set()
    for raw in values:
        for token in raw.split(","):
            key = token.strip().lower()
            if not key:
                continue
            try:
                picked.add(ServiceId(key))
            except ValueError:
                console.err(f"Unknown service: {token.strip()}")
                raise typer.Exit(code=2)
    return frozenset(picked)


def install(
        flavor: Flavor | None = typer.Option(None, "--flavor", help="individual or bundle."),
        credential: str | None = typer.Option(None, "--credential", help="Real-Debrid API key."),
        server_address: str | None = typer.Option(
            None, "--server-address", help="IPv4 address other services use to reach this host."
        ),
        timezone: str | None = typer.Option(None, "--timezone", help="IANA timezone like Europe/Berlin."),
        media_server: MediaServer | None = typer.Option(None, "--media-server", help="plex, jellyfin, emby or none."),
        request_manager: RequestManager | None = typer.Option(
            None, "--request-manager", help="overseerr, jellyseerr or none."
        ),
        components: list[str] | None = typer.Option(
            None,
            "--with",
            help="Optional component: indexer, captcha_bypass, management_ui, auto_updater or none. Repeatable.",
        ),
        auto_update: list[str] | None = typer.Option(
            None, "--auto-update", help="Service Watchtower may update, e.g. zurg. Repeatable."
        ),
        cli_channel: CliDebridChannel | None = typer.Option(None, "--cli-channel", help="cli_debrid image channel."),
        non_interactive: bool = typer.Option(False, "--non-interactive", help="Never prompt; use flags and defaults."),
        yes: bool = typer.Option(False, "--yes", "-y", help="Answer yes to every confirmation."),
):
    """Install a new stack on this host."""
    inputs = InstallInputs(
        flavor=flavor,
        credential=credential,
        server_address=server_address,
        timezone=timezone,
        media_server=media_server,
        request_manager=request_manager,
        components=parse_components(components),
        auto_update=parse_services(auto_update),
        cli_channel=cli_channel,
        non_interactive=non_interactive,
        assume_yes=yes,
    )
    run_action(MenuChoice.INSTALL, inputs)
    offer_reboot(local_runner(), inputs)
