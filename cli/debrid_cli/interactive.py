from __future__ import annotations

from enum import Enum
from typing import TypeVar

import questionary
import typer
from questionary import Choice, Style

from debrid_stack.executor import PullChoice
from debrid_stack.models import (
    BackupSnapshot,
    CliDebridChannel,
    Flavor,
    MediaServer,
    OptionalComponent,
    RequestManager,
    ServiceId,
)

from . import console


# Inline questionary prompts; empty input (Enter on the starred entry) keeps the default.

_SELECT_STYLE = Style(
    [
        ("pointer", "ansiyellow bold"),
        ("selected", "ansicyan bold"),
        ("highlighted", "ansicyan bold"),
        ("instruction", "ansiblack"),
        ("star_on", "ansigreen bold"),
        ("star_off", "ansiblack"),
    ]
)

E = TypeVar("E", bound=Enum)

_FLAVOR_TITLES = {
    Flavor.INDIVIDUAL: "Individual containers (Zurg + rclone + cli_debrid)",
    Flavor.BUNDLE: "All-in-one bundle (DMB)",
}

_CHANNEL_TITLES = {
    CliDebridChannel.DEV: "dev (recommended)",
    CliDebridChannel.MAIN: "main",
}

_MEDIA_TITLES = {
    MediaServer.PLEX: "Plex",
    MediaServer.JELLYFIN: "Jellyfin",
    MediaServer.EMBY: "Emby",
    MediaServer.NONE: "None",
}

_REQUEST_TITLES = {
    RequestManager.OVERSEERR: "Overseerr",
    RequestManager.JELLYSEERR: "Jellyseerr",
    RequestManager.NONE: "None",
}

_PULL_TITLES = {
    PullChoice.CONTINUE: "Continue without this image",
    PullChoice.RETRY: "Retry with more attempts",
    PullChoice.ABORT: "Abort installation",
}


def _ask(message: str, choices: list[Choice], default: object = None):
    try:
        result = questionary.select(
            message,
            choices=choices,
            default=default,
            use_shortcuts=False,
            pointer="▶",
            style=_SELECT_STYLE,
        ).ask()
    except KeyboardInterrupt:
        _abort_interactive()
    if result is None:
        _abort_interactive()
    return result


def _starred(title: str, starred: bool) -> list[tuple[str, str]]:
    if starred:
        return [("class:star_on", "★ "), ("", title)]
    return [("class:star_off", "  "), ("", title)]


def confirm_choice(message: object, *, default: bool = True) -> bool:
    prompt = str(getattr(message, "plain", message))
    choices = [
        Choice(title=_starred("Yes", default), value=True),
        Choice(title=_starred("No", not default), value=False),
    ]
    return bool(_ask(prompt, choices, default=default))


def select_toggle(message: str, *, default_enabled: bool | None = None) -> bool:
    enable_title: object = "Enable"
    disable_title: object = "Disable"
    if default_enabled is not None:
        enable_title = _starred("Enable", default_enabled)
        disable_title = _starred("Disable", not default_enabled)
    choices = [
        Choice(title=enable_title, value=True),
        Choice(title=disable_title, value=False),
    ]
    return bool(_ask(message, choices, default=default_enabled))


def select_item(message: str, choices: list[Choice]) -> str:
    return str(_ask(message, choices))


def select_enum(message: str, titles: dict[E, str], default: E) -> E:
    choices = [Choice(title=_starred(title, member is default), value=member) for member, title in titles.items()]
    return _ask(message, choices, default=default)


def select_flavor(default: Flavor = Flavor.INDIVIDUAL) -> Flavor:
    return select_enum("Deployment flavor", _FLAVOR_TITLES, default)


def select_channel(default: CliDebridChannel = CliDebridChannel.DEV) -> CliDebridChannel:
    return select_enum("cli_debrid release channel", _CHANNEL_TITLES, default)


def select_media_server(default: MediaServer = MediaServer.PLEX) -> MediaServer:
    return select_enum("Media server", _MEDIA_TITLES, default)


def select_request_manager(default: RequestManager = RequestManager.OVERSEERR) -> RequestManager:
    return select_enum("Request manager", _REQUEST_TITLES, default)


def select_components() -> frozenset[OptionalComponent]:
    picked: set[OptionalComponent] = set()
    if confirm_choice("Install Jackett (indexer)?", default=True):
        picked.add(OptionalComponent.INDEXER)
        if confirm_choice("Install FlareSolverr (captcha bypass for Jackett)?", default=True):
            picked.add(OptionalComponent.CAPTCHA_BYPASS)
    if confirm_choice("Install Portainer (container management UI)?", default=True):
        picked.add(OptionalComponent.MANAGEMENT_UI)
    if confirm_choice("Install Watchtower (automatic image updates)?", default=False):
        picked.add(OptionalComponent.AUTO_UPDATER)
    return frozenset(picked)


def select_auto_updates(services: list[ServiceId]) -> dict[ServiceId, bool]:
    return {
        service: select_toggle(f"Auto-update {service.value}?", default_enabled=False)
        for service in services
        if service is not ServiceId.WATCHTOWER
    }


def select_pull_action(image: str) -> PullChoice:
    choices = [Choice(title=title, value=choice) for choice, title in _PULL_TITLES.items()]
    return _ask(f"Could not pull {image}. What now?", choices)


def select_snapshot(snapshots: list[BackupSnapshot]) -> BackupSnapshot | None:
    choices = [
        Choice(
            title=f"{s.timestamp:%Y-%m-%d %H:%M:%S}  {s.flavor.value:<10}  {s.archive_path.name}",
            value=index,
        )
        for index, s in enumerate(snapshots)
    ]
    choices.append(Choice(title="Cancel", value=-1))
    index = _ask("Select a backup to restore", choices)
    return None if index < 0 else snapshots[index]


def _abort_interactive() -> None:
    console.err("Aborted by user.")
    raise typer.Exit(code=1)
