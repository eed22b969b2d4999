import logging

from debrid_cli import config, interactive
from debrid_cli.commands import stack_flow
from debrid_cli.logging_ import setup_logging
from debrid_stack.models import (
    Architecture,
    CliDebridChannel,
    Flavor,
    HostProfile,
    MediaServer,
    PackageManager,
    RequestManager,
    ServiceId,
    ToolchainState,
    is_valid_timezone,
)


def _profile() -> HostProfile:
    return HostProfile(
        os_family="debian",
        os_id="debian",
        os_pretty_name="Debian GNU/Linux 12",
        architecture=Architecture.AMD64,
        is_virtualized=False,
        total_memory_mb=8192,
        cpu_cores=4,
        package_manager=PackageManager.APT,
    )


def _answer_prompts(monkeypatch, replies: list[str]) -> list[str]:
    pending = iter(replies)
    asked: list[str] = []

    def _prompt(text, **_):
        asked.append(text)
        return next(pending)

    monkeypatch.setattr(stack_flow.typer, "prompt", _prompt)
    monkeypatch.setattr(interactive, "select_flavor", lambda default: default)
    monkeypatch.setattr(interactive, "select_channel", lambda: CliDebridChannel.DEV)
    monkeypatch.setattr(interactive, "select_media_server", lambda: MediaServer.PLEX)
    monkeypatch.setattr(interactive, "select_request_manager", lambda: RequestManager.OVERSEERR)
    monkeypatch.setattr(interactive, "select_components", lambda: frozenset())
    monkeypatch.setattr(interactive, "confirm_choice", lambda message, default=True: True)
    return asked


def _collect(ui: stack_flow.CliUI, detected_timezone: str = "UTC"):
    return ui.collect_config(
        Flavor.INDIVIDUAL,
        _profile(),
        ToolchainState(),
        existing_credential=None,
        detected_address="10.0.0.7",
        detected_timezone=detected_timezone,
    )


def test_timezone_names_come_from_tz_database() -> None:
    assert is_valid_timezone("Europe/Berlin")
    assert is_valid_timezone("EST5EDT")
    assert is_valid_timezone("PST8PDT")
    assert not is_valid_timezone("Berlin")
    assert not is_valid_timezone("")


def test_interactive_config_asks_again_for_bad_key_and_timezone(monkeypatch) -> None:
    asked = _answer_prompts(monkeypatch, ["my key", "GOODKEY", "", "Berlin", "Europe/Berlin"])
    ui = stack_flow.CliUI(stack_flow.InstallInputs(), config.InstallerSettings())

    result = _collect(ui)

    assert result.credential == "GOODKEY"
    assert result.timezone == "Europe/Berlin"
    assert result.server_address == "10.0.0.7"
    assert asked.count("Real-Debrid API key") == 2
    assert asked.count("Timezone") == 2


def test_non_interactive_config_replaces_unknown_detected_timezone() -> None:
    inputs = stack_flow.InstallInputs(credential="KEY", non_interactive=True)
    ui = stack_flow.CliUI(inputs, config.InstallerSettings())

    result = _collect(ui, detected_timezone="Local Time")

    assert result.timezone == stack_flow.FALLBACK_TIMEZONE


def test_requested_auto_updates_never_cover_watchtower() -> None:
    services = [ServiceId.ZURG, ServiceId.CLI_DEBRID, ServiceId.WATCHTOWER]

    wanted = stack_flow.requested_auto_updates(services, frozenset({ServiceId.ZURG}))

    assert wanted == {ServiceId.ZURG: True, ServiceId.CLI_DEBRID: False}


def test_verbose_logging_opens_stack_loggers() -> None:
    setup_logging(True)
    assert logging.getLogger("debrid_stack.executor").getEffectiveLevel() == logging.DEBUG

    setup_logging(False)
    assert logging.getLogger("debrid_stack.workflow").getEffectiveLevel() == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
