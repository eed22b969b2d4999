from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

import typer

from debrid_stack.errors import FatalError, NoExistingInstallation, StackError
from debrid_stack.executor import PullChoice, ensure_privileged
from debrid_stack.models import (
    AutoUpdatePolicy,
    BackupSnapshot,
    CliDebridChannel,
    Flavor,
    HostProfile,
    MediaServer,
    OptionalComponent,
    RequestManager,
    ServiceId,
    StackConfig,
    ToolchainState,
    is_valid_timezone,
)
from debrid_stack.paths import HostPaths
from debrid_stack.probe import is_valid_ipv4
from debrid_stack.reconcile import MenuChoice
from debrid_stack.render import SERVICE_PORTS, select_resource_tier
from debrid_stack.runner import CommandRunner, local_runner
from debrid_stack.workflow import Phase, RunOutcome, RunStatus, Workflow

from .. import console, interactive
from ..config import InstallerSettings, load_config

logger = logging.getLogger(__name__)

FALLBACK_ADDRESS = "127.0.0.1"
FALLBACK_TIMEZONE = "UTC"
DEFAULT_COMPONENTS = frozenset(
    {OptionalComponent.INDEXER, OptionalComponent.CAPTCHA_BYPASS, OptionalComponent.MANAGEMENT_UI}
)

_PHASE_LABELS = {
    Phase.PROBING: "Probing host",
    Phase.RECONCILING: "Checking existing installation",
    Phase.RENDERING: "Rendering configuration",
    Phase.EXECUTING: "Applying changes",
    Phase.VERIFYING: "Verifying stack health",
}

_SERVICE_TITLES = {
    ServiceId.ZURG: "Zurg WebDAV",
    ServiceId.CLI_DEBRID: "cli_debrid",
    ServiceId.PLEX: "Plex",
    ServiceId.JELLYFIN: "Jellyfin",
    ServiceId.EMBY: "Emby",
    ServiceId.OVERSEERR: "Overseerr",
    ServiceId.JELLYSEERR: "Jellyseerr",
    ServiceId.JACKETT: "Jackett",
    ServiceId.FLARESOLVERR: "FlareSolverr",
    ServiceId.PORTAINER: "Portainer",
    ServiceId.DMB: "DMB frontend",
}


@dataclass(frozen=True)
class InstallInputs:
    flavor: Flavor | None = None
    credential: str | None = None
    server_address: str | None = None
    timezone: str | None = None
    media_server: MediaServer | None = None
    request_manager: RequestManager | None = None
    components: frozenset[OptionalComponent] | None = None
    auto_update: frozenset[ServiceId] | None = None
    cli_channel: CliDebridChannel | None = None
    archive: Path | None = None
    non_interactive: bool = False
    assume_yes: bool = False


def resolve_server_address(raw: str | None, detected: str | None) -> str:
    value = (raw or "").strip()
    if not value:
        return detected or FALLBACK_ADDRESS
    if is_valid_ipv4(value):
        return value
    console.warn(f"Invalid server address {value!r}; using {FALLBACK_ADDRESS}.")
    return FALLBACK_ADDRESS


def requested_auto_updates(
    services: list[ServiceId], wanted: frozenset[ServiceId] | None
) -> dict[ServiceId, bool]:
    wanted = wanted or frozenset()
    return {s: s in wanted for s in services if s is not ServiceId.WATCHTOWER}


def with_update_policy(config: StackConfig, schedule: str, per_service: dict[ServiceId, bool]) -> StackConfig:
    """Attach the Watchtower schedule; per-service flags only matter when Watchtower is selected."""
    if not config.has(OptionalComponent.AUTO_UPDATER):
        per_service = {}
    policy = AutoUpdatePolicy(schedule_cron=schedule, per_service_enable=per_service)
    return replace(config, auto_update_policy=policy)


class CliUI:
    """Console side of a workflow run: prompts, flags and progress output."""

    def __init__(self, inputs: InstallInputs, settings: InstallerSettings):
        self.inputs = inputs
        self.settings = settings

    @property
    def interactive(self) -> bool:
        return not self.inputs.non_interactive

    def on_phase(self, phase: Phase) -> None:
        label = _PHASE_LABELS.get(phase)
        if label:
            console.info(f"{label}...")

    def warn(self, message: str) -> None:
        console.warn(message)

    def confirm(self, message: str, *, default: bool) -> bool:
        if self.inputs.assume_yes:
            return True
        if not self.interactive:
            return default
        return interactive.confirm_choice(message, default=default)

    def _credential(self, existing: str | None) -> str:
        if self.inputs.credential and self.inputs.credential.strip():
            return self.inputs.credential.strip()
        if existing:
            if not self.interactive or interactive.confirm_choice(
                f"Found an existing API key ({console.redact_secret(existing)}). Use existing key?",
                default=True,
            ):
                return existing
        if not self.interactive:
            console.err("Missing required option: --credential")
            raise typer.Exit(code=2)
        while True:
            value = typer.prompt("Real-Debrid API key", hide_input=True).strip()
            if not value:
                console.err("Debrid API key cannot be empty.")
            elif any(ch.isspace() for ch in value):
                console.err("Debrid API key must not contain whitespace.")
            else:
                return value

    def _server_address(self, detected: str | None) -> str:
        if self.inputs.server_address is not None or not self.interactive:
            return resolve_server_address(self.inputs.server_address, detected)
        raw = typer.prompt(
            f"Server address (blank to auto-detect{f': {detected}' if detected else ''})",
            default="",
            show_default=False,
        )
        return resolve_server_address(raw, detected)

    def _timezone(self, detected: str) -> str:
        if self.inputs.timezone:
            return self.inputs.timezone.strip()
        default = self.settings.default_timezone or detected
        if not is_valid_timezone(default):
            default = FALLBACK_TIMEZONE
        if not self.interactive:
            return default
        while True:
            value = typer.prompt("Timezone", default=default).strip() or default
            if is_valid_timezone(value):
                return value
            console.err(f"Unknown timezone: {value}. Use an IANA name such as Europe/Berlin.")

    def _components(self) -> frozenset[OptionalComponent]:
        if self.inputs.components is not None:
            return self.inputs.components
        if not self.interactive:
            return DEFAULT_COMPONENTS
        return interactive.select_components()

    def _auto_updates(self, services: list[ServiceId]) -> dict[ServiceId, bool]:
        if self.inputs.auto_update is not None or not self.interactive:
            return requested_auto_updates(services, self.inputs.auto_update)
        return interactive.select_auto_updates(services)

    def collect_config(
        self,
        flavor: Flavor,
        profile: HostProfile,
        toolchain: ToolchainState,
        *,
        existing_credential: str | None,
        detected_address: str | None,
        detected_timezone: str,
    ) -> StackConfig:
        logger.debug("collecting config for %s (rclone %s)", flavor.value, toolchain.mount_tool_version)
        if self.inputs.flavor is None and self.interactive:
            flavor = interactive.select_flavor(default=flavor)
        credential = self._credential(existing_credential)
        address = self._server_address(detected_address)
        timezone = self._timezone(detected_timezone)

        channel = self.inputs.cli_channel
        if channel is None:
            channel = interactive.select_channel() if self.interactive else CliDebridChannel.DEV
        media = self.inputs.media_server
        if media is None:
            media = interactive.select_media_server() if self.interactive else MediaServer.PLEX
        requests = self.inputs.request_manager
        if requests is None:
            requests = interactive.select_request_manager() if self.interactive else RequestManager.OVERSEERR
        components = self._components()

        config = StackConfig(
            credential=credential,
            server_address=address,
            timezone=timezone,
            flavor=flavor,
            selected_media_server=media,
            selected_request_manager=requests,
            optional_components=components,
            resource_tier=select_resource_tier(profile),
            cli_debrid_channel=channel,
            puid=self.settings.puid,
            pgid=self.settings.pgid,
        )
        per_service = {}
        if config.has(OptionalComponent.AUTO_UPDATER):
            per_service = self._auto_updates(config.selected_services())
        config = with_update_policy(config, self.settings.auto_update_schedule, per_service)

        try:
            config.validate()
        except StackError as exc:
            console.err(str(exc))
            raise typer.Exit(code=2)

        print_config(config, profile)
        if not self.confirm("Proceed with installation?", default=True):
            raise FatalError("Installation cancelled.")
        return config

    def complete_config(self, config: StackConfig) -> StackConfig:
        if not self.interactive and not self.inputs.credential:
            raise FatalError(
                "No API key found in the existing installation.",
                hint="debrid-stack update --credential <key>",
            )
        return replace(config, credential=self._credential(None))

    def choose_pull_action(self, image: str) -> PullChoice:
        if not self.interactive or self.inputs.assume_yes:
            return PullChoice.CONTINUE
        return interactive.select_pull_action(image)

    def select_snapshot(self, snapshots: list[BackupSnapshot]) -> BackupSnapshot | None:
        archive = self.inputs.archive
        if archive is not None:
            wanted = archive.resolve()
            for snapshot in snapshots:
                if snapshot.archive_path.resolve() == wanted:
                    return snapshot
            console.err(f"Backup not found: {archive}")
            raise typer.Exit(code=2)
        if not self.interactive:
            return snapshots[0]
        return interactive.select_snapshot(snapshots)


def print_config(config: StackConfig, profile: HostProfile) -> None:
    console.rule("[bold]Configuration[/]")
    console.print(f"Host:            {profile.os_pretty_name} ({profile.architecture.value})")
    console.print(f"Resources:       {profile.total_memory_mb} MB, {config.resource_tier.value} tier")
    console.print(f"Flavor:          {config.flavor.value}")
    console.print(f"API key:         {console.redact_secret(config.credential)}")
    console.print(f"Server address:  {config.server_address}")
    console.print(f"Timezone:        {config.timezone}")
    console.print(f"Services:        {', '.join(s.value for s in config.selected_services())}")


def _fail(exc: StackError) -> None:
    console.err(str(exc))
    console.hint(exc.hint)
    raise typer.Exit(code=1)


def print_diagnostics(outcome: RunOutcome) -> None:
    health = outcome.health
    if health is None or health.ok:
        return
    console.rule("[bold red]Diagnostics[/]")
    for name, output in health.diagnostics.items():
        console.print(f"[bold]{name}[/]")
        console.print(output, markup=False, highlight=False)


def print_summary(outcome: RunOutcome, paths: HostPaths) -> None:
    config = outcome.config
    console.rule("[bold]Next steps[/]")
    if config is not None:
        for service in config.selected_services():
            ports = SERVICE_PORTS.get(service) or ()
            title = _SERVICE_TITLES.get(service)
            if title and ports:
                console.print(f"{title:<16} http://{config.server_address}:{ports[0]}")
        flavor = config.flavor
        console.print(f"Compose file:    {paths.compose_for(flavor)}")
        console.print(f"Mount point:     {paths.mount_point_for(flavor)}")
    if outcome.backup is not None:
        console.print(f"Backup:          {outcome.backup.archive_path}")
    if outcome.restore is not None:
        console.print(f"Restored:        {len(outcome.restore.restored)} file(s), {outcome.restore.flavor.value} layout")


def report_outcome(outcome: RunOutcome, paths: HostPaths) -> None:
    if outcome.status is RunStatus.ABORTED:
        if outcome.error is not None:
            _fail(outcome.error)
        raise typer.Exit(code=1)
    print_diagnostics(outcome)
    print_summary(outcome, paths)
    if outcome.status is RunStatus.COMPLETED_WITH_WARNINGS:
        console.warn(f"Completed with {len(outcome.warnings) or 1} warning(s).")
    else:
        console.ok("Completed.")


def offer_reboot(runner: CommandRunner, inputs: InstallInputs) -> None:
    if inputs.non_interactive or inputs.assume_yes:
        return
    if interactive.confirm_choice("Reboot now to finish setup?", default=False):
        runner(["systemctl", "reboot"])


def build_workflow(inputs: InstallInputs, *, runner: CommandRunner | None = None) -> Workflow:
    settings = load_config()
    runner = runner or local_runner()
    return Workflow(runner, settings.to_paths(), CliUI(inputs, settings))


def run_action(choice: MenuChoice, inputs: InstallInputs, *, workflow: Workflow | None = None) -> RunOutcome:
    """Run one menu action with root checks and console reporting."""
    try:
        ensure_privileged()
    except StackError as exc:
        _fail(exc)
    workflow = workflow or build_workflow(inputs)
    try:
        try:
            outcome = workflow.run(choice, flavor_choice=inputs.flavor)
        except NoExistingInstallation as exc:
            console.warn(str(exc))
            if inputs.non_interactive:
                _fail(exc)
            if not interactive.confirm_choice("Run a fresh install instead?", default=True):
                console.info("Nothing to do.")
                raise typer.Exit(code=0)
            outcome = workflow.run(MenuChoice.INSTALL, flavor_choice=inputs.flavor)
    except StackError as exc:
        _fail(exc)
    report_outcome(outcome, workflow.paths)
    return outcome
