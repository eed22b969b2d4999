from __future__ import annotations

import logging
import os
import tarfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from .backup import BackupManager, RestoreResult
from .errors import FatalError, StackError
from .executor import ApplyResult, Executor, PullChoice
from .models import (
    BackupSnapshot,
    Flavor,
    HostProfile,
    InstallationRecord,
    RenderedArtifact,
    StackConfig,
    ToolchainState,
)
from .paths import HostPaths
from .probe import detect_server_address, detect_timezone, probe_host, probe_toolchain
from .reconcile import (
    Backup,
    FreshInstall,
    MenuChoice,
    Repair,
    Restore,
    Update,
    conflicting_containers,
    find_existing_credential,
    reconcile,
    recover_stack_config,
    scan_filesystem,
    scan_runtime,
)
from .render import render
from .runner import CommandRunner
from .verify import HealthEndpoints, HealthReport, verify

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PROBING = "probing"
    RECONCILING = "reconciling"
    RENDERING = "rendering"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    DONE = "done"
    ABORTED = "aborted"


_NEXT = {
    Phase.PROBING: {Phase.RECONCILING},
    Phase.RECONCILING: {Phase.RENDERING, Phase.EXECUTING, Phase.DONE},
    Phase.RENDERING: {Phase.EXECUTING},
    Phase.EXECUTING: {Phase.VERIFYING, Phase.DONE},
    Phase.VERIFYING: {Phase.DONE},
    Phase.DONE: set(),
    Phase.ABORTED: set(),
}


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    ABORTED = "aborted"


@dataclass
class RunOutcome:
    status: RunStatus
    phase: Phase
    warnings: list[str] = field(default_factory=list)
    config: StackConfig | None = None
    health: HealthReport | None = None
    backup: BackupSnapshot | None = None
    restore: RestoreResult | None = None
    error: StackError | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.status is RunStatus.ABORTED else 0


class WorkflowUI(Protocol):
    def on_phase(self, phase: Phase) -> None: ...

    def warn(self, message: str) -> None: ...

    def confirm(self, message: str, *, default: bool) -> bool: ...

    def collect_config(
        self,
        flavor: Flavor,
        profile: HostProfile,
        toolchain: ToolchainState,
        *,
        existing_credential: str | None,
        detected_address: str | None,
        detected_timezone: str,
    ) -> StackConfig: ...

    def complete_config(self, config: StackConfig) -> StackConfig: ...

    def choose_pull_action(self, image: str) -> PullChoice: ...

    def select_snapshot(self, snapshots: list[BackupSnapshot]) -> BackupSnapshot | None: ...


class Workflow:
    """Drives one run: probe, reconcile, render, execute, verify."""

    def __init__(
        self,
        runner: CommandRunner,
        paths: HostPaths,
        ui: WorkflowUI,
        *,
        executor: Executor | None = None,
        backups: BackupManager | None = None,
        probe: Callable[[], HostProfile] | None = None,
        toolchain: Callable[[], ToolchainState] | None = None,
        verifier: Callable[[HealthEndpoints], HealthReport] | None = None,
        is_mount: Callable[[Path], bool] | None = None,
    ):
        self.runner = runner
        self.paths = paths
        self.ui = ui
        self.executor = executor or Executor(runner, paths)
        self.backups = backups or BackupManager(paths)
        self._probe = probe or (lambda: probe_host(runner=runner))
        self._toolchain = toolchain or (lambda: probe_toolchain(runner=runner))
        self._verify = verifier or (lambda endpoints: verify(endpoints, runner=runner))
        self._is_mount = is_mount or os.path.ismount
        self.phase = Phase.PROBING
        self.warnings: list[str] = []

    def _enter(self, phase: Phase) -> None:
        if phase is not Phase.ABORTED and phase is not self.phase and phase not in _NEXT[self.phase]:
            raise RuntimeError(f"illegal phase transition {self.phase.value} -> {phase.value}")
        logger.debug("phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        self.ui.on_phase(phase)

    def _warn(self, messages: list[str] | str) -> None:
        for message in [messages] if isinstance(messages, str) else messages:
            self.warnings.append(message)
            self.ui.warn(message)

    def _finish(self, **kwargs) -> RunOutcome:
        self._enter(Phase.DONE)
        health = kwargs.get("health")
        degraded = bool(self.warnings) or (health is not None and not health.ok)
        status = RunStatus.COMPLETED_WITH_WARNINGS if degraded else RunStatus.COMPLETED
        return RunOutcome(status=status, phase=self.phase, warnings=list(self.warnings), **kwargs)

    def run(self, choice: MenuChoice, *, flavor_choice: Flavor | None = None) -> RunOutcome:
        """Run one menu action to completion.

        Fatal errors end the run as ABORTED; NoExistingInstallation is raised
        to the caller so it can offer a fresh install instead.
        """
        self.phase = Phase.PROBING
        self.warnings = []
        self.ui.on_phase(Phase.PROBING)
        try:
            profile = self._probe()
            toolchain = self._toolchain()
            self._enter(Phase.RECONCILING)
            runtime = scan_runtime(self.runner)
            result = reconcile(
                profile,
                scan_filesystem(self.paths),
                runtime,
                choice,
                flavor_choice=flavor_choice,
            )
            self._warn(result.warnings)
            if result.record.ambiguous and not self.ui.confirm(
                "Both bundle and individual installs were detected. Continue treating this host as a bundle install?",
                default=False,
            ):
                raise FatalError("Aborted: ambiguous installation flavor.", hint="debrid-stack probe")

            action = result.action
            if isinstance(action, FreshInstall):
                return self._fresh_install(action.flavor, profile, toolchain, result.record, runtime)
            if isinstance(action, Update):
                return self._update(action.record, profile, toolchain)
            if isinstance(action, Repair):
                return self._repair(action.record, profile, toolchain)
            if isinstance(action, Backup):
                return self._backup(profile)
            if isinstance(action, Restore):
                return self._restore(result.record, profile)
            raise RuntimeError(f"unhandled action {action!r}")
        except FatalError as exc:
            logger.debug("run aborted in %s: %s", self.phase.value, exc)
            self._enter(Phase.ABORTED)
            return RunOutcome(
                status=RunStatus.ABORTED,
                phase=Phase.ABORTED,
                warnings=list(self.warnings),
                error=exc,
            )

    # actions

    def _render(self, config: StackConfig, profile: HostProfile, toolchain: ToolchainState) -> list[RenderedArtifact]:
        self._enter(Phase.RENDERING)
        return render(config, profile, toolchain, self.paths)

    def _execute(
        self,
        config: StackConfig,
        artifacts: list[RenderedArtifact],
        profile: HostProfile,
        toolchain: ToolchainState,
        *,
        force_pull: bool = False,
    ) -> ApplyResult:
        ready, warnings = self.executor.prepare(profile, toolchain)
        self._warn(warnings)
        if ready.mount_tool_version_tier is not toolchain.mount_tool_version_tier:
            artifacts = render(config, profile, ready, self.paths)
        applied = self.executor.apply(
            artifacts,
            profile,
            ready,
            choose=self.ui.choose_pull_action,
            force_pull=force_pull,
            prepared=True,
        )
        self._warn(applied.warnings)
        for image in applied.pulls.missing:
            self._warn(f"Image {image} is not available locally. Try: docker pull {image}")
        return applied

    def _verify_stack(self, flavor: Flavor) -> HealthReport:
        self._enter(Phase.VERIFYING)
        health = self._verify(HealthEndpoints.for_flavor(flavor, self.paths))
        if not health.ok:
            self._warn("Stack health check failed.")
        return health

    def _snapshot(self, profile: HostProfile) -> BackupSnapshot | None:
        try:
            return self.backups.create(profile)
        except (OSError, tarfile.TarError) as exc:
            self._warn(f"Backup failed: {exc}. Try: debrid-stack backup")
            return None

    def _retire(self, record: InstallationRecord, flavor: Flavor, profile: HostProfile) -> None:
        """Leave the host with exactly one flavor once `flavor` is deployed."""
        if not record.installed:
            return
        if record.flavor is flavor and not record.ambiguous:
            return
        retired = Flavor.INDIVIDUAL if flavor is Flavor.BUNDLE else Flavor.BUNDLE
        if not self.ui.confirm(
            f"This host has a {retired.value} install. Replace it with a {flavor.value} install?",
            default=False,
        ):
            raise FatalError("Aborted: existing installation kept.", hint="debrid-stack update")
        self._snapshot(profile)
        self._warn(self.executor.retire(retired))

    def _fresh_install(
        self,
        flavor: Flavor,
        profile: HostProfile,
        toolchain: ToolchainState,
        record: InstallationRecord,
        runtime: frozenset[str],
    ) -> RunOutcome:
        config = self.ui.collect_config(
            flavor,
            profile,
            toolchain,
            existing_credential=find_existing_credential(self.paths),
            detected_address=detect_server_address(self.runner),
            detected_timezone=detect_timezone(self.runner),
        )
        self._retire(record, config.flavor, profile)
        conflicts = conflicting_containers(runtime, config)
        if conflicts:
            if not self.ui.confirm(f"Containers already exist: {', '.join(conflicts)}. Remove them?", default=True):
                raise FatalError(
                    "Aborted: existing containers would conflict.",
                    hint=f"docker rm -f {' '.join(conflicts)}",
                )
            self._warn(self.executor.remove_containers(conflicts))

        artifacts = self._render(config, profile, toolchain)
        self._enter(Phase.EXECUTING)
        self._execute(config, artifacts, profile, toolchain)
        health = self._verify_stack(config.flavor)
        backup = self._snapshot(profile)
        return self._finish(config=config, health=health, backup=backup)

    def _recover_config(self, record: InstallationRecord, profile: HostProfile) -> StackConfig:
        config = recover_stack_config(
            record,
            self.paths,
            profile,
            server_address=detect_server_address(self.runner) or "127.0.0.1",
            timezone=detect_timezone(self.runner),
        )
        if not config.credential:
            config = self.ui.complete_config(config)
        return config

    def _update(self, record: InstallationRecord, profile: HostProfile, toolchain: ToolchainState) -> RunOutcome:
        backup = self._snapshot(profile)
        config = self._recover_config(record, profile)
        artifacts = self._render(config, profile, toolchain)
        self._enter(Phase.EXECUTING)
        self.executor.stop_stack(record.flavor)
        self._execute(config, artifacts, profile, toolchain, force_pull=True)
        health = self._verify_stack(record.flavor)
        return self._finish(config=config, health=health, backup=backup)

    def _repair(self, record: InstallationRecord, profile: HostProfile, toolchain: ToolchainState) -> RunOutcome:
        config = self._recover_config(record, profile)
        artifacts = self._render(config, profile, toolchain)
        self._enter(Phase.EXECUTING)
        self._execute(config, artifacts, profile, toolchain)
        self._warn(self.executor.start_containers([s.container_name for s in config.selected_services()]))
        if record.flavor is Flavor.INDIVIDUAL and not self._is_mount(self.paths.mount_dir):
            self._warn(self.executor.restart_mount_unit())
        health = self._verify_stack(record.flavor)
        return self._finish(config=config, health=health)

    def _backup(self, profile: HostProfile) -> RunOutcome:
        self._enter(Phase.EXECUTING)
        backup = self._snapshot(profile)
        return self._finish(backup=backup)

    def _restore(self, record: InstallationRecord, profile: HostProfile) -> RunOutcome:
        snapshots = self.backups.list_snapshots()
        if not snapshots:
            self._warn(f"No backups found in {self.paths.backup_dir}. Try: debrid-stack backup")
            return self._finish()
        snapshot = self.ui.select_snapshot(snapshots)
        if snapshot is None:
            return self._finish()
        missing = self.backups.missing_members(snapshot)
        if missing and not self.ui.confirm(
            f"Backup is missing {', '.join(missing)}. Restore the remaining files anyway?",
            default=False,
        ):
            return self._finish()
        self._retire(record, snapshot.flavor, profile)

        self._enter(Phase.EXECUTING)
        restored =self.backups.restore(snapshot, stop=self.executor.stop_stack)
        if restored.skipped:
            self._warn(f"Skipped unknown backup entries: {', '.join(restored.skipped)}")
        if restored.flavor is Flavor.INDIVIDUAL and self.paths.mount_unit in restored.restored:
            self._warn(self.executor.start_mount_unit())
        else:
            self.runner(["systemctl", "daemon-reload"])
        compose = self.paths.compose_for(restored.flavor)
        if compose.exists():
            self._warn(self.executor.compose_up(compose))
        health = self._verify_stack(restored.flavor)
        logger.debug("restored %s on %s", snapshot.archive_path, profile.os_id)
        return self._finish(health=health, restore=restored)
