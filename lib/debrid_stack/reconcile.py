from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

import yaml

from .errors import NoExistingInstallation
from .models import (
    AutoUpdatePolicy,
    CliDebridChannel,
    DEFAULT_UPDATE_SCHEDULE,
    Flavor,
    HostProfile,
    InstallationRecord,
    MediaServer,
    OptionalComponent,
    RequestManager,
    ServiceId,
    StackConfig,
)
from .paths import HostPaths
from .render import WATCHTOWER_LABEL, select_resource_tier
from .runner import CommandRunner

logger = logging.getLogger(__name__)

BUNDLE_CONTAINERS = frozenset({ServiceId.DMB.container_name})
INDIVIDUAL_CONTAINERS = frozenset({ServiceId.ZURG.container_name, ServiceId.CLI_DEBRID.container_name})

_WEBHOOK_RE = re.compile(r'webhook_url="https?://([^:/"]+)')


class MenuChoice(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    BACKUP = "backup"
    RESTORE = "restore"
    REPAIR = "repair"
    EXIT = "exit"


@dataclass(frozen=True)
class FreshInstall:
    flavor: Flavor


@dataclass(frozen=True)
class Update:
    record: InstallationRecord


@dataclass(frozen=True)
class Repair:
    record: InstallationRecord


@dataclass(frozen=True)
class Backup:
    pass


@dataclass(frozen=True)
class Restore:
    pass


Action = Union[FreshInstall, Update, Repair, Backup, Restore]


@dataclass(frozen=True)
class FilesystemScan:
    config_paths: dict[ServiceId, Path] = field(default_factory=dict)
    individual_markers: tuple[Path, ...] = ()
    bundle_markers: tuple[Path, ...] = ()


@dataclass(frozen=True)
class ReconcileResult:
    record: InstallationRecord
    action: Action
    warnings: list[str] = field(default_factory=list)


def scan_filesystem(paths: HostPaths) -> FilesystemScan:
    config_paths: dict[ServiceId, Path] = {}
    if paths.zurg_config.exists():
        config_paths[ServiceId.ZURG] = paths.zurg_config
    if paths.cli_debrid_settings.exists():
        config_paths[ServiceId.CLI_DEBRID] = paths.cli_debrid_settings
    if paths.bundle_env.exists():
        config_paths[ServiceId.DMB] = paths.bundle_env
    individual = tuple(
        p for p in (paths.zurg_config, paths.cli_debrid_settings, paths.compose_file) if p.exists()
    )
    bundle = tuple(p for p in (paths.bundle_marker, paths.bundle_compose) if p.exists())
    return FilesystemScan(config_paths=config_paths, individual_markers=individual, bundle_markers=bundle)


def scan_runtime(runner: CommandRunner) -> frozenset[str]:
    res = runner(["docker", "ps", "-a", "--format", "{{.Names}}"])
    if res.returncode != 0:
        return frozenset()
    return frozenset(line.strip() for line in (res.stdout or "").splitlines() if line.strip())


def services_from_containers(names: frozenset[str]) -> frozenset[ServiceId]:
    by_name = {service.container_name: service for service in ServiceId}
    return frozenset(by_name[name] for name in names if name in by_name)


def detect_flavor(fs_scan: FilesystemScan, runtime_scan: frozenset[str]) -> tuple[Flavor, bool]:
    bundle = bool(fs_scan.bundle_markers) or bool(runtime_scan & BUNDLE_CONTAINERS)
    individual = bool(fs_scan.individual_markers) or bool(runtime_scan & INDIVIDUAL_CONTAINERS)
    if bundle:
        return Flavor.BUNDLE, individual
    if individual:
        return Flavor.INDIVIDUAL, False
    return Flavor.NONE, False


def build_record(fs_scan: FilesystemScan, runtime_scan: frozenset[str]) -> InstallationRecord:
    flavor, ambiguous = detect_flavor(fs_scan, runtime_scan)
    return InstallationRecord(
        flavor=flavor,
        present_services=services_from_containers(runtime_scan),
        config_paths=dict(fs_scan.config_paths),
        ambiguous=ambiguous,
    )


def reconcile(
    profile: HostProfile,
    fs_scan: FilesystemScan,
    runtime_scan: frozenset[str],
    choice: MenuChoice,
    *,
    flavor_choice: Flavor | None = None,
) -> ReconcileResult:
    record = build_record(fs_scan, runtime_scan)
    logger.debug("reconcile %s on %s: %s", choice.value, profile.os_id, record)
    warnings: list[str] = []
    if record.ambiguous:
        warnings.append(
            "Both bundle and individual installation artifacts were found; treating this host as a bundle install."
        )

    if choice is MenuChoice.INSTALL:
        flavor = flavor_choice or Flavor.INDIVIDUAL
        if flavor is Flavor.NONE:
            flavor = Flavor.INDIVIDUAL
        if record.installed:
            warnings.append(
                f"An existing {record.flavor.value} installation was detected; "
                "a fresh install overwrites its generated files."
            )
        return ReconcileResult(record=record, action=FreshInstall(flavor), warnings=warnings)
    if choice in {MenuChoice.UPDATE, MenuChoice.REPAIR}:
        if not record.installed:
            raise NoExistingInstallation(
                f"No existing installation found to {choice.value}.",
                hint="debrid-stack install",
            )
        action: Action = Update(record) if choice is MenuChoice.UPDATE else Repair(record)
        return ReconcileResult(record=record, action=action, warnings=warnings)
    if choice is MenuChoice.BACKUP:
        return ReconcileResult(record=record, action=Backup(), warnings=warnings)
    if choice is MenuChoice.RESTORE:
        return ReconcileResult(record=record, action=Restore(), warnings=warnings)
    raise ValueError(f"Menu choice {choice.value!r} does not map to an action")


def conflicting_containers(runtime_scan: frozenset[str], config: StackConfig) -> list[str]:
    wanted = [service.container_name for service in config.selected_services()]
    return [name for name in wanted if name in runtime_scan]


# recovering configuration from disk


def _load_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    return data if isinstance(data, dict) else {}


def _load_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def read_env_file(path: Path) -> dict[str, str]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip()
    return data


def find_existing_credential(paths: HostPaths, flavor: Flavor | None = None) -> str | None:
    """Look for an API key left behind by a previous install."""
    candidates: list[str | None] = []
    if flavor in (None, Flavor.INDIVIDUAL):
        candidates.append(_load_yaml(paths.zurg_config).get("token"))
        debrid = _load_json(paths.cli_debrid_settings).get("debrid")
        candidates.append(debrid.get("api_key") if isinstance(debrid, dict) else None)
    if flavor in (None, Flavor.BUNDLE):
        candidates.append(_load_yaml(paths.bundle_zurg_config).get("token"))
        candidates.append(read_env_file(paths.bundle_env).get("ZURG_INSTANCES_REALDEBRID_API_KEY"))
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _server_address_from_hook(path: Path) -> str | None:
    try:
        match = _WEBHOOK_RE.search(path.read_text(encoding="utf-8"))
    except OSError:
        return None
    return match.group(1) if match else None


def recover_stack_config(
    record: InstallationRecord,
    paths: HostPaths,
    profile: HostProfile,
    *,
    server_address: str = "127.0.0.1",
    timezone: str = "UTC",
) -> StackConfig:
    """Rebuild a StackConfig from the files a previous run rendered.

    Anything that cannot be read falls back to the given defaults; the
    credential comes back empty when no key is found on disk.
    """
    flavor = record.flavor if record.installed else Flavor.INDIVIDUAL
    compose = _load_yaml(paths.compose_for(flavor))
    services = compose.get("services") if isinstance(compose.get("services"), dict) else {}

    hook = paths.bundle_library_hook if flavor is Flavor.BUNDLE else paths.library_hook
    address = _server_address_from_hook(hook) or server_address

    tz: str | None = None
    ids: tuple[int, int] | None = None
    for block in services.values():
        env = block.get("environment") if isinstance(block, dict) else None
        if not isinstance(env, dict):
            continue
        if tz is None and env.get("TZ"):
            tz = str(env["TZ"])
        if ids is None and str(env.get("PUID", "")).isdigit() and str(env.get("PGID", "")).isdigit():
            ids = (int(env["PUID"]), int(env["PGID"]))
    puid, pgid = ids or (1000, 1000)

    media = MediaServer.NONE
    for candidate in (MediaServer.PLEX, MediaServer.JELLYFIN, MediaServer.EMBY):
        if candidate.value in services:
            media = candidate
            break
    requests = RequestManager.NONE
    for candidate in (RequestManager.OVERSEERR, RequestManager.JELLYSEERR):
        if candidate.value in services:
            requests = candidate
            break
    components = frozenset(c for c in OptionalComponent if c.service.value in services)

    channel = CliDebridChannel.DEV
    image = str((services.get(ServiceId.CLI_DEBRID.value) or {}).get("image") or "")
    tag = image.rpartition(":")[2].removesuffix("-arm64")
    if tag in {c.value for c in CliDebridChannel}:
        channel = CliDebridChannel(tag)

    per_service: dict[ServiceId, bool] = {}
    for name, block in services.items():
        labels = block.get("labels") if isinstance(block, dict) else None
        if isinstance(labels, dict) and name in {s.value for s in ServiceId}:
            per_service[ServiceId(name)] = str(labels.get(WATCHTOWER_LABEL, "false")).lower() == "true"
    watchtower_env = (services.get(ServiceId.WATCHTOWER.value) or {}).get("environment") or {}
    policy = AutoUpdatePolicy(
        schedule_cron=str(watchtower_env.get("WATCHTOWER_SCHEDULE") or DEFAULT_UPDATE_SCHEDULE),
        notify_webhook=watchtower_env.get("WATCHTOWER_NOTIFICATION_URL") or None,
        per_service_enable=per_service,
    )

    return StackConfig(
        credential=find_existing_credential(paths, flavor) or "",
        server_address=address,
        timezone=tz or timezone,
        flavor=flavor,
        selected_media_server=media,
        selected_request_manager=requests,
        optional_components=components,
        resource_tier=select_resource_tier(profile),
        auto_update_policy=policy,
        cli_debrid_channel=channel,
        puid=puid,
        pgid=pgid,
    )
