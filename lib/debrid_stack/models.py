from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from pathlib import Path
from zoneinfo import available_timezones

from .errors import StackError


class Architecture(str, Enum):
    AMD64 = "amd64"
    ARM64 = "arm64"

    @classmethod
    def from_machine(cls, machine: str) -> "Architecture":
        if (machine or "").strip().lower() in {"aarch64", "arm64"}:
            return cls.ARM64
        return cls.AMD64


class PackageManager(str, Enum):
    APT = "apt"
    DNF = "dnf"
    PACMAN = "pacman"
    ZYPPER = "zypper"
    APK = "apk"

    @property
    def update_command(self) -> list[str]:
        return list(_PACKAGE_UPDATE[self])

    @property
    def install_command(self) -> list[str]:
        return list(_PACKAGE_INSTALL[self])


_PACKAGE_UPDATE = {
    PackageManager.APT: ("apt-get", "update"),
    PackageManager.DNF: ("dnf", "check-update"),
    PackageManager.PACMAN: ("pacman", "-Sy"),
    PackageManager.ZYPPER: ("zypper", "refresh"),
    PackageManager.APK: ("apk", "update"),
}

_PACKAGE_INSTALL = {
    PackageManager.APT: ("apt-get", "install", "-y"),
    PackageManager.DNF: ("dnf", "install", "-y"),
    PackageManager.PACMAN: ("pacman", "-S", "--noconfirm"),
    PackageManager.ZYPPER: ("zypper", "install", "-y"),
    PackageManager.APK: ("apk", "add"),
}


@dataclass(frozen=True)
class HostProfile:
    os_family: str
    os_id: str
    os_pretty_name: str
    architecture: Architecture
    is_virtualized: bool
    total_memory_mb: int
    cpu_cores: int
    package_manager: PackageManager
    has_render_device: bool = False

    def summary(self) -> dict[str, object]:
        return {
            "os": self.os_pretty_name,
            "os_id": self.os_id,
            "os_family": self.os_family,
            "architecture": self.architecture.value,
            "virtualized": self.is_virtualized,
            "memory_mb": self.total_memory_mb,
            "cpu_cores": self.cpu_cores,
            "package_manager": self.package_manager.value,
        }


class MountToolTier(str, Enum):
    LEGACY = "legacy"
    MODERN = "modern"


@dataclass(frozen=True)
class ToolchainState:
    container_runtime_present: bool = False
    compose_present: bool = False
    mount_tool_present: bool = False
    mount_tool_version: str | None = None
    mount_tool_version_tier: MountToolTier = MountToolTier.LEGACY
    common_packages_present: bool = False


class Flavor(str, Enum):
    INDIVIDUAL = "individual"
    BUNDLE = "bundle"
    NONE = "none"


class ServiceId(str, Enum):
    ZURG = "zurg"
    CLI_DEBRID = "cli_debrid"
    PLEX = "plex"
    JELLYFIN = "jellyfin"
    EMBY = "emby"
    OVERSEERR = "overseerr"
    JELLYSEERR = "jellyseerr"
    JACKETT = "jackett"
    FLARESOLVERR = "flaresolverr"
    PORTAINER = "portainer"
    WATCHTOWER = "watchtower"
    DMB = "dmb"

    @property
    def container_name(self) -> str:
        if self is ServiceId.DMB:
            return "DMB"
        return self.value


class MediaServer(str, Enum):
    PLEX = "plex"
    JELLYFIN = "jellyfin"
    EMBY = "emby"
    NONE = "none"

    @property
    def service(self) -> ServiceId | None:
        if self is MediaServer.NONE:
            return None
        return ServiceId(self.value)


class RequestManager(str, Enum):
    OVERSEERR = "overseerr"
    JELLYSEERR = "jellyseerr"
    NONE = "none"

    @property
    def service(self) -> ServiceId | None:
        if self is RequestManager.NONE:
            return None
        return ServiceId(self.value)


class OptionalComponent(str, Enum):
    INDEXER = "indexer"
    CAPTCHA_BYPASS = "captcha_bypass"
    MANAGEMENT_UI = "management_ui"
    AUTO_UPDATER = "auto_updater"

    @property
    def service(self) -> ServiceId:
        return _COMPONENT_SERVICES[self]


_COMPONENT_SERVICES = {
    OptionalComponent.INDEXER: ServiceId.JACKETT,
    OptionalComponent.CAPTCHA_BYPASS: ServiceId.FLARESOLVERR,
    OptionalComponent.MANAGEMENT_UI: ServiceId.PORTAINER,
    OptionalComponent.AUTO_UPDATER: ServiceId.WATCHTOWER,
}


class ResourceTier(str, Enum):
    CONSTRAINED = "constrained"
    NORMAL = "normal"


class CliDebridChannel(str, Enum):
    DEV = "dev"
    MAIN = "main"


DEFAULT_UPDATE_SCHEDULE = "0 0 4 * * *"


@dataclass(frozen=True)
class AutoUpdatePolicy:
    schedule_cron: str = DEFAULT_UPDATE_SCHEDULE
    notify_webhook: str | None = None
    per_service_enable: dict[ServiceId, bool] = field(default_factory=dict)

    def enabled_for(self, service: ServiceId) -> bool:
        return bool(self.per_service_enable.get(service, False))


@lru_cache(maxsize=1)
def _known_timezones() -> frozenset[str]:
    return frozenset(available_timezones())


def is_valid_timezone(name: str) -> bool:
    """True for IANA zone names known to the tz database."""
    return name in _known_timezones()


@dataclass(frozen=True)
class StackConfig:
    credential: str
    server_address: str
    timezone: str
    flavor: Flavor = Flavor.INDIVIDUAL
    selected_media_server: MediaServer = MediaServer.PLEX
    selected_request_manager: RequestManager = RequestManager.OVERSEERR
    optional_components: frozenset[OptionalComponent] = frozenset()
    resource_tier: ResourceTier = ResourceTier.NORMAL
    auto_update_policy: AutoUpdatePolicy = field(default_factory=AutoUpdatePolicy)
    cli_debrid_channel: CliDebridChannel = CliDebridChannel.DEV
    puid: int = 1000
    pgid: int = 1000

    def __repr__(self) -> str:
        return (
            f"StackConfig(flavor={self.flavor.value!r}, server_address={self.server_address!r}, "
            f"timezone={self.timezone!r}, media_server={self.selected_media_server.value!r}, "
            f"request_manager={self.selected_request_manager.value!r}, "
            f"components={sorted(c.value for c in self.optional_components)!r}, "
            f"tier={self.resource_tier.value!r}, credential='***')"
        )

    def has(self, component: OptionalComponent) -> bool:
        return component in self.optional_components

    def selected_services(self) -> list[ServiceId]:
        """Services that end up in the compose manifest, in manifest order."""
        if self.flavor is Flavor.BUNDLE:
            services = [ServiceId.DMB]
        else:
            services = [ServiceId.ZURG, ServiceId.CLI_DEBRID]
        for extra in (self.selected_media_server.service, self.selected_request_manager.service):
            if extra is not None:
                services.append(extra)
        for component in OptionalComponent:
            if component in self.optional_components:
                services.append(component.service)
        return services

    def validate(self) -> None:
        if not self.credential.strip():
            raise StackError("Debrid API key cannot be empty.")
        if any(ch.isspace() for ch in self.credential.strip()):
            raise StackError("Debrid API key must not contain whitespace.")
        if not self.server_address.strip():
            raise StackError("Server address cannot be empty.")
        if not is_valid_timezone(self.timezone or ""):
            raise StackError(f"Invalid timezone: {self.timezone!r}")
        if self.puid <= 0 or self.pgid <= 0:
            raise StackError("PUID and PGID must be positive.")
        if self.flavor is Flavor.NONE:
            raise StackError("A deployment flavor must be chosen.")


@dataclass(frozen=True)
class InstallationRecord:
    flavor: Flavor
    present_services: frozenset[ServiceId] = frozenset()
    config_paths: dict[ServiceId, Path] = field(default_factory=dict)
    ambiguous: bool = False

    @property
    def installed(self) -> bool:
        return self.flavor is not Flavor.NONE


class ArtifactKind(str, Enum):
    SERVICE_CONFIG = "service_config"
    COMPOSE_MANIFEST = "compose_manifest"
    UNIT_FILE = "unit_file"
    HELPER_SCRIPT = "helper_script"


@dataclass(frozen=True)
class RenderedArtifact:
    kind: ArtifactKind
    path: Path
    content: str
    name: str
    mode: int = 0o644


@dataclass(frozen=True)
class BackupSnapshot:
    timestamp: datetime
    archive_path: Path
    manifest: tuple[str, ...]
    flavor: Flavor = Flavor.INDIVIDUAL
