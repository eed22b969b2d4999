from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import yaml

from .errors import RenderError, StackError
from .models import (
    Architecture,
    ArtifactKind,
    Flavor,
    HostProfile,
    MountToolTier,
    RenderedArtifact,
    ResourceTier,
    ServiceId,
    StackConfig,
    ToolchainState,
)
from .paths import BUNDLE_MARKER_NAME, MOUNT_UNIT_NAME, RCLONE_REMOTE, HostPaths

ZURG_PORT = 9999
CLI_DEBRID_PORT = 5000
BUNDLE_FRONTEND_PORT = 3005
CONSTRAINED_MEMORY_MB = 2048
WATCHTOWER_LABEL = "com.centurylinklabs.watchtower.enable"
RCLONE_BINARY = "/usr/bin/rclone"
DOCKER_SOCK = "/var/run/docker.sock"

IMAGES: dict[ServiceId, str] = {
    ServiceId.ZURG: "ghcr.io/debridmediamanager/zurg-testing:latest",
    ServiceId.PLEX: "lscr.io/linuxserver/plex:latest",
    ServiceId.JELLYFIN: "lscr.io/linuxserver/jellyfin:latest",
    ServiceId.EMBY: "lscr.io/linuxserver/emby:latest",
    ServiceId.OVERSEERR: "lscr.io/linuxserver/overseerr:latest",
    ServiceId.JELLYSEERR: "fallenbagel/jellyseerr:latest",
    ServiceId.JACKETT: "lscr.io/linuxserver/jackett:latest",
    ServiceId.FLARESOLVERR: "ghcr.io/flaresolverr/flaresolverr:latest",
    ServiceId.PORTAINER: "portainer/portainer-ce:latest",
    ServiceId.WATCHTOWER: "containrrr/watchtower:latest",
    ServiceId.DMB: "iampuid0/dmb:latest",
}

SERVICE_PORTS: dict[ServiceId, tuple[int, ...]] = {
    ServiceId.ZURG: (ZURG_PORT,),
    ServiceId.CLI_DEBRID: (CLI_DEBRID_PORT, 5001),
    ServiceId.PLEX: (32400,),
    ServiceId.JELLYFIN: (8096,),
    ServiceId.EMBY: (8096,),
    ServiceId.OVERSEERR: (5055,),
    ServiceId.JELLYSEERR: (5055,),
    ServiceId.JACKETT: (9117,),
    ServiceId.FLARESOLVERR: (8191,),
    ServiceId.PORTAINER: (8000, 9443),
    ServiceId.WATCHTOWER: (),
    ServiceId.DMB: (BUNDLE_FRONTEND_PORT,),
}

_LINUXSERVER = {ServiceId.PLEX, ServiceId.JELLYFIN, ServiceId.EMBY, ServiceId.OVERSEERR, ServiceId.JACKETT}


def cli_debrid_image(config: StackConfig, profile: HostProfile) -> str:
    tag = config.cli_debrid_channel.value
    if profile.architecture is Architecture.ARM64:
        tag = f"{tag}-arm64"
    return f"godver3/cli_debrid:{tag}"


def image_for(service: ServiceId, config: StackConfig, profile: HostProfile) -> str:
    if service is ServiceId.CLI_DEBRID:
        return cli_debrid_image(config, profile)
    return IMAGES[service]


# resource tiers


@dataclass(frozen=True)
class TierSettings:
    zurg_workers: int
    zurg_check_interval: int
    transfers: int
    checkers: int
    buffer_size_mb: int
    read_ahead_mb: int
    cache_max_size_mb: int


MOUNT_CONCURRENCY_FIELDS = ("transfers", "checkers", "buffer_size_mb", "read_ahead_mb", "cache_max_size_mb")

RESOURCE_TIERS: dict[ResourceTier, TierSettings] = {
    ResourceTier.NORMAL: TierSettings(
        zurg_workers=64,
        zurg_check_interval=10,
        transfers=16,
        checkers=16,
        buffer_size_mb=64,
        read_ahead_mb=64,
        cache_max_size_mb=2048,
    ),
    ResourceTier.CONSTRAINED: TierSettings(
        zurg_workers=16,
        zurg_check_interval=30,
        transfers=8,
        checkers=8,
        buffer_size_mb=32,
        read_ahead_mb=32,
        cache_max_size_mb=512,
    ),
}


def select_resource_tier(profile: HostProfile) -> ResourceTier:
    if profile.is_virtualized and profile.total_memory_mb < CONSTRAINED_MEMORY_MB:
        return ResourceTier.CONSTRAINED
    return ResourceTier.NORMAL


def effective_tier(config: StackConfig, profile: HostProfile) -> ResourceTier:
    """A constrained host always renders the constrained tier; otherwise the configured one."""
    if select_resource_tier(profile) is ResourceTier.CONSTRAINED:
        return ResourceTier.CONSTRAINED
    return config.resource_tier


# typed builders


def _require_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RenderError(f"{name} must be a positive integer, got {value!r}")


def _require_absolute(name: str, value: Path | str) -> None:
    if not PurePosixPath(str(value)).is_absolute():
        raise RenderError(f"{name} must be an absolute path, got {value!r}")


def _require_text(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise RenderError(f"{name} cannot be empty")


@dataclass(frozen=True)
class LibraryGroup:
    name: str
    group_order: int
    filters: tuple[dict[str, object], ...]
    group: str = "media"

    def to_dict(self) -> dict[str, object]:
        return {
            "group_order": self.group_order,
            "group": self.group,
            "filters": [dict(f) for f in self.filters],
        }


DEFAULT_LIBRARY = (
    LibraryGroup(name="shows", group_order=15, filters=({"has_episodes": True},)),
    LibraryGroup(name="movies", group_order=25, filters=({"regex": "/.*/"},)),
)


@dataclass(frozen=True)
class ZurgConfig:
    token: str
    concurrent_workers: int
    check_for_changes_every_secs: int
    port: int = ZURG_PORT
    library: tuple[LibraryGroup, ...] = DEFAULT_LIBRARY

    def validate(self) -> None:
        _require_text("token", self.token)
        _require_positive("concurrent_workers", self.concurrent_workers)
        _require_positive("check_for_changes_every_secs", self.check_for_changes_every_secs)
        _require_positive("port", self.port)

    def render(self) -> str:
        self.validate()
        data = {
            "zurg": "v1",
            "token": self.token,
            "port": self.port,
            "concurrent_workers": self.concurrent_workers,
            "check_for_changes_every_secs": self.check_for_changes_every_secs,
            "enable_repair": False,
            "cache_network_test_results": True,
            "serve_from_rclone": False,
            "rar_action": "none",
            "retain_folder_name_extension": True,
            "retain_rd_torrent_name": True,
            "hide_broken_torrents": True,
            "retry_503_errors": True,
            "delete_error_torrents": True,
            "on_library_update": 'sh ./plex_update.sh "$@"',
            "directories": {group.name: group.to_dict() for group in self.library},
        }
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


@dataclass(frozen=True)
class CliDebridSettings:
    api_key: str
    download_path: str = "/mnt"
    max_connections: int = 4
    log_level: str = "debug"

    def render(self) -> str:
        _require_text("api_key", self.api_key)
        _require_absolute("download_path", self.download_path)
        _require_positive("max_connections", self.max_connections)
        data = {
            "general": {"disable_media_scan": True, "disable_webservice": False},
            "debrid": {"provider": "realdebrid", "api_key": self.api_key},
            "download": {
                "path": self.download_path,
                "path_style": "original",
                "seed_time": 0,
                "max_connections": self.max_connections,
            },
            "system": {"log_level": self.log_level},
        }
        return json.dumps(data, indent=2) + "\n"


def render_library_hook(server_address: str) -> str:
    _require_text("server_address", server_address)
    return "\n".join(
        [
            "#!/bin/sh",
            f'webhook_url="http://{server_address}:{CLI_DEBRID_PORT}/webhook/rclone"',
            "",
            'for arg in "$@"; do',
            "  arg_clean=$(printf '%s' \"$arg\" | sed 's/\\\\//g')",
            '  echo "Notifying webhook for: $arg_clean"',
            '  curl -s -G --data-urlencode "file=$arg_clean" "$webhook_url"',
            "done",
            "",
            'echo "Updates completed!"',
            "",
        ]
    )


@dataclass(frozen=True)
class RcloneRemote:
    name: str = RCLONE_REMOTE
    url: str = f"http://127.0.0.1:{ZURG_PORT}/dav/"

    def render(self) -> str:
        _require_text("remote name", self.name)
        _require_text("remote url", self.url)
        return "\n".join(
            [
                f"[{self.name}]",
                "type = webdav",
                f"url = {self.url}",
                "vendor = other",
                "pacer_min_sleep = 10ms",
                "pacer_burst = 0",
                "",
            ]
        )


@dataclass(frozen=True)
class MountUnit:
    mount_point: Path
    config_path: Path
    transfers: int
    checkers: int
    buffer_size_mb: int
    read_ahead_mb: int
    cache_max_size_mb: int
    modern: bool
    remote: str = RCLONE_REMOTE
    binary: str = RCLONE_BINARY
    exclude: tuple[str, ...] = ("**sample**",)

    def validate(self) -> None:
        _require_absolute("mount_point", self.mount_point)
        _require_absolute("config_path", self.config_path)
        _require_absolute("binary", self.binary)
        _require_text("remote", self.remote)
        for name in MOUNT_CONCURRENCY_FIELDS:
            _require_positive(name, getattr(self, name))

    def flags(self) -> list[str]:
        flags = [
            f"--config={self.config_path}",
            "--allow-non-empty",
            "--allow-other",
            "--vfs-cache-mode full",
            "--vfs-read-chunk-size 1M",
            "--vfs-read-chunk-size-limit 32M",
            "--vfs-read-wait 40ms",
            f"--vfs-read-ahead {self.read_ahead_mb}M",
            f"--transfers {self.transfers}",
            f"--checkers {self.checkers}",
            "--multi-thread-streams 0",
            "--attr-timeout 3600s",
            f"--buffer-size {self.buffer_size_mb}M",
            "--bwlimit off:100M",
            "--vfs-cache-max-age=5h",
            f"--vfs-cache-max-size={self.cache_max_size_mb}M",
            "--vfs-fast-fingerprint",
            "--cache-dir=/dev/shm",
            "--poll-interval 60s",
            "--vfs-cache-poll-interval 30s",
            "--dir-cache-time=120s",
        ]
        flags.extend(f'--exclude="{pattern}"' for pattern in self.exclude)
        if self.modern:
            flags.extend(["--async-read=true", "--use-mmap", "--fuse-flag=sync_read"])
        return flags

    def render(self) -> str:
        self.validate()
        mount = str(self.mount_point)
        exec_start = [f"ExecStart={self.binary} mount \\"]
        exec_start.extend(f"  {flag} \\" for flag in self.flags())
        exec_start.append(f"  {self.remote}: {mount}")
        stop = (
            f"fusermount3 -uz {mount} 2>/dev/null || "
            f"fusermount -uz {mount} 2>/dev/null || "
            f"umount -l {mount}"
        )
        lines = [
            "[Unit]",
            "Description=Rclone mount for zurg",
            "After=network-online.target docker.service",
            "Wants=network-online.target",
            "StartLimitIntervalSec=60",
            "StartLimitBurst=3",
            "",
            "[Service]",
            "Type=notify",
            f"ExecStartPre=/bin/mkdir -p {mount}",
            *exec_start,
            f"ExecStop=/bin/sh -c '{stop}'",
            "Restart=on-abort",
            "RestartSec=1",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
        return "\n".join(lines)


def render_env(values: dict[str, str]) -> str:
    lines = []
    for key, value in values.items():
        _require_text(key, value)
        if "\n" in value:
            raise RenderError(f"{key} must be a single line")
        lines.append(f"{key}={value}")
    return "\n".join(lines) + "\n"


# compose


def _labels(config: StackConfig, service: ServiceId) -> dict[str, str]:
    enabled = config.auto_update_policy.enabled_for(service)
    return {WATCHTOWER_LABEL: "true" if enabled else "false"}


def _environment(config: StackConfig, service: ServiceId, **extra: str) -> dict[str, str]:
    env: dict[str, str] = {}
    if service in _LINUXSERVER or service is ServiceId.DMB:
        env["PUID"] = str(config.puid)
        env["PGID"] = str(config.pgid)
    env["TZ"] = config.timezone
    env.update(extra)
    return env


def _ports(service: ServiceId) -> list[str]:
    return [f"{port}:{port}" for port in SERVICE_PORTS[service]]


def _service_block(
    service: ServiceId,
    config: StackConfig,
    profile: HostProfile,
    paths: HostPaths,
) -> dict[str, object]:
    block: dict[str, object] = {
        "image": image_for(service, config, profile),
        "container_name": service.container_name,
        "restart": "unless-stopped",
    }
    mnt_root = str(paths.mount_dir.parent)
    media_services = {ServiceId.PLEX, ServiceId.JELLYFIN, ServiceId.EMBY}

    if service is ServiceId.ZURG:
        block["ports"] = _ports(service)
        block["volumes"] = [
            f"{paths.zurg_config}:/app/config.yml",
            f"{paths.library_hook}:/app/plex_update.sh",
        ]
        block["environment"] = _environment(config, service)
        block["healthcheck"] = {
            "test": ["CMD", "curl", "-f", f"http://localhost:{ZURG_PORT}/ping"],
            "interval": "30s",
            "timeout": "10s",
            "retries": 3,
            "start_period": "10s",
        }
    elif service is ServiceId.CLI_DEBRID:
        block["pull_policy"] = "always"
        block["ports"] = _ports(service)
        block["tty"] = True
        block["stdin_open"] = True
        block["volumes"] = [f"{paths.cli_debrid_dir}:/user", f"{mnt_root}:{mnt_root}"]
        block["environment"] = _environment(config, service)
        block["depends_on"] = {"zurg": {"condition": "service_healthy"}}
    elif service in media_services:
        if service is ServiceId.PLEX:
            block["network_mode"] = "host"
            block["environment"] = _environment(config, service, VERSION="docker")
        else:
            block["ports"] = _ports(service)
            block["environment"] = _environment(config, service)
        block["volumes"] = [
            f"{paths.media_config_dir / service.value}:/config",
            f"{mnt_root}:{mnt_root}",
        ]
        if profile.has_render_device:
            block["devices"] = ["/dev/dri:/dev/dri"]
        if config.flavor is Flavor.INDIVIDUAL:
            block["depends_on"] = {"cli_debrid": {"condition": "service_started"}}
    elif service in {ServiceId.OVERSEERR, ServiceId.JELLYSEERR}:
        block["ports"] = _ports(service)
        target = "/app/config" if service is ServiceId.JELLYSEERR else "/config"
        block["volumes"] = [f"{paths.install_dir / service.value}:{target}"]
        extra = {"LOG_LEVEL": "info"} if service is ServiceId.JELLYSEERR else {}
        block["environment"] = _environment(config, service, **extra)
        media = config.selected_media_server.service
        if media is not None:
            block["depends_on"] = {media.value: {"condition": "service_started"}}
    elif service is ServiceId.JACKETT:
        block["ports"] = _ports(service)
        block["volumes"] = [
            f"{paths.jackett_config_dir / 'config'}:/config",
            f"{paths.jackett_config_dir / 'downloads'}:/downloads",
        ]
        block["environment"] = _environment(config, service, AUTO_UPDATE="true")
    elif service is ServiceId.FLARESOLVERR:
        block["ports"] = _ports(service)
        block["environment"] = _environment(config, service, LOG_LEVEL="info", CAPTCHA_SOLVER="none")
    elif service is ServiceId.PORTAINER:
        block["ports"] = _ports(service)
        block["volumes"] = [f"{DOCKER_SOCK}:{DOCKER_SOCK}", "portainer_data:/data"]
    elif service is ServiceId.WATCHTOWER:
        policy = config.auto_update_policy
        _require_text("schedule_cron", policy.schedule_cron)
        env = _environment(
            config,
            service,
            WATCHTOWER_LABEL_ENABLE="true",
            WATCHTOWER_CLEANUP="true",
            WATCHTOWER_SCHEDULE=policy.schedule_cron,
        )
        if policy.notify_webhook:
            env["WATCHTOWER_NOTIFICATIONS"] = "shoutrrr"
            env["WATCHTOWER_NOTIFICATION_URL"] = policy.notify_webhook
        block["volumes"] = [f"{DOCKER_SOCK}:{DOCKER_SOCK}"]
        block["environment"] = env
    elif service is ServiceId.DMB:
        block["ports"] = _ports(service)
        block["env_file"] = [f"./{paths.bundle_env.name}"]
        block["environment"] = _environment(config, service)
        block["volumes"] = [
            f"{paths.bundle_dir / 'config'}:/config",
            f"{paths.bundle_dir / 'log'}:/log",
            f"{paths.bundle_zurg_dir.parent}:/zurg",
            f"{paths.bundle_mount_dir}:/mnt/debrid:rshared",
        ]
        block["devices"] = ["/dev/fuse:/dev/fuse:rwm"]
        block["cap_add"] = ["SYS_ADMIN"]
        block["security_opt"] = ["apparmor:unconfined", "no-new-privileges"]
    block["labels"] = _labels(config, service)
    return block


def render_compose(config: StackConfig, profile: HostProfile, paths: HostPaths) -> str:
    services = {
        service.value: _service_block(service, config, profile, paths)
        for service in config.selected_services()
    }
    compose: dict[str, object] = {"services": services}
    if ServiceId.PORTAINER.value in services:
        compose["volumes"] = {"portainer_data": {}}
    dumped = yaml.safe_dump(compose, sort_keys=False, default_flow_style=False)
    return dumped if dumped.endswith("\n") else dumped + "\n"


# entry point


def render(
    config: StackConfig,
    profile: HostProfile,
    toolchain: ToolchainState,
    paths: HostPaths | None = None,
) -> list[RenderedArtifact]:
    """Render every artifact for the chosen flavor.

    Output is a pure function of the inputs: same config, profile, toolchain
    and paths give byte-identical artifacts in the same order.
    """
    paths = paths or HostPaths()
    try:
        config.validate()
    except StackError as exc:
        raise RenderError(str(exc)) from exc

    tier = RESOURCE_TIERS[effective_tier(config, profile)]
    zurg = ZurgConfig(
        token=config.credential,
        concurrent_workers=tier.zurg_workers,
        check_for_changes_every_secs=tier.zurg_check_interval,
    ).render()
    hook = render_library_hook(config.server_address)
    compose = render_compose(config, profile, paths)

    if config.flavor is Flavor.BUNDLE:
        env = render_env(
            {
                "ZURG_ENABLED": "true",
                "ZURG_INSTANCES_REALDEBRID_ENABLED": "true",
                "ZURG_INSTANCES_REALDEBRID_API_KEY": config.credential,
                "RCLONE_INSTANCES_REALDEBRID_ENABLED": "true",
                "CLI_DEBRID_ENABLED": "true",
            }
        )
        return [
            RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.bundle_zurg_config, zurg, "config.yml", 0o600),
            RenderedArtifact(ArtifactKind.HELPER_SCRIPT, paths.bundle_library_hook, hook, "plex_update.sh", 0o755),
            RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.bundle_env, env, "stack.env", 0o600),
            RenderedArtifact(ArtifactKind.COMPOSE_MANIFEST, paths.bundle_compose, compose, "docker-compose.yml"),
            RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.bundle_marker, "bundle\n", BUNDLE_MARKER_NAME),
        ]

    settings = CliDebridSettings(api_key=config.credential, download_path=str(paths.mount_dir.parent)).render()
    unit = MountUnit(
        mount_point=paths.mount_dir,
        config_path=paths.rclone_config,
        transfers=tier.transfers,
        checkers=tier.checkers,
        buffer_size_mb=tier.buffer_size_mb,
        read_ahead_mb=tier.read_ahead_mb,
        cache_max_size_mb=tier.cache_max_size_mb,
        modern=toolchain.mount_tool_version_tier is MountToolTier.MODERN,
    ).render()
    return [
        RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.zurg_config, zurg, "config.yml", 0o600),
        RenderedArtifact(ArtifactKind.HELPER_SCRIPT, paths.library_hook, hook, "plex_update.sh", 0o755),
        RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.cli_debrid_settings, settings, "settings.json", 0o600),
        RenderedArtifact(ArtifactKind.SERVICE_CONFIG, paths.rclone_config, RcloneRemote().render(), "rclone.conf", 0o600),
        RenderedArtifact(ArtifactKind.UNIT_FILE, paths.mount_unit, unit, MOUNT_UNIT_NAME),
        RenderedArtifact(ArtifactKind.COMPOSE_MANIFEST, paths.compose_file, compose, "docker-compose.yml"),
    ]


def compose_artifact(artifacts: list[RenderedArtifact]) -> RenderedArtifact | None:
    for artifact in artifacts:
        if artifact.kind is ArtifactKind.COMPOSE_MANIFEST:
            return artifact
    return None


def images_for(artifacts: list[RenderedArtifact]) -> list[str]:
    compose = compose_artifact(artifacts)
    if compose is None:
        return []
    data = yaml.safe_load(compose.content) or {}
    images: list[str] = []
    for block in (data.get("services") or {}).values():
        image = block.get("image") if isinstance(block, dict) else None
        if image and image not in images:
            images.append(image)
    return images
