from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .models import Flavor

DEFAULT_INSTALL_DIR = "/opt/debrid-stack"
DEFAULT_MOUNT_DIR = "/mnt/zurg"
DEFAULT_BUNDLE_MOUNT_DIR = "/mnt/debrid"
DEFAULT_RCLONE_CONFIG = "/root/.config/rclone/rclone.conf"
DEFAULT_UNIT_DIR = "/etc/systemd/system"

MOUNT_UNIT_NAME = "zurg-rclone.service"
RCLONE_REMOTE = "zurg-wd"
BUNDLE_MARKER_NAME = ".bundle"


@dataclass(frozen=True)
class HostPaths:
    install_dir: Path = Path(DEFAULT_INSTALL_DIR)
    mount_dir: Path = Path(DEFAULT_MOUNT_DIR)
    bundle_mount_dir: Path = Path(DEFAULT_BUNDLE_MOUNT_DIR)
    rclone_config: Path = Path(DEFAULT_RCLONE_CONFIG)
    unit_dir: Path = Path(DEFAULT_UNIT_DIR)

    # individual flavor

    @property
    def zurg_dir(self) -> Path:
        return self.install_dir / "zurg"

    @property
    def zurg_config(self) -> Path:
        return self.zurg_dir / "config.yml"

    @property
    def library_hook(self) -> Path:
        return self.zurg_dir / "plex_update.sh"

    @property
    def cli_debrid_dir(self) -> Path:
        return self.install_dir / "cli_debrid"

    @property
    def cli_debrid_settings(self) -> Path:
        return self.cli_debrid_dir / "config" / "settings.json"

    @property
    def cli_debrid_log(self) -> Path:
        return self.cli_debrid_dir / "logs" / "debug.log"

    @property
    def compose_file(self) -> Path:
        return self.install_dir / "docker-compose.yml"

    @property
    def mount_unit(self) -> Path:
        return self.unit_dir / MOUNT_UNIT_NAME

    @property
    def media_config_dir(self) -> Path:
        return self.install_dir / "media"

    @property
    def jackett_config_dir(self) -> Path:
        return self.install_dir / "jackett"

    # bundle flavor

    @property
    def bundle_dir(self) -> Path:
        return self.install_dir / "dmb"

    @property
    def bundle_zurg_dir(self) -> Path:
        return self.bundle_dir / "zurg" / "RD"

    @property
    def bundle_zurg_config(self) -> Path:
        return self.bundle_zurg_dir / "config.yml"

    @property
    def bundle_library_hook(self) -> Path:
        return self.bundle_zurg_dir / "plex_update.sh"

    @property
    def bundle_env(self) -> Path:
        return self.bundle_dir / "stack.env"

    @property
    def bundle_compose(self) -> Path:
        return self.bundle_dir / "docker-compose.yml"

    @property
    def bundle_marker(self) -> Path:
        return self.bundle_dir / BUNDLE_MARKER_NAME

    # shared

    @property
    def backup_dir(self) -> Path:
        return self.install_dir / "backups"

    def compose_for(self, flavor: Flavor) -> Path:
        return self.bundle_compose if flavor is Flavor.BUNDLE else self.compose_file

    def mount_point_for(self, flavor: Flavor) -> Path:
        return self.bundle_mount_dir if flavor is Flavor.BUNDLE else self.mount_dir

    def flavor_markers(self, flavor: Flavor) -> tuple[Path, ...]:
        """Files whose presence marks a flavor as installed."""
        if flavor is Flavor.BUNDLE:
            return (self.bundle_compose, self.bundle_marker)
        return (self.compose_file, self.zurg_config, self.cli_debrid_settings, self.mount_unit)

    def archive_routes(self, flavor: Flavor) -> dict[str, Path]:
        """Archive member name -> canonical location for a flavor."""
        if flavor is Flavor.BUNDLE:
            return {
                "config.yml": self.bundle_zurg_config,
                "plex_update.sh": self.bundle_library_hook,
                "stack.env": self.bundle_env,
                "docker-compose.yml": self.bundle_compose,
                BUNDLE_MARKER_NAME: self.bundle_marker,
            }
        return {
            "config.yml": self.zurg_config,
            "plex_update.sh": self.library_hook,
            "settings.json": self.cli_debrid_settings,
            "rclone.conf": self.rclone_config,
            MOUNT_UNIT_NAME: self.mount_unit,
            "docker-compose.yml": self.compose_file,
        }
