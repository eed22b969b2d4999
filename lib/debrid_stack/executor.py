from __future__ import annotations

import io
import logging
import os
import shutil
import time
import zipfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable

import httpx

from .errors import PrivilegeError, PullAborted, ToolInstallError
from .models import ArtifactKind, Flavor, HostProfile, MountToolTier, PackageManager, RenderedArtifact, ServiceId, ToolchainState
from .paths import BUNDLE_MARKER_NAME, MOUNT_UNIT_NAME, HostPaths
from .probe import COMMON_PACKAGES, detect_fuse_tier, parse_rclone_version
from .render import compose_artifact, images_for
from .runner import CommandRunner, output_of, shell, succeeded

logger = logging.getLogger(__name__)

DOCKER_INSTALL_SCRIPT = "curl -fsSL https://get.docker.com | sh"
RCLONE_INSTALL_SCRIPT = "curl -fsSL https://rclone.org/install.sh | bash"
RCLONE_ZIP_URL = "https://downloads.rclone.org/rclone-current-linux-{arch}.zip"

DEFAULT_PULL_RETRIES = 5
DEFAULT_PULL_DELAY = 5.0
PULL_RETRY_EXTENSION = 5
UNIT_START_ATTEMPTS = 10
UNIT_START_INTERVAL = 2.0

_FAMILY_EXTRAS = {
    PackageManager.APT: ("apt-transport-https", "ca-certificates", "gnupg", "lsb-release"),
    PackageManager.DNF: ("dnf-plugins-core",),
}

_DOCKER_PACKAGES = {
    PackageManager.PACMAN: ("docker", "docker-compose"),
    PackageManager.ZYPPER: ("docker", "docker-compose"),
    PackageManager.APK: ("docker", "docker-cli-compose"),
}

INDIVIDUAL_STACK = (
    ServiceId.ZURG,
    ServiceId.CLI_DEBRID,
    ServiceId.PLEX,
    ServiceId.JELLYFIN,
    ServiceId.EMBY,
    ServiceId.OVERSEERR,
    ServiceId.JELLYSEERR,
    ServiceId.JACKETT,
    ServiceId.FLARESOLVERR,
)
BUNDLE_STACK = (ServiceId.DMB, *INDIVIDUAL_STACK[2:])


class PullChoice(str, Enum):
    CONTINUE = "continue"
    RETRY = "retry"
    ABORT = "abort"


PullChooser = Callable[[str], PullChoice]


@dataclass
class PullReport:
    pulled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


@dataclass
class ApplyResult:
    toolchain: ToolchainState
    written: list[Path] = field(default_factory=list)
    pulls: PullReport = field(default_factory=PullReport)
    warnings: list[str] = field(default_factory=list)


def ensure_privileged(geteuid: Callable[[], int] = os.geteuid) -> None:
    if geteuid() != 0:
        raise PrivilegeError("This installer must run as root.", hint="sudo debrid-stack")


def _download(url: str) -> bytes:
    response = httpx.get(url, follow_redirects=True, timeout=120.0)
    response.raise_for_status()
    return response.content


class Executor:
    def __init__(
        self,
        runner: CommandRunner,
        paths: HostPaths,
        *,
        sleep: Callable[[float], None] = time.sleep,
        which: Callable[[str], str | None] = shutil.which,
        download: Callable[[str], bytes] = _download,
        root: Path = Path("/"),
        max_pull_retries: int = DEFAULT_PULL_RETRIES,
        pull_delay: float = DEFAULT_PULL_DELAY,
    ):
        self.runner = runner
        self.paths = paths
        self.sleep = sleep
        self.which = which
        self.download = download
        self.root = root
        self.max_pull_retries = max_pull_retries
        self.pull_delay = pull_delay

    # 1. packages

    def ensure_packages(self, profile: HostProfile, toolchain: ToolchainState) -> list[str]:
        warnings: list[str] = []
        pm = profile.package_manager
        packages = [] if toolchain.common_packages_present else [p for p in COMMON_PACKAGES if not self.which(p)]
        if detect_fuse_tier(which=self.which, root=self.root) is MountToolTier.LEGACY:
            packages.append("fuse3")
        if packages:
            packages.extend(_FAMILY_EXTRAS.get(pm, ()))
            update = pm.update_command
            res = self.runner(update)
            # dnf check-update exits 100 when updates are available
            if res.returncode not in (0, 100):
                warnings.append(f"Package list refresh failed. Try: {' '.join(update)}")
            install = [*pm.install_command, *packages]
            if self.runner(install).returncode != 0:
                warnings.append(f"Some packages failed to install. Try: {' '.join(install)}")
        warnings.extend(self._ensure_fuse_ready())
        return warnings

    def _ensure_fuse_ready(self) -> list[str]:
        warnings: list[str] = []
        res = self.runner(["lsmod"])
        if res.returncode == 0 and "fuse" not in (res.stdout or ""):
            if not succeeded(self.runner, ["modprobe", "fuse"]):
                warnings.append("Could not load the fuse kernel module. Try: modprobe fuse")
        fuse_conf = self.root / "etc" / "fuse.conf"
        try:
            content = fuse_conf.read_text(encoding="utf-8") if fuse_conf.exists() else ""
            if not any(line.strip() == "user_allow_other" for line in content.splitlines()):
                fuse_conf.parent.mkdir(parents=True, exist_ok=True)
                suffix = "" if not content or content.endswith("\n") else "\n"
                fuse_conf.write_text(f"{content}{suffix}user_allow_other\n", encoding="utf-8")
        except OSError as exc:
            warnings.append(f"Could not enable user_allow_other in {fuse_conf}: {exc}")
        return warnings

    # 2. container runtime

    def ensure_container_runtime(self, profile: HostProfile, toolchain: ToolchainState) -> ToolchainState:
        pm = profile.package_manager
        if not (toolchain.container_runtime_present and toolchain.compose_present):
            logger.info("installing docker via %s", pm.value)
            if pm in _DOCKER_PACKAGES:
                cmd = [*pm.install_command, *_DOCKER_PACKAGES[pm]]
                hint = " ".join(cmd)
            else:
                cmd = shell(DOCKER_INSTALL_SCRIPT)
                hint = DOCKER_INSTALL_SCRIPT
            res = self.runner(cmd)
            if res.returncode != 0:
                raise ToolInstallError(f"Docker installation failed: {output_of(res) or 'no output'}", hint=hint)
        if not succeeded(self.runner, ["docker", "info"]):
            if pm is PackageManager.APK:
                self.runner(["rc-update", "add", "docker", "default"])
                self.runner(["service", "docker", "start"])
            else:
                self.runner(["systemctl", "enable", "--now", "docker"])
            if not succeeded(self.runner, ["docker", "info"]):
                raise ToolInstallError("Docker daemon is not running.", hint="systemctl start docker")
        if not succeeded(self.runner, ["docker", "compose", "version"]):
            raise ToolInstallError("Docker Compose plugin is missing.", hint="install docker-compose-plugin")
        return replace(toolchain, container_runtime_present=True, compose_present=True)

    # 3. mount tool

    def ensure_mount_tool(self, profile: HostProfile, toolchain: ToolchainState) -> ToolchainState:
        tier = detect_fuse_tier(which=self.which, root=self.root)
        if toolchain.mount_tool_present and self.which("rclone"):
            return replace(toolchain, mount_tool_version_tier=tier)
        attempts: list[Callable[[], bool]] = [
            lambda: succeeded(self.runner, shell(RCLONE_INSTALL_SCRIPT)),
            lambda: succeeded(self.runner, [*profile.package_manager.install_command, "rclone"]),
            lambda: self._install_rclone_zip(profile),
        ]
        for attempt in attempts:
            if attempt() and self.which("rclone"):
                break
        if not self.which("rclone"):
            raise ToolInstallError("rclone installation failed.", hint=f"{RCLONE_INSTALL_SCRIPT}")
        version = parse_rclone_version(output_of(self.runner(["rclone", "--version"])))
        return replace(
            toolchain,
            mount_tool_present=True,
            mount_tool_version=version,
            mount_tool_version_tier=tier,
        )

    def _install_rclone_zip(self, profile: HostProfile) -> bool:
        url = RCLONE_ZIP_URL.format(arch=profile.architecture.value)
        target = self.root / "usr" / "bin" / "rclone"
        try:
            data = self.download(url)
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                member = next((n for n in archive.namelist() if n.endswith("/rclone")), None)
                if member is None:
                    logger.warning("no rclone binary inside %s", url)
                    return False
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(archive.read(member))
            os.chmod(target, 0o755)
        except (httpx.HTTPError, zipfile.BadZipFile, OSError) as exc:
            logger.warning("manual rclone install failed: %s", exc)
            return False
        return True

    def prepare(self, profile: HostProfile, toolchain: ToolchainState) -> tuple[ToolchainState, list[str]]:
        warnings = self.ensure_packages(profile, toolchain)
        toolchain = replace(
            toolchain,
            common_packages_present=all(self.which(pkg) for pkg in COMMON_PACKAGES),
        )
        toolchain = self.ensure_container_runtime(profile, toolchain)
        toolchain = self.ensure_mount_tool(profile, toolchain)
        return toolchain, warnings

    # 4. files

    def ensure_directories(self, flavor: Flavor) -> None:
        if flavor is Flavor.BUNDLE:
            dirs = [
                self.paths.bundle_mount_dir,
                self.paths.bundle_dir / "config",
                self.paths.bundle_dir / "log",
                self.paths.bundle_zurg_dir,
            ]
        else:
            dirs = [
                self.paths.mount_dir,
                self.paths.mount_dir.parent / "symlinked",
                self.paths.cli_debrid_log.parent,
                self.paths.cli_debrid_settings.parent,
                self.paths.zurg_dir,
                self.paths.rclone_config.parent,
            ]
        dirs.append(self.paths.backup_dir)
        for directory in dirs:
            directory.mkdir(parents=True, exist_ok=True)
        if flavor is Flavor.INDIVIDUAL:
            self.paths.cli_debrid_log.touch(exist_ok=True)

    def write_artifacts(self, artifacts: list[RenderedArtifact]) -> list[Path]:
        written: list[Path] = []
        for artifact in artifacts:
            artifact.path.parent.mkdir(parents=True, exist_ok=True)
            artifact.path.write_text(artifact.content, encoding="utf-8")
            os.chmod(artifact.path, artifact.mode)
            written.append(artifact.path)
        return written

    def validate_compose(self, compose_path: Path) -> list[str]:
        res = self.runner(["docker", "compose", "-f", str(compose_path), "config", "-q"])
        if res.returncode != 0:
            return [f"Compose manifest failed validation: {output_of(res)}. Try: docker compose -f {compose_path} config"]
        return []

    # 5. images

    def _pull(self, image: str, retries: int, delay: float) -> bool:
        for attempt in range(1, retries + 1):
            res = self.runner(["docker", "pull", image])
            if res.returncode == 0:
                return True
            logger.warning("pull %s failed (attempt %s/%s): %s", image, attempt, retries, output_of(res))
            if attempt < retries:
                self.sleep(delay)
        return False

    def pull_images(self, images: list[str], choose: PullChooser, *, force: bool = False) -> PullReport:
        report = PullReport()
        for image in images:
            if not force and succeeded(self.runner, ["docker", "image", "inspect", image]):
                report.skipped.append(image)
                continue
            retries, delay = self.max_pull_retries, self.pull_delay
            while True:
                if self._pull(image, retries, delay):
                    report.pulled.append(image)
                    break
                decision = choose(image)
                if decision is PullChoice.CONTINUE:
                    report.missing.append(image)
                    break
                if decision is PullChoice.RETRY:
                    retries += PULL_RETRY_EXTENSION
                    delay += PULL_RETRY_EXTENSION
                    continue
                raise PullAborted(image)
        return report

    # 6. mount unit

    def start_mount_unit(self, unit: str = MOUNT_UNIT_NAME) -> list[str]:
        self.runner(["systemctl", "daemon-reload"])
        if not succeeded(self.runner, ["systemctl", "enable", unit]):
            logger.warning("could not enable %s", unit)
        for attempt in range(1, UNIT_START_ATTEMPTS + 1):
            self.runner(["systemctl", "start", unit])
            if succeeded(self.runner, ["systemctl", "is-active", "--quiet", unit]):
                return []
            logger.debug("%s not active yet (attempt %s)", unit, attempt)
            if attempt < UNIT_START_ATTEMPTS:
                self.sleep(UNIT_START_INTERVAL)
        return [f"Mount service {unit} did not start. Try: systemctl status {unit}"]

    def restart_mount_unit(self, unit: str = MOUNT_UNIT_NAME) -> list[str]:
        self.runner(["systemctl", "daemon-reload"])
        if succeeded(self.runner, ["systemctl", "restart", unit]):
            return []
        return [f"Mount service {unit} failed to restart. Try: journalctl -u {unit} -n 50"]

    # 7. compose

    def compose_up(self, compose_path: Path) -> list[str]:
        cmd = ["docker", "compose", "-f", str(compose_path), "up", "-d"]
        res = self.runner(cmd)
        if res.returncode != 0:
            return [f"Stack failed to start: {output_of(res)}. Try: {' '.join(cmd)}"]
        return []

    def stop_stack(self, flavor: Flavor) -> None:
        if flavor is Flavor.INDIVIDUAL:
            self.runner(["systemctl", "stop", MOUNT_UNIT_NAME])
        services = BUNDLE_STACK if flavor is Flavor.BUNDLE else INDIVIDUAL_STACK
        for service in services:
            res = self.runner(["docker", "stop", service.container_name])
            if res.returncode != 0:
                logger.debug("stop %s: %s", service.container_name, output_of(res))

    def retire(self, flavor: Flavor) -> list[str]:
        """Take a flavor down and remove the files that mark it as installed."""
        self.stop_stack(flavor)
        compose = self.paths.compose_for(flavor)
        if compose.exists():
            self.runner(["docker", "compose", "-f", str(compose), "down"])
        if flavor is Flavor.INDIVIDUAL:
            self.runner(["systemctl", "disable", "--now", MOUNT_UNIT_NAME])
        warnings: list[str] = []
        for path in self.paths.flavor_markers(flavor):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                warnings.append(f"Could not remove {path}: {exc}. Try: rm -f {path}")
        if flavor is Flavor.INDIVIDUAL:
            self.runner(["systemctl", "daemon-reload"])
        return warnings

    def start_containers(self, names: list[str]) -> list[str]:
        warnings: list[str] = []
        for name in names:
            res = self.runner(["docker", "inspect", "-f", "{{.State.Running}}", name])
            if res.returncode == 0 and (res.stdout or "").strip() == "true":
                continue
            if not succeeded(self.runner, ["docker", "start", name]):
                warnings.append(f"Container {name} failed to start. Try: docker logs {name}")
        return warnings

    def remove_containers(self, names: list[str]) -> list[str]:
        warnings: list[str] = []
        for name in names:
            if not succeeded(self.runner, ["docker", "rm", "-f", name]):
                warnings.append(f"Could not remove container {name}. Try: docker rm -f {name}")
        return warnings

    def apply(
        self,
        artifacts: list[RenderedArtifact],
        profile: HostProfile,
        toolchain: ToolchainState,
        *,
        choose: PullChooser,
        force_pull: bool = False,
        prepared: bool = False,
    ) -> ApplyResult:
        warnings: list[str] = []
        if not prepared:
            toolchain, warnings = self.prepare(profile, toolchain)
        result = ApplyResult(toolchain=toolchain, warnings=warnings)

        bundle = any(a.name == BUNDLE_MARKER_NAME for a in artifacts)
        self.ensure_directories(Flavor.BUNDLE if bundle else Flavor.INDIVIDUAL)
        result.written = self.write_artifacts(artifacts)

        compose = compose_artifact(artifacts)
        if compose is not None:
            result.warnings.extend(self.validate_compose(compose.path))
        result.pulls = self.pull_images(images_for(artifacts), choose, force=force_pull)

        for artifact in artifacts:
            if artifact.kind is ArtifactKind.UNIT_FILE:
                result.warnings.extend(self.start_mount_unit(artifact.path.name))
        if compose is not None:
            result.warnings.extend(self.compose_up(compose.path))
        return result
