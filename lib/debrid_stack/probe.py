from __future__ import annotations

import ipaddress
import logging
import os
import platform
import re
import shutil
from pathlib import Path
from typing import Callable

from .models import Architecture, HostProfile, MountToolTier, PackageManager, ToolchainState
from .runner import CommandRunner, output_of

logger = logging.getLogger(__name__)

COMMON_PACKAGES = ("curl", "wget", "git")

_PACKAGE_MANAGERS: dict[str, PackageManager] = {
    **{os_id: PackageManager.APT for os_id in (
        "debian", "ubuntu", "linuxmint", "pop", "elementary", "zorin", "kali", "parrot", "deepin", "raspbian",
    )},
    **{os_id: PackageManager.DNF for os_id in (
        "fedora", "rhel", "centos", "rocky", "almalinux", "ol", "scientific", "amzn", "amazon",
    )},
    **{os_id: PackageManager.PACMAN for os_id in ("arch", "manjaro", "endeavouros")},
    **{os_id: PackageManager.ZYPPER for os_id in ("opensuse", "opensuse-leap", "opensuse-tumbleweed", "suse", "sles")},
    "alpine": PackageManager.APK,
}

_FAMILIES = {
    PackageManager.APT: "debian",
    PackageManager.DNF: "rhel",
    PackageManager.PACMAN: "arch",
    PackageManager.ZYPPER: "suse",
    PackageManager.APK: "alpine",
}

_VIRT_MARKERS = (
    "proc/vz",
    "proc/bc",
    "proc/user_beancounters",
    "proc/xen",
    "sys/hypervisor/type",
)
_DMI_PRODUCT = "sys/class/dmi/id/product_name"
_DMI_VIRT_RE = re.compile(r"kvm|vmware|virtual|qemu|xen|bochs", re.IGNORECASE)

_FUSE3_LIBS = (
    "usr/lib/libfuse3.so.3",
    "usr/lib64/libfuse3.so.3",
    "usr/lib/x86_64-linux-gnu/libfuse3.so.3",
    "usr/lib/aarch64-linux-gnu/libfuse3.so.3",
)

_RCLONE_VERSION_RE = re.compile(r"rclone\s+v?(\d+\.\d+(?:\.\d+)?)")


def parse_os_release(content: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip().strip('"').strip("'")
    return data


def detect_package_manager(os_id: str, id_like: str = "") -> PackageManager:
    candidates = [os_id.lower(), *id_like.lower().split()]
    for candidate in candidates:
        if candidate in _PACKAGE_MANAGERS:
            return _PACKAGE_MANAGERS[candidate]
        if candidate.startswith("opensuse"):
            return PackageManager.ZYPPER
    logger.warning("Unknown distribution %r; assuming apt.", os_id)
    return PackageManager.APT


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def _os_identity(root: Path, runner: CommandRunner | None) -> tuple[str, str, str]:
    content = _read_text(root / "etc" / "os-release")
    if content:
        data = parse_os_release(content)
        os_id = data.get("ID", "unknown").lower()
        pretty = data.get("PRETTY_NAME") or f"{data.get('NAME', os_id)} {data.get('VERSION_ID', '')}".strip()
        return os_id, data.get("ID_LIKE", ""), pretty
    if runner is not None:
        res = runner(["lsb_release", "-si"])
        if res.returncode == 0 and output_of(res):
            os_id = output_of(res).lower()
            return os_id, "", output_of(res)
    system = platform.system() or "unknown"
    return system.lower(), "", system


def detect_virtualization(root: Path = Path("/")) -> bool:
    for marker in _VIRT_MARKERS:
        if (root / marker).exists():
            return True
    product = _read_text(root / _DMI_PRODUCT)
    return bool(product and _DMI_VIRT_RE.search(product))


def read_total_memory_mb(root: Path = Path("/"), runner: CommandRunner | None = None) -> int:
    content = _read_text(root / "proc" / "meminfo")
    if content:
        for line in content.splitlines():
            if line.startswith("MemTotal:"):
                parts = line.split()
                if len(parts) >= 2 and parts[1].isdigit():
                    return int(parts[1]) // 1024
    if runner is not None:
        res = runner(["free", "-m"])
        for line in (res.stdout or "").splitlines():
            if line.startswith("Mem:"):
                parts = line.split()
                if len(parts) >= 2 and parts[1].isdigit():
                    return int(parts[1])
    return 0


def probe_host(
    root: Path = Path("/"),
    *,
    runner: CommandRunner | None = None,
    machine: str | None = None,
    cpu_count: Callable[[], int | None] = os.cpu_count,
) -> HostProfile:
    os_id, id_like, pretty = _os_identity(root, runner)
    package_manager = detect_package_manager(os_id, id_like)
    profile = HostProfile(
        os_family=_FAMILIES[package_manager],
        os_id=os_id,
        os_pretty_name=pretty,
        architecture=Architecture.from_machine(machine if machine is not None else platform.machine()),
        is_virtualized=detect_virtualization(root),
        total_memory_mb=read_total_memory_mb(root, runner),
        cpu_cores=max(1, cpu_count() or 1),
        package_manager=package_manager,
        has_render_device=(root / "dev" / "dri").exists(),
    )
    logger.debug("host profile: %s", profile)
    return profile


def parse_rclone_version(output: str) -> str | None:
    match = _RCLONE_VERSION_RE.search(output or "")
    return match.group(1) if match else None


def detect_fuse_tier(
    *,
    which: Callable[[str], str | None] = shutil.which,
    root: Path = Path("/"),
) -> MountToolTier:
    if which("fusermount3"):
        return MountToolTier.MODERN
    for lib in _FUSE3_LIBS:
        if (root / lib).exists():
            return MountToolTier.MODERN
    return MountToolTier.LEGACY


def probe_toolchain(
    *,
    runner: CommandRunner,
    which: Callable[[str], str | None] = shutil.which,
    root: Path = Path("/"),
) -> ToolchainState:
    runtime = which("docker") is not None
    compose = runtime and runner(["docker", "compose", "version"]).returncode == 0
    mount_tool = which("rclone") is not None
    version = None
    if mount_tool:
        version = parse_rclone_version(output_of(runner(["rclone", "--version"])))
    return ToolchainState(
        container_runtime_present=runtime,
        compose_present=compose,
        mount_tool_present=mount_tool,
        mount_tool_version=version,
        mount_tool_version_tier=detect_fuse_tier(which=which, root=root),
        common_packages_present=all(which(pkg) for pkg in COMMON_PACKAGES),
    )


def detect_timezone(runner: CommandRunner, default: str = "UTC") -> str:
    res = runner(["timedatectl", "show", "--property=Timezone", "--value"])
    value = (res.stdout or "").strip() if res.returncode == 0 else ""
    return value or default


def is_valid_ipv4(value: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address((value or "").strip()), ipaddress.IPv4Address)
    except ValueError:
        return False


def detect_server_address(runner: CommandRunner) -> str | None:
    res = runner(["ip", "route", "get", "1"])
    if res.returncode == 0:
        match = re.search(r"\bsrc\s+(\d{1,3}(?:\.\d{1,3}){3})", res.stdout or "")
        if match and is_valid_ipv4(match.group(1)):
            return match.group(1)
    res = runner(["hostname", "-I"])
    if res.returncode == 0:
        for candidate in (res.stdout or "").split():
            if is_valid_ipv4(candidate):
                return candidate
    return None
