from __future__ import annotations

import io
import json
import logging
import os
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable

from .models import BackupSnapshot, Flavor, HostProfile
from .paths import BUNDLE_MARKER_NAME, HostPaths

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "debrid_backup_"
ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_NAME = "manifest.json"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

_RESTORE_MODES = {
    "plex_update.sh": 0o755,
    "config.yml": 0o600,
    "settings.json": 0o600,
    "rclone.conf": 0o600,
    "stack.env": 0o600,
}


@dataclass
class RestoreResult:
    flavor: Flavor
    restored: list[Path] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _member_name(member: tarfile.TarInfo) -> str:
    return PurePosixPath(member.name).name


def detect_flavor(names: list[str] | tuple[str, ...]) -> Flavor:
    """A snapshot is a bundle snapshot iff it carries the bundle marker."""
    return Flavor.BUNDLE if BUNDLE_MARKER_NAME in names else Flavor.INDIVIDUAL


def _timestamp_from_name(path: Path) -> datetime | None:
    stem = path.name.removeprefix(ARCHIVE_PREFIX).removesuffix(ARCHIVE_SUFFIX)
    try:
        return datetime.strptime(stem[: len("YYYYmmdd_HHMMSS")], TIMESTAMP_FORMAT)
    except ValueError:
        return None


class BackupManager:
    def __init__(self, paths: HostPaths, *, clock: Callable[[], datetime] = datetime.now):
        self.paths = paths
        self.clock = clock

    def current_flavor(self) -> Flavor:
        return Flavor.BUNDLE if self.paths.bundle_marker.exists() else Flavor.INDIVIDUAL

    def _archive_path(self, stamp: str) -> Path:
        path = self.paths.backup_dir / f"{ARCHIVE_PREFIX}{stamp}{ARCHIVE_SUFFIX}"
        counter = 1
        while path.exists():
            path = self.paths.backup_dir / f"{ARCHIVE_PREFIX}{stamp}_{counter}{ARCHIVE_SUFFIX}"
            counter += 1
        return path

    def create(self, profile: HostProfile | None = None) -> BackupSnapshot:
        self.paths.backup_dir.mkdir(parents=True, exist_ok=True)
        now = self.clock()
        stamp = now.strftime(TIMESTAMP_FORMAT)
        flavor = self.current_flavor()
        archive_path = self._archive_path(stamp)
        root = f"backup_{stamp}"

        included: list[str] = []
        with tarfile.open(archive_path, "w:gz") as tar:
            for name, source in self.paths.archive_routes(flavor).items():
                if not source.is_file():
                    logger.debug("backup skips missing %s", source)
                    continue
                tar.add(str(source), arcname=f"{root}/{name}")
                included.append(name)
            manifest = {
                "created_at": now.isoformat(timespec="seconds"),
                "flavor": flavor.value,
                "files": included,
                "host": profile.summary() if profile else {},
            }
            data = json.dumps(manifest, indent=2).encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{MANIFEST_NAME}")
            info.size = len(data)
            info.mtime = int(now.timestamp())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        os.chmod(archive_path, 0o600)
        return BackupSnapshot(timestamp=now, archive_path=archive_path, manifest=tuple(included), flavor=flavor)

    def load(self, archive_path: Path) -> BackupSnapshot:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = [m for m in tar.getmembers() if m.isfile()]
            names = [_member_name(m) for m in members]
            files: list[str] = [n for n in names if n != MANIFEST_NAME]
            manifest_member = next((m for m in members if _member_name(m) == MANIFEST_NAME), None)
            if manifest_member is not None:
                handle = tar.extractfile(manifest_member)
                try:
                    manifest = json.loads(handle.read().decode("utf-8")) if handle else {}
                except ValueError:
                    manifest = {}
                listed = manifest.get("files") if isinstance(manifest, dict) else None
                if isinstance(listed, list):
                    files = [str(item) for item in listed]
        timestamp = _timestamp_from_name(archive_path)
        if timestamp is None:
            timestamp = datetime.fromtimestamp(archive_path.stat().st_mtime)
        return BackupSnapshot(
            timestamp=timestamp,
            archive_path=archive_path,
            manifest=tuple(files),
            flavor=detect_flavor(names),
        )

    def list_snapshots(self) -> list[BackupSnapshot]:
        if not self.paths.backup_dir.is_dir():
            return []
        snapshots: list[BackupSnapshot] = []
        for path in self.paths.backup_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"):
            try:
                snapshots.append(self.load(path))
            except (tarfile.TarError, OSError) as exc:
                logger.warning("skipping unreadable backup %s: %s", path, exc)
        snapshots.sort(key=lambda s: (s.timestamp, s.archive_path.name), reverse=True)
        return snapshots

    def missing_members(self, snapshot: BackupSnapshot) -> list[str]:
        """Files the manifest promises but the archive does not carry."""
        with tarfile.open(snapshot.archive_path, "r:gz") as tar:
            present = {_member_name(m) for m in tar.getmembers() if m.isfile()}
        return [name for name in snapshot.manifest if name not in present]

    def restore(self, snapshot: BackupSnapshot, *, stop: Callable[[Flavor], None]) -> RestoreResult:
        with tarfile.open(snapshot.archive_path, "r:gz") as tar:
            members = [m for m in tar.getmembers() if m.isfile()]
            flavor = detect_flavor([_member_name(m) for m in members])
            routes = self.paths.archive_routes(flavor)
            result = RestoreResult(flavor=flavor)
            stop(flavor)
            for member in members:
                name = _member_name(member)
                if name == MANIFEST_NAME:
                    continue
                target = routes.get(name)
                handle = tar.extractfile(member)
                if target is None or handle is None:
                    result.skipped.append(name)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(handle.read())
                os.chmod(target, _RESTORE_MODES.get(name, 0o644))
                result.restored.append(target)
        return result
