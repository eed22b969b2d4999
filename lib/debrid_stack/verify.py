from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import httpx

from .models import Flavor, ServiceId
from .paths import MOUNT_UNIT_NAME, HostPaths
from .render import BUNDLE_FRONTEND_PORT, ZURG_PORT
from .runner import CommandRunner, output_of

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_ATTEMPTS = 30
DEFAULT_HEALTH_INTERVAL = 5.0
DEFAULT_LOG_TAIL = 20
RECOVERY_SETTLE_SECONDS = 5.0

HttpGet = Callable[[str], httpx.Response]


@dataclass(frozen=True)
class HealthEndpoints:
    core_container: str
    api_url: str
    mount_point: Path
    mount_unit: str | None = MOUNT_UNIT_NAME

    @classmethod
    def for_flavor(cls, flavor: Flavor, paths: HostPaths) -> "HealthEndpoints":
        if flavor is Flavor.BUNDLE:
            return cls(
                core_container=ServiceId.DMB.container_name,
                api_url=f"http://127.0.0.1:{BUNDLE_FRONTEND_PORT}/",
                mount_point=paths.bundle_mount_dir,
                mount_unit=None,
            )
        return cls(
            core_container=ServiceId.ZURG.container_name,
            api_url=f"http://127.0.0.1:{ZURG_PORT}/dav/",
            mount_point=paths.mount_dir,
        )


@dataclass
class HealthReport:
    ok: bool
    api_ok: bool
    mount_ok: bool
    recovered: bool = False
    attempts: int = 0
    diagnostics: dict[str, str] = field(default_factory=dict)


def _http_get(url: str) -> httpx.Response:
    return httpx.get(url, timeout=10.0)


def _api_status(url: str, http_get: HttpGet) -> tuple[bool, str]:
    try:
        response = http_get(url)
    except (httpx.HTTPError, OSError) as exc:
        return False, f"{type(exc).__name__}: {exc}"
    body = (response.text or "").strip()
    return response.status_code < 400, f"HTTP {response.status_code}: {body[:500]}"


def _poll(
    endpoints: HealthEndpoints,
    *,
    http_get: HttpGet,
    is_mount: Callable[[Path], bool],
    sleep: Callable[[float], None],
    attempts: int,
    interval: float,
) -> tuple[bool, bool, str, int]:
    api_ok, mount_ok, raw = False, False, ""
    for attempt in range(1, attempts + 1):
        api_ok, raw = _api_status(endpoints.api_url, http_get)
        mount_ok = is_mount(endpoints.mount_point)
        if api_ok and mount_ok:
            return True, True, raw, attempt
        logger.debug("health attempt %s/%s: api=%s mount=%s", attempt, attempts, api_ok, mount_ok)
        if attempt < attempts:
            sleep(interval)
    return api_ok, mount_ok, raw, attempts


def _recover(endpoints: HealthEndpoints, runner: CommandRunner, sleep: Callable[[float], None]) -> None:
    logger.warning("stack unhealthy, restarting %s", endpoints.core_container)
    runner(["docker", "restart", endpoints.core_container])
    sleep(RECOVERY_SETTLE_SECONDS)
    if endpoints.mount_unit:
        runner(["systemctl", "restart", endpoints.mount_unit])
        sleep(RECOVERY_SETTLE_SECONDS)


def collect_diagnostics(endpoints: HealthEndpoints, runner: CommandRunner, raw_response: str) -> dict[str, str]:
    core = endpoints.core_container
    commands: dict[str, list[str]] = {
        "containers": ["docker", "ps", "-a", "--filter", f"name={core}"],
        "logs": ["docker", "logs", "--tail", str(DEFAULT_LOG_TAIL), core],
    }
    if endpoints.mount_unit:
        commands["mount_service"] = ["systemctl", "status", endpoints.mount_unit, "--no-pager"]
    commands["mount_listing"] = ["ls", "-la", str(endpoints.mount_point)]
    diagnostics = {name: output_of(runner(cmd)) or "<empty>" for name, cmd in commands.items()}
    diagnostics["health_response"] = raw_response or "<empty>"
    return diagnostics


def verify(
    endpoints: HealthEndpoints,
    *,
    runner: CommandRunner,
    http_get: HttpGet = _http_get,
    is_mount: Callable[[Path], bool] = os.path.ismount,
    sleep: Callable[[float], None] = time.sleep,
    attempts: int = DEFAULT_HEALTH_ATTEMPTS,
    interval: float = DEFAULT_HEALTH_INTERVAL,
) -> HealthReport:
    """Poll the core API and the mount, with one recovery round on failure.

    Never raises; a failing stack comes back as a report with diagnostics.
    """
    poll = dict(http_get=http_get, is_mount=is_mount, sleep=sleep, attempts=attempts, interval=interval)
    api_ok, mount_ok, raw, used = _poll(endpoints, **poll)
    if api_ok and mount_ok:
        return HealthReport(ok=True, api_ok=True, mount_ok=True, attempts=used)

    _recover(endpoints, runner, sleep)
    api_ok, mount_ok, raw, again = _poll(endpoints, **poll)
    if api_ok and mount_ok:
        return HealthReport(ok=True, api_ok=True, mount_ok=True, recovered=True, attempts=used + again)

    return HealthReport(
        ok=False,
        api_ok=api_ok,
        mount_ok=mount_ok,
        attempts=used + again,
        diagnostics=collect_diagnostics(endpoints, runner, raw),
    )
