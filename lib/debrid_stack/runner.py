from __future__ import annotations

import logging
import subprocess
from typing import Callable

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def local_runner() -> CommandRunner:
    def _run(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        logger.debug("run: %s", " ".join(cmd))
        try:
            res = subprocess.run(cmd, text=True, capture_output=True)
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))
        if res.returncode != 0:
            logger.debug("exit %s: %s", res.returncode, (res.stderr or "").strip())
        return res

    return _run


def shell(command: str) -> list[str]:
    return ["sh", "-c", command]


def succeeded(runner: CommandRunner, cmd: list[str]) -> bool:
    return runner(cmd).returncode == 0


def output_of(res: subprocess.CompletedProcess[str]) -> str:
    output = (res.stdout or "").strip()
    if not output:
        output = (res.stderr or "").strip()
    return output
