import subprocess

import pytest

from debrid_stack.errors import PrivilegeError, PullAborted, ToolInstallError
from debrid_stack.executor import (
    DEFAULT_PULL_RETRIES,
    PULL_RETRY_EXTENSION,
    Executor,
    PullChoice,
    ensure_privileged,
)
from debrid_stack.models import (
    Architecture,
    Flavor,
    HostProfile,
    PackageManager,
    StackConfig,
    ToolchainState,
)
from debrid_stack.paths import HostPaths
from debrid_stack.render import render


class FakeRunner:
    """Answers commands by prefix; anything unmatched succeeds."""

    def __init__(self, rules: dict[str, int] | None = None):
        self.rules = rules or {}
        self.calls: list[str] = []

    def __call__(self, cmd: list[str]) -> subprocess.CompletedProcess:
        line = " ".join(cmd)
        self.calls.append(line)
        for prefix, code in self.rules.items():
            if line.startswith(prefix):
                return subprocess.CompletedProcess(cmd, code, "", "boom" if code else "")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def count(self, prefix: str) -> int:
        return sum(1 for line in self.calls if line.startswith(prefix))


def _profile() -> HostProfile:
    return HostProfile(
        os_family="debian",
        os_id="ubuntu",
        os_pretty_name="Ubuntu",
        architecture=Architecture.AMD64,
        is_virtualized=False,
        total_memory_mb=4096,
        cpu_cores=2,
        package_manager=PackageManager.APT,
    )


def _paths(tmp_path) -> HostPaths:
    return HostPaths(
        install_dir=tmp_path / "opt",
        mount_dir=tmp_path / "mnt" / "zurg",
        bundle_mount_dir=tmp_path / "mnt" / "debrid",
        rclone_config=tmp_path / "rclone" / "rclone.conf",
        unit_dir=tmp_path / "systemd",
    )


def _executor(tmp_path, runner, **kwargs) -> Executor:
    which = kwargs.pop("which", lambda name: f"/usr/bin/{name}")
    return Executor(runner, _paths(tmp_path), sleep=lambda _: None, which=which, root=tmp_path, **kwargs)


def test_ensure_privileged_rejects_non_root() -> None:
    with pytest.raises(PrivilegeError) as exc:
        ensure_privileged(lambda: 1000)
    assert exc.value.hint == "sudo debrid-stack"
    ensure_privileged(lambda: 0)


def test_pull_stops_after_max_retries_and_continue_returns_control(tmp_path) -> None:
    runner = FakeRunner({"docker image inspect": 1, "docker pull bad/image": 1})
    asked: list[str] = []

    def choose(image: str) -> PullChoice:
        asked.append(image)
        return PullChoice.CONTINUE

    report = _executor(tmp_path, runner).pull_images(["bad/image", "good/image"], choose)

    assert runner.count("docker pull bad/image") == DEFAULT_PULL_RETRIES
    assert asked == ["bad/image"]
    assert report.missing == ["bad/image"]
    assert report.pulled == ["good/image"]


def test_pull_retry_adds_more_attempts(tmp_path) -> None:
    runner = FakeRunner({"docker image inspect": 1, "docker pull bad/image": 1})
    decisions = iter([PullChoice.RETRY, PullChoice.CONTINUE])

    _executor(tmp_path, runner).pull_images(["bad/image"], lambda _: next(decisions))

    assert runner.count("docker pull bad/image") == DEFAULT_PULL_RETRIES * 2 + PULL_RETRY_EXTENSION


def test_pull_abort_raises(tmp_path) -> None:
    runner = FakeRunner({"docker image inspect": 1, "docker pull": 1})

    with pytest.raises(PullAborted) as exc:
        _executor(tmp_path, runner, max_pull_retries=2).pull_images(["bad/image"], lambda _: PullChoice.ABORT)

    assert exc.value.image == "bad/image"
    assert runner.count("docker pull") == 2


def test_present_images_are_skipped_unless_forced(tmp_path) -> None:
    runner = FakeRunner()
    executor = _executor(tmp_path, runner)

    assert executor.pull_images(["a/b"], lambda _: PullChoice.ABORT).skipped == ["a/b"]
    assert runner.count("docker pull") == 0
    assert executor.pull_images(["a/b"], lambda _: PullChoice.ABORT, force=True).pulled == ["a/b"]


def test_docker_install_failure_is_fatal(tmp_path) -> None:
    runner = FakeRunner({"sh -c curl -fsSL https://get.docker.com": 1})

    with pytest.raises(ToolInstallError):
        _executor(tmp_path, runner).ensure_container_runtime(_profile(), ToolchainState())


def test_rclone_falls_back_to_package_manager(tmp_path) -> None:
    installed: set[str] = set()
    runner = FakeRunner({"sh -c curl -fsSL https://rclone.org": 1})

    def which(name: str):
        return f"/usr/bin/{name}" if name in installed else None

    def run(cmd):
        res = runner(cmd)
        if cmd[:3] == ["apt-get", "install", "-y"] and "rclone" in cmd:
            installed.add("rclone")
        return res

    executor = Executor(run, _paths(tmp_path), sleep=lambda _: None, which=which, root=tmp_path)
    state = executor.ensure_mount_tool(_profile(), ToolchainState())

    assert state.mount_tool_present
    assert runner.count("apt-get install -y rclone") == 1


def test_rclone_install_failure_is_fatal(tmp_path) -> None:
    runner = FakeRunner({"sh -c": 1, "apt-get install": 1})

    def no_download(url: str) -> bytes:
        raise OSError("offline")

    executor = _executor(tmp_path, runner, which=lambda _: None, download=no_download)
    with pytest.raises(ToolInstallError):
        executor.ensure_mount_tool(_profile(), ToolchainState())


def test_fuse_conf_gets_user_allow_other(tmp_path) -> None:
    executor = _executor(tmp_path, FakeRunner())
    executor.ensure_packages(_profile(), ToolchainState(common_packages_present=True))

    assert "user_allow_other" in (tmp_path / "etc" / "fuse.conf").read_text(encoding="utf-8")


def test_mount_unit_start_reports_failure_after_bounded_attempts(tmp_path) -> None:
    runner = FakeRunner({"systemctl is-active": 3})

    warnings = _executor(tmp_path, runner).start_mount_unit()

    assert runner.count("systemctl start zurg-rclone.service") == 10
    assert warnings and "systemctl status" in warnings[0]


def test_apply_writes_units_before_starting_stack(tmp_path) -> None:
    paths = _paths(tmp_path)
    config = StackConfig(credential="KEY", server_address="10.0.0.2", timezone="UTC")
    artifacts = render(config, _profile(), ToolchainState(), paths)
    runner = FakeRunner({"docker image inspect": 1})
    ready = ToolchainState(
        container_runtime_present=True,
        compose_present=True,
        mount_tool_present=True,
        common_packages_present=True,
    )

    result = _executor(tmp_path, runner).apply(
        artifacts, _profile(), ready, choose=lambda _: PullChoice.ABORT, prepared=True
    )

    assert paths.zurg_config.read_text(encoding="utf-8") == artifacts[0].content
    assert oct(paths.zurg_config.stat().st_mode & 0o777) == oct(0o600)
    assert result.pulls.pulled
    start = runner.calls.index("systemctl start zurg-rclone.service")
    up = runner.calls.index(f"docker compose -f {paths.compose_file} up -d")
    assert start < up
    assert result.warnings == []


def test_package_install_failure_is_a_warning(tmp_path) -> None:
    runner = FakeRunner({"apt-get update": 100, "apt-get install": 100})
    missing = {"curl", "wget", "git"}
    executor = _executor(tmp_path, runner, which=lambda name: None if name in missing else f"/usr/bin/{name}")
    toolchain = ToolchainState(container_runtime_present=True, compose_present=True, mount_tool_present=True)

    state, warnings = executor.prepare(_profile(), toolchain)

    assert any("apt-get install -y curl wget git" in w for w in warnings)
    assert any("apt-get update" in w for w in warnings)
    assert state.container_runtime_present and state.mount_tool_present
    assert not state.common_packages_present


def test_retire_individual_removes_its_marker_files(tmp_path) -> None:
    paths = _paths(tmp_path)
    config = StackConfig(credential="KEY", server_address="10.0.0.2", timezone="UTC")
    for artifact in render(config, _profile(), ToolchainState(), paths):
        artifact.path.parent.mkdir(parents=True, exist_ok=True)
        artifact.path.write_text(artifact.content, encoding="utf-8")
    runner = FakeRunner()

    warnings = _executor(tmp_path, runner).retire(Flavor.INDIVIDUAL)

    assert warnings == []
    for path in paths.flavor_markers(Flavor.INDIVIDUAL):
        assert not path.exists()
    assert paths.library_hook.exists()
    assert runner.count(f"docker compose -f {paths.compose_file} down") == 1
    assert runner.count("systemctl disable --now zurg-rclone.service") == 1
