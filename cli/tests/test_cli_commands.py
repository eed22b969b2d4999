import subprocess

import httpx
import yaml
from typer.testing import CliRunner

from debrid_cli import config, main
from debrid_cli.commands import probe_cmd, stack_flow
from debrid_stack.errors import PrivilegeError
from debrid_stack.executor import Executor
from debrid_stack.models import Architecture, HostProfile, PackageManager, ToolchainState
from debrid_stack.render import WATCHTOWER_LABEL
from debrid_stack.verify import verify
from debrid_stack.workflow import Workflow

READY = ToolchainState(
    container_runtime_present=True,
    compose_present=True,
    mount_tool_present=True,
    common_packages_present=True,
)


def _profile() -> HostProfile:
    return HostProfile(
        os_family="debian",
        os_id="debian",
        os_pretty_name="Debian GNU/Linux 12",
        architecture=Architecture.AMD64,
        is_virtualized=False,
        total_memory_mb=8192,
        cpu_cores=4,
        package_manager=PackageManager.APT,
    )


def _ok_runner(cmd):
    return subprocess.CompletedProcess(cmd, 0, "", "")


def _use_tmp_config(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config, "user_config_dir", lambda _: str(tmp_path / "cfg"))
    monkeypatch.delenv(config.ENV_INSTALL_DIR, raising=False)


def _settings_for(tmp_path) -> config.InstallerSettings:
    return config.InstallerSettings(
        install_dir=str(tmp_path / "opt"),
        mount_dir=str(tmp_path / "mnt" / "zurg"),
        bundle_mount_dir=str(tmp_path / "mnt" / "debrid"),
        rclone_config=str(tmp_path / "rclone.conf"),
        unit_dir=str(tmp_path / "systemd"),
    )


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(main._build_app(), ["--help"])

    assert result.exit_code == 0
    for name in ("install", "update", "repair", "backup", "restore", "probe", "render", "settings"):
        assert name in result.output


def test_install_requires_root(monkeypatch) -> None:
    def _not_root():
        raise PrivilegeError("This installer must run as root.", hint="sudo debrid-stack")

    monkeypatch.setattr(stack_flow, "ensure_privileged", _not_root)
    result = CliRunner().invoke(main._build_app(), ["install", "--non-interactive", "--credential", "KEY"])

    assert result.exit_code == 1
    assert "must run as root" in result.output


def test_settings_set_and_show(tmp_path, monkeypatch) -> None:
    _use_tmp_config(monkeypatch, tmp_path)
    app = main._build_app()
    runner = CliRunner()

    assert runner.invoke(app, ["settings", "set", "mount_dir", "/srv/zurg"]).exit_code == 0
    shown = runner.invoke(app, ["settings", "show"])
    bad = runner.invoke(app, ["settings", "set", "puid", "zero"])

    assert "mount_dir=/srv/zurg" in shown.output
    assert bad.exit_code == 2


def test_render_writes_artifacts_without_media_server(tmp_path, monkeypatch) -> None:
    _use_tmp_config(monkeypatch, tmp_path)
    monkeypatch.setattr(probe_cmd, "local_runner", lambda: _ok_runner)
    monkeypatch.setattr(probe_cmd, "probe_host", lambda runner: _profile())
    monkeypatch.setattr(probe_cmd, "probe_toolchain", lambda runner: READY)
    out = tmp_path / "out"

    result = CliRunner().invoke(
        main._build_app(),
        [
            "render",
            "--output-dir", str(out),
            "--credential", "RDKEY",
            "--server-address", "10.0.0.5",
            "--timezone", "UTC",
            "--media-server", "none",
            "--with", "none",
        ],
    )

    assert result.exit_code == 0, result.output
    compose = yaml.safe_load((out / "opt" / "debrid-stack" / "docker-compose.yml").read_text(encoding="utf-8"))
    assert list(compose["services"]) == ["zurg", "cli_debrid", "overseerr"]
    assert (out / "opt" / "debrid-stack" / "zurg" / "config.yml").exists()
    assert (out / "etc" / "systemd" / "system" / "zurg-rclone.service").exists()


def test_render_uses_auto_update_flags_and_saved_schedule(tmp_path, monkeypatch) -> None:
    _use_tmp_config(monkeypatch, tmp_path)
    config.save_config(config.InstallerSettings(auto_update_schedule="0 30 3 * * *"))
    monkeypatch.setattr(probe_cmd, "local_runner", lambda: _ok_runner)
    monkeypatch.setattr(probe_cmd, "probe_host", lambda runner: _profile())
    monkeypatch.setattr(probe_cmd, "probe_toolchain", lambda runner: READY)
    out = tmp_path / "out"

    result = CliRunner().invoke(
        main._build_app(),
        [
            "render",
            "--output-dir", str(out),
            "--credential", "RDKEY",
            "--server-address", "10.0.0.5",
            "--timezone", "UTC",
            "--with", "auto_updater",
            "--auto-update", "zurg",
        ],
    )

    assert result.exit_code == 0, result.output
    services = yaml.safe_load((out / "opt" / "debrid-stack" / "docker-compose.yml").read_text(encoding="utf-8"))["services"]
    assert services["watchtower"]["environment"]["WATCHTOWER_SCHEDULE"] == "0 30 3 * * *"
    assert services["zurg"]["labels"][WATCHTOWER_LABEL] == "true"
    assert services["cli_debrid"]["labels"][WATCHTOWER_LABEL] == "false"


def test_render_requires_a_credential(tmp_path, monkeypatch) -> None:
    _use_tmp_config(monkeypatch, tmp_path)
    monkeypatch.setattr(probe_cmd, "local_runner", lambda: _ok_runner)
    monkeypatch.setattr(probe_cmd, "probe_host", lambda runner: _profile())
    monkeypatch.setattr(probe_cmd, "probe_toolchain", lambda runner: READY)
    monkeypatch.setattr(probe_cmd, "find_existing_credential", lambda paths: None)

    result = CliRunner().invoke(main._build_app(), ["render", "--output-dir", str(tmp_path / "out")])

    assert result.exit_code == 2


def test_probe_json(monkeypatch, tmp_path) -> None:
    _use_tmp_config(monkeypatch, tmp_path)
    monkeypatch.setattr(probe_cmd, "local_runner", lambda: _ok_runner)
    monkeypatch.setattr(probe_cmd, "probe_host", lambda runner: _profile())
    monkeypatch.setattr(probe_cmd, "probe_toolchain", lambda runner: READY)

    result = CliRunner().invoke(main._build_app(), ["probe", "--json"])

    assert result.exit_code == 0
    assert '"resource_tier": "normal"' in result.output
    assert '"flavor": "none"' in result.output


def _patch_workflow(monkeypatch, tmp_path, verifier) -> None:
    settings = _settings_for(tmp_path)

    def _build(inputs, **_):
        paths = settings.to_paths()
        executor = Executor(
            _ok_runner, paths, sleep=lambda _: None, which=lambda name: f"/usr/bin/{name}", root=tmp_path
        )
        return Workflow(
            _ok_runner,
            paths,
            stack_flow.CliUI(inputs, settings),
            executor=executor,
            probe=_profile,
            toolchain=lambda: READY,
            verifier=verifier,
            is_mount=lambda _: True,
        )

    monkeypatch.setattr(stack_flow, "ensure_privileged", lambda: None)
    monkeypatch.setattr(stack_flow, "build_workflow", _build)


def test_non_interactive_install_with_failed_health_check_exits_zero(tmp_path, monkeypatch) -> None:
    def _refused(url):
        raise httpx.ConnectError("refused", request=httpx.Request("GET", url))

    def _verifier(endpoints):
        return verify(
            endpoints, runner=_ok_runner, http_get=_refused, is_mount=lambda _: False, sleep=lambda _: None, attempts=1
        )

    _patch_workflow(monkeypatch, tmp_path, _verifier)

    result = CliRunner().invoke(
        main._build_app(),
        [
            "install",
            "--non-interactive",
            "--credential", "RDKEY123456",
            "--server-address", "not-an-ip",
            "--timezone", "UTC",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Diagnostics" in result.output
    assert "Completed with" in result.output
    assert "127.0.0.1" in result.output
    assert "RDKEY123456" not in result.output


def test_non_interactive_install_needs_a_credential(tmp_path, monkeypatch) -> None:
    _patch_workflow(monkeypatch, tmp_path, lambda endpoints: None)

    result = CliRunner().invoke(main._build_app(), ["install", "--non-interactive"])

    assert result.exit_code == 2
    assert "--credential" in result.output


def test_update_without_installation_exits_one(tmp_path, monkeypatch) -> None:
    _patch_workflow(monkeypatch, tmp_path, lambda endpoints: None)

    result = CliRunner().invoke(main._build_app(), ["update", "--non-interactive"])

    assert result.exit_code == 1
    assert "debrid-stack install" in result.output


def test_unknown_component_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(stack_flow, "ensure_privileged", lambda: None)
    result = CliRunner().invoke(main._build_app(), ["install", "--non-interactive", "--with", "sonarr"])

    assert result.exit_code == 2
    assert "Unknown component" in result.output
