from pathlib import Path

import pytest
import yaml

from debrid_stack.errors import RenderError
from debrid_stack.models import (
    Architecture,
    ArtifactKind,
    AutoUpdatePolicy,
    Flavor,
    HostProfile,
    MediaServer,
    MountToolTier,
    OptionalComponent,
    PackageManager,
    RequestManager,
    ResourceTier,
    ServiceId,
    StackConfig,
    ToolchainState,
)
from debrid_stack.paths import HostPaths
from debrid_stack.render import (
    MOUNT_CONCURRENCY_FIELDS,
    RESOURCE_TIERS,
    SERVICE_PORTS,
    WATCHTOWER_LABEL,
    MountUnit,
    images_for,
    render,
    select_resource_tier,
)


def _profile(*, memory: int = 8192, virtualized: bool = False, arch: Architecture = Architecture.AMD64) -> HostProfile:
    return HostProfile(
        os_family="debian",
        os_id="ubuntu",
        os_pretty_name="Ubuntu 24.04 LTS",
        architecture=arch,
        is_virtualized=virtualized,
        total_memory_mb=memory,
        cpu_cores=4,
        package_manager=PackageManager.APT,
    )


def _config(**overrides) -> StackConfig:
    values = dict(
        credential="RDKEY1234567890",
        server_address="192.168.1.50",
        timezone="Europe/Berlin",
    )
    values.update(overrides)
    return StackConfig(**values)


def _paths(tmp_path: Path) -> HostPaths:
    return HostPaths(
        install_dir=tmp_path / "opt",
        mount_dir=tmp_path / "mnt" / "zurg",
        bundle_mount_dir=tmp_path / "mnt" / "debrid",
        rclone_config=tmp_path / "rclone" / "rclone.conf",
        unit_dir=tmp_path / "systemd",
    )


def _by_name(artifacts):
    return {a.name: a for a in artifacts}


def _compose(artifacts) -> dict:
    return yaml.safe_load(_by_name(artifacts)["docker-compose.yml"].content)


def _unit_values(content: str) -> dict[str, int]:
    values = {}
    for line in content.splitlines():
        line = line.strip().rstrip("\\").strip()
        for flag, name in (
            ("--transfers ", "transfers"),
            ("--checkers ", "checkers"),
            ("--buffer-size ", "buffer_size_mb"),
            ("--vfs-read-ahead ", "read_ahead_mb"),
            ("--vfs-cache-max-size=", "cache_max_size_mb"),
        ):
            if line.startswith(flag):
                values[name] = int(line[len(flag):].rstrip("M"))
    return values


def test_render_is_byte_identical_for_identical_inputs(tmp_path) -> None:
    config = _config(optional_components=frozenset(OptionalComponent))
    first = render(config, _profile(), ToolchainState(), _paths(tmp_path))
    second = render(config, _profile(), ToolchainState(), _paths(tmp_path))

    assert [(a.path, a.content, a.mode) for a in first] == [(a.path, a.content, a.mode) for a in second]


def test_constrained_host_lowers_every_mount_field(tmp_path) -> None:
    normal = render(_config(), _profile(memory=8192), ToolchainState(), _paths(tmp_path))
    constrained = render(_config(), _profile(memory=1024, virtualized=True), ToolchainState(), _paths(tmp_path))

    high = _unit_values(_by_name(normal)["zurg-rclone.service"].content)
    low = _unit_values(_by_name(constrained)["zurg-rclone.service"].content)

    assert set(high) == set(MOUNT_CONCURRENCY_FIELDS)
    assert all(low[name] <= high[name] for name in MOUNT_CONCURRENCY_FIELDS)
    assert any(low[name] < high[name] for name in MOUNT_CONCURRENCY_FIELDS)


def test_small_virtual_machine_gets_constrained_zurg_workers(tmp_path) -> None:
    profile = _profile(memory=1024, virtualized=True)
    artifacts = render(_config(), profile, ToolchainState(), _paths(tmp_path))
    zurg = yaml.safe_load(_by_name(artifacts)["config.yml"].content)

    assert select_resource_tier(profile) is ResourceTier.CONSTRAINED
    assert zurg["concurrent_workers"] == 16
    assert zurg["check_for_changes_every_secs"] == RESOURCE_TIERS[ResourceTier.CONSTRAINED].zurg_check_interval


def test_small_bare_metal_host_keeps_normal_tier() -> None:
    assert select_resource_tier(_profile(memory=1024, virtualized=False)) is ResourceTier.NORMAL
    assert select_resource_tier(_profile(memory=2048, virtualized=True)) is ResourceTier.NORMAL


def test_no_media_server_emits_no_media_block_or_port(tmp_path) -> None:
    config = _config(selected_media_server=MediaServer.NONE, selected_request_manager=RequestManager.NONE)
    artifacts = render(config, _profile(), ToolchainState(), _paths(tmp_path))
    compose = _compose(artifacts)
    content = _by_name(artifacts)["docker-compose.yml"].content

    assert list(compose["services"]) == ["zurg", "cli_debrid"]
    for service in (ServiceId.PLEX, ServiceId.JELLYFIN, ServiceId.EMBY):
        assert service.value not in compose["services"]
        for port in SERVICE_PORTS[service]:
            assert f"{port}:{port}" not in content
    assert "linuxserver/plex" not in content


def test_unselected_components_leave_no_trace(tmp_path) -> None:
    config = _config(optional_components=frozenset({OptionalComponent.INDEXER}))
    artifacts = render(config, _profile(), ToolchainState(), _paths(tmp_path))
    services = _compose(artifacts)["services"]
    images = images_for(artifacts)

    assert "jackett" in services
    for missing in ("flaresolverr", "portainer", "watchtower"):
        assert missing not in services
        assert not any(missing in image for image in images)
    assert "volumes" not in _compose(artifacts)


def test_every_service_carries_the_update_label(tmp_path) -> None:
    policy = AutoUpdatePolicy(per_service_enable={ServiceId.ZURG: True})
    config = _config(optional_components=frozenset(OptionalComponent), auto_update_policy=policy)
    services = _compose(render(config, _profile(), ToolchainState(), _paths(tmp_path)))["services"]

    assert services["zurg"]["labels"][WATCHTOWER_LABEL] == "true"
    assert services["cli_debrid"]["labels"][WATCHTOWER_LABEL] == "false"
    assert all(WATCHTOWER_LABEL in block["labels"] for block in services.values())
    assert services["watchtower"]["environment"]["WATCHTOWER_LABEL_ENABLE"] == "true"


def test_credential_stays_out_of_compose(tmp_path) -> None:
    for flavor in (Flavor.INDIVIDUAL, Flavor.BUNDLE):
        artifacts = render(_config(flavor=flavor), _profile(), ToolchainState(), _paths(tmp_path))
        assert "RDKEY1234567890" not in _by_name(artifacts)["docker-compose.yml"].content
        assert "RDKEY1234567890" in _by_name(artifacts)["config.yml"].content
        assert _by_name(artifacts)["config.yml"].mode == 0o600


def test_bundle_flavor_renders_marker_and_env(tmp_path) -> None:
    paths = _paths(tmp_path)
    artifacts = render(_config(flavor=Flavor.BUNDLE), _profile(), ToolchainState(), paths)
    named = _by_name(artifacts)
    compose = _compose(artifacts)

    assert set(named) == {"config.yml", "plex_update.sh", "stack.env", "docker-compose.yml", ".bundle"}
    assert named[".bundle"].path == paths.bundle_marker
    assert "ZURG_INSTANCES_REALDEBRID_API_KEY=RDKEY1234567890" in named["stack.env"].content
    assert "zurg" not in compose["services"]
    assert compose["services"]["dmb"]["container_name"] == "DMB"
    assert not any(a.kind is ArtifactKind.UNIT_FILE for a in artifacts)


def test_arm_host_uses_arm_cli_debrid_tag(tmp_path) -> None:
    artifacts = render(_config(), _profile(arch=Architecture.ARM64), ToolchainState(), _paths(tmp_path))
    assert "godver3/cli_debrid:dev-arm64" in images_for(artifacts)


def test_modern_fuse_adds_async_flags(tmp_path) -> None:
    legacy = render(_config(), _profile(), ToolchainState(), _paths(tmp_path))
    modern = render(
        _config(),
        _profile(),
        ToolchainState(mount_tool_version_tier=MountToolTier.MODERN),
        _paths(tmp_path),
    )
    assert "--async-read=true" not in _by_name(legacy)["zurg-rclone.service"].content
    assert "--async-read=true" in _by_name(modern)["zurg-rclone.service"].content


def test_library_hook_points_at_server_address(tmp_path) -> None:
    artifacts = render(_config(), _profile(), ToolchainState(), _paths(tmp_path))
    hook = _by_name(artifacts)["plex_update.sh"]

    assert hook.mode == 0o755
    assert 'webhook_url="http://192.168.1.50:5000/webhook/rclone"' in hook.content


def test_render_rejects_empty_credential(tmp_path) -> None:
    with pytest.raises(RenderError):
        render(_config(credential="  "), _profile(), ToolchainState(), _paths(tmp_path))


def test_mount_unit_rejects_relative_mount_point() -> None:
    unit = MountUnit(
        mount_point=Path("mnt/zurg"),
        config_path=Path("/root/.config/rclone/rclone.conf"),
        transfers=8,
        checkers=8,
        buffer_size_mb=32,
        read_ahead_mb=32,
        cache_max_size_mb=512,
        modern=False,
    )
    with pytest.raises(RenderError):
        unit.render()
