from pathlib import Path

import pytest

from debrid_cli import config


def _config_dir(tmp_path):
    def _dir(_: str) -> str:
        return str(tmp_path)

    return _dir


def test_save_and_load_round_trip(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "user_config_dir", _config_dir(tmp_path))
    cfg = config.default_config()
    cfg.mount_dir = "/srv/zurg"
    cfg.puid = 1001

    path = config.save_config(cfg)
    loaded = config.load_config()

    assert path.endswith("config.toml")
    assert Path(path).stat().st_mode & 0o777 == 0o600
    assert loaded.mount_dir == "/srv/zurg"
    assert loaded.puid == 1001


def test_save_config_omits_unset_timezone(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "user_config_dir", _config_dir(tmp_path))
    config.save_config(config.default_config())
    contents = tmp_path.joinpath("config.toml").read_text(encoding="utf-8")

    assert "default_timezone" not in contents
    assert "install_dir" in contents


def test_missing_config_file_gives_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "user_config_dir", _config_dir(tmp_path / "nowhere"))
    assert config.load_config() == config.default_config()


def test_from_toml_ignores_invalid_values() -> None:
    cfg = config.from_toml({"mount_dir": "relative/path", "puid": -5, "pgid": True, "default_timezone": "  "})
    assert cfg == config.default_config()


def test_install_dir_env_override(monkeypatch) -> None:
    cfg = config.default_config()
    monkeypatch.setenv(config.ENV_INSTALL_DIR, "/data/stack/")
    assert config.resolve_install_dir(cfg) == "/data/stack"
    assert cfg.to_paths().install_dir == Path("/data/stack")


def test_install_dir_from_config(monkeypatch) -> None:
    monkeypatch.delenv(config.ENV_INSTALL_DIR, raising=False)
    cfg = config.default_config()
    cfg.install_dir = "/srv/debrid"
    assert cfg.to_paths().backup_dir == Path("/srv/debrid/backups")


def test_set_value_validates_input() -> None:
    cfg = config.default_config()
    config.set_value(cfg, "PGID", "1005")
    config.set_value(cfg, "default_timezone", "Europe/Paris")
    assert cfg.pgid == 1005
    assert cfg.default_timezone == "Europe/Paris"
    with pytest.raises(ValueError):
        config.set_value(cfg, "mount_dir", "mnt/zurg")
    with pytest.raises(ValueError):
        config.set_value(cfg, "puid", "zero")
    with pytest.raises(ValueError):
        config.set_value(cfg, "auto_update_schedule", "0 4 * * *")
    with pytest.raises(ValueError):
        config.set_value(cfg, "colour", "blue")
