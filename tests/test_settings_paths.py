from pathlib import Path

from core import settings
from storage.config import AppConfig, ensure_user_id, load_config, save_config, update_config


def test_linux_data_dir_with_xdg():
    env = {"XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env=env,
        home=Path("/home/test"),
    )
    assert result == Path("/tmp/xdg") / settings.APP_NAME


def test_linux_data_dir_default_home():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={},
        home=Path("/home/test"),
    )
    assert result == Path("/home/test/.local/share") / settings.APP_NAME


def test_macos_data_dir():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="darwin",
        env={},
        home=Path("/Users/test"),
    )
    expected = Path("/Users/test/Library/Application Support") / settings.APP_NAME
    assert result == expected


def test_windows_data_dir_appdata():
    env = {"APPDATA": "C:/Users/test/AppData/Roaming"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="win32",
        env=env,
        home=Path("C:/Users/test"),
    )
    expected = Path(env["APPDATA"]) / settings.APP_NAME
    assert result == expected


def test_data_dir_override_wins():
    env = {"TASKFLOW_DATA_DIR": "/srv/taskflow", "XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(settings.APP_NAME, platform="linux", env=env, home=Path("/home/test"))
    assert result == Path("/srv/taskflow")


def test_runtime_paths_inside_data_dir():
    assert settings.DB_PATH.parent == settings.DATA_DIR
    assert settings.CONFIG_PATH.parent == settings.DATA_DIR
    assert settings.CLIENT_SECRET_PATH.parent == settings.SECRETS_DIR
    assert settings.LOG_PATH.parent == settings.LOG_DIR


def test_sync_defaults():
    assert settings.SYNC.lookback_days == 30
    assert settings.SYNC.lookahead_days == 60
    assert settings.SYNC.default_duration_minutes == 30
    assert settings.SYNC.default_calendar_id == "primary"


def test_user_id_is_assigned_once(tmp_path):
    path = tmp_path / "config.json"
    first = ensure_user_id(path)
    second = ensure_user_id(path)
    assert first.user_id
    assert first.user_id == second.user_id


def test_config_round_trip_and_update(tmp_path):
    path = tmp_path / "nested" / "config.json"
    save_config(AppConfig(user_id="u1", timezone="Europe/Berlin"), path)
    assert load_config(path) == AppConfig(user_id="u1", timezone="Europe/Berlin", default_calendar_id="primary")

    updated = update_config(path, timezone="Asia/Tokyo", unknown="ignored")
    assert updated.timezone == "Asia/Tokyo"
    assert load_config(path).user_id == "u1"
    assert not path.with_suffix(".tmp").exists()


def test_corrupt_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_config(path) == AppConfig()
