# tests/test_config.py

import pytest

from osprey.config import Config, ConfigError, get_xdg_config_home, get_xdg_data_home
from osprey.core import SYNC_INTERVAL_PUSH, Account, SyncWindow


def test_missing_file_gives_defaults(temp_dir):
    config = Config.load(temp_dir / "absent.toml")

    assert config.accounts == {}
    assert config.sync.quick_sync_window_hours == 24
    assert config.sync.full_sync_interval_hours == 4
    assert config.idle.ping_base_delay_ms == 500
    assert config.notifications.battery_exempt is True


def test_load_accounts_and_sections(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text(
        """
[general]
default_account = "personal"

[sync]
minimum_messages_to_sync = 25

[idle]
kick_timeout_minutes = 20

[notifications]
battery_exempt = false

[accounts.personal]
email = "me@example.com"
imap_host = "imap.example.com"
sync_lookback = "weeks_2"

[accounts.work]
email = "me@work.example"
imap_host = "mail.work.example"
imap_port = 143
imap_security = "starttls"
sync_interval = 15
"""
    )

    config = Config.load(path)

    assert config.default_account == "personal"
    assert config.sync.minimum_messages_to_sync == 25
    assert config.sync.load_more_max_increment == 20
    assert config.idle.kick_timeout_minutes == 20
    assert config.notifications.battery_exempt is False

    personal = config.accounts["personal"]
    assert personal.is_push
    assert personal.sync_lookback == SyncWindow.WEEKS_2
    assert personal.display_name == "me@example.com"
    work = config.accounts["work"]
    assert work.imap_port == 143
    assert work.sync_interval == 15
    assert not work.is_push


def test_save_and_load_round_trip(temp_dir):
    path = temp_dir / "nested" / "config.toml"
    config = Config(default_account="home")
    config.accounts["home"] = Account(
        name="home", email="home@example.com", imap_host="imap.example.com",
        sync_interval=SYNC_INTERVAL_PUSH, sync_lookback=SyncWindow.MONTH_1,
    )
    config.idle.restart_delay_max_seconds = 90

    config.save(path)
    loaded = Config.load(path)

    assert loaded.default_account == "home"
    assert loaded.accounts["home"].sync_lookback == SyncWindow.MONTH_1
    assert loaded.accounts["home"].imap_host == "imap.example.com"
    assert loaded.idle.restart_delay_max_seconds == 90


def test_invalid_toml(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text("[sync\n")

    with pytest.raises(ConfigError):
        Config.load(path)


def test_unknown_sync_lookback(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text('[accounts.x]\nemail = "x@example.com"\nsync_lookback = "fortnight"\n')

    with pytest.raises(ConfigError, match="fortnight"):
        Config.load(path)


@pytest.mark.parametrize("body", [
    "[sync]\nmax_messages_to_fetch = 0\n",
    "[idle]\nrestart_delay_min_seconds = 90\nrestart_delay_max_seconds = 30\n",
])
def test_out_of_range_values(temp_dir, body):
    path = temp_dir / "config.toml"
    path.write_text(body)

    with pytest.raises(ConfigError):
        Config.load(path)


def test_xdg_paths_follow_environment(monkeypatch, temp_dir):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(temp_dir / "data"))

    assert get_xdg_config_home() == temp_dir / "cfg" / "osprey"
    assert get_xdg_data_home() == temp_dir / "data" / "osprey"
    assert Config.database_path() == temp_dir / "data" / "osprey" / "osprey.db"


def test_sync_window_parse():
    assert SyncWindow.parse("ALL") == SyncWindow.ALL
    assert SyncWindow.parse(3) == SyncWindow.WEEK_1
    assert SyncWindow.ALL.to_days() == 36500
    with pytest.raises(ValueError):
        SyncWindow.parse("never")
