"""Tests for server configuration loading."""

import json

import pytest

from config.servers import ConfigError, load_config, parse_config


def server(**overrides):
    entry = {
        "id": 1,
        "host": "203.0.113.10",
        "rcon_port": 19999,
        "rcon_password": "secret",
        "log_dir": "/srv/reforger/logs",
    }
    entry.update(overrides)
    return entry


class TestParseConfig:
    """Test suite for parse_config validation."""

    def test_minimal_server_defaults(self):
        """Test defaults for optional keys."""
        [config] = parse_config({"servers": [server()]})

        assert config.id == 1
        assert config.log_file == "console.log"
        assert config.log_reader_mode == "tail"
        assert config.reconnect_initial_delay == 5.0
        assert config.reconnect_max_delay == 60.0
        assert config.keepalive_dead_multiplier == 3
        assert config.sftp is None
        assert config.custom_parsers == ()
        assert config.display_name == "Server 1"

    def test_overrides(self):
        """Test numeric options are read."""
        [config] = parse_config({"servers": [server(
            name="Main", login_timeout=3, reconnect_initial_delay=2, reconnect_max_delay=30,
            players_poll_interval=15, keepalive_dead_multiplier=4,
        )]})

        assert config.display_name == "Main"
        assert config.login_timeout == 3.0
        assert config.players_poll_interval == 15.0
        assert config.keepalive_dead_multiplier == 4

    def test_sftp_mode(self):
        """Test sftp credentials are parsed."""
        [config] = parse_config({"servers": [server(
            log_reader_mode="sftp",
            sftp={"host": "files.example.com", "username": "u", "password": "p"},
        )]})

        assert config.sftp.host == "files.example.com"
        assert config.sftp.port == 22

    def test_custom_parsers(self):
        """Test custom parser entries keep extra keys as options."""
        [config] = parse_config({"servers": [server(custom_parsers={
            "wcs": {"log_dir": "/srv/reforger/logs", "file_name": "wcs.log", "channel": "gm"},
            "mine": {"parser": "plugins.mine:MineParser", "enabled": False,
                     "log_dir": "/x", "file_name": "m.log"},
        })]})

        wcs, mine = config.custom_parsers
        assert wcs.parser == "wcs"
        assert wcs.options == {"channel": "gm"}
        assert mine.parser == "plugins.mine:MineParser"
        assert mine.enabled is False

    @pytest.mark.parametrize("data, message", [
        ([], "JSON object"),
        ({}, "servers"),
        ({"servers": []}, "servers"),
        ({"servers": [server(id="1")]}, "id"),
        ({"servers": [server(id=True)]}, "id"),
        ({"servers": [server(), server()]}, "Duplicate"),
        ({"servers": [server(log_dir="")]}, "log_dir"),
        ({"servers": [server(rcon_port=70000)]}, "rcon_port"),
        ({"servers": [server(log_reader_mode="ftp")]}, "log_reader_mode"),
        ({"servers": [server(log_reader_mode="sftp")]}, "sftp"),
        ({"servers": [server(command_timeout=0)]}, "command_timeout"),
        ({"servers": [server(keepalive_dead_multiplier=1.5)]}, "keepalive_dead_multiplier"),
        ({"servers": [server(reconnect_initial_delay=10, reconnect_max_delay=5)]}, "reconnect_max_delay"),
        ({"servers": [server(custom_parsers=[])]}, "custom_parsers"),
        ({"servers": [server(custom_parsers={"x": {"log_dir": "/x"}})]}, "file_name"),
        ({"servers": [server(custom_parsers={"x": {"log_dir": "/x", "file_name": "x.log",
                                                   "log_reader_mode": "sftp"}})]}, "sftp"),
    ])
    def test_invalid(self, data, message):
        """Test invalid documents raise ConfigError."""
        with pytest.raises(ConfigError, match=message):
            parse_config(data)


class TestLoadConfig:
    """Test suite for load_config."""

    def test_load_file(self, tmp_path):
        """Test a valid file on disk."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"servers": [server(), server(id=2)]}), encoding='utf-8')

        configs = load_config(str(path))

        assert [c.id for c in configs] == [1, 2]

    def test_missing_file(self, tmp_path):
        """Test a missing file."""
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(str(tmp_path / "nope.json"))

    def test_empty_file(self, tmp_path):
        """Test an empty file."""
        path = tmp_path / "config.json"
        path.write_text("  \n", encoding='utf-8')

        with pytest.raises(ConfigError, match="empty"):
            load_config(str(path))

    def test_invalid_json(self, tmp_path):
        """Test a file that is not JSON."""
        path = tmp_path / "config.json"
        path.write_text("{servers:", encoding='utf-8')

        with pytest.raises(ConfigError, match="not valid JSON"):
            load_config(str(path))
