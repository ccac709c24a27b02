# config/servers.py
"""
Managed server definitions.

Loads the JSON server file once at startup and validates it into
ServerConfig objects. Nothing downstream reads raw JSON.

    {
      "servers": [
        {
          "id": 1,
          "name": "Main",
          "host": "203.0.113.10",
          "rcon_port": 19999,
          "rcon_password": "secret",
          "log_dir": "/srv/reforger/profile/logs",
          "log_reader_mode": "tail",
          "custom_parsers": {
            "wcs": {"enabled": true, "log_dir": "/srv/reforger/profile/logs", "file_name": "wcs.log"}
          }
        }
      ]
    }
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

LOG_READER_MODES = ('tail', 'sftp')


class ConfigError(Exception):
    """The server configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class SFTPConfig:
    host: str
    username: str
    password: str
    port: int = 22


@dataclass(frozen=True)
class CustomParserConfig:
    """A parser reading its own log file next to the main console log."""
    name: str
    parser: str  # builtin name or "module:Class"
    log_dir: str
    file_name: str
    enabled: bool = True
    log_reader_mode: Optional[str] = None  # defaults to the server's mode
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ServerConfig:
    """Everything the core needs to manage one Reforger server."""
    id: int
    host: str
    rcon_port: int
    rcon_password: str
    log_dir: str
    name: str = ""
    log_file: str = "console.log"
    log_reader_mode: str = "tail"
    log_poll_interval: float = 1.0
    log_from_beginning: bool = False
    sftp: Optional[SFTPConfig] = None
    login_timeout: float = 10.0
    command_timeout: float = 5.0
    keepalive_interval: float = 30.0
    keepalive_dead_multiplier: int = 3
    reconnect_initial_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    players_poll_interval: Optional[float] = None
    custom_parsers: tuple[CustomParserConfig, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or f"Server {self.id}"


def load_config(path: str) -> list[ServerConfig]:
    """
    Read and validate the server file.

    Raises:
        ConfigError: file missing, empty, not JSON or invalid
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read server config {path}: {e}")

    if not raw.strip():
        raise ConfigError(f"Server config {path} is empty")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Server config {path} is not valid JSON: {e}")

    servers = parse_config(data)
    logger.info(f"Loaded {len(servers)} server(s) from {path}")
    return servers


def parse_config(data: Any) -> list[ServerConfig]:
    """Validate a decoded config document."""
    if not isinstance(data, dict):
        raise ConfigError("Config must be a JSON object")

    entries = data.get('servers')
    if not isinstance(entries, list) or not entries:
        raise ConfigError("Missing or empty 'servers' array")

    servers = []
    seen_ids = set()
    for index, entry in enumerate(entries):
        server = _parse_server(entry, index)
        if server.id in seen_ids:
            raise ConfigError(f"Duplicate server id {server.id}, each server needs a unique id")
        seen_ids.add(server.id)
        servers.append(server)
    return servers


def _parse_server(entry: Any, index: int) -> ServerConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"Server #{index} is not an object")

    server_id = entry.get('id')
    if not _is_int(server_id):
        raise ConfigError(f"Server #{index} ({entry.get('name', 'Unknown')}): "
                          f"missing or invalid 'id' (must be a unique integer)")
    label = f"Server {server_id}"

    mode = entry.get('log_reader_mode', 'tail')
    if mode not in LOG_READER_MODES:
        raise ConfigError(f"{label}: log_reader_mode must be one of {', '.join(LOG_READER_MODES)}")

    sftp = None
    if entry.get('sftp') is not None or mode == 'sftp':
        sftp = _parse_sftp(entry.get('sftp'), label)

    kwargs = dict(
        id=server_id,
        name=_optional_str(entry, 'name', label, ''),
        host=_required_str(entry, 'host', label),
        rcon_port=_port(entry.get('rcon_port'), f"{label}: rcon_port"),
        rcon_password=_required_str(entry, 'rcon_password', label),
        log_dir=_required_str(entry, 'log_dir', label),
        log_file=_optional_str(entry, 'log_file', label, 'console.log'),
        log_reader_mode=mode,
        log_from_beginning=bool(entry.get('log_from_beginning', False)),
        sftp=sftp,
        custom_parsers=_parse_custom_parsers(entry.get('custom_parsers'), label, mode),
    )

    for key in ('log_poll_interval', 'login_timeout', 'command_timeout', 'keepalive_interval',
                'reconnect_initial_delay', 'reconnect_max_delay', 'players_poll_interval'):
        if entry.get(key) is not None:
            kwargs[key] = _positive(entry[key], f"{label}: {key}")

    if entry.get('keepalive_dead_multiplier') is not None:
        multiplier = entry['keepalive_dead_multiplier']
        if not _is_int(multiplier) or multiplier < 1:
            raise ConfigError(f"{label}: keepalive_dead_multiplier must be a positive integer")
        kwargs['keepalive_dead_multiplier'] = multiplier

    server = ServerConfig(**kwargs)
    if server.reconnect_max_delay < server.reconnect_initial_delay:
        raise ConfigError(f"{label}: reconnect_max_delay is smaller than reconnect_initial_delay")
    return server


def _parse_sftp(entry: Any, label: str) -> SFTPConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"{label}: log_reader_mode 'sftp' needs an 'sftp' object with credentials")
    return SFTPConfig(
        host=_required_str(entry, 'host', f"{label} sftp"),
        username=_required_str(entry, 'username', f"{label} sftp"),
        password=_required_str(entry, 'password', f"{label} sftp"),
        port=_port(entry.get('port', 22), f"{label}: sftp port"),
    )


def _parse_custom_parsers(entry: Any, label: str, server_mode: str) -> tuple[CustomParserConfig, ...]:
    if entry is None:
        return ()
    if not isinstance(entry, dict):
        raise ConfigError(f"{label}: custom_parsers must be an object keyed by parser name")

    parsers = []
    for name, options in entry.items():
        if not isinstance(options, dict):
            raise ConfigError(f"{label}: custom parser '{name}' must be an object")
        parser_label = f"{label} custom parser '{name}'"
        mode = options.get('log_reader_mode')
        if mode is not None and mode not in LOG_READER_MODES:
            raise ConfigError(f"{parser_label}: log_reader_mode must be one of {', '.join(LOG_READER_MODES)}")
        if mode == 'sftp' and server_mode != 'sftp':
            raise ConfigError(f"{parser_label}: sftp mode needs server-level sftp credentials")

        known = {'parser', 'enabled', 'log_dir', 'file_name', 'log_reader_mode'}
        parsers.append(CustomParserConfig(
            name=name,
            parser=_optional_str(options, 'parser', parser_label, name),
            log_dir=_required_str(options, 'log_dir', parser_label),
            file_name=_required_str(options, 'file_name', parser_label),
            enabled=bool(options.get('enabled', True)),
            log_reader_mode=mode,
            options={k: v for k, v in options.items() if k not in known},
        ))
    return tuple(parsers)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _required_str(entry: dict, key: str, label: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label}: missing or invalid '{key}'")
    return value


def _optional_str(entry: dict, key: str, label: str, default: str) -> str:
    value = entry.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{label}: '{key}' must be a string")
    return value


def _port(value: Any, label: str) -> int:
    if not _is_int(value) or not 0 < value < 65536:
        raise ConfigError(f"{label} must be an integer between 1 and 65535")
    return value


def _positive(value: Any, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{label} must be a positive number")
    return float(value)
