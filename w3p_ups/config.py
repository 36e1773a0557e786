# Web3 Pi UPS - Configuration
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Loads the TOML configuration file into frozen settings objects and sets up
# the logging sinks used by the daemon.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Configuration loading and logging setup.

A missing file is not an error: the daemon logs a warning and runs on the
defaults below, which match the stock Web3 Pi UPS board. A file that exists
but cannot be parsed, or that carries values of the wrong type or range,
raises ConfigError so the service refuses to start with a half-understood
configuration.

Example::

    [serial]
    port = "auto"
    baud_rate = 115200

    [battery]
    shutdown_threshold = 10
    cancel_margin = 5
    min_valid_voltage = 8000
    max_valid_voltage = 21000
"""
from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/w3p-ups/config.toml"
DEFAULT_SOCKET_PATH = "/var/run/w3p-ups/ups.sock"
AUTO_PORT = "auto"

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class ConfigError(ValueError):
    """Raised when a configuration file exists but is unusable."""


@dataclass(frozen=True)
class SerialSettings:
    port: str = AUTO_PORT
    baud_rate: int = 115200
    read_timeout: float = 10.0

    @property
    def auto_discover(self) -> bool:
        return self.port.lower() == AUTO_PORT


@dataclass(frozen=True)
class BatterySettings:
    shutdown_threshold: int = 10
    cancel_margin: int = 5
    min_valid_voltage: int = 8000
    max_valid_voltage: int = 21000


@dataclass(frozen=True)
class ShutdownSettings:
    script_path: str = "/etc/w3p-ups/shutdown.sh"
    delay_seconds: int = 30


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "info"
    file_path: Optional[str] = None


@dataclass(frozen=True)
class IpcSettings:
    socket_path: str = DEFAULT_SOCKET_PATH
    write_timeout: float = 0.1


@dataclass(frozen=True)
class DaemonSettings:
    restart_backoff: float = 5.0
    status_interval: float = 60.0


@dataclass(frozen=True)
class MqttSettings:
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    topic_prefix: str = "ups/w3p_ups"
    discovery_prefix: str = "homeassistant"


@dataclass(frozen=True)
class Config:
    serial: SerialSettings = field(default_factory=SerialSettings)
    battery: BatterySettings = field(default_factory=BatterySettings)
    shutdown: ShutdownSettings = field(default_factory=ShutdownSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    ipc: IpcSettings = field(default_factory=IpcSettings)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    mqtt: MqttSettings = field(default_factory=MqttSettings)


def _coerce(section: str, name: str, default: Any, value: Any) -> Any:
    """Check a TOML value against the type of the field's default."""
    where = f"{section}.{name}"
    if isinstance(default, bool) or isinstance(value, bool):
        raise ConfigError(f"{where}: unexpected boolean {value!r}")
    if isinstance(default, float):
        if not isinstance(value, (int, float)):
            raise ConfigError(f"{where}: expected a number, got {value!r}")
        return float(value)
    if isinstance(default, int):
        if not isinstance(value, int):
            raise ConfigError(f"{where}: expected an integer, got {value!r}")
        return value
    # str and Optional[str] fields
    if not isinstance(value, str):
        raise ConfigError(f"{where}: expected a string, got {value!r}")
    return value


def _build_section(section: str, cls: Any, raw: Any) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"[{section}] must be a table")
    defaults = cls()
    overrides: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name in raw:
            overrides[f.name] = _coerce(section, f.name, getattr(defaults, f.name), raw[f.name])
    return replace(defaults, **overrides)


def _validate(config: Config) -> None:
    battery = config.battery
    if not 0 <= battery.shutdown_threshold <= 100:
        raise ConfigError("battery.shutdown_threshold must be within 0-100")
    if battery.cancel_margin < 0:
        raise ConfigError("battery.cancel_margin must not be negative")
    if battery.min_valid_voltage > battery.max_valid_voltage:
        raise ConfigError("battery.min_valid_voltage must not exceed max_valid_voltage")
    if config.shutdown.delay_seconds < 0:
        raise ConfigError("shutdown.delay_seconds must not be negative")
    if config.serial.baud_rate <= 0:
        raise ConfigError("serial.baud_rate must be > 0")
    if config.serial.read_timeout <= 0:
        raise ConfigError("serial.read_timeout must be > 0")
    if config.ipc.write_timeout <= 0:
        raise ConfigError("ipc.write_timeout must be > 0")
    if config.daemon.restart_backoff < 0 or config.daemon.status_interval <= 0:
        raise ConfigError("daemon intervals must be positive")


def parse_config(text: str) -> Config:
    """Build a Config from TOML text. Unknown sections and keys are ignored."""
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML: {exc}") from exc
    sections = {f.name: f.default_factory for f in fields(Config)}
    kwargs = {name: _build_section(name, cls, raw.get(name)) for name, cls in sections.items()}
    config = Config(**kwargs)
    _validate(config)
    return config


def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """Load the configuration file, falling back to defaults if it is missing."""
    p = Path(path)
    if not p.exists():
        log.warning("Config file not found at %s, using defaults", path)
        return Config()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    try:
        return parse_config(text)
    except ConfigError as exc:
        raise ConfigError(f"{path}: {exc}") from exc


def load_config_silent(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """Like load_config but never logs or raises; used by client commands."""
    try:
        return parse_config(Path(path).read_text(encoding="utf-8"))
    except (OSError, ConfigError):
        return Config()


def parse_log_level(level: str) -> int:
    value = logging.getLevelName(level.strip().upper())
    # getLevelName returns a "Level x" string for unknown names
    return value if isinstance(value, int) else logging.INFO


def setup_logging(settings: LoggingSettings, verbose: bool = False) -> None:
    """Configure root logging: stderr always, plus a log file when configured."""
    level = logging.DEBUG if verbose else parse_log_level(settings.level)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.file_path:
        path = Path(settings.file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT, handlers=handlers, force=True)
