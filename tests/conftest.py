"""
Shared fixtures for the w3p_ups test suite.

Provides a fake serial handle, a manual clock and a short Unix socket path
(AF_UNIX paths are limited to ~108 bytes, which deep pytest tmp dirs can
exceed).
"""

from __future__ import annotations

import os
import tempfile
from typing import Iterable, List, Union

import pytest

from w3p_ups.config import BatterySettings, Config, DaemonSettings, IpcSettings, ShutdownSettings


class FakePort:
    """Stands in for serial.Serial: replays scripted readline() results.

    Items may be bytes (returned as-is) or exceptions (raised). Once the
    script is exhausted every read looks like a timeout (b"").
    """

    def __init__(self, script: Iterable[Union[bytes, BaseException]] = ()):
        self.script: List[Union[bytes, BaseException]] = list(script)
        self.closed = False
        self.reads = 0

    def readline(self) -> bytes:
        self.reads += 1
        if not self.script:
            return b""
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def battery() -> BatterySettings:
    return BatterySettings(
        shutdown_threshold=10,
        cancel_margin=5,
        min_valid_voltage=8000,
        max_valid_voltage=21000,
    )


@pytest.fixture()
def short_socket_path():
    with tempfile.TemporaryDirectory(prefix="w3p") as d:
        yield os.path.join(d, "ups.sock")


@pytest.fixture()
def config(battery: BatterySettings, short_socket_path: str) -> Config:
    return Config(
        battery=battery,
        shutdown=ShutdownSettings(script_path="/nonexistent/shutdown.sh", delay_seconds=30),
        ipc=IpcSettings(socket_path=short_socket_path, write_timeout=0.1),
        daemon=DaemonSettings(restart_backoff=0.0, status_interval=60.0),
    )


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()
