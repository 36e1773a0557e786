# Web3 Pi UPS - Daemon Client
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Connects to the running daemon's broadcast socket and reads live samples.
# Used by the status report, the terminal dashboard and the MQTT bridge.
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

"""Observer-side connection to the broadcast hub."""
from __future__ import annotations

import logging
import socket
from typing import Optional

from .parser import UPSSample, decode_line

log = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 5.0


class DaemonUnavailableError(ConnectionError):
    pass


class DaemonClient:
    def __init__(self, socket_path: str, timeout: float = DEFAULT_READ_TIMEOUT):
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._buf = b""

    def connect(self) -> "DaemonClient":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError as exc:
            sock.close()
            raise DaemonUnavailableError(
                f"Cannot connect to daemon socket: {self.socket_path} ({exc})\n"
                "Is w3p-ups service running?\n"
                "Try: sudo systemctl start w3p-ups"
            ) from exc
        self._sock = sock
        log.debug("connected to %s", self.socket_path)
        return self

    def read_line(self) -> str:
        if self._sock is None:
            raise DaemonUnavailableError("not connected")
        while b"\n" not in self._buf:
            try:
                chunk = self._sock.recv(4096)
            except socket.timeout as exc:
                raise TimeoutError(f"no data from daemon within {self.timeout:.1f}s") from exc
            if not chunk:
                raise DaemonUnavailableError("daemon closed the connection")
            self._buf += chunk
        line, self._buf = self._buf.split(b"\n", 1)
        return line.decode("utf-8", errors="replace")

    def read_sample(self) -> UPSSample:
        """Block until the next broadcast sample arrives."""
        return decode_line(self.read_line())

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> "DaemonClient":
        if self._sock is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def connect_to_daemon(socket_path: str, timeout: float = DEFAULT_READ_TIMEOUT) -> DaemonClient:
    return DaemonClient(socket_path, timeout).connect()
