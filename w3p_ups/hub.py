# Web3 Pi UPS - Broadcast Hub
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides the BroadcastHub class: a Unix domain socket server that fans out
# every decoded telemetry sample to local observer processes.
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

"""w3p_ups.hub

BroadcastHub: the local fan-out point for live telemetry.

High-level responsibilities
- Own the listening Unix socket and its filesystem entry. A stale socket
  file from a previous run is removed on bind, but if another daemon still
  answers on the path `open()` raises SocketInUseError instead. The entry
  is removed again when the hub is closed, however the monitor loop exits.
- `accept()` never blocks: it drains whatever connections are pending and
  returns.
- `publish(sample)` writes one newline-terminated JSON line to every
  observer. Delivery is fire-and-forget. An observer whose write fails or
  times out is closed and dropped on the spot; nothing is retried or
  buffered, so a stalled reader costs at most one write timeout per sample.

Observers are only ever touched from the monitor loop's thread, so the hub
holds no locks.
"""
from __future__ import annotations

import itertools
import logging
import os
import socket
from pathlib import Path
from typing import Dict, Optional

from .parser import UPSSample, encode_sample

log = logging.getLogger(__name__)

DEFAULT_WRITE_TIMEOUT = 0.1
LISTEN_BACKLOG = 16


class SocketInUseError(OSError):
    """Another process is already serving on the socket path."""


def _is_live(path: str) -> bool:
    probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    probe.settimeout(1.0)
    try:
        probe.connect(path)
    except OSError:
        return False
    finally:
        probe.close()
    return True


class BroadcastHub:
    def __init__(self, socket_path: str, write_timeout: float = DEFAULT_WRITE_TIMEOUT):
        self.socket_path = socket_path
        self.write_timeout = float(write_timeout)
        self._listener: Optional[socket.socket] = None
        # observer id -> connection; ids are never reused
        self._observers: Dict[int, socket.socket] = {}
        self._ids = itertools.count(1)

    def open(self) -> None:
        if self._listener is not None:
            return
        path = Path(self.socket_path)
        if path.exists() or path.is_symlink():
            if _is_live(self.socket_path):
                raise SocketInUseError(f"{self.socket_path} is in use by another w3p-ups daemon")
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(self.socket_path)
            listener.listen(LISTEN_BACKLOG)
            listener.setblocking(False)
        except OSError:
            listener.close()
            raise
        self._listener = listener
        log.info("Broadcast hub listening on %s", self.socket_path)

    def close(self) -> None:
        for observer_id in list(self._observers):
            self._drop(observer_id)
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        log.debug("Broadcast hub closed")

    def __enter__(self) -> "BroadcastHub":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def add_observer(self, conn: socket.socket) -> int:
        conn.settimeout(self.write_timeout)
        observer_id = next(self._ids)
        self._observers[observer_id] = conn
        return observer_id

    def accept(self) -> int:
        """Accept all pending observers without blocking; return how many."""
        if self._listener is None:
            raise RuntimeError("hub is not open")
        accepted = 0
        while True:
            try:
                conn, _addr = self._listener.accept()
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                log.debug("accept failed: %s", exc)
                break
            observer_id = self.add_observer(conn)
            accepted += 1
            log.debug("observer %d connected (%d total)", observer_id, self.observer_count)
        return accepted

    def publish(self, sample: UPSSample) -> int:
        """Send one sample to every observer; return how many were evicted."""
        if not self._observers:
            return 0
        message = (encode_sample(sample) + "\n").encode("utf-8")
        evicted = 0
        for observer_id, conn in list(self._observers.items()):
            try:
                conn.sendall(message)
            except OSError as exc:
                # socket.timeout is an OSError too
                log.debug("evicting observer %d: %s", observer_id, exc)
                self._drop(observer_id)
                evicted += 1
        return evicted

    def _drop(self, observer_id: int) -> None:
        conn = self._observers.pop(observer_id, None)
        if conn is None:
            return
        try:
            conn.close()
        except OSError as exc:
            log.debug("closing observer %d failed: %s", observer_id, exc)
