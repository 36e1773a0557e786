# Web3 Pi UPS - Serial Telemetry Source
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Owns the serial handle to the UPS board and turns raw reads into complete
# telemetry lines, classifying read outcomes for the monitor loop.
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

"""Telemetry source backed by a pyserial port (or a capture file).

Read outcomes, as seen by the caller of `read_line()`:

- a complete line: returned as text
- `ReadTimeout`: nothing complete arrived within the read timeout. Any
  partial bytes are kept, up to MAX_LINE_BYTES, and completed on a later
  call. A fragment that would grow past the cap is discarded.
- `EndOfStream`: the underlying stream returned zero bytes without timing
  out (end of a replay file). The caller pauses briefly and retries.
- any other `OSError` (pyserial's SerialException is one): fatal to the
  session and left to propagate.
"""
from __future__ import annotations

import logging
from typing import Any, BinaryIO, Optional

import serial

log = logging.getLogger(__name__)

# Longest unterminated fragment kept while waiting for a newline
MAX_LINE_BYTES = 4096


class TransientReadError(Exception):
    """A read produced no line but the session is still healthy."""


class ReadTimeout(TransientReadError):
    pass


class EndOfStream(TransientReadError):
    pass


class TelemetrySource:
    """Line reader over a serial port or a replay file.

    `handle` only needs `readline()` and `close()`. For a serial port
    `readline()` returns what arrived before the timeout, which may be an
    unterminated fragment or nothing at all.
    """

    def __init__(self, handle: Any, name: str, empty_read_is_timeout: bool = True):
        self._handle = handle
        self.name = name
        # Serial ports report a timeout as an empty read; files report EOF.
        self._empty_read_is_timeout = empty_read_is_timeout
        self._pending = b""

    @classmethod
    def open(cls, path: str, baud_rate: int, read_timeout: float) -> "TelemetrySource":
        """Open a serial port. Raises serial.SerialException (an OSError)."""
        log.info("Opening serial port: %s at %d baud", path, baud_rate)
        port = serial.Serial(path, baudrate=baud_rate, timeout=read_timeout)
        return cls(port, path, empty_read_is_timeout=True)

    @classmethod
    def replay(cls, path: str) -> "TelemetrySource":
        """Replay a captured telemetry log, one line per read."""
        log.info("Replaying telemetry from %s", path)
        fh: BinaryIO = open(path, "rb")
        return cls(fh, path, empty_read_is_timeout=False)

    def read_line(self) -> str:
        chunk = self._handle.readline()
        if not chunk:
            if self._empty_read_is_timeout:
                raise ReadTimeout(f"no data from {self.name}")
            raise EndOfStream(f"end of stream on {self.name}")
        if not chunk.endswith(b"\n"):
            if len(self._pending) + len(chunk) > MAX_LINE_BYTES:
                log.debug("discarding %d unterminated bytes from %s",
                          len(self._pending) + len(chunk), self.name)
                self._pending = b""
                raise ReadTimeout(f"oversized line from {self.name}")
            self._pending += chunk
            if self._empty_read_is_timeout:
                raise ReadTimeout(f"partial line from {self.name}")
            # Unterminated last line of a replay file
            raise EndOfStream(f"end of stream on {self.name}")
        data, self._pending = self._pending + chunk, b""
        return data.decode("utf-8", errors="replace").strip()

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
            log.debug("closed telemetry source %s", self.name)

    @property
    def closed(self) -> bool:
        return self._handle is None

    def __enter__(self) -> "TelemetrySource":
        return self

    def __exit__(self, *exc_info: Optional[Any]) -> None:
        self.close()
