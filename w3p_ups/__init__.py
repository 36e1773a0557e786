# Web3 Pi UPS - UPS Monitoring Service
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# This package supervises a Web3 Pi UPS board attached over USB serial,
# shuts the host down when the battery runs low on battery power, and
# republishes the live telemetry to local observer processes.
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

"""Web3 Pi UPS monitoring package

This package provides the pieces of the `w3p-ups` service:

- `MonitorLoop` / `Supervisor`: read telemetry from the serial port,
  republish it and drive the shutdown decision, restarting after errors.
- `ShutdownPolicy`: the countdown state machine with cancel hysteresis.
- `BroadcastHub`: Unix socket fan-out of live samples to observers.
- `DeviceLocator`: serial device auto-discovery via sysfs.
- `decode_line`, `encode_sample`: telemetry wire format helpers.
"""

__version__ = "0.2.0"

from .discovery import DeviceLocator, DeviceNotFoundError
from .hub import BroadcastHub
from .monitor import MonitorLoop, MonitorResult, Supervisor
from .parser import ChargingState, ParseError, UPSSample, decode_line, encode_sample
from .policy import Action, Decision, ShutdownPolicy

__all__ = [
    "Action",
    "BroadcastHub",
    "ChargingState",
    "Decision",
    "DeviceLocator",
    "DeviceNotFoundError",
    "MonitorLoop",
    "MonitorResult",
    "ParseError",
    "ShutdownPolicy",
    "Supervisor",
    "UPSSample",
    "decode_line",
    "encode_sample",
]
