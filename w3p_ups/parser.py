# Web3 Pi UPS - Telemetry Parser
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides deterministic helpers for translating newline-delimited JSON
# telemetry lines from the UPS board into immutable samples, and for
# re-serializing those samples for local observers.
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

"""Parsing helpers for UPS serial telemetry.

The UPS firmware prints one JSON object per line, for example::

    {"up":812,"soc":87,"sd":85,"vi":15020,"bv":8123,"ba":-412,"cs":0,"pg":1,"t":312}

Key functions
- decode_line(line: str) -> UPSSample
    Validate and convert a single line into a frozen `UPSSample`.
    Raises ParseError (a ValueError) on invalid JSON, missing required
    fields or out-of-range values. Callers drop such lines.

- encode_sample(sample: UPSSample) -> str
    Serialize a sample back to the same compact wire keys (no trailing
    newline). This is what the broadcast hub sends to observers.

Notes and conventions
- `soc` and `vi` are required. `sd` (the shutdown-decision percentage) was
  added in later firmware; it defaults to 0 when absent.
- Every other field defaults to 0. Unknown keys are ignored.
- Values must be integers; booleans and floats are rejected so a corrupted
  line can never be silently coerced into a plausible reading.
"""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Dict

PERCENT_MAX = 100


class ParseError(ValueError):
    """Raised for lines that cannot be decoded into a sample."""


class ChargingState(enum.IntEnum):
    NOT_CHARGING = 0
    PRE_CHARGE = 1
    CHARGING = 2
    COMPLETE = 3
    UNKNOWN = 255

    @classmethod
    def from_raw(cls, raw: int) -> "ChargingState":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


CHARGING_LABELS: Dict[ChargingState, str] = {
    ChargingState.NOT_CHARGING: "Not charging",
    ChargingState.PRE_CHARGE: "Pre-charge",
    ChargingState.CHARGING: "Charging",
    ChargingState.COMPLETE: "Charge complete",
    ChargingState.UNKNOWN: "Unknown",
}

# Wire key -> sample attribute. Order is the order used by encode_sample.
WIRE_FIELDS: Dict[str, str] = {
    "up": "uptime",
    "pd": "pd_status",
    "pdo": "pdo",
    "cc": "cc_line",
    "t": "temperature",
    "vs": "source_voltage",
    "is": "source_current",
    "vr": "rail_voltage",
    "ir": "rail_current",
    "soc": "soc",
    "sd": "shutdown_soc",
    "bv": "battery_voltage",
    "ba": "battery_current",
    "cs": "charging_state",
    "pg": "power_good",
    "vi": "input_voltage",
    "ii": "input_current",
    "ci": "charge_current",
    "cf": "charge_flag",
}

REQUIRED_FIELDS = ("soc", "vi")
PERCENT_FIELDS = ("soc", "sd")
# Battery current is the only signed quantity (negative while discharging).
SIGNED_FIELDS = ("ba",)


@dataclass(frozen=True)
class UPSSample:
    """One decoded telemetry reading. Units follow the firmware: mV, mA,
    deci-degrees Celsius and seconds."""

    soc: int
    input_voltage: int
    shutdown_soc: int = 0
    battery_voltage: int = 0
    battery_current: int = 0
    charging_state: ChargingState = ChargingState.NOT_CHARGING
    power_good: int = 0
    temperature: int = 0
    uptime: int = 0
    # Diagnostic passthroughs, not used in decisions
    pd_status: int = 0
    pdo: int = 0
    cc_line: int = 0
    source_voltage: int = 0
    source_current: int = 0
    rail_voltage: int = 0
    rail_current: int = 0
    input_current: int = 0
    charge_current: int = 0
    charge_flag: int = 0

    @property
    def battery_voltage_v(self) -> float:
        return self.battery_voltage / 1000.0

    @property
    def input_voltage_v(self) -> float:
        return self.input_voltage / 1000.0

    @property
    def temperature_c(self) -> float:
        return self.temperature / 10.0

    @property
    def charging_label(self) -> str:
        return CHARGING_LABELS[self.charging_state]

    def to_wire(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for key, attr in WIRE_FIELDS.items():
            out[key] = int(getattr(self, attr))
        return out


def _convert_field(key: str, raw: Any) -> int:
    """Validate a single wire value and return it as an int."""
    # bool is an int subclass; a literal true/false is never a valid reading
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ParseError(f"field {key!r} must be an integer, got {raw!r}")
    if raw < 0 and key not in SIGNED_FIELDS:
        raise ParseError(f"field {key!r} must not be negative, got {raw}")
    if key in PERCENT_FIELDS and raw > PERCENT_MAX:
        raise ParseError(f"field {key!r} out of range 0-{PERCENT_MAX}: {raw}")
    return raw


def decode_line(line: str) -> UPSSample:
    """Parse a single newline-delimited JSON telemetry line.

    Raises ParseError on invalid JSON, missing fields or bad values.
    """
    line = line.strip()
    if not line:
        raise ParseError("empty line")
    try:
        data = json.loads(line)
    except ValueError as exc:
        raise ParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseError("telemetry line is not a JSON object")

    for key in REQUIRED_FIELDS:
        if key not in data:
            raise ParseError(f"missing {key!r} field")

    values: Dict[str, Any] = {}
    for key, attr in WIRE_FIELDS.items():
        if key not in data:
            continue
        values[attr] = _convert_field(key, data[key])

    if "charging_state" in values:
        values["charging_state"] = ChargingState.from_raw(values["charging_state"])
    return UPSSample(**values)


def encode_sample(sample: UPSSample) -> str:
    """Serialize a sample to one compact JSON object (no newline)."""
    return json.dumps(sample.to_wire(), separators=(",", ":"))
