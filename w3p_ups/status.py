# Web3 Pi UPS - Status Report
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Formats a one-shot, human-readable report of the latest UPS sample.
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
from __future__ import annotations

from .config import BatterySettings
from .parser import UPSSample
from .policy import PowerState, power_state


def format_status_report(sample: UPSSample, battery: BatterySettings) -> str:
    source = "Battery" if power_state(sample, battery) is PowerState.BATTERY else "Grid/USB-C"
    lines = [
        "=== Web3 Pi UPS Status ===",
        "",
        "Battery:",
        f"  State of Charge: {sample.soc}%",
        f"  Shutdown Level:  {sample.shutdown_soc}%",
        f"  Voltage:         {sample.battery_voltage_v:.2f} V",
        f"  Current:         {sample.battery_current} mA",
        f"  Charging:        {sample.charging_label}",
        "",
        "Power:",
        f"  Source:          {source}",
        f"  Input Voltage:   {sample.input_voltage_v:.2f} V",
        f"  Power Good:      {'Yes' if sample.power_good == 1 else 'No'}",
        "",
        "System:",
        f"  Temperature:     {sample.temperature_c:.1f} °C",
        f"  Uptime:          {sample.uptime} sec",
    ]
    return "\n".join(lines)
