# Web3 Pi UPS - Shutdown Policy
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Decides, sample by sample, whether the host should start, keep, cancel or
# complete a shutdown countdown.
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

"""Shutdown decision state machine.

States
- Idle: no countdown.
- Counting(started_at): a countdown is running.
- Fired: the shutdown action was emitted. Terminal; `evaluate` refuses to
  run again.

Per sample:
    on_battery = vi < min_valid_voltage or vi > max_valid_voltage
    trigger    = shutdown_soc < threshold and on_battery

Rules, in order:
1. Idle and trigger                    -> Counting(now)         STARTED
2. Counting and elapsed >= delay       -> Fired                 SHUTDOWN
3. Counting and (not on_battery or
   shutdown_soc >= threshold + margin) -> Idle                  CANCELLED
4. otherwise                           -> unchanged             IDLE / COUNTING

The cancel band is asymmetric: once counting, a recovering SOC has to clear
threshold + margin before the countdown is dropped, while a return of grid
power cancels regardless of SOC. Elapsed time is compared in whole seconds.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from .config import BatterySettings
from .parser import UPSSample

log = logging.getLogger(__name__)

# The shutdown metric is a single byte on the wire
SOC_FIELD_MAX = 0xFF


class PowerState(enum.Enum):
    GRID = "GRID"
    BATTERY = "BATTERY"


def is_on_battery(input_voltage: int, min_valid_voltage: int, max_valid_voltage: int) -> bool:
    return input_voltage < min_valid_voltage or input_voltage > max_valid_voltage


def power_state(sample: UPSSample, battery: BatterySettings) -> PowerState:
    if is_on_battery(sample.input_voltage, battery.min_valid_voltage, battery.max_valid_voltage):
        return PowerState.BATTERY
    return PowerState.GRID


def saturating_add(a: int, b: int, ceiling: int = SOC_FIELD_MAX) -> int:
    return min(a + b, ceiling)


class Action(enum.Enum):
    IDLE = "idle"
    STARTED = "started"
    COUNTING = "counting"
    CANCELLED = "cancelled"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Decision:
    action: Action
    # Seconds left on the countdown; None when no countdown is running
    remaining: Optional[int] = None


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Counting:
    started_at: float


@dataclass(frozen=True)
class Fired:
    fired_at: float


PolicyState = Union[Idle, Counting, Fired]


class PolicyFiredError(RuntimeError):
    """evaluate() was called after the shutdown action had been emitted."""


class ShutdownPolicy:
    def __init__(self, battery: BatterySettings, delay_seconds: int):
        self.threshold = battery.shutdown_threshold
        self.cancel_level = saturating_add(battery.shutdown_threshold, battery.cancel_margin)
        self.min_valid_voltage = battery.min_valid_voltage
        self.max_valid_voltage = battery.max_valid_voltage
        self.delay_seconds = delay_seconds
        self._state: PolicyState = Idle()

    @property
    def state(self) -> PolicyState:
        return self._state

    @property
    def fired(self) -> bool:
        return isinstance(self._state, Fired)

    def on_battery(self, sample: UPSSample) -> bool:
        return is_on_battery(sample.input_voltage, self.min_valid_voltage, self.max_valid_voltage)

    def evaluate(self, sample: UPSSample, now: float) -> Decision:
        state = self._state
        if isinstance(state, Fired):
            raise PolicyFiredError("shutdown already fired; policy is terminal")

        on_battery = self.on_battery(sample)

        if isinstance(state, Idle):
            if on_battery and sample.shutdown_soc < self.threshold:
                self._state = Counting(started_at=now)
                log.warning(
                    "Low battery detected! SD=%d%% (SOC=%d%%), on battery power. "
                    "Shutdown in %d seconds unless power restored.",
                    sample.shutdown_soc, sample.soc, self.delay_seconds,
                )
                return Decision(Action.STARTED, remaining=self.delay_seconds)
            return Decision(Action.IDLE)

        elapsed = int(now - state.started_at)
        if elapsed >= self.delay_seconds:
            self._state = Fired(fired_at=now)
            log.warning(
                "Shutdown delay elapsed. Initiating shutdown... (SD=%d%%, VI=%dmV)",
                sample.shutdown_soc, sample.input_voltage,
            )
            return Decision(Action.SHUTDOWN, remaining=0)

        if not on_battery or sample.shutdown_soc >= self.cancel_level:
            self._state = Idle()
            log.info(
                "Power restored or battery charged. Shutdown cancelled. SD=%d%%, VI=%dmV",
                sample.shutdown_soc, sample.input_voltage,
            )
            return Decision(Action.CANCELLED)

        remaining = self.delay_seconds - elapsed
        log.warning("Low battery! SD=%d%%, shutdown in %d seconds", sample.shutdown_soc, remaining)
        return Decision(Action.COUNTING, remaining=remaining)
