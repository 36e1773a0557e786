# Web3 Pi UPS - Monitor Loop
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides the MonitorLoop class that reads UPS telemetry from the serial
# port, republishes it to local observers and drives the shutdown policy,
# plus the supervisor that restarts the loop after session errors.
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

"""w3p_ups.monitor

MonitorLoop: one monitoring session over an open telemetry source.

High-level responsibilities
- Per iteration: accept pending observers, read one line, decode it,
  publish it, evaluate the shutdown policy.
- Transient read outcomes (timeout, end of stream) are absorbed here;
  any other error ends the session and propagates to the supervisor.
- Malformed lines are counted and dropped; they never end the session.
- A status summary is logged on a fixed interval.
- When the policy fires, the shutdown executor is invoked and the loop
  returns MonitorResult.SHUTDOWN. It is never restarted after that.

Supervisor: runs sessions (device resolution, serial port, hub) until one
finishes cleanly or cancellation is requested, waiting a fixed backoff
between failed sessions.

SignalWatcher: the only auxiliary thread. It blocks SIGINT/SIGTERM for the
process, waits for them with sigwait and sets the cancellation event.

Design notes and thread safety
- The loop is strictly sequential. The cancellation event is the only
  value shared across threads and is checked once per iteration, so an
  in-flight serial read finishes (or times out) before cancellation takes
  effect.
"""
from __future__ import annotations

import enum
import logging
import signal
import threading
import time
from typing import Callable, Optional

from .config import Config
from .discovery import DeviceLocator
from .hub import BroadcastHub
from .parser import ParseError, UPSSample, decode_line
from .policy import Action, ShutdownPolicy, power_state
from .shutdown import ShutdownExecutor
from .source import EndOfStream, ReadTimeout, TelemetrySource

log = logging.getLogger(__name__)

EOF_PAUSE = 1.0


class MonitorResult(enum.Enum):
    SHUTDOWN = "shutdown"
    CANCELLED = "cancelled"


class MonitorLoop:
    def __init__(
        self,
        config: Config,
        source: TelemetrySource,
        hub: BroadcastHub,
        executor: ShutdownExecutor,
        cancel: threading.Event,
        policy: Optional[ShutdownPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.source = source
        self.hub = hub
        self.executor = executor
        self.cancel = cancel
        self.policy = policy or ShutdownPolicy(config.battery, config.shutdown.delay_seconds)
        self.clock = clock
        self.status_interval = config.daemon.status_interval

        self.samples_decoded = 0
        self.lines_dropped = 0
        self._last_status_ts = clock()

    def run(self) -> MonitorResult:
        battery = self.config.battery
        log.info(
            "Monitoring started. Shutdown threshold: %d%% (cancel at %d%%) when on battery "
            "(vi outside %d-%d mV)",
            battery.shutdown_threshold, self.policy.cancel_level,
            battery.min_valid_voltage, battery.max_valid_voltage,
        )
        while not self.cancel.is_set():
            if self.step():
                return MonitorResult.SHUTDOWN
        log.info("Monitoring stopped")
        return MonitorResult.CANCELLED

    def step(self) -> bool:
        """Run one iteration. Returns True once the shutdown has been executed."""
        self.hub.accept()
        try:
            line = self.source.read_line()
        except ReadTimeout:
            log.debug("Serial read timeout, continuing...")
            return False
        except EndOfStream:
            log.warning("Serial port EOF, retrying...")
            self.cancel.wait(EOF_PAUSE)
            return False

        if not line:
            return False
        try:
            sample = decode_line(line)
        except ParseError as exc:
            self.lines_dropped += 1
            log.debug("Failed to parse line %r: %s", line, exc)
            return False
        self.samples_decoded += 1
        return self.handle_sample(sample)

    def handle_sample(self, sample: UPSSample) -> bool:
        self.hub.publish(sample)
        now = self.clock()
        state = power_state(sample, self.config.battery)
        log.debug("UPS: SOC=%d%%, SD=%d%%, VI=%dmV, power=%s",
                  sample.soc, sample.shutdown_soc, sample.input_voltage, state.value)
        if now - self._last_status_ts >= self.status_interval:
            self._last_status_ts = now
            self.log_status(sample)

        decision = self.policy.evaluate(sample, now)
        if decision.action is not Action.SHUTDOWN:
            return False
        self.executor.execute()
        return True

    def log_status(self, sample: UPSSample) -> None:
        state = power_state(sample, self.config.battery)
        log.info(
            "Status: SOC=%d%%, SD=%d%%, VI=%dmV (%s), BV=%dmV, BA=%dmA, clients=%d",
            sample.soc, sample.shutdown_soc, sample.input_voltage, state.value,
            sample.battery_voltage, sample.battery_current, self.hub.observer_count,
        )


SourceFactory = Callable[[Config, DeviceLocator], TelemetrySource]


def open_serial_source(config: Config, locator: DeviceLocator) -> TelemetrySource:
    serial_cfg = config.serial
    path = locator.resolve() if serial_cfg.auto_discover else serial_cfg.port
    return TelemetrySource.open(path, serial_cfg.baud_rate, serial_cfg.read_timeout)


class Supervisor:
    """Run monitoring sessions, restarting after a fixed backoff on errors."""

    def __init__(
        self,
        config: Config,
        cancel: threading.Event,
        executor: Optional[ShutdownExecutor] = None,
        locator: Optional[DeviceLocator] = None,
        source_factory: SourceFactory = open_serial_source,
    ):
        self.config = config
        self.cancel = cancel
        self.executor = executor or ShutdownExecutor(config.shutdown.script_path, cancel)
        self.locator = locator or DeviceLocator()
        self.source_factory = source_factory
        self.backoff = config.daemon.restart_backoff
        self.restarts = 0

    def run_session(self) -> MonitorResult:
        with self.source_factory(self.config, self.locator) as source:
            with BroadcastHub(self.config.ipc.socket_path, self.config.ipc.write_timeout) as hub:
                loop = MonitorLoop(self.config, source, hub, self.executor, self.cancel)
                return loop.run()

    def run(self) -> Optional[MonitorResult]:
        while not self.cancel.is_set():
            try:
                return self.run_session()
            except Exception as exc:
                if self.cancel.is_set():
                    break
                self.restarts += 1
                log.error("Monitoring error: %s. Retrying in %.0f seconds...", exc, self.backoff)
                self.cancel.wait(self.backoff)
        return None


class SignalWatcher:
    """Turn SIGINT/SIGTERM into a cancellation event from a dedicated thread.

    `start()` must be called from the main thread before any other thread is
    created so that every thread inherits the blocked signal mask.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, cancel: threading.Event):
        self.cancel = cancel
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        signal.pthread_sigmask(signal.SIG_BLOCK, self.SIGNALS)
        self._thread = threading.Thread(target=self._watch, daemon=True, name="w3p-signals")
        self._thread.start()

    def _watch(self) -> None:
        sig = signal.sigwait(self.SIGNALS)
        log.info("Received signal %s, shutting down...", signal.Signals(sig).name)
        self.cancel.set()
