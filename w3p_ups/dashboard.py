# Web3 Pi UPS - Terminal Dashboard
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides a lightweight terminal dashboard that follows the daemon's live
# telemetry stream: battery bar, power source and detail readings.
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
"""
UPS live monitor

Connects to the daemon's broadcast socket and redraws on every sample:
- SOC bar coloured by level (red <= 20%, yellow <= 50%, green above)
- Power source (GRID / BATTERY) and charge direction
- Voltages, current, temperature and uptime

A background input thread reads single keys in cbreak mode using
termios/tty/select; 'q' or ESC quits. The original terminal attributes are
restored on exit so the terminal is never left without echo.
"""
from __future__ import annotations

import logging
import queue
import select
import sys
import termios
import threading
import tty
from typing import Optional, TextIO

from .client import DaemonClient
from .config import BatterySettings
from .parser import ChargingState, ParseError, UPSSample
from .policy import PowerState, power_state

log = logging.getLogger(__name__)

BAR_WIDTH = 30
RED = "\x1b[31m"
YELLOW = "\x1b[33m"
GREEN = "\x1b[32m"
BOLD = "\x1b[1m"
TITLE = "\x1b[1;36m"
RESET = "\x1b[0m"
QUIT_KEYS = ("q", "Q", "\x1b")


def clear_screen(out: TextIO = sys.stdout) -> None:
    out.write('\x1b[2J\x1b[H')


def soc_color(soc: int) -> str:
    if soc <= 20:
        return RED
    if soc <= 50:
        return YELLOW
    return GREEN


def charge_direction(sample: UPSSample) -> str:
    if sample.charging_state is ChargingState.CHARGING:
        return " [CHARGING]"
    if sample.charging_state is ChargingState.COMPLETE:
        return " [FULL]"
    if sample.battery_current > 0:
        return " [CHARGING]"
    if sample.battery_current < 0:
        return " [DISCHARGING]"
    return ""


def render_dashboard(sample: UPSSample, battery: BatterySettings) -> str:
    filled = sample.soc * BAR_WIDTH // 100
    on_battery = power_state(sample, battery) is PowerState.BATTERY
    power_color = YELLOW if on_battery else GREEN
    lines = [
        f"{TITLE}=== Web3 Pi UPS Monitor ==={RESET}",
        "Press 'q' or ESC to exit",
        "",
        f"Battery: {soc_color(sample.soc)}[{'=' * filled}{' ' * (BAR_WIDTH - filled)}]{RESET} "
        f"{sample.soc}%{charge_direction(sample)}",
        "",
        f"Power:   {power_color}[{'BATTERY' if on_battery else 'GRID'}]{RESET}",
        "",
        f"{BOLD}Details:{RESET}",
        f"  Shutdown level:  {sample.shutdown_soc}% (threshold {battery.shutdown_threshold}%)",
        f"  Input voltage:   {sample.input_voltage_v:.2f} V",
        f"  Battery voltage: {sample.battery_voltage_v:.2f} V",
        f"  Battery current: {sample.battery_current} mA",
        f"  Charging:        {sample.charging_label}",
        f"  Power good:      {'Yes' if sample.power_good == 1 else 'No'}",
        f"  Temperature:     {sample.temperature_c:.1f} °C",
        f"  Uptime:          {sample.uptime} sec",
    ]
    return "\n".join(lines) + "\n"


class InputThread(threading.Thread):
    """Collect single-key input without blocking the redraw loop.

    Uses `tty.setcbreak()` so characters arrive without Enter and polls
    stdin with `select.select()` so the thread can stop cleanly.
    """

    def __init__(self, q: "queue.Queue[str]", stop_evt: threading.Event, orig_termios):
        super().__init__(daemon=True, name="w3p-dashboard-input")
        self.q = q
        self.stop_evt = stop_evt
        self.orig_termios = orig_termios

    def run(self) -> None:
        fd = sys.stdin.fileno()
        try:
            tty.setcbreak(fd)
            while not self.stop_evt.is_set():
                r, _, _ = select.select([sys.stdin], [], [], 0.2)
                if r:
                    ch = sys.stdin.read(1)
                    if ch:
                        self.q.put(ch)
        except (OSError, termios.error) as exc:
            log.debug("input thread stopped: %s", exc)
        finally:
            restore_terminal(fd, self.orig_termios)


def restore_terminal(fd: int, orig) -> None:
    """Put the terminal back the way we found it (or at least canonical + echo)."""
    try:
        if orig is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, orig)
            return
        attrs = termios.tcgetattr(fd)
        attrs[3] |= (termios.ICANON | termios.ECHO)
        termios.tcsetattr(fd, termios.TCSADRAIN, attrs)
    except termios.error as exc:
        log.debug("could not restore terminal: %s", exc)


def run_dashboard(client: DaemonClient, battery: BatterySettings, out: TextIO = sys.stdout) -> None:
    """Redraw on every sample until the user quits."""
    fd = sys.stdin.fileno()
    orig: Optional[list] = None
    try:
        orig = termios.tcgetattr(fd)
    except termios.error:
        orig = None

    keys: "queue.Queue[str]" = queue.Queue()
    stop = threading.Event()
    input_thread = InputThread(keys, stop, orig)
    input_thread.start()
    connected = True
    try:
        while True:
            while not keys.empty():
                if keys.get() in QUIT_KEYS:
                    return
            if not connected:
                stop.wait(0.2)
                continue
            try:
                sample = client.read_sample()
            except TimeoutError:
                continue
            except ParseError as exc:
                log.debug("ignoring bad line from daemon: %s", exc)
                continue
            except OSError:
                # daemon went away (DaemonUnavailableError or a reset)
                connected = False
                clear_screen(out)
                out.write(f"{RED}Connection to daemon lost.{RESET}\nPress 'q' to exit.\n")
                out.flush()
                continue
            clear_screen(out)
            out.write(render_dashboard(sample, battery))
            out.flush()
    finally:
        stop.set()
        input_thread.join(timeout=1.0)
        restore_terminal(fd, orig)
