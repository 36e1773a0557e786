# Web3 Pi UPS - Command Line Interface
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Entry point for the w3p-ups command: the monitoring daemon plus the
# status, live monitor and MQTT bridge client commands.
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
w3p-ups - Web3 Pi UPS monitoring service

Monitors UPS battery status via serial port and initiates a graceful
shutdown when the battery is low and the host runs on battery power.

The 'status', 'monitor' and 'mqtt' commands connect to the running daemon
via its Unix socket. Ensure the daemon is running:
    sudo systemctl start w3p-ups

Usage:
    w3p-ups [daemon] [--config PATH] [--verbose]
    w3p-ups status
    w3p-ups monitor
    w3p-ups mqtt
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .client import DaemonUnavailableError, connect_to_daemon
from .config import DEFAULT_CONFIG_PATH, ConfigError, load_config, load_config_silent, setup_logging
from .monitor import Supervisor, SignalWatcher
from .shutdown import ShutdownExecutor
from .source import TelemetrySource
from .status import format_status_report

log = logging.getLogger(__name__)

COMMANDS = ("daemon", "status", "monitor", "mqtt")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="w3p-ups",
        description="Web3 Pi UPS monitoring service",
    )
    parser.add_argument("command", nargs="?", default="daemon", choices=COMMANDS,
                        help="What to run (default: daemon)")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_PATH,
                        help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("-v", "--version", action="version", version=f"w3p-ups v{__version__}")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    parser.add_argument("--simulate-file", default=None,
                        help="Daemon: replay telemetry from a captured log instead of the serial port")
    parser.add_argument("--dry-run", action="store_true",
                        help="Daemon: log the shutdown command instead of running it")
    return parser


def run_daemon(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    setup_logging(config.logging, verbose=args.verbose)
    log.info("w3p-ups v%s starting", __version__)
    log.info("Config loaded from: %s", args.config)

    cancel = threading.Event()
    # Must run before any other thread exists
    SignalWatcher(cancel).start()

    executor = ShutdownExecutor(config.shutdown.script_path, cancel, dry_run=args.dry_run)
    kwargs = {}
    if args.simulate_file:
        simulate_file = args.simulate_file
        kwargs["source_factory"] = lambda _config, _locator: TelemetrySource.replay(simulate_file)
    supervisor = Supervisor(config, cancel, executor=executor, **kwargs)
    supervisor.run()
    log.info("w3p-ups stopped")
    return 0


def run_status(args: argparse.Namespace) -> int:
    config = load_config_silent(args.config)
    try:
        with connect_to_daemon(config.ipc.socket_path) as daemon:
            sample = daemon.read_sample()
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(format_status_report(sample, config.battery))
    return 0


def run_monitor(args: argparse.Namespace) -> int:
    from .dashboard import run_dashboard

    config = load_config_silent(args.config)
    try:
        daemon = connect_to_daemon(config.ipc.socket_path, timeout=1.0)
    except DaemonUnavailableError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    with daemon:
        run_dashboard(daemon, config.battery)
    return 0


def run_mqtt(args: argparse.Namespace) -> int:
    from .mqtt_bridge import MQTTBridge

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    setup_logging(config.logging, verbose=args.verbose)
    bridge = MQTTBridge(config.mqtt, config.battery, config.ipc.socket_path)
    # Stop cleanly on SIGTERM as well as Ctrl+C
    signal.signal(signal.SIGTERM, lambda signum, frame: bridge.stop.set())
    try:
        bridge.run()
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        bridge.stop.set()
    except OSError as exc:
        print(f"Error: cannot reach MQTT broker at {config.mqtt.host}:{config.mqtt.port} ({exc})",
              file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    handlers = {
        "daemon": run_daemon,
        "status": run_status,
        "monitor": run_monitor,
        "mqtt": run_mqtt,
    }
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
