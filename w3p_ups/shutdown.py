# Web3 Pi UPS - Shutdown Executor
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Runs the operator's shutdown script (or the OS shutdown command) once the
# shutdown policy fires, then waits for the OS to stop the process.
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

"""Host shutdown execution."""
from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path
from typing import List, Optional

log = logging.getLogger(__name__)

FALLBACK_COMMAND = ["shutdown", "-h", "now"]


class ShutdownExecutor:
    """Start the shutdown and park until the OS terminates us.

    `execute` only returns once `cancel` is set, which happens when the
    signal watcher sees the SIGTERM the init system sends while the host
    goes down. With `dry_run` the command is logged and not run.
    """

    def __init__(self, script_path: str, cancel: Optional[threading.Event] = None, dry_run: bool = False):
        self.script_path = script_path
        self.cancel = cancel if cancel is not None else threading.Event()
        self.dry_run = dry_run

    def command(self) -> List[str]:
        if Path(self.script_path).is_file():
            return ["sh", self.script_path]
        log.error("Shutdown script not found: %s", self.script_path)
        log.warning("Falling back to direct shutdown command")
        return list(FALLBACK_COMMAND)

    def execute(self) -> None:
        cmd = self.command()
        if self.dry_run:
            log.warning("Dry run: would execute %s", " ".join(cmd))
            return
        log.info("Executing shutdown: %s", " ".join(cmd))
        subprocess.Popen(cmd, stdin=subprocess.DEVNULL)
        self.park()

    def park(self) -> None:
        log.info("Waiting for the system to shut down")
        while not self.cancel.wait(60.0):
            log.debug("still waiting for system shutdown")
