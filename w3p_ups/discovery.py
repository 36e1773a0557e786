# Web3 Pi UPS - Serial Device Discovery
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Locates the UPS board's serial device by scanning the kernel's tty class
# directory and matching USB product strings.
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

"""Serial device auto-discovery.

Candidates are the entries of ``/sys/class/tty`` that are backed by real
hardware (they have a ``device`` link; virtual consoles do not). For each
candidate the USB product string is read and matched, in priority order:

1. exact match on the current firmware's product string
2. first candidate whose product string contains the legacy marker
   (early boards enumerate as a bare Raspberry Pi Pico)
3. first candidate of any kind

The whole candidate set is examined before choosing, so enumeration order
never lets a legacy or unknown device shadow the real board.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

log = logging.getLogger(__name__)

W3P_UPS_MARKER = "Web3 Pi UPS"
LEGACY_MARKER = "Pico"

SYSFS_TTY_ROOT = "/sys/class/tty"
DEV_ROOT = "/dev"

# Relative to /sys/class/tty/<name>. For CDC-ACM devices `device` points at
# the USB interface, whose parent holds the product string.
_IDENTITY_FILES = ("device/../product", "device/product", "device/interface")


class DeviceNotFoundError(RuntimeError):
    """No serial device could be resolved in auto-discovery mode."""


@dataclass(frozen=True)
class Candidate:
    name: str
    identity: str


def _read_identity(entry: Path) -> str:
    for rel in _IDENTITY_FILES:
        try:
            return (entry / rel).read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            continue
    return ""


class DeviceLocator:
    """Resolve the UPS serial device path from sysfs.

    Nothing is cached: the board may be unplugged and replugged between
    sessions and come back under a different name.
    """

    def __init__(self, sysfs_root: str = SYSFS_TTY_ROOT, dev_root: str = DEV_ROOT):
        self.sysfs_root = Path(sysfs_root)
        self.dev_root = Path(dev_root)

    def candidates(self) -> List[Candidate]:
        try:
            entries = sorted(self.sysfs_root.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            log.debug("cannot enumerate %s: %s", self.sysfs_root, exc)
            return []
        found = []
        for entry in entries:
            if not (entry / "device").exists():
                continue
            found.append(Candidate(entry.name, _read_identity(entry)))
        return found

    @staticmethod
    def select(candidates: List[Candidate]) -> Optional[Candidate]:
        for cand in candidates:
            if cand.identity == W3P_UPS_MARKER:
                return cand
        for cand in candidates:
            if LEGACY_MARKER in cand.identity:
                return cand
        return candidates[0] if candidates else None

    def resolve(self) -> str:
        candidates = self.candidates()
        chosen = self.select(candidates)
        if chosen is None:
            raise DeviceNotFoundError(
                f"No serial devices found under {self.sysfs_root}. "
                "Check that the UPS is connected over USB, or set "
                "[serial] port in the config file to a fixed device path."
            )
        if chosen.identity != W3P_UPS_MARKER:
            log.warning(
                "UPS product marker not found; using %s (identity %r)",
                chosen.name, chosen.identity,
            )
        path = str(self.dev_root / chosen.name)
        log.info("Auto-discovered serial device: %s", path)
        return path
