#!/usr/bin/env python3
"""
Device Locator

Answers "what is the current kernel state of this bottle" using read-only
util-linux queries:

    losetup -j <file>              -> loop device backing the file
    lsblk -nlpo KNAME,TYPE <loop>  -> crypt child of the loop device
    lsblk -nlo MOUNTPOINT <dm>     -> where the cleartext device is mounted

A probe never mutates anything and never requires privileges. A query that
fails (non-zero exit) reads as "not present"; a missing tool raises.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

from ..core.constants import Tools
from ..core.modes import MountState
from ..core.paths import PathLike, Paths
from .tool_runner import ToolRunner

_locator_logger = logging.getLogger("bottle_launch.locator")

CRYPT_DEVICE_TYPE = "crypt"


def parse_losetup_association(output: str) -> Optional[str]:
    """
    '/dev/loop0: [2049]:12345 (/home/me/web.bottle)' -> '/dev/loop0'

    With several associations the first one wins.
    """
    for line in output.splitlines():
        line = line.strip()
        device, sep, _ = line.partition(":")
        if sep and device:
            return device
    return None


def parse_crypt_child(output: str) -> Optional[str]:
    """First KNAME whose TYPE is crypt, from lsblk -nlpo KNAME,TYPE output."""
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == CRYPT_DEVICE_TYPE:
            return parts[0]
    return None


def parse_mountpoint(output: str) -> Optional[str]:
    """First non-empty line of lsblk -nlo MOUNTPOINT output."""
    for line in output.splitlines():
        line = line.strip()
        if line:
            return line
    return None


class DeviceLocator:
    """Read-only discovery of a bottle's loop, cleartext and mount state."""

    def __init__(self, runner: Optional[ToolRunner] = None):
        self.runner = runner or ToolRunner()

    def find_loop_device(self, file_path: PathLike) -> Optional[str]:
        result = self.runner.run([Tools.LOSETUP, "-j", str(file_path)])
        if not result.ok:
            return None
        return parse_losetup_association(result.stdout)

    def find_cleartext_device(self, loop_device: str) -> Optional[str]:
        result = self.runner.run([Tools.LSBLK, "-nlpo", "KNAME,TYPE", loop_device])
        if not result.ok:
            return None
        return parse_crypt_child(result.stdout)

    def find_mount_point(self, device: str) -> Optional[str]:
        result = self.runner.run([Tools.LSBLK, "-nlo", "MOUNTPOINT", device])
        if not result.ok:
            return None
        return parse_mountpoint(result.stdout)

    def probe(self, path: PathLike) -> MountState:
        """
        Current state of a bottle, re-queried from the kernel.

        Args:
            path: Bottle file (canonicalized before any query)

        Returns:
            MountState; all device fields None when the file is not attached
        """
        canonical = str(Paths.canonical(path))
        state = MountState(bottle_path=canonical)

        loop_device = self.find_loop_device(canonical)
        if not loop_device:
            _locator_logger.debug(f"locator.probe: path={canonical}, stage=unattached")
            return state
        state = state.advance(loop_device=loop_device)

        cleartext = self.find_cleartext_device(loop_device)
        if cleartext:
            state = state.advance(cleartext_device=cleartext)
            mount_point = self.find_mount_point(cleartext)
            if mount_point:
                state = state.advance(mount_point=mount_point)

        _locator_logger.debug(
            f"locator.probe: path={canonical}, stage={state.stage.value}, "
            f"loop={state.loop_device}, cleartext={state.cleartext_device}, mount={state.mount_point}"
        )
        return state

    def is_attached(self, path: PathLike) -> bool:
        return self.find_loop_device(str(Paths.canonical(path))) is not None

    def list_attached(self, bottles: Iterable[PathLike]) -> Dict[Path, MountState]:
        """Probe every bottle; only attached ones are returned."""
        attached = {}
        for bottle in bottles:
            state = self.probe(bottle)
            if not state.is_empty:
                attached[Path(state.bottle_path)] = state
        return attached
