#!/usr/bin/env python3
"""
Bottle unmount orchestration

Reverses a mount:

    sync -f <mount>          flush; failure is logged, never fatal
    udisksctl unmount        retried once with --force
    udisksctl lock           up to Limits.LOCK_MAX_ATTEMPTS, LOCK_RETRY_DELAY apart
    udisksctl loop-delete

Each step runs only for the fields present in the given state, so a
partially mounted bottle is torn down from wherever it stopped. An empty
state (or None) is a successful no-op.
"""

import logging
import time
from typing import Callable, Optional

from ..core.limits import Limits
from ..core.modes import MountState
from .tool_runner import ToolRunner
from .udisks_cli import UdisksClient, VolumeError

_unmount_logger = logging.getLogger("bottle_launch.unmount")


class UnmountOrchestrator:
    """Sync, unmount, lock and detach a bottle."""

    def __init__(
        self,
        runner: Optional[ToolRunner] = None,
        udisks: Optional[UdisksClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.udisks = udisks or UdisksClient(runner or ToolRunner())
        self._sleep = sleep

    def unmount(self, state: Optional[MountState]) -> None:
        """
        Tear down a mounted (or partially mounted) bottle.

        Raises:
            VolumeError: unmount failed with and without --force, lock
                failed on every attempt, or loop-delete failed
        """
        if state is None or state.is_empty:
            _unmount_logger.debug("unmount.noop: nothing attached")
            return

        _unmount_logger.info(
            f"unmount.start: bottle={state.bottle_path}, stage={state.stage.value}, "
            f"mount_point={state.mount_point}"
        )

        if state.mount_point:
            self._sync(state.mount_point)
            self._unmount(state.cleartext_device)

        if state.cleartext_device:
            self._lock(state.loop_device)

        self.udisks.loop_delete(state.loop_device)
        _unmount_logger.info(f"unmount.done: bottle={state.bottle_path}")

    def _sync(self, mount_point: str) -> None:
        try:
            self.udisks.sync(mount_point)
        except VolumeError as e:
            _unmount_logger.warning(f"unmount.sync_failed: mount_point={mount_point}, error={e.diagnostic}")

    def _unmount(self, cleartext_device: str) -> None:
        try:
            self.udisks.unmount(cleartext_device)
            return
        except VolumeError as first:
            _unmount_logger.warning(f"unmount.busy: device={cleartext_device}, retrying with --force")
            try:
                self.udisks.unmount(cleartext_device, force=True)
            except VolumeError as forced:
                raise VolumeError("unmount", f"{first.diagnostic}; force: {forced.diagnostic}")

    def _lock(self, loop_device: str) -> None:
        last_error = None
        for attempt in range(Limits.LOCK_MAX_ATTEMPTS):
            if attempt > 0:
                self._sleep(Limits.LOCK_RETRY_DELAY)
            try:
                self.udisks.lock(loop_device)
                return
            except VolumeError as e:
                last_error = e
                _unmount_logger.warning(
                    f"unmount.lock_failed: loop={loop_device}, attempt={attempt + 1}/{Limits.LOCK_MAX_ATTEMPTS}"
                )
        raise last_error
