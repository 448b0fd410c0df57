#!/usr/bin/env python3
"""
Bottle mount orchestration

Drives a bottle from whatever state the kernel reports to MOUNTED:

    UNATTACHED --loop-setup--> ATTACHED --unlock--> UNLOCKED --mount--> MOUNTED

The bottle is probed once at the start of every call; each transition then
advances the state from the tool's own confirmation text. Calling mount()
on an already mounted bottle returns the probed state without running a
single mutating tool.

Stale device-mapper records (udisks reports a dm node it cannot look up)
are recovered by locking the loop device, unlocking again with freshly
acquired key material, and retrying the mount exactly once.
"""

import logging
from typing import Callable, Dict, Optional

from ..core.limits import Limits
from ..core.modes import BottleContainer, MountStage, MountState
from ..core.secrets import SecretProvider, secure_wipe_buffer
from .locator import DeviceLocator
from .tool_runner import ToolRunner
from .udisks_cli import StaleDeviceError, UdisksClient, VolumeError

# =============================================================================
# Module-level logger
# =============================================================================
_mount_logger = logging.getLogger("bottle_launch.mount")

Transition = Callable[[BottleContainer, MountState, SecretProvider], MountState]


class MountOrchestrator:
    """
    Idempotent attach -> unlock -> mount driver for one bottle at a time.

    Args:
        runner: Tool runner shared by the locator and udisks client
        coordinator: Optional LifecycleCoordinator; the mounted state is
            registered with it on success
    """

    def __init__(
        self,
        runner: Optional[ToolRunner] = None,
        locator: Optional[DeviceLocator] = None,
        udisks: Optional[UdisksClient] = None,
        coordinator=None,
    ):
        runner = runner or ToolRunner()
        self.locator = locator or DeviceLocator(runner)
        self.udisks = udisks or UdisksClient(runner)
        self.coordinator = coordinator

        self._transitions: Dict[MountStage, Transition] = {
            MountStage.UNATTACHED: self._attach,
            MountStage.ATTACHED: self._unlock,
            MountStage.UNLOCKED: self._mount,
        }

    def mount(self, bottle: BottleContainer, provider: SecretProvider) -> MountState:
        """
        Bring a bottle to MOUNTED.

        Returns:
            MountState with all fields set

        Raises:
            WrongCredentialError: Unlock rejected the key (loop stays attached)
            VolumeError: Any other udisks failure, diagnostic verbatim
            SecretAccessError / Fido2Error: Key material unavailable
        """
        state = self.locator.probe(bottle.file_path)
        _mount_logger.info(f"mount.start: bottle={bottle.name}, stage={state.stage.value}")

        if state.stage is MountStage.MOUNTED:
            _mount_logger.info(f"mount.already_mounted: bottle={bottle.name}, mount_point={state.mount_point}")

        while state.stage is not MountStage.MOUNTED:
            transition = self._transitions[state.stage]
            state = transition(bottle, state, provider)

        if self.coordinator is not None:
            self.coordinator.register_mount(state)

        _mount_logger.info(f"mount.done: bottle={bottle.name}, mount_point={state.mount_point}")
        return state

    # =========================================================================
    # Transitions
    # =========================================================================

    def _attach(self, bottle: BottleContainer, state: MountState, provider: SecretProvider) -> MountState:
        loop_device = self.udisks.loop_setup(str(bottle.file_path))
        return state.advance(loop_device=loop_device)

    def _unlock(self, bottle: BottleContainer, state: MountState, provider: SecretProvider) -> MountState:
        key_material = provider.get_key_material(bottle)
        try:
            cleartext = self.udisks.unlock(state.loop_device, key_material)
        finally:
            secure_wipe_buffer(key_material)
        return state.advance(cleartext_device=cleartext)

    def _mount(self, bottle: BottleContainer, state: MountState, provider: SecretProvider) -> MountState:
        retries = 0
        while True:
            try:
                mount_point = self.udisks.mount(state.cleartext_device)
                return state.advance(mount_point=mount_point)
            except StaleDeviceError:
                if retries >= Limits.STALE_MOUNT_MAX_RETRIES or not state.loop_device:
                    raise
                retries += 1
                _mount_logger.warning(
                    f"mount.stale_mapping: bottle={bottle.name}, cleartext={state.cleartext_device}, "
                    f"retry={retries}"
                )
                state = self._refresh_mapping(bottle, state, provider)

    def _refresh_mapping(self, bottle: BottleContainer, state: MountState, provider: SecretProvider) -> MountState:
        """Lock and re-unlock so udisks rebuilds its object for the dm node."""
        try:
            self.udisks.lock(state.loop_device)
        except VolumeError as e:
            # Lock of a half-gone mapping may fail; the unlock below decides
            _mount_logger.warning(f"mount.stale_mapping.lock_failed: loop={state.loop_device}, error={e.diagnostic}")
        return self._unlock(bottle, state.advance(cleartext_device=None), provider)
