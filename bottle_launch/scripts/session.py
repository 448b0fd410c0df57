#!/usr/bin/env python3
"""
Bottle session: mount -> run app -> unmount.

Ties the mount and unmount orchestrators, the per-bottle config and the
LifecycleCoordinator together for one bottle:

    with BottleSession(path) as session:
        session.open(provider)
        session.run_app("org.mozilla.firefox")
    # bottle unmounted and locked here, also on exceptions

The mounted state and the sandboxed child are registered with the
coordinator while they exist, so a termination signal tears them down.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

from ..core.config import BottleConfig, load_bottle_config, save_bottle_config
from ..core.lifecycle import LifecycleCoordinator
from ..core.modes import BottleContainer, MountState, PermissionSet
from ..core.paths import PathLike
from ..core.secrets import SecretProvider
from .flatpak import start_flatpak_app
from .locator import DeviceLocator
from .mount import MountOrchestrator
from .tool_runner import ToolRunner
from .udisks_cli import UdisksClient, VolumeError
from .unmount import UnmountOrchestrator

_session_logger = logging.getLogger("bottle_launch.session")


class BottleSession:
    """One bottle's mount/run/unmount cycle."""

    def __init__(
        self,
        path: PathLike,
        runner: Optional[ToolRunner] = None,
        config_dir: Optional[Path] = None,
        coordinator: Optional[LifecycleCoordinator] = None,
        unmounter: Optional[UnmountOrchestrator] = None,
    ):
        self.runner = runner or ToolRunner()
        self.bottle = BottleContainer.from_path(path, config_dir)
        self.locator = DeviceLocator(self.runner)
        udisks = UdisksClient(self.runner)
        self.unmounter = unmounter or UnmountOrchestrator(udisks=udisks)
        self.coordinator = coordinator or LifecycleCoordinator(self.unmounter.unmount)
        self.mounter = MountOrchestrator(locator=self.locator, udisks=udisks, coordinator=self.coordinator)
        self.state: Optional[MountState] = None
        self._config: Optional[BottleConfig] = None

    @property
    def config(self) -> BottleConfig:
        if self._config is None:
            self._config = load_bottle_config(self.bottle.config_path)
        return self._config

    def save_config(self) -> None:
        save_bottle_config(self.bottle.config_path, self.config)

    @property
    def mount_point(self) -> Optional[str]:
        return self.state.mount_point if self.state else None

    def open(self, provider: SecretProvider) -> MountState:
        """Mount the bottle (idempotent). See MountOrchestrator.mount."""
        self.state = self.mounter.mount(self.bottle, provider)
        return self.state

    def run_app(
        self,
        app_id: str,
        permissions: Optional[PermissionSet] = None,
        extra_args: Sequence[str] = (),
    ) -> int:
        """
        Run a Flatpak app in the mounted bottle and wait for it to exit.

        The app id is recorded as last_app in the bottle config.

        Returns:
            The app's exit code
        """
        if not self.mount_point:
            raise VolumeError("run", f"bottle not mounted: {self.bottle.file_path}")

        permissions = permissions or self.config.permissions
        self.config.permissions.last_app = app_id
        self.save_config()

        process = start_flatpak_app(app_id, self.mount_point, permissions, extra_args, runner=self.runner)
        returncode = self.coordinator.wait_for_child(process)
        _session_logger.info(f"session.app_exit: app={app_id}, returncode={returncode}")
        return returncode

    def close(self) -> None:
        """Unmount whatever the kernel currently reports for this bottle."""
        state = self.locator.probe(self.bottle.file_path)
        try:
            self.unmounter.unmount(state)
        finally:
            self.coordinator.clear_mount()
            self.state = None

    def __enter__(self) -> "BottleSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.close()
        except VolumeError as e:
            if exc_type is None:
                raise
            _session_logger.error(f"session.close_failed: bottle={self.bottle.name}, error={e}")
        return False
