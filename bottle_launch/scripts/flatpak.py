#!/usr/bin/env python3
"""
Flatpak integration: application listing and sandboxed execution.

Apps run with --sandbox, the bottle mount point as their only host
filesystem, HOME and the XDG base directories pointing into the bottle,
and one capability flag per enabled permission.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.constants import Tools
from ..core.modes import PermissionSet
from .tool_runner import ToolRunner

_flatpak_logger = logging.getLogger("bottle_launch.flatpak")

# Permission attribute -> flatpak run arguments
PERMISSION_ARGS: Dict[str, Tuple[str, ...]] = {
    "network": ("--share=network",),
    "audio": ("--socket=pulseaudio",),
    "gpu": ("--device=dri",),
    "wayland": ("--socket=wayland",),
    "x11": ("--socket=fallback-x11",),
    "camera": ("--device=video0",),
    "portals": (
        "--talk-name=org.freedesktop.portal.Desktop",
        "--talk-name=org.freedesktop.portal.Notification",
        "--talk-name=org.freedesktop.portal.FileChooser",
    ),
}

# Directories created inside the bottle before every launch
STANDARD_DIRS = ("Downloads", ".config", os.path.join(".local", "share"), ".cache")


@dataclass(frozen=True)
class FlatpakApp:
    """An installed Flatpak application."""

    app_id: str
    name: str


def parse_app_list(output: str) -> List[FlatpakApp]:
    """Parse `flatpak list --app --columns=application,name` (tab separated), sorted by name."""
    apps = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        app_id, _, name = line.partition("\t")
        app_id = app_id.strip()
        apps.append(FlatpakApp(app_id=app_id, name=name.strip() or app_id))
    return sorted(apps, key=lambda app: app.name)


def list_flatpak_apps(runner: Optional[ToolRunner] = None) -> List[FlatpakApp]:
    """Installed apps; empty when flatpak is unavailable or fails."""
    runner = runner or ToolRunner()
    if runner.which(Tools.FLATPAK) is None:
        _flatpak_logger.info("flatpak.list: flatpak not installed")
        return []
    result = runner.run([Tools.FLATPAK, "list", "--app", "--columns=application,name"])
    if not result.ok:
        _flatpak_logger.warning(f"flatpak.list.failed: output={result.output.strip()}")
        return []
    return parse_app_list(result.stdout)


def build_flatpak_args(
    app_id: str,
    mount_point: str,
    permissions: PermissionSet,
    extra_args: Sequence[str] = (),
) -> List[str]:
    """Arguments for `flatpak` (without the executable itself)."""
    args = ["run", "--sandbox", f"--filesystem={mount_point}"]

    for name, flags in PERMISSION_ARGS.items():
        if getattr(permissions, name):
            args.extend(flags)

    args.extend(
        [
            "--env=GTK_USE_PORTAL=0",
            f"--env=HOME={mount_point}",
            f"--env=XDG_DATA_HOME={os.path.join(mount_point, '.local', 'share')}",
            f"--env=XDG_CONFIG_HOME={os.path.join(mount_point, '.config')}",
            f"--env=XDG_CACHE_HOME={os.path.join(mount_point, '.cache')}",
            f"--env=XDG_DOWNLOAD_DIR={os.path.join(mount_point, 'Downloads')}",
        ]
    )

    args.append(app_id)
    args.extend(extra_args)
    return args


def prepare_home(mount_point: str) -> None:
    for directory in STANDARD_DIRS:
        os.makedirs(os.path.join(mount_point, directory), mode=0o755, exist_ok=True)


def start_flatpak_app(
    app_id: str,
    mount_point: str,
    permissions: PermissionSet,
    extra_args: Sequence[str] = (),
    runner: Optional[ToolRunner] = None,
) -> subprocess.Popen:
    """
    Launch an app inside the bottle (non-blocking).

    Returns:
        The Popen handle, to be registered with the LifecycleCoordinator
    """
    runner = runner or ToolRunner()
    prepare_home(mount_point)
    args = [Tools.FLATPAK] + build_flatpak_args(app_id, mount_point, permissions, extra_args)
    _flatpak_logger.info(
        f"flatpak.run: app={app_id}, mount_point={mount_point}, permissions={permissions.summary() or 'none'}"
    )
    return runner.spawn(args)
