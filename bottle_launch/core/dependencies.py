# core/dependencies.py - SINGLE SOURCE OF TRUTH for dependency checking
"""
Dependency checking and installation guidance for bottle-launch.

Provides clear error messages and remediation hints when external tools are
missing. Checks run before any destructive step (format, mkfs) so a missing
tool never leaves a half-created bottle behind.

This module checks for:
- Volume tools: udisksctl, losetup, lsblk, cryptsetup, mkfs.ext4
- Privilege escalation: pkexec or sudo
- Hardware key tools: fido2-token, fido2-cred, fido2-assert
- Sandbox runtime: flatpak
"""

import shutil
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .constants import Tools


@dataclass
class DependencyInfo:
    """Information about a dependency and how to install it."""

    name: str
    required_for: str  # e.g., "mounting", "YubiKey bottles"
    install_hint: str  # Distribution package hint
    url: Optional[str] = None


class MissingToolError(Exception):
    """A required external tool is not installed."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        hints = []
        for tool in self.missing:
            info = REQUIRED_SYSTEM_TOOLS.get(tool)
            if info:
                hints.append(f"{tool} not found - {info.install_hint} (needed for {info.required_for})")
            else:
                hints.append(f"{tool} not found")
        super().__init__("\n".join(hints))


_UDISKS = DependencyInfo(
    name="udisks2",
    required_for="mounting bottles",
    install_hint="install udisks2",
    url="https://www.freedesktop.org/wiki/Software/udisks/",
)
_UTIL_LINUX = DependencyInfo(
    name="util-linux",
    required_for="loop device discovery",
    install_hint="install util-linux",
)
_CRYPTSETUP = DependencyInfo(
    name="cryptsetup",
    required_for="creating LUKS2 bottles",
    install_hint="install cryptsetup",
    url="https://gitlab.com/cryptsetup/cryptsetup",
)
_LIBFIDO2 = DependencyInfo(
    name="libfido2",
    required_for="YubiKey bottles",
    install_hint="install libfido2 (fido2-tools)",
    url="https://developers.yubico.com/libfido2/",
)

# Required system tools
REQUIRED_SYSTEM_TOOLS = {
    Tools.UDISKSCTL: _UDISKS,
    Tools.LOSETUP: _UTIL_LINUX,
    Tools.LSBLK: _UTIL_LINUX,
    Tools.CRYPTSETUP: _CRYPTSETUP,
    Tools.MKFS_EXT4: DependencyInfo(
        name="e2fsprogs",
        required_for="creating bottle filesystems",
        install_hint="install e2fsprogs",
    ),
    Tools.SYNC: DependencyInfo(
        name="coreutils",
        required_for="flushing bottles before unmount",
        install_hint="install coreutils",
    ),
    Tools.PKEXEC: DependencyInfo(
        name="polkit",
        required_for="privilege escalation",
        install_hint="install polkit (or sudo)",
    ),
    Tools.SUDO: DependencyInfo(
        name="sudo",
        required_for="privilege escalation",
        install_hint="install sudo (or polkit)",
    ),
    Tools.FLATPAK: DependencyInfo(
        name="Flatpak",
        required_for="running sandboxed applications",
        install_hint="install flatpak",
        url="https://flatpak.org/setup/",
    ),
    Tools.FIDO2_TOKEN: _LIBFIDO2,
    Tools.FIDO2_CRED: _LIBFIDO2,
    Tools.FIDO2_ASSERT: _LIBFIDO2,
}

# Tool groups per operation
MOUNT_TOOLS = (Tools.UDISKSCTL, Tools.LOSETUP, Tools.LSBLK)
CREATE_TOOLS = (Tools.CRYPTSETUP, Tools.LOSETUP, Tools.MKFS_EXT4)
FIDO2_TOOLS = Tools.FIDO2_TOOLS


def is_tool_installed(tool_name: str) -> bool:
    """
    Check if a system tool is available in PATH.

    Args:
        tool_name: Name of the tool to check (e.g., "udisksctl")

    Returns:
        True if the tool is found, False otherwise
    """
    return shutil.which(tool_name) is not None


def find_missing_tools(tools: Iterable[str], which=shutil.which) -> List[str]:
    """Return the subset of tools not found in PATH, in the given order."""
    return [tool for tool in tools if which(tool) is None]


def require_tools(tools: Iterable[str], which=shutil.which) -> None:
    """
    Hard gate: every listed tool must be installed.

    Raises:
        MissingToolError: Listing every missing tool with install hints
    """
    missing = find_missing_tools(tools, which=which)
    if missing:
        raise MissingToolError(missing)


def require_privilege_escalation(which=shutil.which) -> str:
    """
    Return the escalation tool to use (pkexec preferred, sudo fallback).

    Raises:
        MissingToolError: If neither pkexec nor sudo is installed
    """
    for tool in Tools.PRIVILEGE_TOOLS:
        if which(tool) is not None:
            return tool
    raise MissingToolError(list(Tools.PRIVILEGE_TOOLS))


def check_all_dependencies(which=shutil.which) -> List[str]:
    """Human-readable report lines for every missing tool (empty when all present)."""
    report = []
    for tool, info in REQUIRED_SYSTEM_TOOLS.items():
        if tool in Tools.PRIVILEGE_TOOLS:
            continue
        if which(tool) is None:
            report.append(f"{tool}: missing ({info.required_for}) - {info.install_hint}")
    if all(which(tool) is None for tool in Tools.PRIVILEGE_TOOLS):
        report.append("pkexec/sudo: missing (privilege escalation) - install polkit or sudo")
    return report
