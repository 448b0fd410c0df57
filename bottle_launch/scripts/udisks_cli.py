#!/usr/bin/env python3
"""
udisks2 CLI Wrapper

Provides the wrapper around udisksctl used for every volume transition:
- loop-setup / loop-delete
- unlock / lock (LUKS2)
- mount / unmount (hardened options)
- Confirmation text parsing (loop device, cleartext device, mount point)
- Diagnostic classification (wrong credential, stale device-mapper record)

udisksctl output is not a versioned contract. All parsing and phrase
matching lives in this module and is tested against captured samples in
tests/unit/test_udisks_cli.py; a new udisks release that changes wording
needs changes here and in that fixture only.
"""

import logging
import re
from typing import Optional

from ..core.constants import MountOptions, Tools
from ..core.secrets import secret_key_file
from .tool_runner import ToolResult, ToolRunner

_udisks_logger = logging.getLogger("bottle_launch.udisks")


class VolumeError(Exception):
    """A volume operation failed; diagnostic is the tool's text, verbatim."""

    def __init__(self, op: str, diagnostic: str):
        self.op = op
        self.diagnostic = diagnostic
        super().__init__(f"{op}: {diagnostic}")


class WrongCredentialError(VolumeError):
    """Unlock rejected the password or key. Recoverable by re-prompting."""

    pass


class StaleDeviceError(VolumeError):
    """udisks has no object for a device-mapper node it just reported."""

    pass


class MalformedOutputError(VolumeError):
    """Tool succeeded but its confirmation text did not match the expected format."""

    pass


# ===========================================================================
# Diagnostic classification
# ===========================================================================

# Substrings in udisksctl unlock diagnostics that mean "wrong password/key".
# Unmatched diagnostics are treated as fatal, never as a wrong credential.
WRONG_CREDENTIAL_PHRASES = (
    "Failed to activate device",
    "No key available",
    "passphrase",
)

# udisksctl mount diagnostic for a dm record that outlived its kernel object
STALE_OBJECT_PHRASE = "Error looking up object for device"

_LOOP_DEVICE_RE = re.compile(r"/dev/loop\d+")
_CLEARTEXT_DEVICE_RE = re.compile(r"/dev/dm-\d+")
_MOUNT_POINT_RE = re.compile(r"^Mounted \S+ at (/.*?)\.?\s*$", re.MULTILINE)


def is_wrong_credential(diagnostic: str) -> bool:
    """True if unlock diagnostics indicate a wrong password or key."""
    return any(phrase in diagnostic for phrase in WRONG_CREDENTIAL_PHRASES)


def is_stale_object(diagnostic: str) -> bool:
    """True if mount diagnostics indicate a stale device-mapper record."""
    return STALE_OBJECT_PHRASE in diagnostic


def parse_loop_device(output: str) -> Optional[str]:
    """'Mapped file /x.bottle as /dev/loop0.' -> '/dev/loop0'"""
    match = _LOOP_DEVICE_RE.search(output)
    return match.group(0) if match else None


def parse_cleartext_device(output: str) -> Optional[str]:
    """'Unlocked /dev/loop0 as /dev/dm-0.' -> '/dev/dm-0'"""
    match = _CLEARTEXT_DEVICE_RE.search(output)
    return match.group(0) if match else None


def parse_mount_point(output: str) -> Optional[str]:
    """'Mounted /dev/dm-0 at /run/media/me/web.' -> '/run/media/me/web'"""
    match = _MOUNT_POINT_RE.search(output)
    return match.group(1) if match else None


# ===========================================================================
# udisksctl operations
# ===========================================================================


class UdisksClient:
    """
    One method per udisksctl subcommand.

    Methods raise VolumeError (or a subclass) with the tool's diagnostic
    text preserved; they never retry. Retry policy belongs to the
    orchestrators.
    """

    def __init__(self, runner: Optional[ToolRunner] = None):
        self.runner = runner or ToolRunner()

    def _udisksctl(self, *args: str, input_data: Optional[bytes] = None) -> ToolResult:
        return self.runner.run([Tools.UDISKSCTL, *args], input_data=input_data)

    def loop_setup(self, file_path: str) -> str:
        """Attach a backing file; returns the loop device node."""
        result = self._udisksctl("loop-setup", "-f", file_path)
        if not result.ok:
            raise VolumeError("loop-setup", result.output)

        loop_device = parse_loop_device(result.output)
        if loop_device is None:
            raise MalformedOutputError("loop-setup", f"could not parse loop device from: {result.output!r}")
        _udisks_logger.info(f"udisks.loop_setup: file={file_path}, loop={loop_device}")
        return loop_device

    def unlock(self, loop_device: str, key_material: Optional[bytes]) -> str:
        """
        Unlock a LUKS loop device; returns the cleartext device node.

        key_material is written to a short-lived 0600 key file for the
        duration of the call. None leaves the passphrase prompt to udisks.

        Raises:
            WrongCredentialError: Diagnostics match a wrong-credential phrase
            VolumeError: Any other failure
            MalformedOutputError: Success without a parsable dm node
        """
        if key_material is None:
            result = self._udisksctl("unlock", "-b", loop_device)
        else:
            with secret_key_file(key_material) as key_path:
                result = self._udisksctl("unlock", "-b", loop_device, "--key-file", str(key_path))

        if not result.ok:
            if is_wrong_credential(result.output):
                _udisks_logger.warning(f"udisks.unlock.wrong_credential: loop={loop_device}")
                raise WrongCredentialError("unlock", result.output)
            raise VolumeError("unlock", result.output)

        cleartext = parse_cleartext_device(result.output)
        if cleartext is None:
            raise MalformedOutputError("unlock", f"could not parse cleartext device from: {result.output!r}")
        _udisks_logger.info(f"udisks.unlock: loop={loop_device}, cleartext={cleartext}")
        return cleartext

    def mount(self, cleartext_device: str) -> str:
        """
        Mount a cleartext device with nodev,nosuid,noexec; returns the mount path.

        Raises:
            StaleDeviceError: udisks reports no object for the device
            VolumeError: Any other failure
            MalformedOutputError: Success without a parsable mount path
        """
        result = self._udisksctl("mount", "-b", cleartext_device, "--options", MountOptions.HARDENED)
        if not result.ok:
            if is_stale_object(result.output):
                raise StaleDeviceError("mount", result.output)
            raise VolumeError("mount", result.output)

        mount_point = parse_mount_point(result.output)
        if mount_point is None:
            raise MalformedOutputError("mount", f"could not parse mount point from: {result.output!r}")
        _udisks_logger.info(f"udisks.mount: cleartext={cleartext_device}, mount_point={mount_point}")
        return mount_point

    def unmount(self, cleartext_device: str, force: bool = False) -> None:
        args = ["unmount", "-b", cleartext_device]
        if force:
            args.append("--force")
        result = self._udisksctl(*args)
        if not result.ok:
            raise VolumeError("unmount", result.output)

    def lock(self, loop_device: str) -> None:
        result = self._udisksctl("lock", "-b", loop_device)
        if not result.ok:
            raise VolumeError("lock", result.output)

    def loop_delete(self, loop_device: str) -> None:
        result = self._udisksctl("loop-delete", "-b", loop_device)
        if not result.ok:
            raise VolumeError("loop-delete", result.output)

    def sync(self, mount_point: str) -> None:
        """Flush filesystem buffers for the filesystem holding mount_point."""
        result = self.runner.run([Tools.SYNC, "-f", mount_point])
        if not result.ok:
            raise VolumeError("sync", result.output)
