#!/usr/bin/env python3
"""
Bottle file management

Creates, lists and deletes bottle files:
- Sparse backing file of the requested size
- LUKS2 format with cryptsetup (privileged, key via --key-file only)
- ext4 filesystem labelled after the bottle name
- Rollback of every completed step when a later one fails

Hardware-key bottles persist their FIDO2 identity to the config file BEFORE
the destructive format step, so a crash after formatting never leaves an
encrypted volume whose credential is lost.
"""

import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from ..core.config import BottleConfig, save_bottle_config
from ..core.constants import CryptoParams, FileNames, Tools
from ..core.dependencies import CREATE_TOOLS, require_privilege_escalation, require_tools
from ..core.limits import Limits
from ..core.modes import BottleContainer, HardwareKeyCredential, PermissionSet
from ..core.paths import PathLike, Paths
from ..core.secrets import secret_key_file
from .locator import DeviceLocator
from .tool_runner import ToolRunner

_bottle_logger = logging.getLogger("bottle_launch.bottle")


# =============================================================================
# Exceptions
# =============================================================================


class BottleError(Exception):
    """A bottle management step failed; diagnostic is the tool text, verbatim."""

    def __init__(self, op: str, diagnostic: str):
        self.op = op
        self.diagnostic = diagnostic
        super().__init__(f"{op}: {diagnostic}")


class BottleExistsError(BottleError):
    def __init__(self, path: Path):
        super().__init__("bottle", f"already exists: {path}")


class BottleBusyError(BottleError):
    """Bottle is loop-attached (mounted or in use)."""

    def __init__(self, path: Path):
        super().__init__("bottle", f"currently mounted - close any running apps first: {path}")


# =============================================================================
# Names and sizes
# =============================================================================

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(text: str) -> int:
    """
    Parse a bottle size such as "500M", "2G" or "1048576".

    Raises:
        ValueError: Unparsable size
    """
    match = _SIZE_RE.match(text or "")
    if not match:
        raise ValueError(f"Invalid size: {text!r} (use e.g. 500M, 2G)")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.upper()]


def resolve_bottle_path(name: PathLike, bottle_dir: Optional[Path] = None) -> Path:
    """Append .bottle when missing; bare names live in the bottle directory."""
    name = str(name)
    if not name.endswith(FileNames.BOTTLE_SUFFIX):
        name += FileNames.BOTTLE_SUFFIX
    if "/" not in name:
        return (bottle_dir or Paths.bottle_dir()) / name
    return Paths.canonical(name)


def list_bottles(bottle_dir: Optional[Path] = None) -> List[Path]:
    """Sorted *.bottle files of the bottle directory (created on demand)."""
    directory = bottle_dir or Paths.bottle_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return sorted(p for p in directory.glob("*" + FileNames.BOTTLE_SUFFIX) if p.is_file())


def filesystem_label(path: PathLike) -> str:
    return BottleContainer.from_path(path).filesystem_label


# =============================================================================
# Creation / deletion
# =============================================================================


class BottleManager:
    """Privileged bottle creation and unprivileged deletion."""

    def __init__(
        self,
        runner: Optional[ToolRunner] = None,
        locator: Optional[DeviceLocator] = None,
        config_dir: Optional[Path] = None,
    ):
        self.runner = runner or ToolRunner()
        self.locator = locator or DeviceLocator(self.runner)
        self.config_dir = config_dir

    def _privileged(self, op: str, *args: str) -> str:
        result = self.runner.run(self.runner.privileged(list(args)))
        if not result.ok:
            raise BottleError(op, result.output)
        return result.stdout

    def _check_create_preconditions(self, bottle: BottleContainer, size: int) -> None:
        require_tools(CREATE_TOOLS, which=self.runner.which)
        require_privilege_escalation(which=self.runner.which)
        if size < Limits.MIN_BOTTLE_SIZE_BYTES:
            raise BottleError("bottle", f"size must be at least {Limits.MIN_BOTTLE_SIZE_BYTES // (1024 * 1024)}M")
        if bottle.file_path.exists():
            raise BottleExistsError(bottle.file_path)

    def create_password_bottle(self, path: PathLike, size: int, password: str) -> BottleContainer:
        """
        Create a password-protected bottle.

        Raises:
            MissingToolError: Before anything is written
            BottleExistsError: Target file exists
            BottleError: A step failed (everything already done is rolled back)
        """
        if not password:
            raise BottleError("bottle", "password required")
        bottle = BottleContainer.from_path(path, self.config_dir)
        self._check_create_preconditions(bottle, size)

        key_material = bytearray(password.encode("utf-8"))
        try:
            self._format(bottle, size, key_material)
        finally:
            for i in range(len(key_material)):
                key_material[i] = 0
        return bottle

    def create_hardware_key_bottle(
        self,
        path: PathLike,
        size: int,
        credential: HardwareKeyCredential,
        secret: bytearray,
        permissions: Optional[PermissionSet] = None,
    ) -> BottleContainer:
        """
        Create a bottle unlocked by a FIDO2 hmac-secret.

        The config (with the FIDO2 identity) is written before luksFormat and
        removed again if creation fails.
        """
        if len(secret) != CryptoParams.KEY_MATERIAL_LENGTH:
            raise BottleError("bottle", f"hardware key secret must be {CryptoParams.KEY_MATERIAL_LENGTH} bytes")
        bottle = BottleContainer.from_path(path, self.config_dir)
        self._check_create_preconditions(bottle, size)

        config_path = bottle.config_path
        save_bottle_config(config_path, BottleConfig.for_credential(credential, permissions))
        _bottle_logger.info(f"bottle.create.config_saved: bottle={bottle.name}, config={config_path}")

        try:
            self._format(bottle, size, secret)
        except BaseException:
            config_path.unlink(missing_ok=True)
            raise
        return bottle

    def _format(self, bottle: BottleContainer, size: int, key_material: bytes) -> None:
        file_path = bottle.file_path
        mapper_name = bottle.mapper_name
        rollback: List[Callable[[], None]] = []

        _bottle_logger.info(f"bottle.create.start: path={file_path}, size={size}, mapper={mapper_name}")
        file_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(file_path, "xb") as f:
                f.truncate(size)
            rollback.append(lambda: file_path.unlink(missing_ok=True))

            with secret_key_file(key_material, prefix=FileNames.KEYFILE_FORMAT_PREFIX) as key_path:
                self._privileged(
                    "LUKS format",
                    Tools.CRYPTSETUP, "luksFormat",
                    "--type", CryptoParams.LUKS_TYPE,
                    "--batch-mode",
                    "--key-file", str(key_path),
                    str(file_path),
                )

                loop_device = self._privileged(
                    "loop setup", Tools.LOSETUP, "--find", "--show", "--", str(file_path)
                ).strip()
                if not loop_device:
                    raise BottleError("loop setup", "losetup printed no device")
                rollback.append(lambda: self._quiet(Tools.LOSETUP, "-d", loop_device))

                self._privileged(
                    "LUKS open",
                    Tools.CRYPTSETUP, "open", "--key-file", str(key_path), loop_device, mapper_name,
                )
                rollback.append(lambda: self._quiet(Tools.CRYPTSETUP, "close", mapper_name))

            self._privileged(
                "mkfs",
                Tools.MKFS_EXT4, "-q", "-L", bottle.filesystem_label, str(Paths.mapper_device(file_path)),
            )
        except BaseException:
            _bottle_logger.error(f"bottle.create.rollback: path={file_path}, steps={len(rollback)}")
            for undo in reversed(rollback):
                undo()
            raise

        # Success: close and detach, the file stays
        self._quiet(Tools.CRYPTSETUP, "close", mapper_name)
        self._quiet(Tools.LOSETUP, "-d", loop_device)
        _bottle_logger.info(f"bottle.create.done: path={file_path}")

    def _quiet(self, *args: str) -> None:
        """Best-effort privileged cleanup step; failures are logged only."""
        result = self.runner.run(self.runner.privileged(list(args)))
        if not result.ok:
            _bottle_logger.warning(f"bottle.cleanup_step_failed: args={list(args)}, output={result.output.strip()}")

    def delete_bottle(self, path: PathLike) -> None:
        """
        Remove a bottle file and its config.

        Raises:
            BottleBusyError: Bottle is loop-attached
            FileNotFoundError: No such bottle
        """
        bottle = BottleContainer.from_path(path, self.config_dir)
        if self.locator.is_attached(bottle.file_path):
            raise BottleBusyError(bottle.file_path)

        bottle.file_path.unlink()
        bottle.config_path.unlink(missing_ok=True)
        _bottle_logger.info(f"bottle.delete: path={bottle.file_path}")
