#!/usr/bin/env python3
"""
Secret Access Layer (SSOT) - core/secrets.py

SINGLE SOURCE OF TRUTH for unlock key material.

This module provides key material on demand with strict handling rules:
- Polymorphic providers: PasswordSecretProvider / HardwareKeySecretProvider
- Derive-on-demand: hmac-secret is derived only when a transition needs it
- Memory hygiene: key material lives in bytearrays that callers wipe
- Short-lived key files: 0600, RAM-backed directory when available,
  overwritten and unlinked right after the one tool call that reads them

Usage:
    from bottle_launch.core.secrets import SecretProvider

    provider = SecretProvider.for_credential(config.credential, password=pw)
    key = provider.get_key_material(bottle)   # touch happens ONLY NOW
    ...
    secure_wipe_buffer(key)
"""

import base64
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from .constants import CryptoParams, FileNames
from .modes import BottleContainer, Credential, HardwareKeyCredential
from .paths import Paths
from ..scripts.fido2_cli import Fido2Device, Fido2Tool

_secrets_logger = logging.getLogger("bottle_launch.secrets")

DeviceChooser = Callable[[List[Fido2Device]], Optional[Fido2Device]]


# =============================================================================
# Exceptions
# =============================================================================


class SecretAccessError(Exception):
    """Base exception for secret access errors."""

    pass


class HardwareKeyNotFoundError(SecretAccessError):
    """Raised when no FIDO2 authenticator is connected. Retriable."""

    def __init__(self, detail: str = ""):
        message = "No FIDO2 security key found.\nPlease insert your YubiKey and try again."
        if detail:
            message = f"{message}\n({detail})"
        super().__init__(message)


class AmbiguousHardwareKeyError(SecretAccessError):
    """Raised when several authenticators are connected and none was chosen."""

    def __init__(self, devices: List[Fido2Device]):
        self.devices = list(devices)
        names = ", ".join(d.path for d in self.devices)
        super().__init__(f"Multiple FIDO2 security keys connected ({names}); choose one with --device.")


# =============================================================================
# Memory and file hygiene
# =============================================================================


def secure_wipe_buffer(buffer: Optional[bytearray]) -> None:
    """Securely wipe a bytearray buffer in memory."""
    if buffer:
        for i in range(len(buffer)):
            buffer[i] = 0


def secure_delete(file_path: Path, passes: int = 3) -> None:
    """Overwrite a file with random data, then unlink it."""
    if not file_path.exists():
        return
    try:
        file_size = file_path.stat().st_size
        with open(file_path, "r+b") as f:
            for _ in range(passes):
                f.seek(0)
                f.write(os.urandom(file_size))
                f.flush()
                os.fsync(f.fileno())
    except OSError as e:
        _secrets_logger.warning(f"secrets.secure_delete.overwrite_failed: path={file_path}, error={e}")
    finally:
        try:
            file_path.unlink()
        except FileNotFoundError:
            pass


@contextmanager
def secret_key_file(key_material: bytes, prefix: str = FileNames.KEYFILE_UNLOCK_PREFIX) -> Iterator[Path]:
    """
    Expose key material as a 0600 file for the duration of one tool call.

    Yields:
        Path of the key file (RAM-backed temp dir when available)
    """
    fd, path_str = tempfile.mkstemp(prefix=prefix, dir=str(Paths.ram_temp_dir()))
    key_path = Path(path_str)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key_material)
            f.flush()
            os.fsync(f.fileno())
        yield key_path
    finally:
        secure_delete(key_path)


# =============================================================================
# Providers
# =============================================================================


class SecretProvider(ABC):
    """Produces the key material that unlocks one bottle."""

    @abstractmethod
    def get_key_material(self, bottle: BottleContainer) -> Optional[bytearray]:
        """
        Return fresh key material, or None to let the privileged daemon prompt.

        The caller owns the returned buffer and must wipe it.
        """

    @staticmethod
    def for_credential(
        credential: Credential,
        password: Optional[str] = None,
        fido2: Optional[Fido2Tool] = None,
        device: Optional[str] = None,
        chooser: Optional[DeviceChooser] = None,
    ) -> "SecretProvider":
        if isinstance(credential, HardwareKeyCredential):
            return HardwareKeySecretProvider(credential, fido2=fido2, device=device, chooser=chooser)
        return PasswordSecretProvider(password or "")


class PasswordSecretProvider(SecretProvider):
    """User-supplied password. Empty means the daemon prompts."""

    def __init__(self, password: str):
        self._password = bytearray(password.encode("utf-8"))

    def get_key_material(self, bottle: BottleContainer) -> Optional[bytearray]:
        if not self._password:
            _secrets_logger.debug(f"secrets.password.prompt_delegated: bottle={bottle.name}")
            return None
        return bytearray(self._password)

    def wipe(self) -> None:
        secure_wipe_buffer(self._password)
        self._password = bytearray()


class HardwareKeySecretProvider(SecretProvider):
    """
    FIDO2 hmac-secret derived from the bottle's enrolled credential.

    Devices are re-enumerated on every call; the persisted device hint is
    only logged. With several authenticators connected the explicit device
    wins, then the chooser callback.
    """

    def __init__(
        self,
        credential: HardwareKeyCredential,
        fido2: Optional[Fido2Tool] = None,
        device: Optional[str] = None,
        chooser: Optional[DeviceChooser] = None,
    ):
        self.credential = credential
        self.fido2 = fido2 or Fido2Tool()
        self.device = device
        self.chooser = chooser

    def select_device(self) -> Fido2Device:
        """
        Raises:
            MissingToolError: libfido2 tools not installed
            HardwareKeyNotFoundError: Nothing connected (or the requested device is gone)
            AmbiguousHardwareKeyError: Several connected and no way to pick one
        """
        self.fido2.check_tools()
        devices = self.fido2.list_devices()
        return choose_device(devices, self.device, self.chooser, hint=self.credential.device_hint)

    def get_key_material(self, bottle: BottleContainer) -> Optional[bytearray]:
        device = self.select_device()
        _secrets_logger.info(f"secrets.hardware_key.derive: bottle={bottle.name}, device={device.path}")
        return self.fido2.get_hmac_secret(
            device.path,
            self.credential.bottle_id,
            self.credential.credential_id,
            self.credential.salt,
        )


def choose_device(
    devices: List[Fido2Device],
    requested: Optional[str] = None,
    chooser: Optional[DeviceChooser] = None,
    hint: str = "",
) -> Fido2Device:
    """Pick one authenticator out of an enumeration (see HardwareKeySecretProvider)."""
    if not devices:
        raise HardwareKeyNotFoundError()

    if requested:
        for device in devices:
            if device.path == requested:
                return device
        raise HardwareKeyNotFoundError(f"{requested} is not connected")

    if len(devices) == 1:
        if hint and devices[0].path != hint:
            _secrets_logger.info(f"secrets.device_hint.mismatch: hint={hint}, using={devices[0].path}")
        return devices[0]

    if chooser is not None:
        chosen = chooser(devices)
        if chosen is not None:
            return chosen

    raise AmbiguousHardwareKeyError(devices)


def _random_b64(size: int) -> str:
    return base64.b64encode(os.urandom(size)).decode("ascii")


def enroll_hardware_key(fido2: Fido2Tool, device: str) -> HardwareKeyCredential:
    """
    Enroll a new bottle on an authenticator (one touch).

    Generates the bottle id, makes the credential, and generates the salt
    locally. Nothing is persisted here.
    """
    bottle_id = _random_b64(CryptoParams.BOTTLE_ID_SIZE)
    credential_id = fido2.make_credential(device, bottle_id)
    salt = _random_b64(CryptoParams.SALT_SIZE)
    _secrets_logger.info(f"secrets.hardware_key.enrolled: device={device}")
    return HardwareKeyCredential(
        bottle_id=bottle_id,
        credential_id=credential_id,
        salt=salt,
        device_hint=device,
    )


def provision_hardware_key(fido2: Fido2Tool, device: str) -> Tuple[HardwareKeyCredential, bytearray]:
    """
    Enroll and derive the first secret for a new bottle (two touches).

    Returns:
        (credential to persist, 32-byte secret the caller must wipe)
    """
    credential = enroll_hardware_key(fido2, device)
    secret = fido2.get_hmac_secret(device, credential.bottle_id, credential.credential_id, credential.salt)
    return credential, secret
