# core/config.py - Per-bottle configuration loading, saving, and validation
"""
SINGLE SOURCE OF TRUTH for bottle configuration handling.

This module provides:
- Atomic config file writes (temp file + fsync + rename + directory fsync)
- Tolerant KEY=VALUE parsing (unknown or broken lines are skipped)
- Credential detection with the all-or-nothing hardware-key rule

File format (one pair per line):
    PREF_NETWORK=1
    PREF_LAST_APP="org.mozilla.firefox"
    FIDO2_BOTTLE_ID="..."

Booleans are written as 1/0, strings are double-quoted. A missing file is a
valid, unconfigured bottle.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .constants import ConfigKeys, FileNames
from .modes import Credential, HardwareKeyCredential, PasswordCredential, PermissionSet

# Logger for config operations
_config_logger = logging.getLogger("bottle_launch.config")


class ConfigCorruptedError(Exception):
    """Config content cannot determine the bottle's credential backend."""

    def __init__(self, path: Optional[Path], present: Dict[str, bool]):
        self.path = path
        self.present = present
        flags = ", ".join(f"{key.lower()}={value}" for key, value in present.items())
        location = f" ({path})" if path else ""
        super().__init__(f"config corrupted{location}: FIDO2 data incomplete ({flags})")


# =============================================================================
# Config model
# =============================================================================


@dataclass
class BottleConfig:
    """
    Everything persisted for one bottle.

    The hardware-key fields are kept raw so that a partially written or
    hand-edited file can be detected as corrupted rather than coerced.
    """

    permissions: PermissionSet = field(default_factory=PermissionSet)
    fido2_bottle_id: str = ""
    fido2_credential_id: str = ""
    fido2_salt: str = ""
    fido2_device_hint: str = ""
    source_path: Optional[Path] = field(default=None, compare=False, repr=False)

    @classmethod
    def for_credential(cls, credential: Credential, permissions: Optional[PermissionSet] = None) -> "BottleConfig":
        config = cls(permissions=permissions.copy() if permissions else PermissionSet())
        config.set_credential(credential)
        return config

    def set_credential(self, credential: Credential) -> None:
        if isinstance(credential, HardwareKeyCredential):
            self.fido2_bottle_id = credential.bottle_id
            self.fido2_credential_id = credential.credential_id
            self.fido2_salt = credential.salt
            self.fido2_device_hint = credential.device_hint
        else:
            self.fido2_bottle_id = ""
            self.fido2_credential_id = ""
            self.fido2_salt = ""
            self.fido2_device_hint = ""

    @property
    def credential(self) -> Credential:
        """Credential backend; raises ConfigCorruptedError on partial FIDO2 data."""
        return detect_credential(self)


def detect_credential(config: BottleConfig) -> Credential:
    """
    Classify a config as password or hardware-key backed.

    All three identifying fields present -> HardwareKeyCredential.
    None present -> PasswordCredential. Anything else is corruption.
    The device hint never participates in the decision.

    Raises:
        ConfigCorruptedError: If one or two identifying fields are set
    """
    present = {key: bool(getattr(config, _FIDO2_KEYS[key])) for key in ConfigKeys.FIDO2_IDENTITY_KEYS}

    if all(present.values()):
        return HardwareKeyCredential(
            bottle_id=config.fido2_bottle_id,
            credential_id=config.fido2_credential_id,
            salt=config.fido2_salt,
            device_hint=config.fido2_device_hint,
        )

    if not any(present.values()):
        return PasswordCredential()

    _config_logger.error(f"config.credential.corrupted: path={config.source_path}, present={present}")
    raise ConfigCorruptedError(config.source_path, present)


# =============================================================================
# Serialization
# =============================================================================

_STRING_KEYS = {
    ConfigKeys.PREF_LAST_APP: "last_app",
}

_FIDO2_KEYS = {
    ConfigKeys.FIDO2_BOTTLE_ID: "fido2_bottle_id",
    ConfigKeys.FIDO2_CREDENTIAL_ID: "fido2_credential_id",
    ConfigKeys.FIDO2_SALT: "fido2_salt",
    ConfigKeys.FIDO2_DEVICE_HINT: "fido2_device_hint",
}


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        try:
            decoded = json.loads(raw)
        except ValueError:
            return raw.strip('"')
        if isinstance(decoded, str):
            return decoded
    return raw.strip('"')


def _parse_bool(raw: str) -> bool:
    return raw == "1" or raw.lower() == "true"


def serialize_config(config: BottleConfig) -> str:
    """Render a config as KEY=VALUE lines (trailing newline included)."""
    perms = config.permissions
    lines: List[str] = []

    for key, attr in ConfigKeys.PERMISSION_KEYS:
        lines.append(f"{key}={'1' if getattr(perms, attr) else '0'}")
    lines.append(f"{ConfigKeys.PREF_LAST_APP}={_quote(perms.last_app)}")

    # Hardware-key fields only when set
    for key, attr in _FIDO2_KEYS.items():
        value = getattr(config, attr)
        if value:
            lines.append(f"{key}={_quote(value)}")

    return "\n".join(lines) + "\n"


def parse_config(text: str, source_path: Optional[Path] = None) -> BottleConfig:
    """
    Parse KEY=VALUE text into a BottleConfig.

    Blank lines, '#' comments, lines without '=' and unknown keys are
    ignored; fields not mentioned keep their defaults.
    """
    config = BottleConfig(source_path=source_path)
    bool_attrs = dict(ConfigKeys.PERMISSION_KEYS)

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()

        if key in bool_attrs:
            setattr(config.permissions, bool_attrs[key], _parse_bool(value))
        elif key in _STRING_KEYS:
            setattr(config.permissions, _STRING_KEYS[key], _unquote(value))
        elif key in _FIDO2_KEYS:
            setattr(config, _FIDO2_KEYS[key], _unquote(value))
        else:
            _config_logger.debug(f"config.parse.unknown_key: key={key}")

    return config


# =============================================================================
# Atomic Config Write
# =============================================================================


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss."""
    dir_fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def write_config_atomic(config_path: Path, content: str) -> None:
    """
    Write config text to file atomically.

    Uses write-to-temp + fsync + rename, then fsyncs the parent directory.
    A reader or a crash never observes a partially written file.

    Args:
        config_path: Path to the config file
        content: Full file content

    Raises:
        OSError: If write fails
    """
    config_path = Path(config_path)

    # Create parent directory if needed
    config_path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = None

    try:
        # Temp file in the same directory (same filesystem for rename)
        temp_fd, temp_path_str = tempfile.mkstemp(
            suffix=FileNames.CONFIG_TEMP_SUFFIX,
            prefix=FileNames.CONFIG_TEMP_PREFIX,
            dir=str(config_path.parent),
        )
        temp_path = Path(temp_path_str)

        with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())  # Force write to disk

        os.replace(temp_path, config_path)
        temp_path = None  # Prevent cleanup since rename succeeded

        _fsync_directory(config_path.parent)

        _config_logger.info(f"Config written atomically to {config_path}")

    finally:
        # Clean up temp file if something went wrong
        if temp_path is not None and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as e:
                _config_logger.warning(f"config.write.cleanup_failed: path={temp_path}, error={e}")


def save_bottle_config(config_path: Path, config: BottleConfig) -> None:
    """Persist a bottle config durably (see write_config_atomic)."""
    write_config_atomic(Path(config_path), serialize_config(config))


def load_bottle_config(config_path: Path) -> BottleConfig:
    """
    Load a bottle config.

    Args:
        config_path: Path to <identity_hash>.conf

    Returns:
        Parsed config, or defaults (password mode, default permissions)
        when the file does not exist
    """
    config_path = Path(config_path)

    try:
        text = config_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        _config_logger.debug(f"config.load.missing: path={config_path}")
        return BottleConfig(source_path=config_path)

    return parse_config(text, source_path=config_path)
