# core/modes.py - SINGLE SOURCE OF TRUTH for enums and state definitions
"""
All mode enums, state definitions, and credential shapes MUST be defined here.
No other module may define these values.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .constants import FileNames, Identity
from .paths import PathLike, Paths


# =============================================================================
# Mount stages
# =============================================================================


class MountStage(str, Enum):
    """
    Position of a bottle in the attach -> unlock -> mount chain.

    Derived from a MountState, never stored.
    """

    UNATTACHED = "unattached"  # backing file not loop-mapped
    ATTACHED = "attached"  # loop device present, still encrypted
    UNLOCKED = "unlocked"  # cleartext device present, not mounted
    MOUNTED = "mounted"  # cleartext device mounted (terminal success)

    @property
    def display_name(self) -> str:
        return {
            MountStage.UNATTACHED: "locked",
            MountStage.ATTACHED: "attached (locked)",
            MountStage.UNLOCKED: "unlocked but not mounted",
            MountStage.MOUNTED: "mounted",
        }[self]


@dataclass(frozen=True)
class MountState:
    """
    Kernel-visible status of one bottle.

    Fields form a strict dependency chain: cleartext_device requires
    loop_device, mount_point requires cleartext_device. Instances reflect
    udisks/kernel truth at probe time and must be re-probed, never cached
    across process restarts.
    """

    bottle_path: Optional[str] = None
    loop_device: Optional[str] = None
    cleartext_device: Optional[str] = None
    mount_point: Optional[str] = None

    def __post_init__(self):
        if self.cleartext_device and not self.loop_device:
            raise ValueError("cleartext_device requires loop_device")
        if self.mount_point and not self.cleartext_device:
            raise ValueError("mount_point requires cleartext_device")

    @property
    def stage(self) -> MountStage:
        if not self.loop_device:
            return MountStage.UNATTACHED
        if not self.cleartext_device:
            return MountStage.ATTACHED
        if not self.mount_point:
            return MountStage.UNLOCKED
        return MountStage.MOUNTED

    @property
    def is_empty(self) -> bool:
        return not self.loop_device

    def advance(self, **changes) -> "MountState":
        """Copy with later chain fields filled in (validated)."""
        return replace(self, **changes)


# =============================================================================
# Bottle identity
# =============================================================================


@dataclass(frozen=True)
class BottleContainer:
    """
    Identity of one encrypted volume.

    file_path is canonical; mapper name and config path derive from the
    hash of that canonical path, never from the display name.
    """

    file_path: Path
    config_dir: Optional[Path] = None

    @classmethod
    def from_path(cls, path: PathLike, config_dir: Optional[Path] = None) -> "BottleContainer":
        return cls(file_path=Paths.canonical(path), config_dir=config_dir)

    @property
    def name(self) -> str:
        return self.file_path.name

    @property
    def identity_hash(self) -> str:
        return Paths.identity_hash(self.file_path)

    @property
    def mapper_name(self) -> str:
        return Paths.mapper_name(self.file_path)

    @property
    def config_path(self) -> Path:
        return Paths.bottle_config_file(self.file_path, self.config_dir)

    @property
    def filesystem_label(self) -> str:
        """File name without the .bottle suffix, truncated to the ext4 label limit."""
        label = self.name
        if label.endswith(FileNames.BOTTLE_SUFFIX):
            label = label[: -len(FileNames.BOTTLE_SUFFIX)]
        return label[: Identity.FS_LABEL_MAX_LENGTH]


# =============================================================================
# Credentials
# =============================================================================


class CredentialKind(str, Enum):
    """Unlock backend of a bottle."""

    PASSWORD = "password"
    HARDWARE_KEY = "hardware_key"

    @property
    def display_name(self) -> str:
        return "Password" if self is CredentialKind.PASSWORD else "YubiKey (FIDO2)"


@dataclass(frozen=True)
class PasswordCredential:
    """Password bottle: nothing persisted, the password is supplied at every unlock."""

    kind = CredentialKind.PASSWORD


@dataclass(frozen=True)
class HardwareKeyCredential:
    """
    FIDO2 hmac-secret bottle.

    bottle_id (base64 of 32 random bytes) doubles as the challenge for every
    credential operation. device_hint is advisory only: devices are
    re-enumerated on each use.
    """

    bottle_id: str
    credential_id: str
    salt: str
    device_hint: str = ""

    kind = CredentialKind.HARDWARE_KEY


Credential = Union[PasswordCredential, HardwareKeyCredential]


# =============================================================================
# Sandbox permissions
# =============================================================================


@dataclass(frozen=True)
class PermissionDef:
    """One toggleable sandbox capability."""

    name: str  # PermissionSet attribute
    key: str  # shortcut key
    label: str  # display label


PERMISSION_DEFS = (
    PermissionDef(name="network", key="n", label="Network"),
    PermissionDef(name="audio", key="a", label="Audio"),
    PermissionDef(name="gpu", key="g", label="GPU"),
    PermissionDef(name="wayland", key="w", label="Wayland"),
    PermissionDef(name="x11", key="x", label="X11"),
    PermissionDef(name="camera", key="c", label="Camera"),
    PermissionDef(name="portals", key="p", label="Portals"),
)


@dataclass
class PermissionSet:
    """Sandbox capability flags plus the last launched app id."""

    network: bool = True
    audio: bool = True
    gpu: bool = True
    wayland: bool = True
    x11: bool = True
    camera: bool = False
    portals: bool = False
    last_app: str = ""

    def set_flag(self, name: str, enabled: bool) -> None:
        """Set a flag by attribute name or label (case-insensitive)."""
        for definition in PERMISSION_DEFS:
            if name.lower() in (definition.name, definition.label.lower()):
                setattr(self, definition.name, enabled)
                return
        raise ValueError(f"Unknown permission: {name}")

    def enabled_labels(self) -> List[str]:
        return [d.label for d in PERMISSION_DEFS if getattr(self, d.name)]

    def summary(self) -> str:
        return " ".join(self.enabled_labels())

    def copy(self) -> "PermissionSet":
        return PermissionSet(**{f.name: getattr(self, f.name) for f in fields(self)})
