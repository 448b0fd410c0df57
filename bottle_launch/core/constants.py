# core/constants.py - SINGLE SOURCE OF TRUTH for all shared string literals
"""
All shared string constants MUST be defined here.
No other module may define these values.

Categories:
- ConfigKeys: KEY=VALUE config file keys
- FileNames: bottle/config/log file naming
- Identity: mapper name and identity hash parameters
- CryptoParams: key material sizes and LUKS parameters
- Fido2Params: relying party, user name and tool output layout
- Tools: external executable names
- MountOptions: hardened mount flags
- ExitCodes: process exit codes
"""

import signal


# =============================================================================
# Config file keys
# =============================================================================


class ConfigKeys:
    """Keys of the per-bottle KEY=VALUE config file."""

    PREF_NETWORK = "PREF_NETWORK"
    PREF_AUDIO = "PREF_AUDIO"
    PREF_GPU = "PREF_GPU"
    PREF_WAYLAND = "PREF_WAYLAND"
    PREF_X11 = "PREF_X11"
    PREF_CAMERA = "PREF_CAMERA"
    PREF_PORTALS = "PREF_PORTALS"
    PREF_LAST_APP = "PREF_LAST_APP"

    FIDO2_BOTTLE_ID = "FIDO2_BOTTLE_ID"
    FIDO2_CREDENTIAL_ID = "FIDO2_CREDENTIAL_ID"
    FIDO2_SALT = "FIDO2_SALT"
    FIDO2_DEVICE_HINT = "FIDO2_DEVICE_HINT"

    # Boolean preference keys in file order, mapped to PermissionSet attributes
    PERMISSION_KEYS = (
        (PREF_NETWORK, "network"),
        (PREF_AUDIO, "audio"),
        (PREF_GPU, "gpu"),
        (PREF_WAYLAND, "wayland"),
        (PREF_X11, "x11"),
        (PREF_CAMERA, "camera"),
        (PREF_PORTALS, "portals"),
    )

    # The three identifying hardware-key fields (all present or all absent)
    FIDO2_IDENTITY_KEYS = (FIDO2_BOTTLE_ID, FIDO2_CREDENTIAL_ID, FIDO2_SALT)


# =============================================================================
# File names
# =============================================================================


class FileNames:
    """File name suffixes and prefixes."""

    BOTTLE_SUFFIX = ".bottle"
    CONFIG_SUFFIX = ".conf"
    CONFIG_TEMP_PREFIX = ".bottle-config-"
    CONFIG_TEMP_SUFFIX = ".tmp"
    LOG_FILE = "bottle-launch.log"

    # Temporary key file prefixes (RAM-backed temp dir when available)
    KEYFILE_UNLOCK_PREFIX = "bottle-unlock-"
    KEYFILE_FORMAT_PREFIX = "bottle-luks-key-"


# =============================================================================
# Bottle identity
# =============================================================================


class Identity:
    """Parameters for deriving stable identifiers from a bottle path."""

    MAPPER_PREFIX = "bottle-"
    HASH_LENGTH = 12  # hex characters of SHA-256
    FS_LABEL_MAX_LENGTH = 16  # ext4 label limit


# =============================================================================
# Cryptographic parameters
# =============================================================================


class CryptoParams:
    """Key material sizes. No cryptography is implemented here."""

    KEY_MATERIAL_LENGTH = 32  # hmac-secret output, exact
    BOTTLE_ID_SIZE = 32
    SALT_SIZE = 32
    LUKS_TYPE = "luks2"


class Fido2Params:
    """libfido2 tool invocation parameters and output layout."""

    RP_ID = "bottle-launch"
    USER_NAME = "bottle-user"
    ALGORITHM = "es256"

    # fido2-cred -M output: credential id on the fifth line
    CRED_OUTPUT_CREDENTIAL_ID_LINE = 4
    # fido2-cred / fido2-assert must print at least this many lines
    MIN_OUTPUT_LINES = 5


# =============================================================================
# External tools
# =============================================================================


class Tools:
    """Executable names of external collaborators."""

    UDISKSCTL = "udisksctl"
    LOSETUP = "losetup"
    LSBLK = "lsblk"
    CRYPTSETUP = "cryptsetup"
    MKFS_EXT4 = "mkfs.ext4"
    SYNC = "sync"
    PKEXEC = "pkexec"
    SUDO = "sudo"
    FLATPAK = "flatpak"

    FIDO2_TOKEN = "fido2-token"
    FIDO2_CRED = "fido2-cred"
    FIDO2_ASSERT = "fido2-assert"

    FIDO2_TOOLS = (FIDO2_TOKEN, FIDO2_CRED, FIDO2_ASSERT)
    PRIVILEGE_TOOLS = (PKEXEC, SUDO)


class MountOptions:
    """Mount options for cleartext devices."""

    HARDENED = "nodev,nosuid,noexec"


# =============================================================================
# Exit codes
# =============================================================================


class ExitCodes:
    """Process exit codes (POSIX 128+N convention for signals)."""

    SUCCESS = 0
    FAILURE = 1
    SIGNAL_BASE = 128
    INTERRUPTED = SIGNAL_BASE + int(signal.SIGINT)  # 130

    @classmethod
    def for_signal(cls, signum: int) -> int:
        """Exit code for a handled termination signal."""
        return cls.SIGNAL_BASE + int(signum)
