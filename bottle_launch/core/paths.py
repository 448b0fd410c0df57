# core/paths.py - SINGLE SOURCE OF TRUTH for all filesystem paths
"""
All filesystem paths MUST be derived here as Path objects.

RULES:
- All paths are Path objects internally
- Convert to str() ONLY at I/O boundaries (subprocess, config file, print)
- Bottle paths are canonicalized before any hashing
"""

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from .constants import FileNames, Identity

PathLike = Union[str, os.PathLike]


class Paths:
    """
    Centralized path definitions.

    Usage:
        from bottle_launch.core.paths import Paths
        config_path = Paths.bottle_config_file("/home/me/.local/share/bottles/web.bottle")
    """

    APP_DIR_NAME = "bottle-launch"
    LOGS_SUBDIR = "logs"

    # Environment overrides
    BOTTLE_DIR_ENV = "BOTTLE_DIR"
    XDG_CONFIG_HOME_ENV = "XDG_CONFIG_HOME"
    XDG_STATE_HOME_ENV = "XDG_STATE_HOME"

    # RAM-backed temporary directory for key files
    LINUX_RAM_TEMP = "/dev/shm"

    # Kernel device prefix
    DEV_PREFIX = "/dev/"

    # ==========================================================================
    # Base directories
    # ==========================================================================

    @classmethod
    def home(cls) -> Path:
        try:
            return Path.home()
        except RuntimeError:
            return Path(tempfile.gettempdir())

    @classmethod
    def bottle_dir(cls) -> Path:
        """Directory holding *.bottle files ($BOTTLE_DIR or ~/.local/share/bottles)."""
        override = os.environ.get(cls.BOTTLE_DIR_ENV)
        if override:
            return Path(override).expanduser()
        return cls.home() / ".local" / "share" / "bottles"

    @classmethod
    def config_dir(cls) -> Path:
        """Per-bottle config directory, following XDG."""
        xdg = os.environ.get(cls.XDG_CONFIG_HOME_ENV)
        base = Path(xdg) if xdg else cls.home() / ".config"
        return base / cls.APP_DIR_NAME

    @classmethod
    def state_dir(cls) -> Path:
        xdg = os.environ.get(cls.XDG_STATE_HOME_ENV)
        base = Path(xdg) if xdg else cls.home() / ".local" / "state"
        return base / cls.APP_DIR_NAME

    @classmethod
    def logs_dir(cls) -> Path:
        return cls.state_dir() / cls.LOGS_SUBDIR

    @classmethod
    def log_file(cls) -> Path:
        return cls.logs_dir() / FileNames.LOG_FILE

    @classmethod
    def ram_temp_dir(cls) -> Path:
        """RAM-backed temp directory if writable, else the system temp dir."""
        ram_dir = Path(cls.LINUX_RAM_TEMP)
        if ram_dir.is_dir() and os.access(ram_dir, os.W_OK):
            return ram_dir
        return Path(tempfile.gettempdir())

    # ==========================================================================
    # Bottle identity
    # ==========================================================================

    @classmethod
    def canonical(cls, path: PathLike) -> Path:
        """
        Canonical absolute form of a bottle path.

        Relative spellings, '..' segments and symlinks collapse to one value;
        the file itself need not exist yet.
        """
        return Path(os.path.realpath(os.path.expanduser(os.fspath(path))))

    @classmethod
    def identity_hash(cls, path: PathLike) -> str:
        """First 12 hex characters of SHA-256 over the canonical path."""
        canonical = str(cls.canonical(path))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return digest[: Identity.HASH_LENGTH]

    @classmethod
    def mapper_name(cls, path: PathLike) -> str:
        return Identity.MAPPER_PREFIX + cls.identity_hash(path)

    @classmethod
    def mapper_device(cls, path: PathLike) -> Path:
        return Path(cls.DEV_PREFIX) / "mapper" / cls.mapper_name(path)

    @classmethod
    def bottle_config_file(cls, path: PathLike, config_dir: Optional[Path] = None) -> Path:
        base = config_dir if config_dir is not None else cls.config_dir()
        return base / (cls.identity_hash(path) + FileNames.CONFIG_SUFFIX)
