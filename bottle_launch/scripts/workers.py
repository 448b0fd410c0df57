#!/usr/bin/env python3
"""
Background workers for interactive front ends.

Every bottle operation blocks on external tools (polkit prompts, security
key touches), so interactive callers run them in QThread workers. Each
worker emits exactly one finished(success, message_key, message_args)
signal when the operation completes.
"""

import logging
from pathlib import Path
from typing import Optional

from PyQt6.QtCore import QThread, pyqtSignal

from ..core.dependencies import MissingToolError
from ..core.secrets import (
    HardwareKeyNotFoundError,
    SecretAccessError,
    SecretProvider,
    provision_hardware_key,
    secure_wipe_buffer,
)
from .bottle import BottleBusyError, BottleError, BottleManager
from .fido2_cli import Fido2Error, Fido2Tool
from .session import BottleSession
from .udisks_cli import VolumeError, WrongCredentialError

_workers_logger = logging.getLogger("bottle_launch.workers")


# ============================================================
# MOUNT / UNMOUNT WORKERS
# ============================================================


class MountWorker(QThread):
    """Worker thread for mounting a bottle to prevent UI blocking."""

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args

    def __init__(self, session: BottleSession, provider: SecretProvider):
        super().__init__()
        self.session = session
        self.provider = provider

    def run(self):
        """Execute mount operation in background thread."""
        try:
            state = self.session.open(self.provider)
            self.finished.emit(True, "worker_mount_success", {"mount_point": state.mount_point})
        except WrongCredentialError as e:
            self.finished.emit(False, "worker_mount_wrong_credential", {"error": e.diagnostic})
        except HardwareKeyNotFoundError as e:
            self.finished.emit(False, "worker_mount_no_key", {"error": str(e)})
        except (VolumeError, SecretAccessError, Fido2Error, MissingToolError) as e:
            self.finished.emit(False, "worker_mount_failed", {"error": str(e)})
        except Exception as e:
            _workers_logger.exception("workers.mount.unexpected")
            self.finished.emit(False, "worker_mount_error", {"error": str(e)})


class UnmountWorker(QThread):
    """Worker thread for unmounting operations."""

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args

    def __init__(self, session: BottleSession):
        super().__init__()
        self.session = session

    def run(self):
        try:
            self.session.close()
            self.finished.emit(True, "worker_unmount_success", {})
        except VolumeError as e:
            self.finished.emit(False, "worker_unmount_failed", {"error": str(e)})
        except Exception as e:
            _workers_logger.exception("workers.unmount.unexpected")
            self.finished.emit(False, "worker_unmount_error", {"error": str(e)})


# ============================================================
# CREATE / DELETE WORKERS
# ============================================================


class CreatePasswordBottleWorker(QThread):
    """Worker thread for creating a password bottle (polkit prompt may block)."""

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args

    def __init__(self, manager: BottleManager, path: Path, size: int, password: str):
        super().__init__()
        self.manager = manager
        self.path = path
        self.size = size
        self.password = password

    def run(self):
        try:
            bottle = self.manager.create_password_bottle(self.path, self.size, self.password)
            self.finished.emit(True, "worker_create_success", {"path": str(bottle.file_path)})
        except (BottleError, MissingToolError, OSError) as e:
            self.finished.emit(False, "worker_create_failed", {"error": str(e)})
        except Exception as e:
            _workers_logger.exception("workers.create.unexpected")
            self.finished.emit(False, "worker_create_error", {"error": str(e)})
        finally:
            self.password = ""


class CreateHardwareKeyBottleWorker(QThread):
    """
    Worker thread for creating a hardware-key bottle.

    Enrollment and the first derivation each need a touch; progress reports
    when the user must touch the key.
    """

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args
    progress = pyqtSignal(str)  # status message key

    def __init__(self, manager: BottleManager, path: Path, size: int, device: str, fido2: Optional[Fido2Tool] = None):
        super().__init__()
        self.manager = manager
        self.path = path
        self.size = size
        self.device = device
        self.fido2 = fido2 or Fido2Tool(manager.runner)

    def run(self):
        secret = None
        try:
            self.fido2.check_tools()
            self.progress.emit("worker_create_touch_key")
            credential, secret = provision_hardware_key(self.fido2, self.device)
            bottle = self.manager.create_hardware_key_bottle(self.path, self.size, credential, secret)
            self.finished.emit(True, "worker_create_success", {"path": str(bottle.file_path)})
        except (BottleError, Fido2Error, SecretAccessError, MissingToolError, OSError) as e:
            self.finished.emit(False, "worker_create_failed", {"error": str(e)})
        except Exception as e:
            _workers_logger.exception("workers.create_hardware_key.unexpected")
            self.finished.emit(False, "worker_create_error", {"error": str(e)})
        finally:
            secure_wipe_buffer(secret)


class DeleteBottleWorker(QThread):
    """Worker thread for deleting a bottle."""

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args

    def __init__(self, manager: BottleManager, path: Path):
        super().__init__()
        self.manager = manager
        self.path = path

    def run(self):
        try:
            self.manager.delete_bottle(self.path)
            self.finished.emit(True, "worker_delete_success", {"path": str(self.path)})
        except BottleBusyError as e:
            self.finished.emit(False, "worker_delete_busy", {"error": str(e)})
        except (BottleError, OSError) as e:
            self.finished.emit(False, "worker_delete_failed", {"error": str(e)})
        except Exception as e:
            _workers_logger.exception("workers.delete.unexpected")
            self.finished.emit(False, "worker_delete_error", {"error": str(e)})


# ============================================================
# DEVICE ENUMERATION WORKER
# ============================================================


class DeviceEnumerationWorker(QThread):
    """Lists connected FIDO2 authenticators."""

    finished = pyqtSignal(bool, str, dict)  # success, message_key, message_args

    def __init__(self, fido2: Optional[Fido2Tool] = None):
        super().__init__()
        self.fido2 = fido2 or Fido2Tool()

    def run(self):
        try:
            self.fido2.check_tools()
            devices = self.fido2.list_devices()
        except (Fido2Error, MissingToolError) as e:
            self.finished.emit(False, "worker_devices_failed", {"error": str(e)})
            return
        if not devices:
            self.finished.emit(False, "worker_devices_none", {})
            return
        self.finished.emit(True, "worker_devices_found", {"devices": [d.path for d in devices]})
