#!/usr/bin/env python3
"""
Pytest configuration and shared fixtures for bottle-launch tests.

Provides two substitutes for the real tool layer:

- FakeRunner: records every call and answers from scripted responses
  (exact stdout/stderr/returncode per command prefix)
- SimulatedSystem: a small model of the kernel loop/dm-crypt/mount state
  plus udisksctl, util-linux, cryptsetup and libfido2 behavior, for
  end-to-end scenarios through the real orchestrators

Neither ever runs a subprocess.
"""

import base64
import hashlib
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from bottle_launch.scripts.tool_runner import ToolResult, ToolRunner

# =============================================================================
# Captured udisksctl samples
# =============================================================================

UDISKS_WRONG_PASSWORD = (
    "Error unlocking /dev/loop0: GDBus.Error:org.freedesktop.UDisks2.Error.Failed: "
    "Error unlocking /dev/loop0: Failed to activate device: Operation not permitted\n"
)
UDISKS_NO_KEY = (
    "Error unlocking /dev/loop0: GDBus.Error:org.freedesktop.UDisks2.Error.Failed: "
    "Error unlocking /dev/loop0: No key available with this passphrase.\n"
)
UDISKS_STALE_OBJECT = (
    "Error mounting /dev/dm-0: GDBus.Error:org.freedesktop.UDisks2.Error.Failed: "
    "Error looking up object for device /dev/dm-0\n"
)
UDISKS_NOT_AUTHORIZED = (
    "Error unlocking /dev/loop0: GDBus.Error:org.freedesktop.UDisks2.Error.NotAuthorizedDismissed: "
    "Not authorized to perform operation\n"
)
UDISKS_TARGET_BUSY = (
    "Error unmounting /dev/dm-0: GDBus.Error:org.freedesktop.UDisks2.Error.DeviceBusy: "
    "Error unmounting /dev/dm-0: target is busy\n"
)


# =============================================================================
# Scripted runner
# =============================================================================


class FakeProcess:
    """Stand-in for subprocess.Popen of a sandboxed app."""

    def __init__(self, args, returncode: int = 0, exits_on_terminate: bool = True, wait_slices: int = 0):
        self.args = args
        self.timed_waits = 0
        self._wait_slices = wait_slices
        self.pid = 4242
        self.returncode: Optional[int] = None
        self.running = True
        self.terminated = False
        self.killed = False
        self._final_returncode = returncode
        self._exits_on_terminate = exits_on_terminate

    def poll(self):
        return None if self.running else self.returncode

    def wait(self, timeout=None):
        if self.running:
            if timeout is not None:
                self.timed_waits += 1
                # Stubborn children only stop on kill(); others exit after wait_slices timed waits
                if not self._exits_on_terminate or self.timed_waits <= self._wait_slices:
                    raise subprocess.TimeoutExpired(self.args, timeout)
            self.running = False
            self.returncode = self._final_returncode
        return self.returncode

    def terminate(self):
        self.terminated = True
        if self._exits_on_terminate:
            self.running = False
            self.returncode = -15

    def kill(self):
        self.killed = True
        self.running = False
        self.returncode = -9


class FakeRunner(ToolRunner):
    """
    Scripted ToolRunner.

    Responses are registered per command prefix with on(); several responses
    for the same prefix are consumed in order and the last one repeats.
    Unscripted commands succeed with empty output.
    """

    def __init__(self, missing: Sequence[str] = ()):
        self.calls: List[Tuple[List[str], Optional[bytes]]] = []
        self.spawned: List[FakeProcess] = []
        self.missing = set(missing)
        self.spawn_returncode = 0
        self._responses: List[Tuple[Tuple[str, ...], List[ToolResult]]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> "FakeRunner":
        result = ToolResult(args=list(prefix), returncode=returncode, stdout=stdout, stderr=stderr)
        for existing_prefix, queue in self._responses:
            if existing_prefix == prefix:
                queue.append(result)
                return self
        self._responses.append((prefix, [result]))
        return self

    def which(self, name: str) -> Optional[str]:
        if name in self.missing:
            return None
        return f"/usr/bin/{name}"

    def _execute(self, args: List[str], input_data: Optional[bytes]) -> ToolResult:
        self.calls.append((list(args), input_data))
        best = None
        for prefix, queue in self._responses:
            if tuple(args[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, queue)
        if best is None:
            return ToolResult(args=args, returncode=0)
        queue = best[1]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        return ToolResult(args=args, returncode=result.returncode, stdout=result.stdout, stderr=result.stderr)

    def spawn(self, args: Sequence[str]):
        process = FakeProcess([str(a) for a in args], returncode=self.spawn_returncode)
        self.calls.append((list(process.args), None))
        self.spawned.append(process)
        return process

    def commands(self) -> List[List[str]]:
        return [args for args, _ in self.calls]

    def commands_starting(self, *prefix: str) -> List[List[str]]:
        return [args for args in self.commands() if tuple(args[: len(prefix)]) == prefix]


# =============================================================================
# Simulated kernel / udisks / cryptsetup / libfido2
# =============================================================================


def _ok(stdout: str = "") -> ToolResult:
    return ToolResult(args=[], returncode=0, stdout=stdout)


def _fail(stderr: str) -> ToolResult:
    return ToolResult(args=[], returncode=1, stderr=stderr)


def _option(args: List[str], name: str) -> Optional[str]:
    if name in args:
        return args[args.index(name) + 1]
    return None


class SimulatedSystem(FakeRunner):
    """
    Stateful model of everything a bottle touches.

    Attributes:
        keys: bottle file -> LUKS key bytes (set by luksFormat)
        loops: loop device -> bottle file
        crypt: loop device -> cleartext device
        mounts: cleartext device -> mount point
    """

    def __init__(self, mount_base: Path, missing: Sequence[str] = ()):
        super().__init__(missing=missing)
        self.mount_base = Path(mount_base)
        self.keys: Dict[str, bytes] = {}
        self.loops: Dict[str, str] = {}
        self.crypt: Dict[str, str] = {}
        self.mounts: Dict[str, str] = {}
        self.mapper: Dict[str, str] = {}
        self.daemon_prompt_key: Optional[bytes] = None
        self.stale_mounts = 0
        self.lock_failures = 0
        self.unmount_busy = 0
        self.fido2_devices: List[str] = ["/dev/hidraw3"]
        self.fido2_rejects: set = set()
        self._next_loop = 0
        self._next_dm = 0

    # -- helpers ---------------------------------------------------------------

    def _new_loop(self, file_path: str) -> str:
        loop = f"/dev/loop{self._next_loop}"
        self._next_loop += 1
        self.loops[loop] = file_path
        return loop

    def _new_dm(self, loop: str) -> str:
        dm = f"/dev/dm-{self._next_dm}"
        self._next_dm += 1
        self.crypt[loop] = dm
        return dm

    def loop_for(self, file_path) -> Optional[str]:
        for loop, path in self.loops.items():
            if path == str(file_path):
                return loop
        return None

    @staticmethod
    def _read_key(args: List[str]) -> Optional[bytes]:
        key_file = _option(args, "--key-file")
        if key_file is None:
            return None
        return Path(key_file).read_bytes()

    @staticmethod
    def hmac_secret(device: str, credential_id: str, salt: str) -> bytes:
        return hashlib.sha256(f"{device}|{credential_id}|{salt}".encode()).digest()

    # -- dispatch --------------------------------------------------------------

    def _execute(self, args: List[str], input_data: Optional[bytes]) -> ToolResult:
        self.calls.append((list(args), input_data))
        if args and args[0] in ("pkexec", "sudo"):
            args = args[1:]
        tool = args[0]
        handler = {
            "losetup": self._losetup,
            "lsblk": self._lsblk,
            "udisksctl": self._udisksctl,
            "sync": lambda a, i: _ok(),
            "cryptsetup": self._cryptsetup,
            "mkfs.ext4": lambda a, i: _ok(),
            "fido2-token": self._fido2_token,
            "fido2-cred": self._fido2_cred,
            "fido2-assert": self._fido2_assert,
            "flatpak": lambda a, i: _ok("org.mozilla.firefox\tFirefox\n"),
        }.get(tool)
        if handler is None:
            return _fail(f"{tool}: not simulated")
        result = handler(args, input_data)
        return ToolResult(args=args, returncode=result.returncode, stdout=result.stdout, stderr=result.stderr)

    def _losetup(self, args, input_data) -> ToolResult:
        if args[1] == "-j":
            loop = self.loop_for(args[2])
            return _ok(f"{loop}: [2049]:1234 ({args[2]})\n" if loop else "")
        if args[1] == "--find":
            return _ok(self._new_loop(args[-1]) + "\n")
        if args[1] == "-d":
            self.loops.pop(args[2], None)
            return _ok()
        return _fail("losetup: unsupported")

    def _lsblk(self, args, input_data) -> ToolResult:
        device = args[-1]
        if args[2] == "KNAME,TYPE":
            if device not in self.loops:
                return _fail(f"lsblk: {device}: not a block device")
            lines = [f"{device} loop"]
            if device in self.crypt:
                lines.append(f"{self.crypt[device]} crypt")
            return _ok("\n".join(lines) + "\n")
        return _ok(self.mounts.get(device, "") + "\n")

    def _udisksctl(self, args, input_data) -> ToolResult:
        command = args[1]
        if command == "loop-setup":
            file_path = _option(args, "-f")
            return _ok(f"Mapped file {file_path} as {self._new_loop(file_path)}.\n")

        if command == "unlock":
            loop = _option(args, "-b")
            if loop in self.crypt:
                return _fail(f"Error unlocking {loop}: Device {loop} is already unlocked\n")
            key = self._read_key(args)
            if key is None:
                key = self.daemon_prompt_key
            if key != self.keys.get(self.loops[loop]):
                return _fail(UDISKS_WRONG_PASSWORD.replace("/dev/loop0", loop))
            return _ok(f"Unlocked {loop} as {self._new_dm(loop)}.\n")

        if command == "mount":
            dm = _option(args, "-b")
            if self.stale_mounts > 0:
                self.stale_mounts -= 1
                return _fail(UDISKS_STALE_OBJECT.replace("/dev/dm-0", dm))
            loop = next(lp for lp, d in self.crypt.items() if d == dm)
            label = Path(self.loops[loop]).stem
            mount_point = self.mount_base / label
            mount_point.mkdir(parents=True, exist_ok=True)
            self.mounts[dm] = str(mount_point)
            return _ok(f"Mounted {dm} at {mount_point}.\n")

        if command == "unmount":
            dm = _option(args, "-b")
            if self.unmount_busy > 0 and "--force" not in args:
                self.unmount_busy -= 1
                return _fail(UDISKS_TARGET_BUSY.replace("/dev/dm-0", dm))
            self.mounts.pop(dm, None)
            return _ok(f"Unmounted {dm}.\n")

        if command == "lock":
            loop = _option(args, "-b")
            if self.lock_failures > 0:
                self.lock_failures -= 1
                return _fail(f"Error locking {loop}: Device is busy\n")
            self.crypt.pop(loop, None)
            return _ok(f"Locked {loop}.\n")

        if command == "loop-delete":
            self.loops.pop(_option(args, "-b"), None)
            return _ok()

        return _fail(f"udisksctl: unknown command {command}")

    def _cryptsetup(self, args, input_data) -> ToolResult:
        command = args[1]
        if command == "luksFormat":
            self.keys[args[-1]] = self._read_key(args)
            return _ok()
        if command == "open":
            loop, name = args[-2], args[-1]
            if self._read_key(args) != self.keys.get(self.loops.get(loop)):
                return _fail("No key available with this passphrase.\n")
            self.mapper[name] = self._new_dm(loop)
            return _ok()
        if command == "close":
            dm = self.mapper.pop(args[2], None)
            for loop, device in list(self.crypt.items()):
                if device == dm:
                    del self.crypt[loop]
            return _ok()
        return _fail("cryptsetup: unsupported")

    def _fido2_token(self, args, input_data) -> ToolResult:
        lines = [f"{dev}: vendor=0x1050, product=0x0407 (Yubico YubiKey OTP+FIDO+CCID)" for dev in self.fido2_devices]
        return _ok("\n".join(lines) + ("\n" if lines else ""))

    def _fido2_cred(self, args, input_data) -> ToolResult:
        bottle_id = input_data.decode().splitlines()[0]
        credential_id = base64.b64encode(hashlib.sha256(("cred" + bottle_id).encode()).digest()).decode()
        return _ok(f"{bottle_id}\nbottle-launch\nfmt\nauthdata\n{credential_id}\nsig\nx5c\n")

    def _fido2_assert(self, args, input_data) -> ToolResult:
        device = _option(args, "-h")
        if device in self.fido2_rejects:
            return _fail("fido2-assert: fido_dev_get_assert: FIDO_ERR_NO_CREDENTIALS\n")
        bottle_id, rp_id, credential_id, salt = input_data.decode().splitlines()[:4]
        secret = base64.b64encode(self.hmac_secret(device, credential_id, salt)).decode()
        return _ok(f"{bottle_id}\n{rp_id}\nauthdata\nsig\n{secret}\n")


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def system(tmp_path):
    return SimulatedSystem(mount_base=tmp_path / "media")


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Point bottle, config and state directories into tmp_path."""
    bottle_dir = tmp_path / "bottles"
    monkeypatch.setenv("BOTTLE_DIR", str(bottle_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    return tmp_path


@pytest.fixture
def bottle_file(tmp_path):
    """An existing (empty) bottle file at a canonical path."""
    path = tmp_path / "test.bottle"
    path.write_bytes(b"")
    return Path(os.path.realpath(path))


@pytest.fixture
def make_process():
    """Factory for FakeProcess children."""
    return FakeProcess
