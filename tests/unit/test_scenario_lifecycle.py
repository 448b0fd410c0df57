#!/usr/bin/env python3
"""
End-to-end scenarios against the simulated system.

These tests verify:
1. create -> mount -> run -> unmount leaves nothing attached
2. Wrong password, then correct password resumes without a second loop device
3. Stale device-mapper recovery through a full session
4. Hardware-key bottle: the same key and stored identity always unlock it
5. Signal cleanup tears down a running session
"""

import signal

import pytest

from bottle_launch.core.config import load_bottle_config
from bottle_launch.core.lifecycle import LifecycleCoordinator
from bottle_launch.core.modes import MountStage, PermissionSet
from bottle_launch.core.secrets import HardwareKeySecretProvider, PasswordSecretProvider, provision_hardware_key
from bottle_launch.scripts.bottle import BottleManager, parse_size
from bottle_launch.scripts.fido2_cli import AssertionRejectedError, Fido2Tool
from bottle_launch.scripts.locator import DeviceLocator
from bottle_launch.scripts.session import BottleSession
from bottle_launch.scripts.udisks_cli import WrongCredentialError
from bottle_launch.scripts.unmount import UnmountOrchestrator


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "cfg"


@pytest.fixture
def password_bottle(system, tmp_path, config_dir):
    return BottleManager(system, config_dir=config_dir).create_password_bottle(
        tmp_path / "test.bottle", parse_size("500M"), "correct"
    )


def _session(system, bottle, config_dir, **kwargs):
    return BottleSession(bottle.file_path, runner=system, config_dir=config_dir, **kwargs)


def _nothing_attached(system, bottle):
    if not DeviceLocator(system).probe(bottle.file_path).is_empty:
        return False
    return system.loops == {} and system.crypt == {} and system.mounts == {}


class TestPasswordScenario:
    def test_full_cycle(self, system, password_bottle, config_dir):
        with _session(system, password_bottle, config_dir) as session:
            state = session.open(PasswordSecretProvider("correct"))
            assert state.stage is MountStage.MOUNTED
            assert session.coordinator.mount_state == state

            returncode = session.run_app("org.mozilla.firefox")

            assert returncode == 0
            assert session.coordinator.child is None
            assert system.spawned[0].timed_waits == 1

        assert _nothing_attached(system, password_bottle)
        assert session.coordinator.mount_state is None
        assert load_bottle_config(password_bottle.config_path).permissions.last_app == "org.mozilla.firefox"

    def test_app_runs_inside_bottle(self, system, password_bottle, config_dir):
        with _session(system, password_bottle, config_dir) as session:
            state = session.open(PasswordSecretProvider("correct"))
            session.run_app("org.mozilla.firefox", PermissionSet(network=False))
            args = system.spawned[0].args

        assert f"--filesystem={state.mount_point}" in args
        assert "--share=network" not in args

    def test_wrong_then_correct(self, system, password_bottle, config_dir):
        with _session(system, password_bottle, config_dir) as session:
            with pytest.raises(WrongCredentialError):
                session.open(PasswordSecretProvider("wrong"))
            session.open(PasswordSecretProvider("correct"))
            assert len(system.commands_starting("udisksctl", "loop-setup")) == 1

        assert _nothing_attached(system, password_bottle)

    def test_failed_open_still_detaches(self, system, password_bottle, config_dir):
        with pytest.raises(WrongCredentialError):
            with _session(system, password_bottle, config_dir) as session:
                session.open(PasswordSecretProvider("wrong"))
        assert _nothing_attached(system, password_bottle)

    def test_stale_mapping_recovered(self, system, password_bottle, config_dir):
        system.stale_mounts = 1
        with _session(system, password_bottle, config_dir) as session:
            state = session.open(PasswordSecretProvider("correct"))
            assert state.stage is MountStage.MOUNTED
        assert _nothing_attached(system, password_bottle)

    def test_reopen_is_idempotent(self, system, password_bottle, config_dir):
        with _session(system, password_bottle, config_dir) as session:
            first = session.open(PasswordSecretProvider("correct"))
            second = session.open(PasswordSecretProvider("correct"))
            assert first == second
            assert len(system.commands_starting("udisksctl", "mount")) == 1

    def test_busy_unmount_forced(self, system, password_bottle, config_dir):
        system.unmount_busy = 1
        with _session(system, password_bottle, config_dir) as session:
            session.open(PasswordSecretProvider("correct"))
        assert system.commands_starting("udisksctl", "unmount")[-1][-1] == "--force"
        assert _nothing_attached(system, password_bottle)


class TestHardwareKeyScenario:
    def test_create_and_unlock(self, system, tmp_path, config_dir):
        fido2 = Fido2Tool(system)
        credential, secret = provision_hardware_key(fido2, "/dev/hidraw3")
        bottle = BottleManager(system, config_dir=config_dir).create_hardware_key_bottle(
            tmp_path / "vault.bottle", parse_size("64M"), credential, secret
        )

        stored = load_bottle_config(bottle.config_path).credential
        for _ in range(2):
            with _session(system, bottle, config_dir) as session:
                session.open(HardwareKeySecretProvider(stored, fido2=fido2))
                assert session.mount_point
            assert _nothing_attached(system, bottle)

    def test_other_key_cannot_unlock(self, system, tmp_path, config_dir):
        fido2 = Fido2Tool(system)
        credential, secret = provision_hardware_key(fido2, "/dev/hidraw3")
        bottle = BottleManager(system, config_dir=config_dir).create_hardware_key_bottle(
            tmp_path / "vault.bottle", parse_size("64M"), credential, secret
        )

        system.fido2_devices = ["/dev/hidraw7"]
        with _session(system, bottle, config_dir) as session:
            with pytest.raises(WrongCredentialError):
                session.open(HardwareKeySecretProvider(credential, fido2=fido2))
        assert _nothing_attached(system, bottle)

    def test_rejected_assertion_leaves_loop_detached_on_close(self, system, tmp_path, config_dir):
        fido2 = Fido2Tool(system)
        credential, secret = provision_hardware_key(fido2, "/dev/hidraw3")
        bottle = BottleManager(system, config_dir=config_dir).create_hardware_key_bottle(
            tmp_path / "vault.bottle", parse_size("64M"), credential, secret
        )

        system.fido2_rejects.add("/dev/hidraw3")
        with pytest.raises(AssertionRejectedError):
            with _session(system, bottle, config_dir) as session:
                session.open(HardwareKeySecretProvider(credential, fido2=fido2))
        assert _nothing_attached(system, bottle)


class TestSignalCleanup:
    def test_sigterm_tears_down_session(self, system, password_bottle, config_dir, make_process):
        exits = []
        unmounter = UnmountOrchestrator(system, sleep=lambda seconds: None)
        coordinator = LifecycleCoordinator(unmounter.unmount, grace_period=0.01, exit_func=exits.append)
        session = _session(system, password_bottle, config_dir, coordinator=coordinator, unmounter=unmounter)

        session.open(PasswordSecretProvider("correct"))
        child = make_process(["flatpak", "run", "org.mozilla.firefox"])
        coordinator.register_child(child)

        coordinator._handle_signal(signal.SIGTERM, None)

        assert child.terminated
        assert _nothing_attached(system, password_bottle)
        assert exits == [143]
