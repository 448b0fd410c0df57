#!/usr/bin/env python3
"""
Unit tests for the device locator.

These tests verify:
1. losetup / lsblk output parsing
2. probe() builds the state chain and stops at the first missing link
3. probe() runs only read-only queries
4. list_attached() skips detached bottles
"""

from pathlib import Path

from conftest import FakeRunner

from bottle_launch.core.modes import MountStage
from bottle_launch.scripts.locator import (
    DeviceLocator,
    parse_crypt_child,
    parse_losetup_association,
    parse_mountpoint,
)

READ_ONLY_TOOLS = {"losetup", "lsblk"}


class TestParsers:
    def test_losetup_association(self):
        out = "/dev/loop7: [2049]:1183847 (/home/me/.local/share/bottles/web.bottle)\n"
        assert parse_losetup_association(out) == "/dev/loop7"

    def test_losetup_first_of_several(self):
        out = "/dev/loop2: [2049]:1 (/x.bottle)\n/dev/loop5: [2049]:1 (/x.bottle)\n"
        assert parse_losetup_association(out) == "/dev/loop2"

    def test_losetup_empty(self):
        assert parse_losetup_association("") is None

    def test_crypt_child(self):
        out = "/dev/loop0 loop\n/dev/dm-2 crypt\n"
        assert parse_crypt_child(out) == "/dev/dm-2"

    def test_no_crypt_child(self):
        assert parse_crypt_child("/dev/loop0 loop\n") is None

    def test_mountpoint(self):
        assert parse_mountpoint("/run/media/me/web\n") == "/run/media/me/web"
        assert parse_mountpoint("\n") is None


class TestProbe:
    def test_unattached(self, system, bottle_file):
        state = DeviceLocator(system).probe(bottle_file)
        assert state.stage is MountStage.UNATTACHED
        assert state.bottle_path == str(bottle_file)
        assert [c[0] for c in system.commands()] == ["losetup"]

    def test_attached_locked(self, system, bottle_file):
        system.loops["/dev/loop0"] = str(bottle_file)
        state = DeviceLocator(system).probe(bottle_file)
        assert state.stage is MountStage.ATTACHED
        assert state.loop_device == "/dev/loop0"

    def test_unlocked_not_mounted(self, system, bottle_file):
        system.loops["/dev/loop0"] = str(bottle_file)
        system.crypt["/dev/loop0"] = "/dev/dm-0"
        state = DeviceLocator(system).probe(bottle_file)
        assert state.stage is MountStage.UNLOCKED
        assert state.cleartext_device == "/dev/dm-0"

    def test_mounted(self, system, bottle_file):
        system.loops["/dev/loop0"] = str(bottle_file)
        system.crypt["/dev/loop0"] = "/dev/dm-0"
        system.mounts["/dev/dm-0"] = "/run/media/me/test"
        state = DeviceLocator(system).probe(bottle_file)
        assert state.stage is MountStage.MOUNTED
        assert state.mount_point == "/run/media/me/test"

    def test_probe_is_read_only(self, system, bottle_file):
        system.loops["/dev/loop0"] = str(bottle_file)
        system.crypt["/dev/loop0"] = "/dev/dm-0"
        DeviceLocator(system).probe(bottle_file)
        assert {c[0] for c in system.commands()} <= READ_ONLY_TOOLS

    def test_failed_query_reads_as_absent(self, bottle_file):
        runner = FakeRunner().on("losetup", returncode=1, stderr="losetup: permission denied")
        assert DeviceLocator(runner).probe(bottle_file).is_empty

    def test_lsblk_uses_kernel_names(self, bottle_file):
        runner = (
            FakeRunner()
            .on("losetup", stdout=f"/dev/loop3: [2049]:1 ({bottle_file})\n")
            .on("lsblk", "-nlpo", stdout="/dev/loop3 loop\n/dev/dm-9 crypt\n")
        )
        state = DeviceLocator(runner).probe(bottle_file)
        assert state.cleartext_device == "/dev/dm-9"
        assert ["lsblk", "-nlpo", "KNAME,TYPE", "/dev/loop3"] in runner.commands()


class TestListAttached:
    def test_only_attached_returned(self, system, tmp_path):
        a = tmp_path / "a.bottle"
        b = tmp_path / "b.bottle"
        a.write_bytes(b"")
        b.write_bytes(b"")
        system.loops["/dev/loop1"] = str(Path(a).resolve())

        attached = DeviceLocator(system).list_attached([a, b])
        assert list(attached) == [Path(a).resolve()]
        assert attached[Path(a).resolve()].loop_device == "/dev/loop1"
