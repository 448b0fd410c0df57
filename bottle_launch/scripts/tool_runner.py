#!/usr/bin/env python3
"""
External tool runner

Every external tool invocation (udisksctl, losetup, lsblk, cryptsetup,
fido2-*, flatpak) goes through ToolRunner so that:
- Output is captured and decoded the same way everywhere
- Missing executables surface as MissingToolError, never FileNotFoundError
- Privilege escalation (pkexec, falling back to sudo) is applied in one place
- Tests can substitute a scripted runner without touching subprocess

Calls block until the tool exits. There are no timeouts: tools may wait on a
polkit prompt or a hardware-key touch indefinitely.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..core.dependencies import MissingToolError, require_privilege_escalation

_runner_logger = logging.getLogger("bottle_launch.runner")


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external tool call."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = field(default="", repr=False)

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, for confirmation parsing and diagnostics."""
        if self.stdout and self.stderr:
            return self.stdout.rstrip("\n") + "\n" + self.stderr
        return self.stdout or self.stderr


class ToolRunner:
    """Runs external tools and captures their output."""

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def privileged(self, args: Sequence[str]) -> List[str]:
        """Prefix args with pkexec (graphical polkit prompt) or sudo."""
        escalation = require_privilege_escalation(which=self.which)
        return [escalation] + list(args)

    def run(self, args: Sequence[str], input_data: Optional[bytes] = None) -> ToolResult:
        """
        Run a tool to completion.

        Args:
            args: Command line, executable first
            input_data: Bytes written to the tool's stdin (None = no stdin)

        Returns:
            ToolResult with decoded stdout/stderr (non-zero exit is not raised)

        Raises:
            MissingToolError: If the executable does not exist
        """
        args = [str(a) for a in args]
        # Never log stdin: it may carry key material or credential input
        _runner_logger.debug(f"runner.exec: args={args}")
        result = self._execute(args, input_data)
        _runner_logger.debug(f"runner.exit: tool={args[0]}, returncode={result.returncode}")
        return result

    def spawn(self, args: Sequence[str]) -> subprocess.Popen:
        """
        Start a long-running tool attached to this process's stdio.

        Raises:
            MissingToolError: If the executable does not exist
        """
        args = [str(a) for a in args]
        _runner_logger.debug(f"runner.spawn: args={args}")
        try:
            return subprocess.Popen(args)
        except FileNotFoundError:
            raise MissingToolError([args[0]])

    def _execute(self, args: List[str], input_data: Optional[bytes]) -> ToolResult:
        try:
            completed = subprocess.run(
                args,
                input=input_data,
                stdin=None if input_data is not None else subprocess.DEVNULL,
                capture_output=True,
                check=False,
            )
        except FileNotFoundError:
            raise MissingToolError([args[0]])

        return ToolResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout.decode("utf-8", errors="replace"),
            stderr=completed.stderr.decode("utf-8", errors="replace"),
        )


__all__ = ["ToolResult", "ToolRunner"]
