#!/usr/bin/env python3
"""
libfido2 CLI Wrapper

Wraps the libfido2 command line tools for hmac-secret bottles:
- fido2-token -L   enumerate authenticators
- fido2-cred -M    make a credential (enrollment, once per bottle)
- fido2-assert -G  get an assertion with hmac-secret (every unlock)

Both fido2-cred and fido2-assert read their parameters as newline-separated
lines on stdin. The bottle id doubles as the client data hash; the relying
party and user name are fixed.

Every output check fails closed: short output, undecodable base64 or a secret
of the wrong length is an error, never a best-effort value.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import List, Optional

from ..core.constants import CryptoParams, Fido2Params, Tools
from ..core.dependencies import require_tools
from .tool_runner import ToolRunner

_fido2_logger = logging.getLogger("bottle_launch.fido2")


class Fido2Error(Exception):
    """A libfido2 tool failed; diagnostic is its stderr, verbatim."""

    def __init__(self, op: str, diagnostic: str):
        self.op = op
        self.diagnostic = diagnostic
        super().__init__(f"{op}: {diagnostic}")


class Fido2OutputError(Fido2Error):
    """Tool output is short, malformed or of the wrong length."""

    pass


class AssertionRejectedError(Fido2Error):
    """The authenticator refused the assertion (wrong key, no touch, unknown credential)."""

    pass


@dataclass(frozen=True)
class Fido2Device:
    """One connected authenticator as listed by fido2-token -L."""

    path: str
    description: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.path} ({self.description})" if self.description else self.path


def parse_device_list(output: str) -> List[Fido2Device]:
    """
    Parse fido2-token -L output.

    Lines look like:
        /dev/hidraw3: vendor=0x1050, product=0x0407 (Yubico YubiKey OTP+FIDO+CCID)
    """
    devices = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        path, _, description = line.partition(":")
        devices.append(Fido2Device(path=path.strip(), description=description.strip()))
    return devices


def _output_lines(output: str) -> List[str]:
    return [line.strip() for line in output.strip().splitlines()]


def _stdin_lines(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


class Fido2Tool:
    """Runs fido2-token / fido2-cred / fido2-assert through a ToolRunner."""

    def __init__(self, runner: Optional[ToolRunner] = None):
        self.runner = runner or ToolRunner()

    def check_tools(self) -> None:
        """
        Raises:
            MissingToolError: If any of the three libfido2 tools is missing
        """
        require_tools(Tools.FIDO2_TOOLS, which=self.runner.which)

    def list_devices(self) -> List[Fido2Device]:
        result = self.runner.run([Tools.FIDO2_TOKEN, "-L"])
        if not result.ok:
            raise Fido2Error("fido2-token -L", result.stderr or result.output)
        devices = parse_device_list(result.stdout)
        _fido2_logger.info(f"fido2.list_devices: count={len(devices)}")
        return devices

    def make_credential(self, device: str, bottle_id: str) -> str:
        """
        Create a resident-less es256 credential bound to this bottle.

        Requires a touch. Returns the base64 credential id (fifth output line).

        Raises:
            Fido2Error: Tool failure (stderr preserved)
            Fido2OutputError: Fewer than five output lines
        """
        stdin = _stdin_lines(bottle_id, Fido2Params.RP_ID, Fido2Params.USER_NAME, bottle_id)
        _fido2_logger.info(f"fido2.make_credential: device={device} (touch required)")
        result = self.runner.run(
            [Tools.FIDO2_CRED, "-M", "-h", device, Fido2Params.ALGORITHM],
            input_data=stdin,
        )
        if not result.ok:
            raise Fido2Error("fido2-cred", result.stderr or result.output)

        lines = _output_lines(result.stdout)
        if len(lines) < Fido2Params.MIN_OUTPUT_LINES:
            raise Fido2OutputError(
                "fido2-cred",
                f"expected at least {Fido2Params.MIN_OUTPUT_LINES} lines, got {len(lines)}",
            )
        credential_id = lines[Fido2Params.CRED_OUTPUT_CREDENTIAL_ID_LINE]
        if not credential_id:
            raise Fido2OutputError("fido2-cred", "empty credential id")
        return credential_id

    def get_hmac_secret(self, device: str, bottle_id: str, credential_id: str, salt: str) -> bytearray:
        """
        Derive the bottle's 32-byte hmac-secret. Requires a touch.

        The same (device, bottle_id, credential_id, salt) always yields the
        same secret.

        Raises:
            AssertionRejectedError: The authenticator refused (stderr preserved)
            Fido2OutputError: Short output, bad base64 or length != 32
        """
        stdin = _stdin_lines(bottle_id, Fido2Params.RP_ID, credential_id, salt)
        _fido2_logger.info(f"fido2.get_hmac_secret: device={device} (touch required)")
        result = self.runner.run(
            [Tools.FIDO2_ASSERT, "-G", "-h", device, Fido2Params.ALGORITHM],
            input_data=stdin,
        )
        if not result.ok:
            raise AssertionRejectedError("fido2-assert", result.stderr or result.output)

        lines = _output_lines(result.stdout)
        if len(lines) < Fido2Params.MIN_OUTPUT_LINES:
            raise Fido2OutputError(
                "fido2-assert",
                f"expected at least {Fido2Params.MIN_OUTPUT_LINES} lines, got {len(lines)}",
            )

        try:
            secret = bytearray(base64.b64decode(lines[-1], validate=True))
        except (binascii.Error, ValueError) as e:
            raise Fido2OutputError("fido2-assert", f"cannot decode hmac-secret: {e}")

        if len(secret) != CryptoParams.KEY_MATERIAL_LENGTH:
            length = len(secret)
            for i in range(length):
                secret[i] = 0
            raise Fido2OutputError("fido2-assert", f"unexpected hmac-secret length: {length}")
        return secret
