"""
MOK Module Signing System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
External tool adapters.

Every external program the signing system runs goes through CommandRunner, so
tests can swap in a fake runner (or replace a whole adapter) and exercise the
signer, verifier and detector without sign-file, dracut or mokutil installed.
"""

import shutil
import subprocess
from dataclasses import dataclass
from typing import List, Optional
from ..utils.index import log_message

RC_NOT_FOUND = 127
RC_TIMEOUT = 124

SB_ENABLED = "enabled"
SB_DISABLED = "disabled"
SB_INDETERMINATE = "indeterminate"


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Thin wrapper over subprocess.run that never raises for tool failures."""

    def run(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        log_message(f"Running: {' '.join(str(a) for a in args)}", "DEBUG")
        try:
            result = subprocess.run(
                [str(a) for a in args],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False
            )
        except FileNotFoundError:
            return CommandResult(RC_NOT_FOUND, "", f"{args[0]}: command not found")
        except PermissionError as e:
            return CommandResult(RC_NOT_FOUND, "", f"{args[0]}: {e}")
        except subprocess.TimeoutExpired:
            return CommandResult(RC_TIMEOUT, "", f"{args[0]} timed out after {timeout}s")
        return CommandResult(result.returncode, result.stdout, result.stderr)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


class SignFileTool:
    """The kernel's sign-file utility. Rewrites the target in place on success."""

    def __init__(self, config, runner: Optional[CommandRunner] = None):
        self.config = config
        self.runner = runner or CommandRunner()

    def sign(self, target: str) -> CommandResult:
        return self.runner.run(
            [
                self.config.sign_file,
                self.config.hash_algorithm,
                self.config.private_key,
                self.config.public_key,
                target,
            ],
            timeout=self.config.sign_timeout
        )


class DracutBuilder:
    """Boot image (initramfs) rebuild through dracut --force."""

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: Optional[float] = None):
        self.runner = runner or CommandRunner()
        self.timeout = timeout

    def rebuild(self) -> bool:
        result = self.runner.run(["dracut", "--force"], timeout=self.timeout)
        if not result.ok:
            log_message(f"dracut --force failed (rc={result.returncode}): {result.stderr.strip()}", "ERROR")
        return result.ok


class ModinfoOracle:
    """Embedded module metadata read through modinfo."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def _field(self, path: str, name: str) -> str:
        result = self.runner.run(["modinfo", "-F", name, path], timeout=30)
        if not result.ok:
            return ""
        return result.stdout.strip()

    def signer(self, path: str) -> str:
        """Signer name embedded in the module, empty when unsigned."""
        return self._field(path, "signer")

    def version(self, path: str) -> str:
        return self._field(path, "version")


class MokutilOracle:
    """Secure Boot and MOK enrollment state read through mokutil."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def available(self) -> bool:
        return self.runner.which("mokutil") is not None

    def secure_boot_state(self) -> str:
        result = self.runner.run(["mokutil", "--sb-state"], timeout=30)
        output = f"{result.stdout}\n{result.stderr}"
        if "SecureBoot enabled" in output:
            return SB_ENABLED
        if "SecureBoot disabled" in output:
            return SB_DISABLED
        return SB_INDETERMINATE

    def enrolled_key_count(self) -> Optional[int]:
        """Number of enrolled MOK keys, None when mokutil cannot tell."""
        result = self.runner.run(["mokutil", "--list-enrolled"], timeout=30)
        if result.returncode == RC_NOT_FOUND:
            return None
        lines = result.stdout.splitlines()
        keys = sum(1 for line in lines if line.startswith("[key "))
        return keys or sum(1 for line in lines if "SHA256" in line)
