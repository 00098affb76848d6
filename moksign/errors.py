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

import signal
from typing import List, Optional
from .exit_codes import ExitCode


class MokSignError(Exception):
    """Base exception for signing operation failures."""
    exit_code = ExitCode.GENERAL_FAILURE


class PrerequisitesMissing(MokSignError):
    """Required tools or key files are absent."""
    exit_code = ExitCode.PREREQUISITES_FAILED

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing prerequisites: {', '.join(self.missing)}")


class RateLimited(MokSignError):
    exit_code = ExitCode.RATE_LIMITED

    def __init__(self, elapsed: int, minimum: int):
        self.elapsed = elapsed
        self.minimum = minimum
        super().__init__(
            f"Rate limit exceeded - last attempt was {elapsed}s ago "
            f"(minimum {minimum}s required)"
        )


class LockTimeout(MokSignError):
    def __init__(self, holder_pid: Optional[int], timeout: float):
        self.holder_pid = holder_pid
        self.timeout = timeout
        holder = f" (held by PID {holder_pid})" if holder_pid else ""
        super().__init__(f"Failed to acquire lock after {timeout}s{holder}")


class CircuitBreakerOpen(MokSignError):
    def __init__(self, count: int, threshold: int):
        self.count = count
        self.threshold = threshold
        super().__init__(
            f"Multiple previous failures detected ({count}, threshold {threshold}). "
            f"Please investigate."
        )


class InsufficientResources(MokSignError):
    exit_code = ExitCode.SYSTEM_NOT_READY

    def __init__(self, mount: str, available_kb: int, required_kb: int):
        self.mount = mount
        self.available_kb = available_kb
        self.required_kb = required_kb
        super().__init__(
            f"Insufficient disk space on {mount} "
            f"({available_kb}KB available, need {required_kb}KB)"
        )


class PermissionDenied(MokSignError):
    exit_code = ExitCode.PERMISSION_DENIED


class ConfigurationError(MokSignError):
    exit_code = ExitCode.CONFIGURATION_ERROR


class BackupError(MokSignError):
    """Backing up a single module failed; the module was left untouched."""
    pass


class SigningError(MokSignError):
    """The external signing utility rejected a single module."""
    pass


class BootImageRebuildError(MokSignError):
    pass


class Cancelled(MokSignError):
    """Raised at a safe point after SIGINT or SIGTERM was received."""

    def __init__(self, signum: int):
        self.signum = signum
        if signum == signal.SIGINT:
            self.exit_code = ExitCode.INTERRUPTED
        else:
            self.exit_code = ExitCode.TERMINATED
        super().__init__(f"Operation cancelled by signal {signal.Signals(signum).name}")


class VerificationInconclusive(UserWarning):
    """Signing reported success but no signature signal is visible yet."""
    pass
