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
Pre-Signing Safety Gate

Checks run before any module is touched. Each fatal check raises the matching
MokSignError; the only side effect of a failed gate is the rate-limit
timestamp, which is recorded as soon as the rate-limit check passes.

Order: root, rate limit, disk space, key permissions (warning), lock,
circuit breaker, then the advisory Secure Boot and MOK enrollment warnings.
"""

import os
import time
import shutil
from typing import Any, Optional
from .adapters import MokutilOracle, SB_ENABLED
from ..errors import (
    PermissionDenied,
    RateLimited,
    InsufficientResources,
    CircuitBreakerOpen,
)
from ..utils.index import log_message
from ..utils.lock import AdvisoryLock
from ..utils.state_manager import StateStore, LAST_ATTEMPT, FAILURE_COUNT


class SafetyGate:
    """Sequential pre-flight checks guarding the signer."""

    def __init__(self, config, state: Optional[StateStore] = None,
                 lock: Optional[AdvisoryLock] = None,
                 mokutil: Optional[MokutilOracle] = None,
                 clock=time.time, disk_usage=shutil.disk_usage):
        self.config = config
        self.state = state or StateStore(config.state_dir)
        self.lock = lock or AdvisoryLock(
            config.lock_file,
            timeout=config.lock_timeout,
            poll_interval=config.lock_poll_interval
        )
        self.mokutil = mokutil or MokutilOracle()
        self._clock = clock
        self._disk_usage = disk_usage

    def check_root(self) -> None:
        if not self.config.require_root:
            return
        if os.geteuid() != 0:
            raise PermissionDenied("This operation must be run as root")

    def _last_attempt_epoch(self, value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            # Marker written by older tooling carries no value, only an mtime
            return self.state.modified_time(LAST_ATTEMPT)

    def check_rate_limit(self) -> None:
        """
        Refuse to run again within rate_limit_seconds of the last attempt.

        A passing check records the new attempt immediately, before any module
        is signed.

        Raises:
            RateLimited: The previous attempt is too recent
        """
        log_message("Checking rate limiting...")
        minimum = self.config.rate_limit_seconds
        now = int(self._clock())
        previous = self.state.get(LAST_ATTEMPT)

        last = self._last_attempt_epoch(previous)
        if last is not None and minimum > 0:
            elapsed = int(now - last)
            if elapsed < minimum:
                error = RateLimited(max(elapsed, 0), minimum)
                log_message(str(error), "ERROR")
                raise error

        if not self.state.compare_and_swap(LAST_ATTEMPT, previous, now):
            if minimum > 0:
                error = RateLimited(0, minimum)
                log_message(f"{error} (another run recorded an attempt concurrently)", "ERROR")
                raise error
            self.state.set(LAST_ATTEMPT, now)

    def _available_kb(self, mount: str) -> Optional[int]:
        try:
            return self._disk_usage(mount).free // 1024
        except FileNotFoundError:
            log_message(f"Mount point {mount} not found, skipping disk space check", "WARNING")
            return None

    def check_disk_space(self) -> None:
        log_message("Checking disk space...")
        for mount, required in ((self.config.root_mount, self.config.root_min_kb),
                                (self.config.boot_mount, self.config.boot_min_kb)):
            available = self._available_kb(mount)
            if available is not None and available < required:
                error = InsufficientResources(mount, available, required)
                log_message(str(error), "ERROR")
                raise error
        log_message("✓ Sufficient disk space available")

    def check_key_permissions(self) -> bool:
        """Warn when the private key is readable by anyone but its owner."""
        log_message("Checking signing key permissions...")
        try:
            mode = os.stat(self.config.private_key).st_mode & 0o777
        except FileNotFoundError:
            log_message(f"Private key not found: {self.config.private_key}", "WARNING")
            return False

        if mode not in self.config.accepted_key_modes:
            log_message(f"Private key has unusual permissions: {mode:o}", "WARNING")
            return False
        log_message("✓ Signing key permissions verified")
        return True

    def acquire_lock(self, token=None) -> AdvisoryLock:
        log_message("Checking for concurrent execution...")
        return self.lock.acquire(token)

    def check_circuit_breaker(self) -> None:
        log_message("Checking for previous failures...")
        count = self.state.get_int(FAILURE_COUNT)
        if count >= self.config.failure_threshold:
            error = CircuitBreakerOpen(count, self.config.failure_threshold)
            log_message(str(error), "ERROR")
            log_message(f"Reset with: rm {self.config.state_path(FAILURE_COUNT)}")
            raise error

    def check_secure_boot_enabled(self) -> bool:
        if not self.mokutil.available():
            log_message("mokutil not available - cannot verify Secure Boot", "WARNING")
            return False
        if self.mokutil.secure_boot_state() != SB_ENABLED:
            log_message("Secure Boot is not enabled - signing may not be necessary", "WARNING")
            return False
        return True

    def check_keys_enrolled(self) -> bool:
        if not self.mokutil.available():
            log_message("mokutil not available - cannot verify MOK enrollment", "WARNING")
            return False
        if not self.mokutil.enrolled_key_count():
            log_message("MOK keys not enrolled - signing will have no effect until enrolled", "WARNING")
            return False
        return True

    def run_preflight(self, token=None) -> AdvisoryLock:
        """
        Run every check in order.

        Returns:
            AdvisoryLock: The held signing lock; the caller must release it

        Raises:
            MokSignError: The first fatal check that failed
        """
        log_message("================== Pre-Signing Safety Checks ==================")
        self.check_root()
        self.check_rate_limit()
        self.check_disk_space()
        self.check_key_permissions()

        lock = self.acquire_lock(token)
        try:
            self.check_circuit_breaker()
            self.check_secure_boot_enabled()
            self.check_keys_enrolled()
        except BaseException:
            lock.release()
            raise

        log_message("✓ All safety checks passed")
        return lock
