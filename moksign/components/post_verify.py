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
Post-signing verification.

Re-checks every module after a run, checks the boot image, and moves the
success/failure counters that feed the circuit breaker of the next run.
"""

import os
import time
from datetime import datetime
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
from .scanner import ModuleScanner, SIGNED
from ..utils.index import log_message, audit_event
from ..utils.state_manager import (
    StateStore,
    SUCCESS_COUNT,
    FAILURE_COUNT,
    FAILURE_MARKER,
    LAST_SUCCESS,
)


@dataclass
class VerificationResult:
    total: int
    verified: int
    failed: int
    boot_image_ok: bool
    boot_image_fresh: bool
    success: bool
    failure_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PostVerifier:
    def __init__(self, config, scanner: Optional[ModuleScanner] = None,
                 state: Optional[StateStore] = None, clock=time.time):
        self.config = config
        self.scanner = scanner or ModuleScanner(config)
        self.state = state or StateStore(config.state_dir)
        self._clock = clock

    def verify_signatures(self) -> Tuple[int, int]:
        """Re-classify every module. Returns (verified, failed)."""
        log_message("Verifying module signatures...")
        verified = failed = 0
        for module in self.scanner.find_modules():
            if self.scanner.classify(module) == SIGNED:
                verified += 1
                log_message(f"✓ Verified signature: {module.basename}", "DEBUG")
            else:
                failed += 1
                log_message(f"✗ Signature verification failed: {module.basename}", "ERROR")

        if failed == 0:
            log_message(f"✓ All {verified} modules verified successfully")
        else:
            log_message(f"Verification failed for {failed} modules", "ERROR")
        return verified, failed

    def verify_boot_image_freshness(self) -> Tuple[bool, bool]:
        """
        Check the boot image exists and was rebuilt recently.

        Returns:
            Tuple[bool, bool]: (present, fresh). Only a missing image counts
            as a failure; an old one may legitimately predate this boot.
        """
        log_message("Verifying initramfs regeneration...")
        try:
            mtime = os.path.getmtime(self.config.boot_image)
        except OSError:
            log_message(f"Initramfs file not found: {self.config.boot_image}", "ERROR")
            return False, False

        age = int(self._clock() - mtime)
        if age < self.config.boot_image_freshness_seconds:
            log_message(f"✓ Initramfs recently regenerated ({age}s ago)")
            return True, True
        log_message(f"Initramfs appears old ({age}s ago) - may be from previous boot", "WARNING")
        return True, False

    def check_kernel_module_status(self) -> None:
        """Report whether the primary driver is loaded and untainted. Never fails."""
        log_message("Checking kernel module loading status...")
        name = self.config.primary_module
        try:
            with open(self.config.proc_modules, 'r') as f:
                loaded = any(line.split(" ", 1)[0] == name for line in f)
        except OSError:
            loaded = False

        if not loaded:
            log_message(f"{name} module not currently loaded (will be loaded after reboot)")
            return

        log_message(f"{name} module currently loaded")
        tainted = Path(self.config.sysfs_module_root) / name / "tainted"
        try:
            flag = tainted.read_text().strip()
        except OSError:
            return
        if flag == "0":
            log_message("✓ Module loaded with clean tainted flag")
        else:
            log_message(f"Module loaded but tainted flag set: {flag}", "WARNING")

    def update_counters(self, success: bool) -> int:
        """
        Move the persisted counters after a verification pass.

        Returns:
            int: The new success count on success, the new failure count otherwise
        """
        now = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        if success:
            count = self.state.increment(SUCCESS_COUNT)
            self.state.set(FAILURE_COUNT, 0)
            self.state.delete(FAILURE_MARKER)
            self.state.set(LAST_SUCCESS, now)
            log_message(f"✓ State updated (success count: {count})")
            return count

        count = self.state.increment(FAILURE_COUNT)
        self.state.set(FAILURE_MARKER, now)
        log_message(f"State updated (failure count: {count})", "ERROR")
        if count >= self.config.failure_threshold:
            message = f"Too many signing failures ({count}). Manual intervention required."
            log_message(message, "ERROR")
            audit_event(message)
        return count

    def run(self) -> VerificationResult:
        log_message("================== Post-Signing Verification ==================")
        verified, failed = self.verify_signatures()
        present, fresh = self.verify_boot_image_freshness()
        self.check_kernel_module_status()
        log_message("==================== Verification Complete ====================")

        success = failed == 0 and present
        count = self.update_counters(success)
        total = verified + failed
        audit_event(f"Module signing verification: {'success' if success else 'failed'} ({total} modules)")

        if success:
            log_message("✓ Post-signing verification PASSED")
        else:
            log_message("✗ Post-signing verification FAILED", "ERROR")

        return VerificationResult(
            total=total,
            verified=verified,
            failed=failed,
            boot_image_ok=present,
            boot_image_fresh=fresh,
            success=success,
            failure_count=0 if success else count,
        )
