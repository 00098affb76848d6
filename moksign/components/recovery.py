#!/usr/bin/env python3
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
Recovery Manager

Restores kernel modules from the backup store, at any time and independently
of a signing run.

Key Features:
- Integrity check of a backup before it is trusted (size, checksum, ELF magic)
- A pre-restore safety backup of the current module, so a restore can itself
  be undone
- Size check after the copy, reverting to the safety backup on mismatch
- Automatic mode (newest backup of every module, best effort) and an
  interactive menu
- clear_corrupted_state() escape hatch for the state record and a stale lock
  (a lock still held by a live process is never removed)

Recovery does not take the signing lock; it only warns when a signing run
appears to be in progress.
"""

import os
import shutil
from datetime import datetime
from pathlib import Path
from dataclasses import dataclass
from typing import Callable, List, Optional
from .adapters import CommandRunner, DracutBuilder
from .detector import SystemDetector
from .scanner import ModuleScanner, Module, UNKNOWN
from ..errors import BackupError
from ..utils.index import log_message
from ..utils.backup_store import BackupStore, BackupRecord, KIND_PRE_RESTORE, calculate_checksum
from ..utils.lock import AdvisoryLock
from ..utils.state_manager import StateStore

ELF_MAGIC = b"\x7fELF"


@dataclass
class RestoreSummary:
    processed: int = 0
    restored: int = 0
    failed: int = 0

    @property
    def success(self) -> bool:
        return self.processed > 0 and self.failed == 0


class RecoveryManager:
    """Restore modules from backups, automatically or through a menu."""

    def __init__(self, config, backups: Optional[BackupStore] = None,
                 state: Optional[StateStore] = None,
                 lock: Optional[AdvisoryLock] = None,
                 builder: Optional[DracutBuilder] = None,
                 scanner: Optional[ModuleScanner] = None,
                 detector: Optional[SystemDetector] = None,
                 input_fn: Callable[[str], str] = input,
                 output: Callable[[str], None] = print,
                 copy_fn: Callable[[str, str], object] = shutil.copyfile):
        self.config = config
        self.backups = backups or BackupStore(config.backup_dir)
        self.state = state or StateStore(config.state_dir)
        self.lock = lock or AdvisoryLock(config.lock_file)
        runner = CommandRunner()
        self.builder = builder or DracutBuilder(runner)
        self.scanner = scanner or ModuleScanner(config)
        self.detector = detector or SystemDetector(config, runner=runner, scanner=self.scanner,
                                                   state=self.state)
        self.input_fn = input_fn
        self.output = output
        self.copy_fn = copy_fn

    def warn_if_signing_active(self) -> bool:
        if self.lock.is_locked():
            holder = self.lock.holder_pid
            log_message(
                f"A signing run appears to be in progress (PID: {holder or 'unknown'}); "
                f"restoring now may race with it", "WARNING"
            )
            return True
        return False

    def list_backups(self, include_safety: bool = True) -> List[BackupRecord]:
        """Return backups newest first and print them as a numbered list."""
        records = self.backups.list_backups(include_safety=include_safety)
        if not records:
            log_message("No backups available", "WARNING")
            return records

        log_message("Available backups:")
        for index, record in enumerate(records, 1):
            when = datetime.fromtimestamp(record.timestamp).strftime('%Y-%m-%d %H:%M:%S')
            tag = " [pre-restore]" if record.is_safety_backup else ""
            self.output(
                f"  [{index}] {record.module_name} (size: {record.size} bytes, "
                f"backup: {when}, status: {record.signature_status}){tag}"
            )
        return records

    def verify_backup_integrity(self, record: BackupRecord) -> bool:
        log_message(f"Verifying backup integrity for {record.module_name}...")
        path = Path(record.backup_path)
        try:
            size = path.stat().st_size
            with open(path, 'rb') as f:
                magic = f.read(4)
        except OSError as e:
            log_message(f"Backup file is not readable: {path} ({e})", "ERROR")
            return False

        if size < self.config.backup_min_size:
            log_message(f"Backup file seems corrupted (too small): {size} bytes", "ERROR")
            return False

        if record.checksum and calculate_checksum(str(path)) != record.checksum:
            log_message(f"Backup checksum mismatch for {path}", "ERROR")
            return False

        if magic == ELF_MAGIC:
            log_message("✓ Backup file is valid ELF binary", "DEBUG")
        else:
            log_message(f"Backup file type check inconclusive for {path}", "WARNING")
        return True

    def module_target(self, record: BackupRecord) -> Optional[str]:
        """Current location of the module a backup was taken from."""
        if record.source_path:
            return record.source_path
        for module in self.scanner.find_modules(record.module_name):
            return module.path
        return os.path.join(self.config.modules_path, record.module_name)

    def _classify(self, path: str) -> str:
        try:
            return self.scanner.classify(Module(path, self.config.kernel_version))
        except OSError:
            return UNKNOWN

    def restore_module(self, record: BackupRecord, target: Optional[str] = None) -> bool:
        """
        Restore one module from a backup.

        Args:
            record: The backup to restore
            target: Module path to overwrite; defaults to where the backup came from

        Returns:
            bool: True if the module now holds the backup bytes
        """
        log_message(f"Restoring module: {record.module_name}...")
        if not self.verify_backup_integrity(record):
            log_message("Backup integrity check failed", "ERROR")
            return False

        target = target or self.module_target(record)
        if not target or not os.path.isfile(target):
            log_message(f"Current module not found at expected location: {target}", "ERROR")
            return False

        try:
            safety = self.backups.backup_module(target, self._classify(target), kind=KIND_PRE_RESTORE)
        except BackupError as e:
            log_message(f"Failed to create pre-restore backup: {e}", "ERROR")
            return False
        log_message(f"Pre-restore backup created: {safety.backup_path}", "DEBUG")

        try:
            self.copy_fn(record.backup_path, target)
            restored_size = os.path.getsize(target)
        except OSError as e:
            log_message(f"Failed to restore module from backup: {e}", "ERROR")
            restored_size = -1

        if restored_size != record.size:
            if restored_size >= 0:
                log_message(
                    f"Restored module size mismatch (expected: {record.size}, got: {restored_size})", "ERROR"
                )
            try:
                self.backups.copy_back(safety, target)
                log_message("Rollback reverted to previous state", "WARNING")
            except BackupError as e:
                log_message(f"CRITICAL: Failed to revert {target}: {e}", "ERROR")
            return False

        status = self._classify(target)
        if record.signature_status not in (UNKNOWN, status):
            log_message(
                f"Restored {record.module_name} reads {status}, backup was recorded as "
                f"{record.signature_status}", "WARNING"
            )
        log_message(f"✓ Module restored successfully: {record.module_name}")
        return True

    def restore_all(self) -> RestoreSummary:
        """Restore the newest backup of every module, continuing past failures."""
        log_message("Restoring all backed-up modules...")
        summary = RestoreSummary()
        for module_name, record in sorted(self.backups.latest_per_module().items()):
            summary.processed += 1
            if self.restore_module(record):
                summary.restored += 1
            else:
                summary.failed += 1

        log_message("Restore summary:")
        log_message(f"  - Processed: {summary.processed}")
        log_message(f"  - Restored: {summary.restored}")
        log_message(f"  - Failed: {summary.failed}")
        return summary

    def regenerate_boot_image(self) -> bool:
        log_message("Regenerating initramfs after rollback...")
        if self.builder.rebuild():
            log_message("✓ Initramfs regenerated successfully")
            return True
        log_message("Failed to regenerate initramfs", "ERROR")
        return False

    def clear_corrupted_state(self) -> None:
        """Delete the state record and a stale lock file. A live lock is left alone."""
        log_message("Clearing corrupted state...")
        if self.state.clear_execution_state():
            log_message("✓ State file cleared")
        if self.lock.is_locked():
            log_message(
                f"Lock is held by a running process (PID: {self.lock.holder_pid or 'unknown'}); "
                f"leaving it in place", "WARNING"
            )
        elif self.lock.force_clear():
            log_message("Stale lock file cleared", "WARNING")

    def show_system_status(self) -> None:
        out = self.output
        out("")
        out("System Status:")
        out("")
        out(f"Kernel version: {self.config.kernel_version}")
        out(f"Secure Boot status: {self.detector.detect_secure_boot()}")
        out(f"TPM2 status: {self.detector.detect_tpm()}")
        out("")
        out("Modules:")
        for module in self.scanner.find_modules():
            signer = self.scanner.modinfo.signer(module.path) or "unsigned"
            out(f"  - {module.basename}: {signer}")
        out("")
        out(f"Backup directory: {self.config.backup_dir}")
        out(f"State file: {self.state.state_file}")
        out(f"Available backups: {len(self.backups.list_backups())}")
        out("")

    def automatic_recovery(self) -> bool:
        """Restore everything from the newest backups, then rebuild and clear state."""
        log_message("Automatic recovery mode activated")
        self.warn_if_signing_active()

        if not self.backups.latest_per_module():
            log_message("No backups available for automatic recovery", "ERROR")
            return False

        summary = self.restore_all()
        if not summary.success:
            log_message("Automatic recovery failed", "ERROR")
            return False

        self.regenerate_boot_image()
        log_message("✓ Automatic recovery completed successfully")
        self.clear_corrupted_state()
        return True

    def _restore_named(self, module_name: str) -> bool:
        candidates = self.backups.list_backups(module_name=module_name, include_safety=False)
        if not candidates:
            log_message(f"No backup found for {module_name}", "ERROR")
            return False
        if not self.restore_module(candidates[0]):
            return False
        self.regenerate_boot_image()
        return True

    def interactive_recovery(self) -> bool:
        """Single-action recovery menu. Returns True if the chosen action succeeded."""
        self.output("")
        self.output("Module Signing Recovery - Interactive Mode")
        self.output("")
        self.warn_if_signing_active()

        if not self.list_backups():
            log_message("No backups available for recovery", "ERROR")
            return False

        self.output("Recovery options:")
        self.output("  1) Restore all modules from latest backups")
        self.output("  2) Restore specific module")
        self.output("  3) List available backups")
        self.output("  4) Clear corrupted state only")
        self.output("  5) Show system status")
        self.output("  6) Exit")
        self.output("")

        option = self.input_fn("Select option [1-6]: ").strip()

        if option == "1":
            if self.restore_all().success:
                self.regenerate_boot_image()
                log_message("✓ Full recovery completed")
                return True
            log_message("Some modules failed to restore", "ERROR")
            return False
        if option == "2":
            module_name = self.input_fn("Enter module name (e.g., nvidia-drm.ko): ").strip()
            return self._restore_named(module_name)
        if option == "3":
            self.list_backups()
            return True
        if option == "4":
            self.clear_corrupted_state()
            log_message("✓ State cleared")
            return True
        if option == "5":
            self.show_system_status()
            return True
        if option == "6":
            log_message("Exiting recovery")
            return True

        log_message("Invalid option", "ERROR")
        return False
