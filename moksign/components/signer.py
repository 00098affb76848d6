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
Module Signer

Signs every unsigned module found by the scanner, one at a time:

    unsigned → backing_up → signing → verifying → signed | rolled_back

A module is backed up before sign-file runs. If sign-file fails the module
bytes are restored from that backup before the next module is looked at, so a
module is always either identical to its backup or fully signed. Failures of
one module never stop the others.

If at least one module was signed the boot image is rebuilt exactly once.
A failed rebuild is reported but does not undo any signature.
"""

import os
import time
import warnings
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Iterable, List, Optional
from .adapters import SignFileTool, DracutBuilder
from .scanner import ModuleScanner, Module, SIGNED
from ..errors import BackupError, SigningError, BootImageRebuildError, Cancelled, VerificationInconclusive
from ..utils.index import log_message
from ..utils.backup_store import BackupStore

# Per-module states
BACKING_UP = "backing_up"
SIGNING = "signing"
VERIFYING = "verifying"
STATE_SIGNED = "signed"
STATE_SKIPPED = "skipped"
STATE_ROLLED_BACK = "rolled_back"
STATE_FAILED = "failed"


@dataclass
class ModuleOutcome:
    """Final state of one module in a signing run."""
    module: str
    state: str
    backup: Optional[str] = None
    reason: str = ""
    inconclusive: bool = False

    @property
    def failed(self) -> bool:
        return self.state in (STATE_FAILED, STATE_ROLLED_BACK)


@dataclass
class SigningReport:
    outcomes: List[ModuleOutcome] = field(default_factory=list)
    total: int = 0
    rebuild_attempted: bool = False
    rebuild_ok: Optional[bool] = None

    @property
    def signed(self) -> int:
        return sum(1 for o in self.outcomes if o.state == STATE_SIGNED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.state == STATE_SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(signed=self.signed, skipped=self.skipped, failed=self.failed)
        return data


class Signer:
    """Backup, sign, verify and roll back kernel modules."""

    def __init__(self, config, scanner: Optional[ModuleScanner] = None,
                 tool: Optional[SignFileTool] = None,
                 builder: Optional[DracutBuilder] = None,
                 backups: Optional[BackupStore] = None):
        self.config = config
        self.scanner = scanner or ModuleScanner(config)
        self.tool = tool or SignFileTool(config)
        self.builder = builder or DracutBuilder()
        self.backups = backups or BackupStore(config.backup_dir)

    def _transition(self, module: Module, state: str) -> None:
        log_message(f"{module.basename}: {state}", "DEBUG")

    def _invoke_signer(self, module: Module) -> None:
        result = self.tool.sign(module.path)
        if result.stdout.strip():
            log_message(result.stdout.strip(), "DEBUG")
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise SigningError(f"sign-file failed for {module.basename}: {detail}")

    def sign_module(self, module: Module, token=None) -> ModuleOutcome:
        """
        Sign one unsigned module.

        Args:
            module: The module to sign, already classified as unsigned
            token: Optional CancellationToken

        Returns:
            ModuleOutcome: signed, rolled_back or failed

        Raises:
            Cancelled: Only before the backup or before sign-file is started;
                once sign-file has run the module is always settled first
        """
        log_message(f"Signing module: {module.basename}...")

        if token is not None:
            token.raise_if_cancelled()
        self._transition(module, BACKING_UP)
        try:
            backup = self.backups.backup_module(module.path, signature_status=module.status)
        except BackupError as e:
            log_message(f"✗ {e}", "ERROR")
            return ModuleOutcome(module.path, STATE_FAILED, reason=str(e))
        log_message(f"Backup created: {backup.backup_path}", "DEBUG")

        if token is not None:
            token.raise_if_cancelled()
        self._transition(module, SIGNING)
        try:
            self._invoke_signer(module)
        except SigningError as e:
            log_message(f"✗ {e}", "ERROR")
            try:
                self.backups.copy_back(backup, module.path)
            except BackupError as restore_error:
                log_message(f"CRITICAL: Failed to restore backup of {module.basename}: {restore_error}", "ERROR")
                return ModuleOutcome(module.path, STATE_FAILED, backup.backup_path, str(restore_error))
            log_message(f"Module restored from backup due to signing failure: {module.basename}", "WARNING")
            return ModuleOutcome(module.path, STATE_ROLLED_BACK, backup.backup_path, str(e))

        self._transition(module, VERIFYING)
        inconclusive = self.scanner.classify(module) != SIGNED
        if inconclusive:
            message = f"Signature verification inconclusive (module may need reload): {module.basename}"
            log_message(message, "WARNING")
            warnings.warn(message, VerificationInconclusive)
        else:
            log_message(f"✓ Module signed successfully: {module.basename}")
        module.status = SIGNED
        return ModuleOutcome(module.path, STATE_SIGNED, backup.backup_path, inconclusive=inconclusive)

    def rebuild_boot_image(self) -> None:
        """
        Rebuild the boot image once.

        Raises:
            BootImageRebuildError: The builder reported failure
        """
        log_message("Regenerating initramfs...")
        if not self.builder.rebuild():
            raise BootImageRebuildError("Failed to regenerate initramfs")

        log_message("✓ Initramfs regenerated successfully")
        try:
            age = int(time.time() - os.path.getmtime(self.config.boot_image))
            if age < 60:
                log_message("✓ Initramfs timestamp verification passed", "DEBUG")
            else:
                log_message(f"Initramfs file age seems old ({age}s)", "WARNING")
        except OSError:
            log_message(f"Boot image not found after rebuild: {self.config.boot_image}", "WARNING")

    def sign_all(self, modules: Optional[Iterable[Module]] = None, token=None) -> SigningReport:
        """
        Classify every candidate module and sign the unsigned ones.

        Args:
            modules: Modules to process; defaults to a fresh scan
            token: Optional CancellationToken, checked before every module

        Returns:
            SigningReport: Per-module outcomes, counts and the rebuild result

        Raises:
            Cancelled: With the partial report attached as ``report``
        """
        log_message("Processing kernel modules...")
        report = SigningReport()
        candidates = list(modules) if modules is not None else list(self.scanner.find_modules())
        report.total = len(candidates)

        if not candidates:
            log_message("No modules to process", "WARNING")
            return report

        try:
            unsigned = []
            for module in candidates:
                if token is not None:
                    token.raise_if_cancelled()
                if self.scanner.classify(module) == SIGNED:
                    report.outcomes.append(ModuleOutcome(module.path, STATE_SKIPPED))
                else:
                    unsigned.append(module)

            if report.skipped:
                log_message(f"✓ Already signed modules: {report.skipped}")
            if not unsigned:
                log_message("✓ All modules are already signed")
            else:
                log_message(f"Unsigned modules found: {len(unsigned)}", "WARNING")

            for module in unsigned:
                report.outcomes.append(self.sign_module(module, token))

            if report.signed > 0:
                if token is not None:
                    token.raise_if_cancelled()
                report.rebuild_attempted = True
                try:
                    self.rebuild_boot_image()
                    report.rebuild_ok = True
                except BootImageRebuildError as e:
                    log_message(str(e), "ERROR")
                    report.rebuild_ok = False
        except Cancelled as e:
            log_message(
                f"Signing interrupted after {report.signed} signed, {report.failed} failed", "WARNING"
            )
            e.report = report
            raise

        log_message("Module processing summary:")
        log_message(f"  - Signed: {report.signed}")
        log_message(f"  - Already signed: {report.skipped}")
        log_message(f"  - Failed: {report.failed}")
        return report
