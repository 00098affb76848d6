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
System Detection

Gathers the host facts the signing run depends on (Secure Boot, TPM, kernel,
keys, driver version) and keeps a snapshot of them between runs so kernel or
driver updates can be noticed.

Key Features:
- Secure Boot, TPM, MOK enrollment, SELinux and firmware detection
- Fatal prerequisite check naming every missing tool or key file
- detection-state.json snapshot with rotation to previous-state.json
- Kernel/driver/module-set change detection (upgrade vs downgrade)
"""

import os
import json
import tempfile
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import dataclass, asdict, fields
from typing import Dict, Any, List, Optional
from packaging import version
from .adapters import CommandRunner, MokutilOracle, ModinfoOracle, SB_ENABLED
from .scanner import ModuleScanner
from ..errors import PrerequisitesMissing
from ..utils.index import log_message
from ..utils.state_manager import StateStore, FAILURE_MARKER, LAST_SUCCESS

SECURE_BOOT_ENABLED = "enabled"
SECURE_BOOT_DISABLED = "disabled"
SECURE_BOOT_UNSUPPORTED = "unsupported"

TPM_AVAILABLE = "available"
TPM_UNAVAILABLE = "unavailable"
TPM_TOOLS_MISSING = "tools_missing"

DETECTION_STATE = "detection-state.json"
PREVIOUS_STATE = "previous-state.json"

KERNEL_CHANGED = "kernel_changed"
DRIVER_CHANGED = "driver_changed"
MODULES_CHANGED = "modules_changed"


@dataclass
class SystemReport:
    """Snapshot of the host as seen by the detector."""
    timestamp: str
    kernel_version: str
    firmware_type: str
    firmware_bits: str
    secure_boot: str
    mok_enrollment: str
    tpm: str
    selinux: str
    driver_version: str
    modules_total: int
    modules_signed: int
    modules_unsigned: int
    keys_status: str
    private_key_date: str
    public_key_date: str
    last_signing_time: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystemReport':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class SystemDetector:
    """Read-only queries about the host, plus the detection snapshot."""

    def __init__(self, config, runner: Optional[CommandRunner] = None,
                 mokutil: Optional[MokutilOracle] = None,
                 modinfo: Optional[ModinfoOracle] = None,
                 scanner: Optional[ModuleScanner] = None,
                 state: Optional[StateStore] = None):
        self.config = config
        self.runner = runner or CommandRunner()
        self.mokutil = mokutil or MokutilOracle(self.runner)
        self.modinfo = modinfo or ModinfoOracle(self.runner)
        self.scanner = scanner or ModuleScanner(config, self.modinfo)
        self.state = state or StateStore(config.state_dir)

    def detect_secure_boot(self) -> str:
        """Return enabled, disabled or unsupported (legacy BIOS boot)."""
        if not Path(self.config.efi_root).exists():
            log_message("No EFI firmware interface found, Secure Boot unsupported", "WARNING")
            return SECURE_BOOT_UNSUPPORTED

        if not self.mokutil.available():
            log_message("mokutil not found, cannot determine Secure Boot state", "WARNING")
            return SECURE_BOOT_DISABLED

        if self.mokutil.secure_boot_state() == SB_ENABLED:
            log_message("Secure Boot is enabled")
            return SECURE_BOOT_ENABLED

        log_message("Secure Boot is disabled or could not be determined", "WARNING")
        return SECURE_BOOT_DISABLED

    def detect_tpm(self) -> str:
        if self.runner.which("tpm2_getcap") is None:
            log_message("tpm2-tools not installed", "DEBUG")
            return TPM_TOOLS_MISSING

        result = self.runner.run(["tpm2_getcap", "handles-persistent"], timeout=30)
        if result.ok and "0x" in result.stdout:
            log_message("TPM2 is available")
            return TPM_AVAILABLE
        log_message("TPM2 not available", "DEBUG")
        return TPM_UNAVAILABLE

    def verify_prerequisites(self) -> None:
        """
        Check every tool and key file the signing run needs.

        Raises:
            PrerequisitesMissing: Naming every absent item, not just the first
        """
        log_message("Verifying prerequisites...")
        missing: List[str] = []

        for label, path in (("private key", self.config.private_key),
                            ("public key", self.config.public_key)):
            if os.path.isfile(path):
                log_message(f"✓ {label.capitalize()} found")
            else:
                log_message(f"✗ {label.capitalize()} not found: {path}", "ERROR")
                missing.append(path)

        if os.path.isfile(self.config.sign_file) and os.access(self.config.sign_file, os.X_OK):
            log_message("✓ sign-file utility found")
        else:
            log_message(f"✗ sign-file utility not found or not executable: {self.config.sign_file}", "ERROR")
            missing.append(self.config.sign_file)

        for tool in self.config.required_tools:
            if self.runner.which(tool):
                log_message(f"✓ {tool} utility found")
            else:
                log_message(f"✗ {tool} utility not found", "ERROR")
                missing.append(tool)

        if missing:
            raise PrerequisitesMissing(missing)
        log_message("All prerequisites satisfied")

    def kernel_version(self) -> str:
        return self.config.kernel_version

    def firmware_type(self) -> Dict[str, str]:
        efi = Path(self.config.efi_root)
        platform_size = efi / "fw_platform_size"
        if platform_size.is_file():
            try:
                bits = f"{platform_size.read_text().strip()}-bit"
            except OSError:
                bits = "unknown"
            return {"type": "UEFI", "bits": bits}
        if efi.is_dir():
            return {"type": "EFI", "bits": "unknown"}
        return {"type": "BIOS", "bits": "unknown"}

    def mok_enrollment(self) -> str:
        if not self.mokutil.available():
            return "unavailable"
        count = self.mokutil.enrolled_key_count()
        if count is None:
            return "unavailable"
        return "enrolled" if count > 0 else "not_enrolled"

    def selinux_status(self) -> str:
        if self.runner.which("getenforce") is None:
            return "not_installed"
        result = self.runner.run(["getenforce"], timeout=10)
        return result.stdout.strip() if result.ok and result.stdout.strip() else "unknown"

    def driver_version(self) -> str:
        """modinfo version of the primary driver module, or not_installed."""
        for module in self.scanner.find_modules():
            if module.name == self.config.primary_module:
                return self.modinfo.version(module.path) or "unknown"
        return "not_installed"

    def signing_keys_info(self) -> Dict[str, str]:
        def _mtime(path: str) -> str:
            return datetime.fromtimestamp(os.path.getmtime(path)).strftime('%Y-%m-%d %H:%M:%S')

        if os.path.isfile(self.config.private_key) and os.path.isfile(self.config.public_key):
            return {
                "status": "present",
                "private_key_date": _mtime(self.config.private_key),
                "public_key_date": _mtime(self.config.public_key),
            }
        return {"status": "missing", "private_key_date": "", "public_key_date": ""}

    def detection_report(self) -> SystemReport:
        firmware = self.firmware_type()
        keys = self.signing_keys_info()
        total, signed, unsigned = self.scanner.count()
        return SystemReport(
            timestamp=datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
            kernel_version=self.kernel_version(),
            firmware_type=firmware["type"],
            firmware_bits=firmware["bits"],
            secure_boot=self.detect_secure_boot(),
            mok_enrollment=self.mok_enrollment(),
            tpm=self.detect_tpm(),
            selinux=self.selinux_status(),
            driver_version=self.driver_version(),
            modules_total=total,
            modules_signed=signed,
            modules_unsigned=unsigned,
            keys_status=keys["status"],
            private_key_date=keys["private_key_date"],
            public_key_date=keys["public_key_date"],
            last_signing_time=str(self.state.get(LAST_SUCCESS, "never")),
        )

    def _snapshot_path(self, name: str) -> Path:
        return Path(self.config.state_path(name))

    def load_snapshot(self, name: str = DETECTION_STATE) -> Optional[SystemReport]:
        path = self._snapshot_path(name)
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                return SystemReport.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            log_message(f"Failed to load detection snapshot {path}: {e}", "WARNING")
            return None

    def save_detection_state(self, report: Optional[SystemReport] = None) -> str:
        """Write the current report, keeping the last one as previous-state.json."""
        report = report or self.detection_report()
        state_root = Path(self.config.state_dir)
        state_root.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(state_root, 0o700)

        current = self._snapshot_path(DETECTION_STATE)
        if current.exists():
            os.replace(current, self._snapshot_path(PREVIOUS_STATE))

        with tempfile.NamedTemporaryFile('w', dir=state_root, prefix=".detection.",
                                         delete=False) as tmp:
            json.dump(report.to_dict(), tmp, indent=2)
            tmp_path = tmp.name
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, current)
        log_message(f"Detection state saved to {current}", "DEBUG")
        return str(current)

    def _describe_driver_change(self, previous: str, current: str) -> str:
        try:
            if version.parse(current) > version.parse(previous):
                return "upgrade"
            if version.parse(current) < version.parse(previous):
                return "downgrade"
        except version.InvalidVersion:
            pass
        return "change"

    def compare_with_previous(self) -> Optional[str]:
        """
        Compare the live system with the last saved snapshot.

        Returns:
            str: kernel_changed, driver_changed or modules_changed, or None
            when nothing changed or no snapshot exists yet
        """
        previous = self.load_snapshot(DETECTION_STATE)
        if previous is None:
            log_message("No previous state found - this is first run", "DEBUG")
            return None

        current_kernel = self.kernel_version()
        if previous.kernel_version != current_kernel:
            log_message(f"Kernel version changed: {previous.kernel_version} → {current_kernel}", "WARNING")
            return KERNEL_CHANGED

        current_driver = self.driver_version()
        if previous.driver_version != current_driver:
            kind = self._describe_driver_change(previous.driver_version, current_driver)
            log_message(
                f"Driver version {kind}: {previous.driver_version} → {current_driver}", "WARNING"
            )
            return DRIVER_CHANGED

        current_total = sum(1 for _ in self.scanner.find_modules())
        if previous.modules_total != current_total:
            log_message(f"Module count changed: {previous.modules_total} → {current_total}", "WARNING")
            return MODULES_CHANGED

        log_message("✓ System state unchanged from previous detection")
        return None

    def check_if_resigning_needed(self) -> bool:
        total, signed, unsigned = self.scanner.count()
        if unsigned > 0:
            log_message(f"Unsigned modules detected: {unsigned} of {total}", "WARNING")
            return True

        if self.state.exists(FAILURE_MARKER):
            log_message("Previous signing operation failed", "WARNING")
            return True

        log_message("✓ All modules properly signed")
        return False
