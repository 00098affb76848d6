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
Module discovery and signature classification.

A module counts as signed when either oracle says so: modinfo reports an
embedded signer, or the loaded module's taint flag reads "0". Either signal on
its own is accepted as proof.
"""

import os
import fnmatch
from pathlib import Path
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple
from .adapters import ModinfoOracle
from ..utils.index import log_message

SIGNED = "signed"
UNSIGNED = "unsigned"
UNKNOWN = "unknown"


@dataclass
class Module:
    path: str
    kernel_version: str
    status: str = UNKNOWN

    @property
    def basename(self) -> str:
        return os.path.basename(self.path)

    @property
    def name(self) -> str:
        """Kernel module name as it appears under /sys/module."""
        stem = self.basename[:-3] if self.basename.endswith(".ko") else self.basename
        return stem.replace("-", "_")


class ModuleScanner:
    """Finds candidate modules under the configured path and classifies them."""

    def __init__(self, config, modinfo: Optional[ModinfoOracle] = None):
        self.config = config
        self.modinfo = modinfo or ModinfoOracle()

    def find_modules(self, pattern: Optional[str] = None) -> Iterator[Module]:
        """
        Yield a Module for every file under modules_path matching pattern.

        The directory tree is walked afresh each time this is called.
        """
        pattern = pattern or self.config.module_pattern
        root = Path(self.config.modules_path)
        if not root.is_dir():
            log_message(f"Modules path not found: {root}", "WARNING")
            return

        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                if fnmatch.fnmatch(filename, pattern):
                    path = os.path.join(dirpath, filename)
                    log_message(f"Found module: {path}", "DEBUG")
                    yield Module(path=path, kernel_version=self.config.kernel_version)

    def taint_clean(self, module: Module) -> bool:
        tainted = Path(self.config.sysfs_module_root) / module.name / "tainted"
        try:
            return tainted.read_text().strip() == "0"
        except OSError:
            return False

    def classify(self, module: Module) -> str:
        """Classify module as SIGNED or UNSIGNED and record it on the module."""
        if self.modinfo.signer(module.path):
            log_message(f"Module is signed (via modinfo): {module.basename}", "DEBUG")
            module.status = SIGNED
        elif self.taint_clean(module):
            log_message(f"Module is signed (via tainted flag): {module.basename}", "DEBUG")
            module.status = SIGNED
        else:
            log_message(f"Module is unsigned: {module.basename}", "DEBUG")
            module.status = UNSIGNED
        return module.status

    def scan(self, pattern: Optional[str] = None) -> List[Module]:
        """Find and classify every candidate module."""
        modules = []
        for module in self.find_modules(pattern):
            self.classify(module)
            modules.append(module)
        return modules

    def count(self, pattern: Optional[str] = None) -> Tuple[int, int, int]:
        """Return (total, signed, unsigned) for the current module set."""
        modules = self.scan(pattern)
        signed = sum(1 for m in modules if m.status == SIGNED)
        return len(modules), signed, len(modules) - signed
