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
Module Backup Store

Directory of timestamp-prefixed copies of kernel modules, taken by the signer
immediately before a module is modified and by recovery before a module is
overwritten. Backups are never deleted here; pruning is left to housekeeping.

Key Features:
- Owner-only backup directory and files
- backups_index.json with size, SHA-256 checksum and signature status
- Files dropped into the directory by hand (<epoch>_<name>) are still listed
- Newest-first listing and newest-backup-per-module selection

Usage:
    from moksign.utils import BackupStore

    store = BackupStore("/var/lib/nvidia-signing/backups")
    record = store.backup_module("/usr/lib/modules/6.8.0/extra/nvidia.ko", "unsigned")
    store.copy_back(record)
"""

import os
import re
import json
import time
import shutil
import hashlib
import tempfile
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple
from dataclasses import dataclass, asdict
from .index import log_message
from ..errors import BackupError

KIND_SIGNING = "signing"
KIND_PRE_RESTORE = "pre-restore"

INDEX_NAME = "backups_index.json"

_BACKUP_NAME = re.compile(r'^(?:(pre-restore)-)?(\d+)_(.+)$')


def calculate_checksum(file_path: str) -> str:
    """Calculate the SHA-256 checksum of a file, empty string if unreadable."""
    sha256_hash = hashlib.sha256()
    try:
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b""):
                sha256_hash.update(chunk)
    except OSError as e:
        log_message(f"Failed to checksum {file_path}: {e}", "WARNING")
        return ""
    return sha256_hash.hexdigest()


@dataclass
class BackupRecord:
    """One stored copy of a module."""
    backup_id: str
    timestamp: int
    module_name: str
    source_path: str
    backup_path: str
    size: int
    checksum: str
    signature_status: str = "unknown"
    kind: str = KIND_SIGNING

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        return cls(**data)

    @property
    def is_safety_backup(self) -> bool:
        return self.kind == KIND_PRE_RESTORE


class BackupStore:
    """Timestamped module backups with a JSON index."""

    def __init__(self, backup_dir: str, clock=time.time):
        self.backup_dir = Path(backup_dir)
        self.backups_index = self.backup_dir / INDEX_NAME
        self._clock = clock

    def _ensure_dir(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(self.backup_dir, 0o700)

    def _load_backups_index(self) -> Dict[str, BackupRecord]:
        if not self.backups_index.exists():
            return {}

        try:
            with open(self.backups_index, 'r') as f:
                data = json.load(f)
            return {bid: BackupRecord.from_dict(entry) for bid, entry in data.items()}
        except (OSError, ValueError, TypeError) as e:
            log_message(f"Failed to load backups index: {e}", "WARNING")
            return {}

    def _save_backups_index(self, backups: Dict[str, BackupRecord]) -> None:
        data = {bid: backup.to_dict() for bid, backup in backups.items()}
        try:
            with tempfile.NamedTemporaryFile('w', dir=self.backup_dir, prefix=".index.",
                                             delete=False) as tmp:
                json.dump(data, tmp, indent=2)
                tmp_path = tmp.name
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.backups_index)
        except OSError as e:
            log_message(f"Failed to save backups index: {e}", "ERROR")

    def _allocate_name(self, basename: str, kind: str) -> Tuple[int, Path]:
        """Pick a free <epoch>_<name> slot, moving forward on collision."""
        epoch = int(self._clock())
        prefix = f"{KIND_PRE_RESTORE}-" if kind == KIND_PRE_RESTORE else ""
        while True:
            candidate = self.backup_dir / f"{prefix}{epoch}_{basename}"
            if not candidate.exists():
                return epoch, candidate
            epoch += 1

    def _discard(self, backup_path: Path) -> None:
        """Remove a partial copy so it is never offered for restore."""
        try:
            backup_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log_message(f"Failed to remove partial backup {backup_path}: {e}", "WARNING")

    def backup_module(self, source_path: str, signature_status: str = "unknown",
                      kind: str = KIND_SIGNING) -> BackupRecord:
        """
        Copy a module into the store.

        Args:
            source_path: Module file to copy
            signature_status: Classification of the module at backup time
            kind: KIND_SIGNING or KIND_PRE_RESTORE

        Returns:
            BackupRecord: The stored backup

        Raises:
            BackupError: The copy could not be made or is incomplete
        """
        source = Path(source_path)
        if not source.is_file():
            raise BackupError(f"Module does not exist: {source_path}")

        try:
            self._ensure_dir()
            timestamp, backup_path = self._allocate_name(source.name, kind)
        except OSError as e:
            raise BackupError(f"Failed to backup {source_path}: {e}")

        try:
            shutil.copy2(source, backup_path)
            os.chmod(backup_path, 0o600)
            size = backup_path.stat().st_size
        except OSError as e:
            self._discard(backup_path)
            raise BackupError(f"Failed to backup {source_path}: {e}")

        if size != source.stat().st_size:
            self._discard(backup_path)
            raise BackupError(
                f"Backup of {source.name} is incomplete ({size} of {source.stat().st_size} bytes)"
            )

        record = BackupRecord(
            backup_id=backup_path.name,
            timestamp=timestamp,
            module_name=source.name,
            source_path=str(source),
            backup_path=str(backup_path),
            size=size,
            checksum=calculate_checksum(str(backup_path)),
            signature_status=signature_status,
            kind=kind,
        )

        backups = self._load_backups_index()
        backups[record.backup_id] = record
        self._save_backups_index(backups)

        log_message(f"Created backup: {source} → {backup_path}", "DEBUG")
        return record

    def copy_back(self, record: BackupRecord, target: Optional[str] = None) -> None:
        """
        Overwrite the module with the backup bytes.

        Raises:
            BackupError: The backup is missing or the copy failed
        """
        backup_path = Path(record.backup_path)
        target_path = Path(target or record.source_path)
        if not backup_path.is_file():
            raise BackupError(f"Backup file not found: {backup_path}")
        try:
            shutil.copyfile(backup_path, target_path)
        except OSError as e:
            raise BackupError(f"Failed to restore {target_path} from {backup_path}: {e}")

    def _scan_unindexed(self, known: Dict[str, BackupRecord]) -> List[BackupRecord]:
        """Records for timestamp-prefixed files that are missing from the index."""
        records = []
        if not self.backup_dir.is_dir():
            return records
        for entry in self.backup_dir.iterdir():
            if entry.name in known or not entry.is_file():
                continue
            match = _BACKUP_NAME.match(entry.name)
            if not match:
                continue
            records.append(BackupRecord(
                backup_id=entry.name,
                timestamp=int(match.group(2)),
                module_name=match.group(3),
                source_path="",
                backup_path=str(entry),
                size=entry.stat().st_size,
                checksum="",
                kind=KIND_PRE_RESTORE if match.group(1) else KIND_SIGNING,
            ))
        return records

    def list_backups(self, module_name: Optional[str] = None,
                     include_safety: bool = True) -> List[BackupRecord]:
        """
        List available backups, newest first.

        Args:
            module_name: Only backups of this module file name
            include_safety: Include pre-restore safety backups

        Returns:
            List[BackupRecord]: Matching backups whose file still exists
        """
        backups = self._load_backups_index()
        backup_list = [b for b in backups.values() if Path(b.backup_path).is_file()]
        backup_list.extend(self._scan_unindexed(backups))

        if module_name:
            backup_list = [b for b in backup_list if b.module_name == module_name]
        if not include_safety:
            backup_list = [b for b in backup_list if not b.is_safety_backup]

        backup_list.sort(key=lambda b: (b.timestamp, b.backup_id), reverse=True)
        return backup_list

    def latest_per_module(self) -> Dict[str, BackupRecord]:
        """Newest non-safety backup for each module name."""
        latest: Dict[str, BackupRecord] = {}
        for record in self.list_backups(include_safety=False):
            latest.setdefault(record.module_name, record)
        return latest
