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
State Store for the Signing System

Small keyed store for the cross-run state of the signing system. Each key is one
owner-only file inside the state directory, so an operator can still inspect or
reset a single value by hand (deleting failure-count closes the circuit breaker).

Key Features:
- get / set / delete / compare-and-swap per key
- Atomic replacement of every write (temp file + rename)
- Cross-process serialisation of read-modify-write through a flock guard
- The ExecutionState record, fully overwritten on every run

Usage:
    from moksign.utils import StateStore

    store = StateStore("/var/lib/nvidia-signing")
    store.increment(FAILURE_COUNT)
    store.compare_and_swap(LAST_ATTEMPT, previous, now)
"""

import os
import json
import fcntl
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict, fields
from packaging import version
from .index import log_message

STATE_SCHEMA_VERSION = "1.0.0"

# Well-known keys
FAILURE_COUNT = "failure-count"
SUCCESS_COUNT = "success-count"
LAST_ATTEMPT = "last-signing-attempt"
FAILURE_MARKER = "last-signing-failed"
LAST_SUCCESS = "last-successful-signing"
STATE_RECORD = "state.json"

_MISSING = object()


class StateManagerError(Exception):
    """Custom exception for state store write failures."""
    pass


@dataclass
class ExecutionState:
    """Outcome of the most recent signing run."""
    timestamp: str
    kernel_version: str
    secure_boot: str
    tpm: str
    modules_signed: int
    modules_skipped: int
    modules_failed: int
    exit_code: int
    version: str = STATE_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExecutionState':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class StateStore:
    """
    Keyed state store backed by one file per key.

    Values are JSON encoded. Plain-text values written by hand (for example a
    bare integer or timestamp) are read back as-is.
    """

    def __init__(self, state_dir: str):
        self.state_root = Path(state_dir)
        self.state_file = self.state_root / STATE_RECORD
        self._guard_file = self.state_root / ".store.lock"

    def _ensure_dir(self) -> None:
        self.state_root.mkdir(parents=True, exist_ok=True, mode=0o700)
        os.chmod(self.state_root, 0o700)

    def _key_path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid state key: {key!r}")
        return self.state_root / key

    @contextmanager
    def _exclusive(self):
        """Serialise read-modify-write sequences across processes."""
        self._ensure_dir()
        fd = os.open(self._guard_file, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _read(self, path: Path) -> Any:
        try:
            text = path.read_text()
        except FileNotFoundError:
            return _MISSING
        except OSError as e:
            log_message(f"Failed to read state {path.name}: {e}", "WARNING")
            return _MISSING

        text = text.strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def _write(self, path: Path, value: Any) -> None:
        self._ensure_dir()
        try:
            with tempfile.NamedTemporaryFile('w', dir=self.state_root, prefix=f".{path.name}.",
                                             delete=False) as tmp:
                json.dump(value, tmp, indent=2)
                tmp.write("\n")
                tmp_path = tmp.name
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateManagerError(f"Failed to write state {path.name}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for key, or default when absent."""
        value = self._read(self._key_path(key))
        return default if value is _MISSING else value

    def set(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        with self._exclusive():
            self._write(self._key_path(key), value)

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if it existed."""
        try:
            self._key_path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def exists(self, key: str) -> bool:
        return self._key_path(key).exists()

    def modified_time(self, key: str) -> Optional[float]:
        """Modification time of the record behind key, None when absent."""
        try:
            return self._key_path(key).stat().st_mtime
        except FileNotFoundError:
            return None

    def compare_and_swap(self, key: str, expected: Any, new: Any) -> bool:
        """
        Replace the value of key with new only if it currently equals expected.

        An absent key compares equal to None.

        Returns:
            bool: True if the swap happened
        """
        path = self._key_path(key)
        with self._exclusive():
            current = self._read(path)
            if current is _MISSING:
                current = None
            if current != expected:
                return False
            self._write(path, new)
            return True

    def increment(self, key: str) -> int:
        """Atomically add one to an integer counter and return the new value."""
        path = self._key_path(key)
        with self._exclusive():
            current = self._read(path)
            try:
                count = int(current) if current is not _MISSING else 0
            except (TypeError, ValueError):
                log_message(f"Counter {key} was unreadable ({current!r}), restarting at 0", "WARNING")
                count = 0
            count += 1
            self._write(path, count)
            return count

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            log_message(f"Counter {key} is unreadable ({value!r}), treating as {default}", "WARNING")
            return default

    def save_execution_state(self, state: ExecutionState) -> None:
        """Overwrite the execution state record."""
        with self._exclusive():
            self._write(self.state_file, state.to_dict())
        log_message(f"State saved to {self.state_file}", "DEBUG")

    def load_execution_state(self) -> Optional[ExecutionState]:
        """
        Load the execution state of the previous run.

        Returns:
            ExecutionState: The record, or None if absent, unreadable or written
            by a newer schema
        """
        data = self._read(self.state_file)
        if data is _MISSING:
            return None
        if not isinstance(data, dict):
            log_message(f"State record {self.state_file} is corrupted", "WARNING")
            return None

        record_version = str(data.get("version", "0"))
        try:
            if version.parse(record_version) > version.parse(STATE_SCHEMA_VERSION):
                log_message(
                    f"State record schema {record_version} is newer than supported "
                    f"{STATE_SCHEMA_VERSION}, ignoring it", "WARNING"
                )
                return None
        except version.InvalidVersion:
            log_message(f"State record has invalid schema version '{record_version}'", "WARNING")

        try:
            return ExecutionState.from_dict(data)
        except TypeError as e:
            log_message(f"State record {self.state_file} is incomplete: {e}", "WARNING")
            return None

    def clear_execution_state(self) -> bool:
        """Delete the execution state record. Returns True if one existed."""
        try:
            self.state_file.unlink()
            return True
        except FileNotFoundError:
            return False
