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
System-wide advisory lock for signing runs.

The lock is an flock() on a well-known file. The file also records the holder
PID and acquisition time so waiters can report who they are waiting for and a
record left behind by a dead process is recognised as stale.
"""

import os
import json
import time
import fcntl
from pathlib import Path
from typing import Optional, Dict, Any
from .index import log_message
from ..errors import LockTimeout


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class AdvisoryLock:
    """Exclusive advisory lock with polling acquisition and a timeout."""

    def __init__(self, path: str, timeout: float = 30, poll_interval: float = 1,
                 clock=time.monotonic, sleep=time.sleep):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.acquired_at: Optional[float] = None
        self._clock = clock
        self._sleep = sleep
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def read_record(self) -> Optional[Dict[str, Any]]:
        """Return the holder record stored in the lock file, if any."""
        try:
            text = self.path.read_text().strip()
        except (FileNotFoundError, IsADirectoryError):
            return None
        except OSError as e:
            log_message(f"Failed to read lock file {self.path}: {e}", "WARNING")
            return None
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        # Bare PID written by older tooling
        if isinstance(data, int):
            return {"pid": data}
        return data if isinstance(data, dict) else None

    @property
    def holder_pid(self) -> Optional[int]:
        record = self.read_record()
        if not record:
            return None
        try:
            return int(record.get("pid"))
        except (TypeError, ValueError):
            return None

    def is_locked(self) -> bool:
        """True if some other descriptor currently holds the lock."""
        if self.held:
            return True
        try:
            fd = os.open(self.path, os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        finally:
            os.close(fd)
        return False

    def _try_lock(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False

        # The previous holder may have unlinked the file between our open and flock
        try:
            same_file = os.fstat(fd).st_ino == os.stat(self.path).st_ino
        except FileNotFoundError:
            same_file = False
        if not same_file:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return False

        previous = self.holder_pid
        if previous and previous != os.getpid() and not pid_alive(previous):
            log_message(f"Stale lock from PID {previous} found, reclaiming", "WARNING")

        self.acquired_at = time.time()
        record = {
            "pid": os.getpid(),
            "acquired_at": int(self.acquired_at),
            "timeout": self.timeout,
        }
        os.ftruncate(fd, 0)
        os.pwrite(fd, json.dumps(record).encode(), 0)
        os.fsync(fd)
        self._fd = fd
        return True

    def acquire(self, token=None) -> 'AdvisoryLock':
        """
        Poll for the lock until it is free or the timeout elapses.

        Args:
            token: Optional CancellationToken checked between polls

        Returns:
            AdvisoryLock: self, now held

        Raises:
            LockTimeout: A live holder kept the lock for the whole timeout
        """
        if self.held:
            return self

        start = self._clock()
        while True:
            if token is not None:
                token.raise_if_cancelled()

            if self._try_lock():
                log_message(f"Lock acquired (PID: {os.getpid()})", "DEBUG")
                return self

            holder = self.holder_pid
            elapsed = self._clock() - start
            if elapsed >= self.timeout:
                raise LockTimeout(holder, self.timeout)

            holder_text = f" held by PID {holder}" if holder else ""
            log_message(f"Waiting for lock{holder_text}... ({int(elapsed)}s/{int(self.timeout)}s)", "WARNING")
            self._sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock and remove the lock file. Safe to call twice."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            try:
                if os.fstat(fd).st_ino == os.stat(self.path).st_ino:
                    self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                log_message(f"Failed to remove lock file {self.path}: {e}", "WARNING")
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            self.acquired_at = None
        log_message("Lock released", "DEBUG")

    def force_clear(self) -> bool:
        """Delete the lock file regardless of holder. Returns True if removed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False

    def __enter__(self) -> 'AdvisoryLock':
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
