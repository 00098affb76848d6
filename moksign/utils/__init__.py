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
Shared infrastructure for the signing system.

Logging, the keyed state store, the advisory lock, the module backup store and
cancellation handling used by the components and the orchestrator.
"""

from .index import log_message, audit_event, setup_logging
from .state_manager import (
    StateStore,
    StateManagerError,
    ExecutionState,
    FAILURE_COUNT,
    SUCCESS_COUNT,
    LAST_ATTEMPT,
    FAILURE_MARKER,
    LAST_SUCCESS,
)
from .lock import AdvisoryLock, pid_alive
from .backup_store import BackupStore, BackupRecord, calculate_checksum
from .cancellation import CancellationToken, handle_signals

__all__ = [
    'log_message',
    'audit_event',
    'setup_logging',
    'StateStore',
    'StateManagerError',
    'ExecutionState',
    'FAILURE_COUNT',
    'SUCCESS_COUNT',
    'LAST_ATTEMPT',
    'FAILURE_MARKER',
    'LAST_SUCCESS',
    'AdvisoryLock',
    'pid_alive',
    'BackupStore',
    'BackupRecord',
    'calculate_checksum',
    'CancellationToken',
    'handle_signals',
]
