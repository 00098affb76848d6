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
Components of a signing run, leaves first.
"""

from .adapters import (
    CommandRunner,
    CommandResult,
    SignFileTool,
    DracutBuilder,
    ModinfoOracle,
    MokutilOracle,
)
from .scanner import ModuleScanner, Module, SIGNED, UNSIGNED, UNKNOWN
from .detector import SystemDetector, SystemReport
from .safety_gate import SafetyGate
from .signer import Signer, SigningReport, ModuleOutcome
from .post_verify import PostVerifier, VerificationResult
from .recovery import RecoveryManager, RestoreSummary

__all__ = [
    'CommandRunner',
    'CommandResult',
    'SignFileTool',
    'DracutBuilder',
    'ModinfoOracle',
    'MokutilOracle',
    'ModuleScanner',
    'Module',
    'SIGNED',
    'UNSIGNED',
    'UNKNOWN',
    'SystemDetector',
    'SystemReport',
    'SafetyGate',
    'Signer',
    'SigningReport',
    'ModuleOutcome',
    'PostVerifier',
    'VerificationResult',
    'RecoveryManager',
    'RestoreSummary',
]
