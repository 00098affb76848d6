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
Kernel module signing and recovery for Secure Boot hosts.

Detects the host, signs unsigned driver modules with the Machine Owner Key
behind a set of safety checks, verifies the result and restores modules from
backups when something goes wrong.
"""

__version__ = "1.0.0"

from .utils.index import log_message
from .exit_codes import ExitCode, resolve_exit_code
from .config import SigningConfig, load_config

__all__ = [
    'log_message',
    'ExitCode',
    'resolve_exit_code',
    'SigningConfig',
    'load_config',
    '__version__',
]
