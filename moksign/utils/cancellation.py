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

import signal
from contextlib import contextmanager
from typing import Optional
from .index import log_message
from ..errors import Cancelled


class CancellationToken:
    """Records a SIGINT/SIGTERM so work can stop at the next safe point."""

    def __init__(self):
        self.signum: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self.signum is not None

    def cancel(self, signum: int = signal.SIGTERM) -> None:
        # First signal wins
        if self.signum is None:
            self.signum = signum

    def raise_if_cancelled(self) -> None:
        if self.signum is not None:
            raise Cancelled(self.signum)


@contextmanager
def handle_signals(token: CancellationToken):
    """Route SIGINT and SIGTERM to token for the duration of the block."""

    def _handler(signum, frame):
        name = "interrupted by user" if signum == signal.SIGINT else "terminated by system"
        log_message(f"Operation {name}, stopping at the next safe point", "WARNING")
        token.cancel(signum)

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, _handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, _handler),
    }
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
