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

import os
import sys
import logging
import logging.handlers
from datetime import datetime
from typing import Optional

LOGGER_NAME = "moksign"
AUDIT_LOGGER_NAME = "moksign.audit"
SYSLOG_SOCKET = "/dev/log"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def log_message(message: str, level: str = "INFO"):
    """Unified logger used throughout the orchestrator and components."""
    logging.getLogger(LOGGER_NAME).log(_LEVELS.get(level, logging.INFO), message)


def audit_event(message: str) -> None:
    """Record an audit entry (syslog auth facility when available)."""
    logging.getLogger(AUDIT_LOGGER_NAME).warning(message)


def setup_logging(log_dir: Optional[str] = None, prefix: str = "moksign",
                  debug: bool = False, syslog: bool = True) -> Optional[str]:
    """
    Configure stdout logging, an optional per-run log file and the audit channel.

    Args:
        log_dir: Directory for the per-run log file; None disables file logging
        prefix: File name prefix (moksign, verification, recovery)
        debug: Emit DEBUG records on stdout
        syslog: Route audit entries to syslog when the socket exists

    Returns:
        str: Path of the per-run log file, or None when not file-logging
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    unified_format = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(unified_format)
    logger.addHandler(console_handler)

    log_file = None
    if log_dir:
        try:
            os.makedirs(log_dir, mode=0o700, exist_ok=True)
            os.chmod(log_dir, 0o700)
            log_file = os.path.join(log_dir, f"{prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log")
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(unified_format)
            logger.addHandler(file_handler)
            os.chmod(log_file, 0o600)
        except OSError as e:
            log_file = None
            log_message(f"File logging unavailable in {log_dir}: {e}", "WARNING")

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    for h in list(audit_logger.handlers):
        audit_logger.removeHandler(h)
        h.close()
    if syslog and os.path.exists(SYSLOG_SOCKET):
        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=SYSLOG_SOCKET,
                facility=logging.handlers.SysLogHandler.LOG_AUTH
            )
            syslog_handler.ident = "moksign: "
            audit_logger.addHandler(syslog_handler)
        except OSError as e:
            log_message(f"Syslog audit channel unavailable: {e}", "WARNING")

    logger.info("=" * 60)
    logger.info("MOK MODULE SIGNING SESSION STARTED")
    logger.info(f"Command: {' '.join(sys.argv)}")
    logger.info(f"Running as uid: {os.geteuid()}")
    logger.info("=" * 60)
    return log_file
