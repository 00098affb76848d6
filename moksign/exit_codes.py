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
Process exit codes for signing, verification and recovery runs.

The exit code is the machine-readable contract consumed by the systemd timer,
the package-manager hook and operators. Count-based outcomes are resolved by
resolve_exit_code(); early aborts carry their own code on the raised error.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERAL_FAILURE = 1
    PREREQUISITES_FAILED = 2
    PARTIAL_SUCCESS = 3
    SYSTEM_NOT_READY = 4
    PERMISSION_DENIED = 5
    RATE_LIMITED = 6
    CONFIGURATION_ERROR = 7
    INTERRUPTED = 130
    TERMINATED = 143


EXIT_DESCRIPTIONS = {
    ExitCode.SUCCESS: "Success: All operations completed successfully",
    ExitCode.GENERAL_FAILURE: "General Failure: Unspecified error occurred",
    ExitCode.PREREQUISITES_FAILED: "Prerequisites Failed: Required tools, keys, or configuration missing",
    ExitCode.PARTIAL_SUCCESS: "Partial Success: Some operations succeeded but some failed",
    ExitCode.SYSTEM_NOT_READY: "System Not Ready: System state prevents operation",
    ExitCode.PERMISSION_DENIED: "Permission Denied: Insufficient privileges or access denied",
    ExitCode.RATE_LIMITED: "Rate Limited: Operation blocked by rate limiting",
    ExitCode.CONFIGURATION_ERROR: "Configuration Error: Invalid configuration or parameters",
    ExitCode.INTERRUPTED: "Interrupted: Terminated by user (Ctrl+C)",
    ExitCode.TERMINATED: "Terminated: Terminated by system",
}


def resolve_exit_code(total: int, signed: int, failed: int,
                      prior_circuit_open: bool = False) -> ExitCode:
    """
    Map the outcome counts of a signing run to an exit code.

    Args:
        total: Number of candidate modules found by the scan
        signed: Modules signed during this run
        failed: Modules that could not be signed
        prior_circuit_open: True when the failure circuit breaker was already
            open when the run started

    Returns:
        ExitCode: The resolved exit code
    """
    if prior_circuit_open:
        return ExitCode.GENERAL_FAILURE
    if total == 0:
        return ExitCode.SYSTEM_NOT_READY
    if failed > 0 and signed > 0:
        return ExitCode.PARTIAL_SUCCESS
    if failed > 0:
        return ExitCode.GENERAL_FAILURE
    return ExitCode.SUCCESS


def describe_exit_code(code: int) -> str:
    """Return the human-readable description of an exit code."""
    try:
        return EXIT_DESCRIPTIONS[ExitCode(code)]
    except ValueError:
        return "Unknown error code"


def print_exit_summary(code: int) -> None:
    """Log the end-of-run exit summary block."""
    from .utils.index import log_message

    log_message("================== Execution Summary ==================")
    log_message(f"Exit Code: {int(code)}")
    log_message(f"Status: {describe_exit_code(code)}")
    log_message("=======================================================")
