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
Signing orchestrator and command line entry point.

A signing run goes detector → scanner → safety gate → signer → boot image
rebuild → post verification → state record → exit code. Verification,
detection reports and recovery are available as separate actions.
"""

import sys
import json
import time
import argparse
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Optional
from .config import SigningConfig, load_config
from .errors import MokSignError, Cancelled, ConfigurationError
from .exit_codes import ExitCode, resolve_exit_code, print_exit_summary
from .components import (
    CommandRunner,
    SignFileTool,
    DracutBuilder,
    ModinfoOracle,
    MokutilOracle,
    ModuleScanner,
    SystemDetector,
    SafetyGate,
    Signer,
    PostVerifier,
    RecoveryManager,
)
from .utils.index import log_message, setup_logging
from .utils.lock import AdvisoryLock
from .utils.backup_store import BackupStore
from .utils.cancellation import CancellationToken, handle_signals
from .utils.state_manager import StateStore, StateManagerError, ExecutionState

RECOVERY_MODES = ("auto", "interactive", "list", "status", "clear-state")


@dataclass
class SigningContext:
    """The wired-up components for one invocation."""
    config: SigningConfig
    state: StateStore
    backups: BackupStore
    scanner: ModuleScanner
    detector: SystemDetector
    gate: SafetyGate
    signer: Signer
    verifier: PostVerifier
    recovery: RecoveryManager


def build_context(config: SigningConfig, runner: Optional[CommandRunner] = None,
                  tool: Optional[SignFileTool] = None,
                  builder: Optional[DracutBuilder] = None,
                  clock: Callable[[], float] = time.time,
                  input_fn: Callable[[str], str] = input,
                  output: Callable[[str], None] = print) -> SigningContext:
    """
    Wire every component to one config, one runner and one state store.

    Args:
        config: Configuration shared by all components
        runner: Command runner for external tools (fake in tests)
        tool: sign-file adapter; defaults to one built on runner
        builder: Boot image builder; defaults to dracut through runner
        clock: Wall clock used by the rate limiter and verifier
        input_fn: Prompt reader for interactive recovery
        output: Line writer for listings and status screens
    """
    runner = runner or CommandRunner()
    modinfo = ModinfoOracle(runner)
    mokutil = MokutilOracle(runner)
    state = StateStore(config.state_dir)
    backups = BackupStore(config.backup_dir, clock=clock)
    lock = AdvisoryLock(config.lock_file, timeout=config.lock_timeout,
                        poll_interval=config.lock_poll_interval)
    tool = tool or SignFileTool(config, runner)
    builder = builder or DracutBuilder(runner)

    scanner = ModuleScanner(config, modinfo)
    detector = SystemDetector(config, runner=runner, mokutil=mokutil, modinfo=modinfo,
                              scanner=scanner, state=state)
    return SigningContext(
        config=config,
        state=state,
        backups=backups,
        scanner=scanner,
        detector=detector,
        gate=SafetyGate(config, state=state, lock=lock, mokutil=mokutil, clock=clock),
        signer=Signer(config, scanner=scanner, tool=tool, builder=builder, backups=backups),
        verifier=PostVerifier(config, scanner=scanner, state=state, clock=clock),
        recovery=RecoveryManager(config, backups=backups, state=state, lock=lock, builder=builder,
                                 scanner=scanner, detector=detector, input_fn=input_fn, output=output),
    )


def run_signing(ctx: SigningContext, token: Optional[CancellationToken] = None) -> ExitCode:
    """
    Run one complete signing pass and persist its outcome.

    Returns:
        ExitCode: The resolved exit code; early aborts return the code carried
        by the raised error
    """
    config = ctx.config
    token = token or CancellationToken()
    log_message("===============================================")
    log_message("Kernel Module Auto-Signing")
    log_message("===============================================")
    log_message(f"Kernel: {config.kernel_version}")

    secure_boot = "unknown"
    tpm = "unknown"
    report = None
    lock = None
    exit_code = ExitCode.GENERAL_FAILURE

    try:
        ctx.gate.check_root()
        ctx.detector.verify_prerequisites()
        secure_boot = ctx.detector.detect_secure_boot()
        tpm = ctx.detector.detect_tpm()
        token.raise_if_cancelled()

        previous = ctx.state.load_execution_state()
        if previous:
            log_message(
                f"Previous run at {previous.timestamp}: exit code {previous.exit_code} "
                f"(signed {previous.modules_signed}, failed {previous.modules_failed})", "DEBUG"
            )

        lock = ctx.gate.run_preflight(token)
        report = ctx.signer.sign_all(token=token)
        log_message(f"Signing report: {json.dumps(report.to_dict())}", "DEBUG")

        exit_code = resolve_exit_code(report.total, report.signed, report.failed)
        if report.rebuild_ok is False and exit_code == ExitCode.SUCCESS:
            log_message("Modules signed but the boot image rebuild failed", "WARNING")
            exit_code = ExitCode.PARTIAL_SUCCESS

        if report.total > 0:
            token.raise_if_cancelled()
            ctx.verifier.run()
    except Cancelled as e:
        report = getattr(e, "report", report)
        log_message(str(e), "WARNING")
        exit_code = e.exit_code
    except MokSignError as e:
        log_message(str(e), "ERROR")
        exit_code = e.exit_code
    except StateManagerError as e:
        log_message(str(e), "ERROR")
        exit_code = ExitCode.GENERAL_FAILURE
    finally:
        if lock is not None:
            lock.release()

    save_execution_state(ctx, secure_boot, tpm, report, exit_code)
    print_exit_summary(exit_code)
    return exit_code


def save_execution_state(ctx: SigningContext, secure_boot: str, tpm: str, report, exit_code: int) -> None:
    state = ExecutionState(
        timestamp=datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
        kernel_version=ctx.config.kernel_version,
        secure_boot=secure_boot,
        tpm=tpm,
        modules_signed=report.signed if report else 0,
        modules_skipped=report.skipped if report else 0,
        modules_failed=report.failed if report else 0,
        exit_code=int(exit_code),
    )
    try:
        ctx.state.save_execution_state(state)
    except StateManagerError as e:
        log_message(f"Failed to save execution state: {e}", "WARNING")


def run_verification(ctx: SigningContext) -> ExitCode:
    result = ctx.verifier.run()
    print(json.dumps(result.to_dict(), indent=2))
    return ExitCode.SUCCESS if result.success else ExitCode.GENERAL_FAILURE


def run_recovery(ctx: SigningContext, mode: str) -> ExitCode:
    """Dispatch one of the recovery actions."""
    try:
        ctx.gate.check_root()
    except MokSignError as e:
        log_message(str(e), "ERROR")
        return e.exit_code

    log_message("===============================================")
    log_message("Module Signing Recovery")
    log_message("===============================================")

    recovery = ctx.recovery
    if mode == "auto":
        success = recovery.automatic_recovery()
    elif mode == "interactive":
        success = recovery.interactive_recovery()
    elif mode == "list":
        success = bool(recovery.list_backups())
    elif mode == "status":
        recovery.show_system_status()
        success = True
    elif mode == "clear-state":
        recovery.clear_corrupted_state()
        success = True
    else:
        log_message(f"Unknown recovery mode: {mode}", "ERROR")
        return ExitCode.CONFIGURATION_ERROR
    return ExitCode.SUCCESS if success else ExitCode.GENERAL_FAILURE


def dispatch(args, ctx: SigningContext, token: CancellationToken) -> ExitCode:
    detector = ctx.detector
    if args.recover:
        return run_recovery(ctx, args.recover)
    if args.verify:
        return run_verification(ctx)
    if args.report:
        print(json.dumps(detector.detection_report().to_dict(), indent=2))
        return ExitCode.SUCCESS
    if args.save_state:
        detector.save_detection_state()
        return ExitCode.SUCCESS
    if args.compare:
        change = detector.compare_with_previous()
        if change:
            print(change)
            return ExitCode.GENERAL_FAILURE
        return ExitCode.SUCCESS
    if args.check_resigning:
        return ExitCode.GENERAL_FAILURE if detector.check_if_resigning_needed() else ExitCode.SUCCESS
    return run_signing(ctx, token)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moksign",
        description="Sign kernel modules with the Machine Owner Key and recover from failed signing"
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--verify", action="store_true",
                         help="Run post-signing verification only")
    actions.add_argument("--report", action="store_true",
                         help="Print a system detection report as JSON")
    actions.add_argument("--save-state", action="store_true",
                         help="Save the detection snapshot for later comparison")
    actions.add_argument("--compare", action="store_true",
                         help="Compare the system with the saved snapshot (exit 1 if changed)")
    actions.add_argument("--check-resigning", action="store_true",
                         help="Exit 1 if any module needs signing")
    actions.add_argument("--recover", choices=RECOVERY_MODES, metavar="MODE",
                         help=f"Recovery action: {', '.join(RECOVERY_MODES)}")
    parser.add_argument("--config", metavar="PATH",
                        help="JSON configuration file")
    parser.add_argument("--debug", action="store_true",
                        help="Verbose logging on stdout")
    return parser


def _log_prefix(args) -> str:
    if args.recover:
        return "recovery"
    if args.verify:
        return "verification"
    return "moksign"


def main(argv=None):
    """
    Main entry point for signing, verification and recovery.
    Exits with the resolved ExitCode.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        setup_logging(None, debug=args.debug, syslog=False)
        log_message(str(e), "ERROR")
        print_exit_summary(e.exit_code)
        sys.exit(int(e.exit_code))

    if args.debug:
        config.debug = True

    token = CancellationToken()
    try:
        setup_logging(config.log_dir, _log_prefix(args), debug=config.debug, syslog=config.syslog)
        ctx = build_context(config)
        with handle_signals(token):
            code = dispatch(args, ctx, token)
    except KeyboardInterrupt:
        log_message("Operation interrupted by user", "WARNING")
        sys.exit(int(ExitCode.INTERRUPTED))
    except Cancelled as e:
        log_message(str(e), "WARNING")
        sys.exit(int(e.exit_code))
    except MokSignError as e:
        log_message(str(e), "ERROR")
        sys.exit(int(e.exit_code))

    sys.exit(int(code))


if __name__ == "__main__":
    main()
