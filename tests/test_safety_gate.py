import os
from collections import namedtuple

import pytest

from moksign.components.adapters import MokutilOracle
from moksign.components.safety_gate import SafetyGate
from moksign.errors import (
    CircuitBreakerOpen,
    InsufficientResources,
    LockTimeout,
    PermissionDenied,
    RateLimited,
)
from moksign.utils.lock import AdvisoryLock
from moksign.utils.state_manager import FAILURE_COUNT, LAST_ATTEMPT, StateStore

DiskUsage = namedtuple("DiskUsage", "total used free")


class Clock:
    def __init__(self, now=1700000000):
        self.now = now

    def __call__(self):
        return self.now


def _gate(config, runner, clock=None, disk_usage=None):
    kwargs = {}
    if disk_usage is not None:
        kwargs["disk_usage"] = disk_usage
    return SafetyGate(config, mokutil=MokutilOracle(runner), clock=clock or Clock(), **kwargs)


def test_first_attempt_passes_and_is_recorded(config, runner):
    gate = _gate(config, runner)
    gate.check_rate_limit()
    assert StateStore(config.state_dir).get(LAST_ATTEMPT) == 1700000000


def test_second_attempt_within_window_is_rate_limited(config, runner):
    clock = Clock()
    gate = _gate(config, runner, clock)
    gate.check_rate_limit()

    clock.now += 120
    with pytest.raises(RateLimited) as excinfo:
        gate.check_rate_limit()
    assert excinfo.value.elapsed == 120
    assert excinfo.value.minimum == 300
    # A refused attempt does not move the window
    assert StateStore(config.state_dir).get(LAST_ATTEMPT) == 1700000000

    clock.now += 181
    gate.check_rate_limit()
    assert StateStore(config.state_dir).get(LAST_ATTEMPT) == 1700000301


def test_legacy_marker_falls_back_to_mtime(config, runner):
    store = StateStore(config.state_dir)
    store.set(LAST_ATTEMPT, "touched")
    marker = os.path.join(config.state_dir, LAST_ATTEMPT)
    os.utime(marker, (1700000000, 1700000000))

    with pytest.raises(RateLimited):
        _gate(config, runner, Clock(1700000010)).check_rate_limit()


def test_rate_limit_disabled(config, runner):
    config.rate_limit_seconds = 0
    gate = _gate(config, runner)
    gate.check_rate_limit()
    gate.check_rate_limit()


def test_disk_space(config, runner):
    def small_boot(mount):
        return DiskUsage(0, 0, 10 * 1024)

    config.boot_min_kb = 51200
    with pytest.raises(InsufficientResources) as excinfo:
        _gate(config, runner, disk_usage=small_boot).check_disk_space()
    assert excinfo.value.available_kb == 10
    assert excinfo.value.required_kb == 51200


def test_missing_mount_is_skipped(config, runner, tmp_path):
    config.boot_mount = str(tmp_path / "no-boot")
    config.boot_min_kb = 51200
    _gate(config, runner).check_disk_space()


def test_key_permissions_warn_only(config, runner, caplog):
    gate = _gate(config, runner)
    assert gate.check_key_permissions() is True

    os.chmod(config.private_key, 0o644)
    assert gate.check_key_permissions() is False
    assert "unusual permissions: 644" in caplog.text


def test_circuit_breaker(config, runner):
    store = StateStore(config.state_dir)
    gate = _gate(config, runner)
    store.set(FAILURE_COUNT, 2)
    gate.check_circuit_breaker()

    store.set(FAILURE_COUNT, 3)
    with pytest.raises(CircuitBreakerOpen):
        gate.check_circuit_breaker()

    store.delete(FAILURE_COUNT)
    gate.check_circuit_breaker()


def test_root_required(config, runner, monkeypatch):
    config.require_root = True
    monkeypatch.setattr(os, "geteuid", lambda: 1000)
    with pytest.raises(PermissionDenied):
        _gate(config, runner).check_root()


def test_preflight_returns_held_lock(config, runner):
    lock = _gate(config, runner).run_preflight()
    assert lock.held
    assert AdvisoryLock(config.lock_file).is_locked()
    lock.release()


def test_preflight_releases_lock_when_circuit_is_open(config, runner):
    StateStore(config.state_dir).set(FAILURE_COUNT, 5)
    gate = _gate(config, runner)

    with pytest.raises(CircuitBreakerOpen):
        gate.run_preflight()
    assert not gate.lock.held
    assert not os.path.exists(config.lock_file)


def test_preflight_fails_while_another_run_holds_lock(config, runner):
    other = AdvisoryLock(config.lock_file)
    other.acquire()
    try:
        with pytest.raises(LockTimeout):
            _gate(config, runner).run_preflight()
    finally:
        other.release()


def test_advisory_checks_never_raise(config, runner, caplog):
    gate = _gate(config, runner)
    assert gate.check_secure_boot_enabled() is True
    assert gate.check_keys_enrolled() is True

    runner.sb_state = "SecureBoot disabled"
    runner.enrolled = ""
    assert gate.check_secure_boot_enabled() is False
    assert gate.check_keys_enrolled() is False
    assert "MOK keys not enrolled" in caplog.text
