import os

import pytest

from conftest import FakeSignTool, write_module
from moksign.components.scanner import SIGNED, UNSIGNED, Module
from moksign.errors import LockTimeout
from moksign.utils.backup_store import KIND_PRE_RESTORE
from moksign.utils.lock import AdvisoryLock
from moksign.utils.state_manager import ExecutionState


def _answers(*values):
    replies = iter(values)
    return lambda prompt: next(replies)


def _sign_everything(ctx):
    report = ctx.signer.sign_all()
    assert report.failed == 0
    return report


def test_restore_round_trip(ctx, modules_dir):
    module = write_module(modules_dir / "nvidia.ko")
    original = module.read_bytes()
    _sign_everything(ctx)
    assert module.read_bytes() != original

    summary = ctx.recovery.restore_all()

    assert (summary.processed, summary.restored, summary.failed) == (1, 1, 0)
    assert module.read_bytes() == original
    record = ctx.backups.latest_per_module()["nvidia.ko"]
    assert record.signature_status == UNSIGNED
    assert ctx.scanner.classify(Module(str(module), "6.8.0-test")) == record.signature_status


def test_restore_takes_safety_backup_excluded_from_batch(ctx, modules_dir):
    module = write_module(modules_dir / "nvidia.ko")
    _sign_everything(ctx)
    signed_bytes = module.read_bytes()

    ctx.recovery.restore_all()

    safety = [r for r in ctx.backups.list_backups() if r.kind == KIND_PRE_RESTORE]
    assert len(safety) == 1
    assert safety[0].signature_status == SIGNED
    assert open(safety[0].backup_path, "rb").read() == signed_bytes
    assert all(r.kind != KIND_PRE_RESTORE for r in ctx.backups.latest_per_module().values())


def test_too_small_backup_is_refused(ctx, modules_dir, config):
    module = write_module(modules_dir / "nvidia.ko")
    _sign_everything(ctx)
    signed_bytes = module.read_bytes()
    record = ctx.backups.latest_per_module()["nvidia.ko"]
    with open(record.backup_path, "wb") as f:
        f.write(b"\x7fELF")

    assert ctx.recovery.restore_module(record) is False
    assert module.read_bytes() == signed_bytes


def test_checksum_mismatch_is_refused(ctx, modules_dir):
    module = write_module(modules_dir / "nvidia.ko")
    _sign_everything(ctx)
    signed_bytes = module.read_bytes()
    record = ctx.backups.latest_per_module()["nvidia.ko"]
    data = bytearray(open(record.backup_path, "rb").read())
    data[100] ^= 0xFF
    with open(record.backup_path, "wb") as f:
        f.write(bytes(data))

    assert ctx.recovery.restore_module(record) is False
    assert module.read_bytes() == signed_bytes


def test_size_mismatch_reverts_to_safety_backup(ctx, modules_dir):
    module = write_module(modules_dir / "nvidia.ko")
    _sign_everything(ctx)
    signed_bytes = module.read_bytes()

    def truncating_copy(source, target):
        with open(source, "rb") as src, open(target, "wb") as dst:
            dst.write(src.read()[:500])

    ctx.recovery.copy_fn = truncating_copy
    record = ctx.backups.latest_per_module()["nvidia.ko"]

    assert ctx.recovery.restore_module(record) is False
    assert module.read_bytes() == signed_bytes


def test_automatic_recovery_rebuilds_and_clears_state(ctx, modules_dir, runner):
    write_module(modules_dir / "nvidia.ko")
    write_module(modules_dir / "nvidia-drm.ko")
    _sign_everything(ctx)
    ctx.state.save_execution_state(ExecutionState(
        "2026-01-01T00:00:00Z", "6.8.0-test", "enabled", "available", 2, 0, 0, 0
    ))
    dracut_before = runner.count("dracut")

    assert ctx.recovery.automatic_recovery() is True

    assert runner.count("dracut") == dracut_before + 1
    assert ctx.state.load_execution_state() is None


def test_automatic_recovery_without_backups(ctx):
    assert ctx.recovery.automatic_recovery() is False


def test_partial_failure_continues(ctx, modules_dir):
    nvidia = write_module(modules_dir / "nvidia.ko")
    drm = write_module(modules_dir / "nvidia-drm.ko")
    drm_original = drm.read_bytes()
    _sign_everything(ctx)
    os.remove(nvidia)

    summary = ctx.recovery.restore_all()

    assert (summary.processed, summary.restored, summary.failed) == (2, 1, 1)
    assert not summary.success
    assert drm.read_bytes() == drm_original


def test_clear_corrupted_state_removes_record_and_lock(ctx, config):
    ctx.state.save_execution_state(ExecutionState(
        "2026-01-01T00:00:00Z", "6.8.0-test", "enabled", "available", 0, 0, 1, 1
    ))
    os.makedirs(os.path.dirname(config.lock_file), exist_ok=True)
    with open(config.lock_file, "w") as f:
        f.write('{"pid": 999999999}')

    ctx.recovery.clear_corrupted_state()

    assert not ctx.state.state_file.exists()
    assert not os.path.exists(config.lock_file)


def test_interactive_restore_specific_module(config, runner, modules_dir):
    from moksign.index import build_context

    drm = write_module(modules_dir / "nvidia-drm.ko")
    original = drm.read_bytes()
    lines = []
    ctx = build_context(config, runner=runner, tool=FakeSignTool(),
                        input_fn=_answers("2", "nvidia-drm.ko"), output=lines.append)
    _sign_everything(ctx)

    assert ctx.recovery.interactive_recovery() is True
    assert drm.read_bytes() == original
    assert any("nvidia-drm.ko" in line for line in lines)
    assert any("Restore specific module" in line for line in lines)


def test_interactive_invalid_option(config, runner, modules_dir):
    from moksign.index import build_context

    write_module(modules_dir / "nvidia.ko")
    ctx = build_context(config, runner=runner, tool=FakeSignTool(),
                        input_fn=_answers("9"), output=lambda line: None)
    _sign_everything(ctx)

    assert ctx.recovery.interactive_recovery() is False


def test_interactive_status_screen(config, runner, modules_dir):
    from moksign.index import build_context

    write_module(modules_dir / "nvidia.ko")
    lines = []
    ctx = build_context(config, runner=runner, tool=FakeSignTool(),
                        input_fn=_answers("5"), output=lines.append)
    _sign_everything(ctx)

    assert ctx.recovery.interactive_recovery() is True
    assert "Kernel version: 6.8.0-test" in lines
    assert "  - nvidia.ko: Test MOK" in lines


def test_recovery_warns_and_keeps_live_signing_lock(ctx, config, modules_dir, caplog):
    write_module(modules_dir / "nvidia.ko")
    _sign_everything(ctx)
    holder = AdvisoryLock(config.lock_file)
    holder.acquire()
    try:
        assert ctx.recovery.automatic_recovery() is True
        assert os.path.exists(config.lock_file)
        assert holder.read_record()["pid"] == os.getpid()
    finally:
        holder.release()
    assert "signing run appears to be in progress" in caplog.text
    assert "leaving it in place" in caplog.text


def test_clear_state_never_frees_a_held_lock(ctx, config):
    holder = AdvisoryLock(config.lock_file)
    holder.acquire()
    second = AdvisoryLock(config.lock_file, timeout=0.1, poll_interval=0.05)
    try:
        ctx.recovery.clear_corrupted_state()
        with pytest.raises(LockTimeout):
            second.acquire()
        assert holder.held and not second.held
    finally:
        second.release()
        holder.release()
