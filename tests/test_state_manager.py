import json
import os
import stat

from moksign.utils.state_manager import (
    FAILURE_COUNT,
    LAST_ATTEMPT,
    ExecutionState,
    StateStore,
)


def _state(**overrides):
    values = dict(
        timestamp="2026-01-01T00:00:00Z",
        kernel_version="6.8.0-test",
        secure_boot="enabled",
        tpm="available",
        modules_signed=2,
        modules_skipped=1,
        modules_failed=0,
        exit_code=0,
    )
    values.update(overrides)
    return ExecutionState(**values)


def test_set_get_delete(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    assert store.get("success-count") is None
    assert store.get("success-count", 0) == 0

    store.set("success-count", 4)
    assert store.get("success-count") == 4
    assert store.exists("success-count")

    assert store.delete("success-count") is True
    assert store.delete("success-count") is False


def test_files_and_directory_are_owner_only(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    store.set(LAST_ATTEMPT, 1700000000)

    assert stat.S_IMODE(os.stat(tmp_path / "state").st_mode) == 0o700
    assert stat.S_IMODE(os.stat(tmp_path / "state" / LAST_ATTEMPT).st_mode) == 0o600


def test_compare_and_swap(tmp_path):
    store = StateStore(str(tmp_path / "state"))

    assert store.compare_and_swap(LAST_ATTEMPT, None, 100) is True
    assert store.compare_and_swap(LAST_ATTEMPT, None, 200) is False
    assert store.get(LAST_ATTEMPT) == 100
    assert store.compare_and_swap(LAST_ATTEMPT, 100, 200) is True
    assert store.get(LAST_ATTEMPT) == 200


def test_increment_and_hand_written_values(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    assert store.increment(FAILURE_COUNT) == 1
    assert store.increment(FAILURE_COUNT) == 2

    # An operator may edit the counter by hand
    (tmp_path / "state" / FAILURE_COUNT).write_text("7\n")
    assert store.get_int(FAILURE_COUNT) == 7

    (tmp_path / "state" / FAILURE_COUNT).write_text("garbage")
    assert store.get_int(FAILURE_COUNT) == 0
    assert store.increment(FAILURE_COUNT) == 1


def test_execution_state_is_overwritten(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    store.save_execution_state(_state(modules_signed=2))
    store.save_execution_state(_state(modules_signed=0, exit_code=4))

    loaded = store.load_execution_state()
    assert loaded.modules_signed == 0
    assert loaded.exit_code == 4
    assert stat.S_IMODE(os.stat(store.state_file).st_mode) == 0o600

    assert store.clear_execution_state() is True
    assert store.load_execution_state() is None
    assert store.clear_execution_state() is False


def test_newer_schema_is_treated_as_absent(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    store.save_execution_state(_state())
    data = json.loads(store.state_file.read_text())
    data["version"] = "9.0.0"
    store.state_file.write_text(json.dumps(data))

    assert store.load_execution_state() is None


def test_corrupted_record_is_ignored(tmp_path):
    store = StateStore(str(tmp_path / "state"))
    (tmp_path / "state").mkdir()
    store.state_file.write_text("{truncated")

    assert store.load_execution_state() is None
