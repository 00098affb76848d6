import dataclasses
import json
import logging
import os

import pytest

from conftest import write_module
from moksign.components.adapters import MokutilOracle, ModinfoOracle
from moksign.components.detector import (
    DETECTION_STATE,
    DRIVER_CHANGED,
    KERNEL_CHANGED,
    MODULES_CHANGED,
    PREVIOUS_STATE,
    SECURE_BOOT_DISABLED,
    SECURE_BOOT_ENABLED,
    SECURE_BOOT_UNSUPPORTED,
    TPM_AVAILABLE,
    TPM_TOOLS_MISSING,
    TPM_UNAVAILABLE,
    SystemDetector,
)
from moksign.errors import PrerequisitesMissing
from moksign.utils.state_manager import FAILURE_MARKER, StateStore


def _detector(config, runner):
    return SystemDetector(config, runner=runner, mokutil=MokutilOracle(runner),
                          modinfo=ModinfoOracle(runner))


def test_secure_boot_states(config, runner):
    detector = _detector(config, runner)
    assert detector.detect_secure_boot() == SECURE_BOOT_ENABLED

    runner.sb_state = "SecureBoot disabled"
    assert detector.detect_secure_boot() == SECURE_BOOT_DISABLED

    runner.sb_state = "EFI variables are not supported on this system"
    assert detector.detect_secure_boot() == SECURE_BOOT_DISABLED

    runner.tools.discard("mokutil")
    assert detector.detect_secure_boot() == SECURE_BOOT_DISABLED

    os.rmdir(config.efi_root)
    assert detector.detect_secure_boot() == SECURE_BOOT_UNSUPPORTED


def test_tpm_states(config, runner):
    detector = _detector(config, runner)
    assert detector.detect_tpm() == TPM_TOOLS_MISSING

    runner.tools.add("tpm2_getcap")
    assert detector.detect_tpm() == TPM_UNAVAILABLE

    runner.tpm_output = "- 0x81000001\n"
    assert detector.detect_tpm() == TPM_AVAILABLE


def test_prerequisites_pass(config, runner):
    _detector(config, runner).verify_prerequisites()


def test_prerequisites_name_every_missing_item(config, runner):
    os.remove(config.public_key)
    os.chmod(config.sign_file, 0o644)
    runner.tools.discard("dracut")

    with pytest.raises(PrerequisitesMissing) as excinfo:
        _detector(config, runner).verify_prerequisites()

    assert set(excinfo.value.missing) == {config.public_key, config.sign_file, "dracut"}


def test_firmware_and_enrollment(config, runner, tmp_path):
    detector = _detector(config, runner)
    assert detector.firmware_type()["type"] == "EFI"

    (tmp_path / "efi" / "fw_platform_size").write_text("64\n")
    assert detector.firmware_type() == {"type": "UEFI", "bits": "64-bit"}
    assert detector.mok_enrollment() == "enrolled"

    runner.enrolled = ""
    assert detector.mok_enrollment() == "not_enrolled"


def test_report_and_snapshot_rotation(config, runner, modules_dir):
    nvidia = write_module(modules_dir / "nvidia.ko", signed=True)
    write_module(modules_dir / "nvidia-drm.ko")
    runner.versions[str(nvidia)] = "550.78"
    detector = _detector(config, runner)

    report = detector.detection_report()
    assert report.driver_version == "550.78"
    assert (report.modules_total, report.modules_signed, report.modules_unsigned) == (2, 1, 1)
    assert report.keys_status == "present"
    assert report.selinux == "not_installed"

    first = detector.save_detection_state(report)
    detector.save_detection_state()

    previous = os.path.join(config.state_dir, PREVIOUS_STATE)
    assert os.path.exists(previous)
    assert json.load(open(previous))["kernel_version"] == "6.8.0-test"
    assert oct(os.stat(first).st_mode & 0o777) == oct(0o600)


def test_compare_without_snapshot_is_first_run(config, runner):
    assert _detector(config, runner).compare_with_previous() is None


def test_compare_detects_kernel_change(config, runner):
    _detector(config, runner).save_detection_state()
    newer = dataclasses.replace(config, kernel_version="6.9.0-test")

    assert _detector(newer, runner).compare_with_previous() == KERNEL_CHANGED


def test_compare_detects_driver_upgrade(config, runner, modules_dir, caplog):
    nvidia = write_module(modules_dir / "nvidia.ko")
    runner.versions[str(nvidia)] = "550.78"
    detector = _detector(config, runner)
    detector.save_detection_state()
    assert detector.compare_with_previous() is None

    runner.versions[str(nvidia)] = "555.42.02"
    assert detector.compare_with_previous() == DRIVER_CHANGED
    assert "Driver version upgrade: 550.78 → 555.42.02" in caplog.text


def test_compare_detects_module_set_change(config, runner, modules_dir):
    write_module(modules_dir / "nvidia.ko")
    detector = _detector(config, runner)
    detector.save_detection_state()

    write_module(modules_dir / "nvidia-uvm.ko")
    assert detector.compare_with_previous() == MODULES_CHANGED


def test_check_if_resigning_needed(config, runner, modules_dir):
    write_module(modules_dir / "nvidia.ko", signed=True)
    detector = _detector(config, runner)
    assert detector.check_if_resigning_needed() is False

    StateStore(config.state_dir).set(FAILURE_MARKER, "2026-01-01 00:00:00")
    assert detector.check_if_resigning_needed() is True

    StateStore(config.state_dir).delete(FAILURE_MARKER)
    write_module(modules_dir / "nvidia-drm.ko")
    assert detector.check_if_resigning_needed() is True
