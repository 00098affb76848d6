import logging
import os
from pathlib import Path

import pytest

from moksign.components.adapters import CommandResult
from moksign.config import SigningConfig
from moksign.index import build_context

SIGNATURE_MARKER = b"~Module signature appended~\n"
MODULE_BODY = b"\x7fELF" + b"\x02\x01\x01" + b"\x00" * 2041


def write_module(path: Path, signed: bool = False, filler: bytes = b"") -> Path:
    """Write an ELF-shaped module, optionally carrying a signature."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = MODULE_BODY + filler
    if signed:
        data += SIGNATURE_MARKER
    path.write_bytes(data)
    return path


class FakeRunner:
    """Answers modinfo, mokutil, dracut and tpm2 queries without running anything."""

    def __init__(self):
        self.calls = []
        self.tools = {"dracut", "modinfo", "mokutil"}
        self.versions = {}
        self.sb_state = "SecureBoot enabled"
        self.enrolled = "[key 1]\nSHA1 Fingerprint: 00:11\n"
        self.tpm_output = None
        self.dracut_rc = 0

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def count(self, command):
        return sum(1 for call in self.calls if call[0] == command)

    def run(self, args, timeout=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        command = args[0]
        if command == "modinfo":
            field, path = args[2], args[3]
            if field == "signer":
                try:
                    signed = SIGNATURE_MARKER in Path(path).read_bytes()
                except OSError:
                    return CommandResult(1, "", "modinfo: not found")
                return CommandResult(0, "Test MOK\n" if signed else "\n")
            return CommandResult(0, self.versions.get(path, "") + "\n")
        if command == "mokutil":
            if args[1] == "--sb-state":
                return CommandResult(0, self.sb_state + "\n")
            return CommandResult(0, self.enrolled)
        if command == "dracut":
            return CommandResult(self.dracut_rc, "", "" if self.dracut_rc == 0 else "dracut failed")
        if command == "tpm2_getcap":
            if self.tpm_output is None:
                return CommandResult(1, "", "no TPM")
            return CommandResult(0, self.tpm_output)
        if command == "getenforce":
            return CommandResult(0, "Enforcing\n")
        return CommandResult(127, "", f"{command}: command not found")


class FakeSignTool:
    """Stands in for sign-file: appends a signature, or fails for chosen modules."""

    def __init__(self, fail=(), append_signature=True):
        self.fail = set(fail)
        self.append_signature = append_signature
        self.invocations = []
        self.before = {}
        self.on_sign = None

    def sign(self, target):
        self.invocations.append(target)
        self.before[target] = Path(target).read_bytes()
        if self.on_sign is not None:
            self.on_sign(target)
        if os.path.basename(target) in self.fail:
            # sign-file may leave a half-written file behind
            with open(target, "ab") as f:
                f.write(b"partial")
            return CommandResult(2, "", "sign-file: Failed to load private key")
        if self.append_signature:
            with open(target, "ab") as f:
                f.write(SIGNATURE_MARKER)
        return CommandResult(0)


@pytest.fixture(autouse=True)
def _reset_loggers():
    yield
    for name in ("moksign", "moksign.audit"):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.NOTSET)


@pytest.fixture
def config(tmp_path):
    keys = tmp_path / "keys"
    keys.mkdir()
    (keys / "private_key.priv").write_text("PRIVATE")
    os.chmod(keys / "private_key.priv", 0o600)
    (keys / "public_key.der").write_bytes(b"PUBLIC")

    sign_file = tmp_path / "sign-file"
    sign_file.write_text("#!/bin/sh\nexit 0\n")
    os.chmod(sign_file, 0o755)

    boot = tmp_path / "boot"
    boot.mkdir()
    (boot / "initramfs.img").write_bytes(b"initramfs")
    (tmp_path / "efi").mkdir()
    (tmp_path / "modules").mkdir()

    return SigningConfig(
        kernel_version="6.8.0-test",
        key_dir=str(keys),
        modules_path=str(tmp_path / "modules"),
        sign_file=str(sign_file),
        state_dir=str(tmp_path / "state"),
        log_dir=str(tmp_path / "log"),
        lock_file=str(tmp_path / "run" / "moksign.lock"),
        boot_image=str(boot / "initramfs.img"),
        sysfs_module_root=str(tmp_path / "sys" / "module"),
        proc_modules=str(tmp_path / "proc_modules"),
        efi_root=str(tmp_path / "efi"),
        root_mount=str(tmp_path),
        boot_mount=str(tmp_path),
        root_min_kb=0,
        boot_min_kb=0,
        lock_timeout=0.2,
        lock_poll_interval=0.05,
        require_root=False,
        syslog=False,
    )


@pytest.fixture
def modules_dir(config):
    return Path(config.modules_path)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def tool():
    return FakeSignTool()


@pytest.fixture
def ctx(config, runner, tool):
    return build_context(config, runner=runner, tool=tool)
