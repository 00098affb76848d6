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
Configuration for the signing system.

Every component receives a SigningConfig instance; nothing reads paths from the
environment. Defaults match a Fedora akmods deployment. A JSON file shaped like
an index file ({"metadata": {...}, "config": {...}}) may override any field.
"""

import os
import json
import platform
from dataclasses import dataclass, fields
from typing import Dict, Any, Optional, Tuple
from .errors import ConfigurationError

# Directory paths
DEFAULT_KEY_DIR = "/etc/pki/akmods/certs"
DEFAULT_STATE_DIR = "/var/lib/nvidia-signing"
DEFAULT_LOG_DIR = "/var/log/nvidia-signing"
DEFAULT_LOCK_FILE = "/var/run/nvidia-signing.lock"

KERNEL_PLACEHOLDER = "{kernel}"


def _parse_mode(value: Any) -> int:
    """Accept 0o600, "600" or "0o600"."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value[2:] if value.startswith('0o') else value
        return int(text, 8)
    raise ValueError(f"invalid file mode: {value!r}")


@dataclass
class SigningConfig:
    """Paths, thresholds and limits shared by all components."""
    kernel_version: str = ""
    key_dir: str = DEFAULT_KEY_DIR
    private_key: str = ""
    public_key: str = ""
    modules_path: str = "/usr/lib/modules/{kernel}/extra"
    module_pattern: str = "*nvidia*.ko"
    primary_module: str = "nvidia"
    sign_file: str = "/usr/src/kernels/{kernel}/scripts/sign-file"
    hash_algorithm: str = "sha256"
    state_dir: str = DEFAULT_STATE_DIR
    backup_dir: str = ""
    log_dir: str = DEFAULT_LOG_DIR
    lock_file: str = DEFAULT_LOCK_FILE
    boot_image: str = "/boot/initramfs-{kernel}.img"
    sysfs_module_root: str = "/sys/module"
    proc_modules: str = "/proc/modules"
    efi_root: str = "/sys/firmware/efi"
    rate_limit_seconds: int = 300
    root_mount: str = "/"
    boot_mount: str = "/boot"
    root_min_kb: int = 102400
    boot_min_kb: int = 51200
    lock_timeout: float = 30
    lock_poll_interval: float = 1
    failure_threshold: int = 3
    boot_image_freshness_seconds: int = 300
    accepted_key_modes: Tuple[int, ...] = (0o400, 0o600)
    backup_min_size: int = 1000
    sign_timeout: Optional[float] = None
    require_root: bool = True
    required_tools: Tuple[str, ...] = ("dracut", "modinfo")
    syslog: bool = True
    debug: bool = False

    def __post_init__(self):
        if not self.kernel_version:
            self.kernel_version = platform.release()
        if not self.private_key:
            self.private_key = os.path.join(self.key_dir, "private_key.priv")
        if not self.public_key:
            self.public_key = os.path.join(self.key_dir, "public_key.der")
        if not self.backup_dir:
            self.backup_dir = os.path.join(self.state_dir, "backups")

        # Expand {kernel} once so later code only ever sees concrete paths
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str) and KERNEL_PLACEHOLDER in value:
                setattr(self, f.name, value.replace(KERNEL_PLACEHOLDER, self.kernel_version))

        self.accepted_key_modes = tuple(_parse_mode(m) for m in self.accepted_key_modes)
        self.required_tools = tuple(self.required_tools)

    def state_path(self, name: str) -> str:
        """Path of a named record inside the state directory."""
        return os.path.join(self.state_dir, name)


_NUMERIC_FIELDS = {
    "rate_limit_seconds", "root_min_kb", "boot_min_kb", "lock_timeout",
    "lock_poll_interval", "failure_threshold", "boot_image_freshness_seconds",
    "backup_min_size", "sign_timeout",
}
_BOOL_FIELDS = {"require_root", "syslog", "debug"}
_SEQUENCE_FIELDS = {"accepted_key_modes", "required_tools"}


def _validate_value(name: str, value: Any) -> Any:
    if name in _NUMERIC_FIELDS:
        if value is None and name == "sign_timeout":
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"Config key '{name}' must be a number, got {value!r}")
        if value < 0:
            raise ConfigurationError(f"Config key '{name}' must not be negative")
        return value
    if name in _BOOL_FIELDS:
        if not isinstance(value, bool):
            raise ConfigurationError(f"Config key '{name}' must be true or false, got {value!r}")
        return value
    if name in _SEQUENCE_FIELDS:
        if not isinstance(value, (list, tuple)):
            raise ConfigurationError(f"Config key '{name}' must be a list, got {value!r}")
        if name == "accepted_key_modes":
            try:
                return tuple(_parse_mode(v) for v in value)
            except ValueError as e:
                raise ConfigurationError(f"Config key '{name}': {e}")
        return tuple(str(v) for v in value)
    if not isinstance(value, str):
        raise ConfigurationError(f"Config key '{name}' must be a string, got {value!r}")
    return value


def config_from_dict(data: Dict[str, Any]) -> SigningConfig:
    """
    Build a SigningConfig from a mapping, rejecting unknown keys.

    Args:
        data: Either the bare settings or an index-shaped document with a
            "config" section

    Returns:
        SigningConfig: The validated configuration
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    settings = data.get("config", data)
    if not isinstance(settings, dict):
        raise ConfigurationError("'config' section must be a JSON object")

    known = {f.name for f in fields(SigningConfig)}
    unknown = sorted(set(settings) - known - {"metadata"})
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

    values = {
        name: _validate_value(name, value)
        for name, value in settings.items()
        if name != "metadata"
    }
    return SigningConfig(**values)


def load_config(path: Optional[str] = None) -> SigningConfig:
    """
    Load configuration from a JSON file, or return defaults when no path is given.

    Args:
        path: Path to the JSON configuration file

    Returns:
        SigningConfig: The loaded configuration
    """
    if not path:
        return SigningConfig()

    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load configuration from {path}: {e}")

    return config_from_dict(data)
