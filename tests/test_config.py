import json

import pytest

from moksign.config import SigningConfig, config_from_dict, load_config
from moksign.errors import ConfigurationError


def test_defaults_expand_kernel_placeholder():
    config = SigningConfig(kernel_version="6.8.9-300.fc40.x86_64")
    assert config.modules_path == "/usr/lib/modules/6.8.9-300.fc40.x86_64/extra"
    assert config.sign_file == "/usr/src/kernels/6.8.9-300.fc40.x86_64/scripts/sign-file"
    assert config.boot_image == "/boot/initramfs-6.8.9-300.fc40.x86_64.img"
    assert config.private_key == "/etc/pki/akmods/certs/private_key.priv"
    assert config.public_key == "/etc/pki/akmods/certs/public_key.der"
    assert config.backup_dir == "/var/lib/nvidia-signing/backups"
    assert config.accepted_key_modes == (0o400, 0o600)


def test_kernel_version_defaults_to_running_kernel():
    import platform

    assert SigningConfig().kernel_version == platform.release()


def test_load_config_reads_index_shaped_file(tmp_path):
    path = tmp_path / "moksign.json"
    path.write_text(json.dumps({
        "metadata": {"schema_version": "1.0.0"},
        "config": {
            "kernel_version": "6.1.0",
            "state_dir": str(tmp_path / "state"),
            "rate_limit_seconds": 60,
            "accepted_key_modes": ["400"],
            "required_tools": ["dracut"],
            "require_root": False,
        },
    }))

    config = load_config(str(path))

    assert config.rate_limit_seconds == 60
    assert config.backup_dir == str(tmp_path / "state" / "backups")
    assert config.accepted_key_modes == (0o400,)
    assert config.required_tools == ("dracut",)
    assert config.require_root is False


def test_load_config_without_path_returns_defaults():
    assert load_config(None).rate_limit_seconds == 300


def test_unknown_key_is_rejected():
    with pytest.raises(ConfigurationError, match="rate_limit"):
        config_from_dict({"rate_limit": 5})


@pytest.mark.parametrize(
    "settings",
    [
        {"rate_limit_seconds": "300"},
        {"lock_timeout": -1},
        {"require_root": "yes"},
        {"required_tools": "dracut"},
        {"accepted_key_modes": ["rw"]},
        {"state_dir": 5},
    ],
)
def test_invalid_values_are_rejected(settings):
    with pytest.raises(ConfigurationError):
        config_from_dict(settings)


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "absent.json"))

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ConfigurationError):
        load_config(str(broken))
