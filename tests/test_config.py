from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from coreason_diskimage.config import DiskImageConfig


def test_defaults() -> None:
    with patch.dict("os.environ", {}, clear=True):
        config = DiskImageConfig(_env_file=None)
    assert config.hdiutil_path == "/usr/bin/hdiutil"
    assert config.mount_root == "/Volumes/"
    assert config.detach_attempts == 3
    assert config.settle_interval == 0.3
    assert config.compression_level == 9
    assert config.encryption == "AES-256"
    assert config.resize_increment == "1g"
    assert config.compaction == "recreate"
    assert config.temp_dir is None
    assert config.reveal_on_attach is False


def test_environment_overrides() -> None:
    env = {
        "COREASON_DISKIMAGE_DETACH_ATTEMPTS": "5",
        "COREASON_DISKIMAGE_COMPACTION": "sparse",
        "COREASON_DISKIMAGE_TEMP_DIR": "/var/tmp/images",
        "COREASON_DISKIMAGE_HDIUTIL_PATH": "/opt/bin/hdiutil",
    }
    with patch.dict("os.environ", env, clear=True):
        config = DiskImageConfig(_env_file=None)
    assert config.detach_attempts == 5
    assert config.compaction == "sparse"
    assert config.temp_dir == Path("/var/tmp/images")
    assert config.hdiutil_path == "/opt/bin/hdiutil"


@pytest.mark.parametrize(
    "overrides",
    [
        {"detach_attempts": 0},
        {"settle_interval": -1},
        {"compression_level": 0},
        {"compression_level": 10},
        {"compaction": "shrink"},
    ],
)
def test_invalid_values_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        DiskImageConfig(_env_file=None, **overrides)
