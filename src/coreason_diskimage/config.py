from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DiskImageConfig(BaseSettings):
    """
    Configuration for disk-image operations.
    """

    hdiutil_path: str = "/usr/bin/hdiutil"
    sips_path: str = "/usr/bin/sips"
    setfile_path: str = "/usr/bin/SetFile"
    getfileinfo_path: str = "/usr/bin/GetFileInfo"
    cp_path: str = "/bin/cp"
    touch_path: str = "/usr/bin/touch"
    file_path: str = "/usr/bin/file"
    open_path: str = "/usr/bin/open"

    mount_root: str = "/Volumes/"
    detach_attempts: int = Field(default=3, ge=1)
    settle_interval: float = Field(default=0.3, ge=0.0)  # seconds

    compression_level: int = Field(default=9, ge=1, le=9)
    encryption: str = "AES-256"
    resize_increment: str = "1g"
    compaction: Literal["recreate", "sparse"] = "recreate"

    temp_dir: Path | None = None
    reveal_on_attach: bool = False

    model_config = SettingsConfigDict(
        env_prefix="COREASON_DISKIMAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
