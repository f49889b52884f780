# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from coreason_diskimage.errors import ErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    """A lookup that produced a value."""

    value: T


@dataclass(frozen=True)
class NotFound:
    """A lookup that produced nothing. `reason` is informational only."""

    reason: str = ""


Lookup = Found[T] | NotFound


class ProcessResult(BaseModel):
    """Captured output of one external utility invocation.

    Attributes:
        stdout: Standard output decoded as UTF-8.
        stderr: Standard error decoded as UTF-8.
        exit_code: The termination status. Non-zero is data, not an error.
    """

    model_config = ConfigDict(frozen=True)

    stdout: str
    stderr: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class MountedImageEntry(BaseModel):
    """One attached image as reported by the OS mount table.

    Attributes:
        image_path: Absolute path of the image file. Identity key.
        device_nodes: Device identifiers, parent device first.
        mount_points: Mount-point paths in reported order.
    """

    model_config = ConfigDict(frozen=True)

    image_path: str
    device_nodes: list[str] = Field(default_factory=list)
    mount_points: list[str] = Field(default_factory=list)

    @property
    def is_attached(self) -> bool:
        return bool(self.device_nodes or self.mount_points)


class Direction(str, Enum):
    """Conversion direction between writable and compressed read-only images."""

    RW_TO_RO = "rw-to-ro"
    RO_TO_RW = "ro-to-rw"


class CreateMode(str, Enum):
    FROM_FOLDER = "from-folder"
    EMPTY = "empty"


class FileSystem(str, Enum):
    APFS = "APFS"
    HFS_PLUS_J = "HFS+J"


class ImageFormat(str, Enum):
    """Container formats understood by the disk-image utility."""

    READ_ONLY = "UDZO"
    READ_WRITE = "UDRW"
    SPARSE = "UDSP"


class Stage(str, Enum):
    VALIDATE = "validate"
    PREPARE = "prepare"
    DETACH = "detach"
    CREATE = "create"
    EXTRACT_APP = "extract_app"
    RECREATE = "recreate"
    SPARSE = "sparse"
    CONVERT = "convert"
    COMPRESS = "compress"
    VOLUME_ICON = "volume_icon"
    IMAGE_ICON = "image_icon"
    RESIZE = "resize"
    ATTACH = "attach"
    CLEANUP = "cleanup"


class EventStatus(str, Enum):
    STARTED = "started"
    INFO = "info"
    COMMAND = "command"
    WARNING = "warning"
    SUCCEEDED = "succeeded"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (EventStatus.DONE, EventStatus.ERROR)


class ProgressEvent(BaseModel):
    """One entry of a pipeline's progress stream.

    Attributes:
        stage: The pipeline stage that emitted the event.
        status: What happened. DONE and ERROR end the stream.
        message: Human-readable text for log views.
        exit_code: Exit status of the process the event reports on, if any.
    """

    model_config = ConfigDict(frozen=True)

    stage: Stage
    status: EventStatus
    message: str
    exit_code: int | None = None


EventSink = Callable[[ProgressEvent], None]


class ConversionRequest(BaseModel):
    """One conversion job between writable and read-only images."""

    source: Path
    destination: Path
    direction: Direction
    embed_app_icon: bool = False
    passphrase: SecretStr | None = None
    passphrase_confirmation: SecretStr | None = None
    sink: EventSink | None = Field(default=None, exclude=True, repr=False)


class CreationRequest(BaseModel):
    """A new image, either from a folder or as an empty allocated container."""

    mode: CreateMode
    volume_name: str
    destination: Path
    source_folder: Path | None = None
    size: str = ""
    filesystem: FileSystem = FileSystem.APFS
    access: ImageFormat = ImageFormat.READ_ONLY
    passphrase: SecretStr | None = None
    passphrase_confirmation: SecretStr | None = None
    sink: EventSink | None = Field(default=None, exclude=True, repr=False)


class AttachRequest(BaseModel):
    """Attach an image and report where it was mounted."""

    image: Path
    readonly: bool = False
    reveal: bool | None = None
    passphrase: SecretStr | None = None
    sink: EventSink | None = Field(default=None, exclude=True, repr=False)


class PipelineResult(BaseModel):
    """Structured outcome of a pipeline run.

    Attributes:
        succeeded: Whether the primary artifact was produced.
        stage: The last stage the run reached.
        error_kind: Classification of the failure, if any.
        exit_code: Exit status of the failing process, if any.
        destination: The produced image, on success.
        mount_point: The mount point, for attach runs.
        message: Terminal message.
        warnings: Non-fatal problems (icon failures, resize failures).
        events: Every event emitted during the run.
    """

    succeeded: bool
    stage: Stage
    error_kind: ErrorKind | None = None
    exit_code: int | None = None
    destination: Path | None = None
    mount_point: Path | None = None
    message: str = ""
    warnings: list[str] = Field(default_factory=list)
    events: list[ProgressEvent] = Field(default_factory=list)


def passphrase_bytes(passphrase: SecretStr | None) -> bytes | None:
    """Return the passphrase as stdin bytes, or None when no passphrase is set."""
    if passphrase is None:
        return None
    value = passphrase.get_secret_value()
    return value.encode("utf-8") if value else None
