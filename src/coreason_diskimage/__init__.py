# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

"""
coreason-diskimage
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import DiskImageConfig
from .errors import (
    DiskImageError,
    ErrorKind,
    IconMethodFailed,
    IconNotFound,
    MountBusy,
    ProcessFailure,
    SpawnError,
    ValidationError,
)
from .icons import IconEmbedder, IconOutcome
from .models import (
    AttachRequest,
    ConversionRequest,
    CreateMode,
    CreationRequest,
    Direction,
    EventStatus,
    FileSystem,
    Found,
    ImageFormat,
    MountedImageEntry,
    NotFound,
    PipelineResult,
    ProcessResult,
    ProgressEvent,
    Stage,
)
from .mounts import MountRegistry, parse_mount_point
from .pipeline import ConversionPipeline
from .process import ProcessExecutor
from .service import DiskImage, DiskImageAsync

__all__ = [
    "AttachRequest",
    "ConversionPipeline",
    "ConversionRequest",
    "CreateMode",
    "CreationRequest",
    "Direction",
    "DiskImage",
    "DiskImageAsync",
    "DiskImageConfig",
    "DiskImageError",
    "ErrorKind",
    "EventStatus",
    "FileSystem",
    "Found",
    "IconEmbedder",
    "IconMethodFailed",
    "IconNotFound",
    "IconOutcome",
    "ImageFormat",
    "MountBusy",
    "MountRegistry",
    "MountedImageEntry",
    "NotFound",
    "PipelineResult",
    "ProcessExecutor",
    "ProcessFailure",
    "ProcessResult",
    "ProgressEvent",
    "SpawnError",
    "Stage",
    "ValidationError",
    "parse_mount_point",
]
