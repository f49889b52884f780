# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

"""Error taxonomy for disk-image operations."""

from enum import Enum


class ErrorKind(str, Enum):
    """Structured classification carried by every DiskImageError."""

    VALIDATION = "validation"
    SPAWN = "spawn"
    PROCESS_FAILURE = "process_failure"
    MOUNT_BUSY = "mount_busy"
    ICON_NOT_FOUND = "icon_not_found"
    ICON_METHOD_FAILED = "icon_method_failed"


class DiskImageError(Exception):
    """Base error for disk-image operations."""

    kind: ErrorKind = ErrorKind.PROCESS_FAILURE


class ValidationError(DiskImageError, ValueError):
    """Raised when a request is malformed. Checked before any process runs."""

    kind = ErrorKind.VALIDATION


class SpawnError(DiskImageError):
    """Raised when an external utility cannot be launched."""

    kind = ErrorKind.SPAWN

    def __init__(self, command: str, cause: OSError):
        self.command = command
        self.cause = cause
        super().__init__(f"Could not launch {command}: {cause.strerror or cause}")


class ProcessFailure(DiskImageError):
    """Raised when an external utility exits with a non-zero status."""

    kind = ErrorKind.PROCESS_FAILURE

    def __init__(self, command: str, exit_code: int, stderr: str = "", message: str | None = None):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = message or f"{command} failed with exit code {exit_code}"
        if stderr.strip():
            detail = f"{detail}: {stderr.strip()}"
        super().__init__(detail)


class MountBusy(DiskImageError):
    """Raised when an image could not be released within the retry budget."""

    kind = ErrorKind.MOUNT_BUSY

    def __init__(self, image: str):
        self.image = image
        super().__init__(f"Image is still attached: {image}")


class IconNotFound(DiskImageError):
    """No icon resource could be located. Never fatal to a conversion."""

    kind = ErrorKind.ICON_NOT_FOUND


class IconMethodFailed(DiskImageError):
    """Every icon-embedding technique was exhausted. Never fatal to a conversion."""

    kind = ErrorKind.ICON_METHOD_FAILED
