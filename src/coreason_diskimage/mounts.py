# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

import os
import plistlib
import re
import unicodedata
from pathlib import Path
from typing import Any
from xml.parsers.expat import ExpatError

import anyio
from loguru import logger

from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.errors import ProcessFailure
from coreason_diskimage.events import ProgressReporter
from coreason_diskimage.models import Found, Lookup, MountedImageEntry, NotFound, ProcessResult
from coreason_diskimage.process import ProcessExecutor


def normalize_image_path(path: str | os.PathLike[str]) -> str:
    """Symlink-resolved, case- and diacritic-insensitive form of an image path."""
    resolved = os.path.realpath(os.fspath(path))
    decomposed = unicodedata.normalize("NFD", resolved)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def parse_mount_point(stdout: str, mount_root: str = "/Volumes/") -> Lookup[Path]:
    """Extract the first mount point from attach output.

    The first line containing `mount_root` wins; the mount point runs from the
    prefix to the end of the line, trimmed.
    """
    for line in stdout.replace("\r\n", "\n").split("\n"):
        index = line.find(mount_root)
        if index >= 0:
            return Found(Path(line[index:].strip()))
    return NotFound("no mount point reported")


CLASH_SUFFIX = re.compile(r"^(?P<name>.+) \d+$")


def volume_name_of(mount_point: Path) -> str:
    """Volume name behind a mount point.

    A volume whose name is already mounted is placed at "<name> <n>"; the
    original name is recovered while "<name>" is still taken.
    """
    match = CLASH_SUFFIX.match(mount_point.name)
    if match and (mount_point.parent / match["name"]).exists():
        return match["name"]
    return mount_point.name


def parse_image_info(data: bytes) -> list[MountedImageEntry]:
    """Parse the structured (property list) output of the image-info query.

    Images without any device node or mount point are dropped.
    """
    if not data.strip():
        return []
    try:
        root = plistlib.loads(data)
    except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
        logger.warning(f"Unreadable image info: {e}")
        return []
    if not isinstance(root, dict):
        return []

    entries: list[MountedImageEntry] = []
    for image in root.get("images", []):
        if not isinstance(image, dict):
            continue
        image_path = str(image.get("image-path", "")).strip()
        if not image_path:
            continue

        devices: list[str] = []
        mounts: list[str] = []
        entities: list[Any] = image.get("system-entities", [])
        for entity in entities:
            if not isinstance(entity, dict):
                continue
            device = entity.get("dev-entry")
            if isinstance(device, str) and device.startswith("/dev/"):
                devices.append(device)
            mount = entity.get("mount-point")
            if isinstance(mount, str) and mount.startswith("/"):
                mounts.append(mount)

        entry = MountedImageEntry(image_path=image_path, device_nodes=devices, mount_points=mounts)
        if entry.is_attached:
            entries.append(entry)
    return entries


class MountRegistry:
    """Queries and releases attached images.

    Nothing is cached: the OS mount table can change at any time, so every
    query goes back to the image-info utility.
    """

    def __init__(self, config: DiskImageConfig | None = None, executor: ProcessExecutor | None = None):
        self.config = config or DiskImageConfig()
        self.executor = executor or ProcessExecutor()

    async def list_mounted_images(self) -> list[MountedImageEntry]:
        """Return every image currently attached.

        Raises:
            SpawnError: If the image-info utility cannot be launched.
        """
        result = await self.executor.run(self.config.hdiutil_path, ["info", "-plist"])
        if not result.succeeded:
            logger.warning(f"Image info query exited with {result.exit_code}: {result.stderr.strip()}")
            return []
        return parse_image_info(result.stdout.encode("utf-8"))

    async def find_entry(self, image: str | os.PathLike[str]) -> Lookup[MountedImageEntry]:
        """Find the attached entry for an image by normalized path."""
        wanted = normalize_image_path(image)
        for entry in await self.list_mounted_images():
            if normalize_image_path(entry.image_path) == wanted:
                return Found(entry)
        return NotFound(f"{image} is not attached")

    async def detach(self, target: str | os.PathLike[str], force: bool = False) -> ProcessResult:
        """Detach a device node or mount point. Idempotent at the utility level."""
        args = ["detach", "-force", os.fspath(target)] if force else ["detach", os.fspath(target)]
        return await self.executor.run(self.config.hdiutil_path, args)

    async def attach(
        self,
        image: str | os.PathLike[str],
        *,
        readonly: bool = False,
        passphrase: bytes | None = None,
        reporter: ProgressReporter | None = None,
    ) -> Lookup[Path]:
        """Attach an image without browsing or auto-opening it.

        Returns:
            Lookup[Path]: The mount point, or NotFound if none was reported.

        Raises:
            ProcessFailure: If the attach command exits non-zero.
            SpawnError: If the utility cannot be launched.
        """
        args = ["attach", os.fspath(image)]
        if readonly:
            args.append("-readonly")
        args += ["-nobrowse", "-noautoopen"]
        if passphrase is not None:
            args.append("-stdinpass")

        if reporter is not None:
            reporter.command(self.config.hdiutil_path, args)
        result = await self.executor.run(self.config.hdiutil_path, args, stdin=passphrase)
        if not result.succeeded:
            raise ProcessFailure("attach", result.exit_code, result.stderr)
        return parse_mount_point(result.stdout, self.config.mount_root)

    async def _detach_entry(self, entry: MountedImageEntry, force: bool) -> None:
        for mount_point in entry.mount_points:
            await self.detach(mount_point, force=force)
        # Child partitions before the parent device.
        for device in reversed(entry.device_nodes):
            await self.detach(device, force=force)

    async def ensure_detached(
        self, image: str | os.PathLike[str], reporter: ProgressReporter | None = None
    ) -> bool:
        """Release an image, escalating to a forced detach on the last attempt.

        Returns:
            bool: True once the image is confirmed absent, False if the retry
            budget is exhausted.
        """
        attempts = self.config.detach_attempts
        for attempt in range(1, attempts + 1):
            lookup = await self.find_entry(image)
            if isinstance(lookup, NotFound):
                return True

            force = attempt == attempts
            message = f"Detaching {image} (attempt {attempt}/{attempts}{', forced' if force else ''})"
            if reporter is not None:
                reporter.info(message)
            else:
                logger.info(message)

            await self._detach_entry(lookup.value, force=force)
            await anyio.sleep(self.config.settle_interval)

            if isinstance(await self.find_entry(image), NotFound):
                if reporter is not None:
                    reporter.info(f"Detached {image}")
                return True

        logger.warning(f"Could not detach {image} after {attempts} attempts")
        return False
