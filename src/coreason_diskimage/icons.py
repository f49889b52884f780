# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

import plistlib
import shutil
from enum import Enum
from pathlib import Path
from xml.parsers.expat import ExpatError

import aiofiles
import anyio
from loguru import logger

from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.errors import DiskImageError, IconMethodFailed, IconNotFound
from coreason_diskimage.events import ProgressReporter
from coreason_diskimage.models import Found, Lookup, NotFound, ProcessResult
from coreason_diskimage.mounts import MountRegistry
from coreason_diskimage.process import ProcessExecutor

APP_EXTENSION = ".app"
ICON_EXTENSION = ".icns"
VOLUME_ICON_NAME = ".VolumeIcon.icns"
RESOURCE_DIRECTORIES = ("Contents/Resources", "Resources", "Contents")


class IconOutcome(str, Enum):
    """Result of an icon-embedding attempt."""

    EMBEDDED = "embedded"
    EMBEDDED_FALLBACK = "embedded_fallback"
    NOT_FOUND = "not_found"
    FAILED = "failed"

    @property
    def applied(self) -> bool:
        return self in (IconOutcome.EMBEDDED, IconOutcome.EMBEDDED_FALLBACK)


class IconEmbedder:
    """Locates application icons and applies them to images and volumes.

    The file-level icon tries the format-aware embedding utility first and
    falls back to copying the raw resource fork and setting the custom-icon
    attribute bit. None of the failures here are fatal to a conversion: they
    surface as IconOutcome values and warnings.
    """

    def __init__(
        self,
        config: DiskImageConfig | None = None,
        executor: ProcessExecutor | None = None,
        registry: MountRegistry | None = None,
    ):
        self.config = config or DiskImageConfig()
        self.executor = executor or ProcessExecutor()
        self.registry = registry or MountRegistry(self.config, self.executor)

    async def find_application(self, mount_point: Path) -> Lookup[Path]:
        """Find the first application bundle at the top level of a volume."""

        def _scan() -> Lookup[Path]:
            try:
                entries = sorted(mount_point.iterdir())
            except OSError as e:
                return NotFound(f"Cannot list {mount_point}: {e}")
            for entry in entries:
                if entry.name.startswith("."):
                    continue
                if entry.suffix.lower() == APP_EXTENSION and entry.is_dir():
                    return Found(entry)
            return NotFound(f"No application bundle in {mount_point}")

        return await anyio.to_thread.run_sync(_scan)

    async def _declared_icon_name(self, app: Path) -> str | None:
        info_plist = app / "Contents" / "Info.plist"
        if not info_plist.is_file():
            return None
        try:
            async with aiofiles.open(info_plist, "rb") as f:
                data = await f.read()
            info = plistlib.loads(data)
        except (OSError, plistlib.InvalidFileException, ExpatError, ValueError) as e:
            logger.warning(f"Unreadable bundle descriptor {info_plist}: {e}")
            return None
        name = info.get("CFBundleIconFile") if isinstance(info, dict) else None
        if not isinstance(name, str) or not name:
            return None
        return name if name.endswith(ICON_EXTENSION) else f"{name}{ICON_EXTENSION}"

    async def locate_icon(self, app: Path) -> Lookup[Path]:
        """Locate the icon resource of an application bundle.

        The icon declared in the bundle descriptor wins. Otherwise any icon
        resource in the conventional resource directories is taken.
        """
        directories = [app / sub for sub in RESOURCE_DIRECTORIES]

        declared = await self._declared_icon_name(app)
        if declared:
            for directory in directories:
                candidate = directory / declared
                if candidate.is_file():
                    return Found(candidate)

        def _scan() -> Lookup[Path]:
            for directory in directories:
                if not directory.is_dir():
                    continue
                try:
                    entries = sorted(directory.iterdir())
                except OSError:
                    continue
                for entry in entries:
                    if entry.name.startswith("."):
                        continue
                    if entry.suffix.lower() == ICON_EXTENSION and entry.is_file():
                        return Found(entry)
            return NotFound(f"No icon resource in {app.name}")

        return await anyio.to_thread.run_sync(_scan)

    async def _run(self, command: str, args: list[str]) -> ProcessResult | None:
        """Run an icon utility. Launch failures are reported as None."""
        try:
            return await self.executor.run(command, args)
        except DiskImageError as e:
            logger.warning(str(e))
            return None

    async def embed_on_image_file(self, app: Path, image: Path, reporter: ProgressReporter) -> IconOutcome:
        """Apply an application's icon to an image file."""
        lookup = await self.locate_icon(app)
        if isinstance(lookup, NotFound):
            reporter.info(f"No icon resource found in {app.name}")
            return IconOutcome.NOT_FOUND
        icon = lookup.value
        reporter.info(f"Using icon {icon.name}")

        info = await self._run(self.config.file_path, [str(icon)])
        if info is not None and info.succeeded:
            reporter.info(f"Icon file info: {info.stdout.strip()}")

        validation = await self._run(self.config.sips_path, ["--getProperty", "pixelWidth", str(icon)])
        if validation is None or not validation.succeeded:
            reporter.info("Icon resource not accepted by the image tool, using resource fork method")
            return await self._embed_via_resource_fork(icon, image, reporter)
        reporter.info(f"Icon resource validated: {validation.stdout.strip()}")

        primary = await self._run(self.config.sips_path, ["-i", str(icon), str(image)])
        if primary is not None and primary.succeeded:
            await self._run(self.config.touch_path, [str(image)])
            reporter.succeeded("Image icon set")
            return IconOutcome.EMBEDDED

        reporter.info("Image tool rejected the target, using resource fork method")
        return await self._embed_via_resource_fork(icon, image, reporter)

    async def _embed_via_resource_fork(self, icon: Path, image: Path, reporter: ProgressReporter) -> IconOutcome:
        copied = await self._run(
            self.config.cp_path, [f"{icon}/..namedfork/rsrc", f"{image}/..namedfork/rsrc"]
        )
        if copied is None or not copied.succeeded:
            reporter.info(f"Copying resource fork failed: {copied.stderr.strip() if copied else 'not launched'}")
            return IconOutcome.FAILED
        reporter.info("Resource fork copied")

        flagged = await self._run(self.config.setfile_path, ["-a", "C", str(image)])
        if flagged is None or not flagged.succeeded:
            reporter.info(f"Setting custom icon bit failed: {flagged.stderr.strip() if flagged else 'not launched'}")
            return IconOutcome.FAILED

        await self._run(self.config.touch_path, [str(image)])

        query = await self._run(self.config.getfileinfo_path, ["-aC", str(image)])
        if query is not None and query.succeeded and query.stdout.strip() == "1":
            reporter.succeeded("Image icon set (resource fork method)")
            return IconOutcome.EMBEDDED_FALLBACK

        reporter.info("Custom icon bit not reported after resource fork method")
        return IconOutcome.FAILED

    async def embed_app_icon_on_volume(
        self, app: Path, image: Path, reporter: ProgressReporter, passphrase: bytes | None = None
    ) -> IconOutcome:
        """Apply an application's icon as the volume icon of a writable image."""
        lookup = await self.locate_icon(app)
        if isinstance(lookup, NotFound):
            reporter.info(f"No icon resource for the volume in {app.name}")
            return IconOutcome.NOT_FOUND
        return await self.embed_on_volume(lookup.value, image, reporter, passphrase)

    async def embed_on_volume(
        self, icon: Path, image: Path, reporter: ProgressReporter, passphrase: bytes | None = None
    ) -> IconOutcome:
        """Install an icon resource as the volume icon of a writable image.

        The image is attached if needed, and detached again only if this call
        attached it.
        """
        mounted_here = False
        existing = await self.registry.find_entry(image)
        if isinstance(existing, Found) and existing.value.mount_points:
            mount_point = Path(existing.value.mount_points[0])
        else:
            try:
                lookup = await self.registry.attach(image, passphrase=passphrase, reporter=reporter)
            except DiskImageError as e:
                reporter.info(f"Attaching for volume icon failed: {e}")
                return IconOutcome.FAILED
            if isinstance(lookup, NotFound):
                reporter.info("No mount point reported for volume icon")
                return IconOutcome.FAILED
            mount_point = lookup.value
            mounted_here = True
            reporter.info(f"Attached writable image at {mount_point}")

        try:
            return await self._install_volume_icon(icon, mount_point, reporter)
        finally:
            if mounted_here:
                detached = await self.registry.detach(mount_point)
                if not detached.succeeded:
                    reporter.info(f"Detaching {mount_point} reported problems, forcing: {detached.stderr.strip()}")
                    detached = await self.registry.detach(mount_point, force=True)
                if detached.succeeded:
                    reporter.info(f"Detached {mount_point}")
                else:
                    reporter.warn(f"Could not detach {mount_point}: {detached.stderr.strip()}", detached.exit_code)

    async def _install_volume_icon(self, icon: Path, mount_point: Path, reporter: ProgressReporter) -> IconOutcome:
        target = mount_point / VOLUME_ICON_NAME
        try:
            await anyio.to_thread.run_sync(shutil.copyfile, icon, target)
        except OSError as e:
            reporter.info(f"Copying volume icon failed: {e}")
            return IconOutcome.FAILED
        reporter.info(f"Icon copied to {target}")

        outcome = IconOutcome.EMBEDDED
        for path in (target, mount_point):
            flagged = await self._run(self.config.setfile_path, ["-a", "C", str(path)])
            if flagged is None or not flagged.succeeded:
                reporter.info(f"Setting custom icon bit on {path} failed")
                outcome = IconOutcome.FAILED

        hidden = await self._run(self.config.setfile_path, ["-a", "V", str(target)])
        if hidden is not None and hidden.succeeded:
            reporter.info("Volume icon hidden")

        if outcome is IconOutcome.EMBEDDED:
            reporter.succeeded("Volume icon set")
        return outcome


def ensure_icon_applied(outcome: IconOutcome, target: Path) -> None:
    """Raise the matching non-fatal error when an icon was not applied.

    Raises:
        IconNotFound: If no icon resource was located.
        IconMethodFailed: If every embedding technique failed.
    """
    if outcome is IconOutcome.NOT_FOUND:
        raise IconNotFound(f"No icon resource available for {target}")
    if outcome is IconOutcome.FAILED:
        raise IconMethodFailed(f"Could not set a custom icon on {target}")
