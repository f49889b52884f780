# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

import re
import shutil
from functools import partial
from pathlib import Path

import aiofiles.os
import anyio
from pydantic import SecretStr

from coreason_diskimage.artifacts import ArtifactTracker
from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.errors import (
    DiskImageError,
    IconMethodFailed,
    IconNotFound,
    MountBusy,
    ProcessFailure,
    SpawnError,
    ValidationError,
)
from coreason_diskimage.events import ProgressReporter
from coreason_diskimage.icons import VOLUME_ICON_NAME, IconEmbedder, IconOutcome, ensure_icon_applied
from coreason_diskimage.models import (
    AttachRequest,
    ConversionRequest,
    CreateMode,
    CreationRequest,
    Direction,
    Found,
    ImageFormat,
    Lookup,
    NotFound,
    PipelineResult,
    ProcessResult,
    Stage,
    passphrase_bytes,
)
from coreason_diskimage.mounts import MountRegistry, normalize_image_path, volume_name_of
from coreason_diskimage.process import ProcessExecutor

SIZE_PATTERN = re.compile(r"\d+(\.\d+)?\s*[KMGTkmgt]?")


def validate_size(size: str) -> str:
    """Validate a size specification such as `200m` or `1.5 g`.

    Returns:
        str: The size with surrounding and inner whitespace removed.

    Raises:
        ValidationError: If the size does not match the accepted pattern.
    """
    text = size.strip()
    if not SIZE_PATTERN.fullmatch(text):
        raise ValidationError(f"Invalid size {size!r} (examples: 200m, 1g)")
    return re.sub(r"\s+", "", text)


def validate_passphrase(passphrase: SecretStr | None, confirmation: SecretStr | None) -> None:
    if confirmation is None:
        return
    entered = passphrase.get_secret_value() if passphrase else ""
    if entered != confirmation.get_secret_value():
        raise ValidationError("Passphrases do not match")


def build_create_arguments(request: CreationRequest, encryption: str = "AES-256") -> list[str]:
    """Build the creation command for a request.

    Raises:
        ValidationError: If the folder is missing or the size is invalid.
    """
    if request.mode is CreateMode.FROM_FOLDER:
        if request.source_folder is None:
            raise ValidationError("No source folder selected")
        args = [
            "create",
            "-volname",
            request.volume_name,
            "-fs",
            request.filesystem.value,
            "-format",
            request.access.value,
            "-srcfolder",
            str(request.source_folder),
            str(request.destination),
        ]
    else:
        size = validate_size(request.size)
        args = [
            "create",
            "-size",
            size,
            "-fs",
            request.filesystem.value,
            "-volname",
            request.volume_name,
            str(request.destination),
        ]

    if passphrase_bytes(request.passphrase) is not None:
        args[1:1] = ["-encryption", encryption, "-stdinpass"]
    return args


def build_convert_arguments(
    source: Path,
    destination: Path,
    image_format: ImageFormat,
    compression_level: int = 9,
    with_passphrase: bool = False,
) -> list[str]:
    """Build a conversion command. Read-only targets use the given zlib level."""
    args = ["convert", str(source), "-format", image_format.value, "-o", str(destination)]
    if image_format is ImageFormat.READ_ONLY:
        args += ["-imagekey", f"zlib-level={compression_level}"]
    if with_passphrase:
        args.append("-stdinpass")
    return args


def validate_conversion(request: ConversionRequest) -> None:
    if not request.source.exists():
        raise ValidationError(f"Source image not found: {request.source}")
    if normalize_image_path(request.source) == normalize_image_path(request.destination):
        raise ValidationError("Source and destination must differ")
    validate_passphrase(request.passphrase, request.passphrase_confirmation)


class ConversionPipeline:
    """Creates, converts and attaches disk images.

    Every stage runs one external process and waits for it before the next
    stage starts. Operations never raise DiskImageError to the caller; they
    return a PipelineResult and stream ProgressEvents to the request's sink.
    """

    def __init__(
        self,
        config: DiskImageConfig | None = None,
        executor: ProcessExecutor | None = None,
        registry: MountRegistry | None = None,
        icons: IconEmbedder | None = None,
    ):
        """Initializes the pipeline.

        Args:
            config: Configuration. Defaults are used if not provided.
            executor: Process executor shared by all collaborators.
            registry: Mount registry. Built from the executor if not provided.
            icons: Icon embedder. Built from the executor if not provided.
        """
        self.config = config or DiskImageConfig()
        self.executor = executor or ProcessExecutor()
        self.registry = registry or MountRegistry(self.config, self.executor)
        self.icons = icons or IconEmbedder(self.config, self.executor, self.registry)

    async def create(self, request: CreationRequest) -> PipelineResult:
        """Create a new image from a folder or as an empty container."""
        reporter = ProgressReporter(request.sink)
        try:
            validate_passphrase(request.passphrase, request.passphrase_confirmation)
            args = build_create_arguments(request, self.config.encryption)

            reporter.start(Stage.PREPARE, f"Preparing {request.destination}")
            await self._remove_existing(request.destination, reporter)

            reporter.start(Stage.CREATE, f"Creating {request.destination}")
            await self._hdiutil(reporter, args, passphrase_bytes(request.passphrase))
        except DiskImageError as e:
            return reporter.fail(e)
        return reporter.done(f"Created {request.destination}", destination=request.destination)

    async def convert(self, request: ConversionRequest) -> PipelineResult:
        """Convert between writable and read-only images."""
        reporter = ProgressReporter(request.sink)
        passphrase = passphrase_bytes(request.passphrase)
        try:
            validate_conversion(request)
            async with ArtifactTracker(self.config, self.registry, reporter) as artifacts:
                await self._release(request.source, reporter)
                if request.destination.exists():
                    await self._release(request.destination, reporter)
                    await self._remove_existing(request.destination, reporter)

                if request.direction is Direction.RO_TO_RW:
                    if request.embed_app_icon:
                        reporter.info("Icon embedding applies to read-only targets only; ignored")
                    await self._expand(request, passphrase, reporter)
                elif request.embed_app_icon:
                    await self._compress_with_icon(request, passphrase, reporter, artifacts)
                else:
                    reporter.start(Stage.COMPRESS, f"Compressing {request.source}")
                    await self._compress(request.source, request.destination, passphrase, reporter)
        except DiskImageError as e:
            return reporter.fail(e)
        return reporter.done(f"Converted {request.destination}", destination=request.destination)

    async def attach(self, request: AttachRequest) -> PipelineResult:
        """Attach an image and optionally reveal its mount point."""
        reporter = ProgressReporter(request.sink)
        try:
            if not request.image.exists():
                raise ValidationError(f"Image not found: {request.image}")
            reporter.start(Stage.ATTACH, f"Attaching {request.image}")
            lookup = await self.registry.attach(
                request.image,
                readonly=request.readonly,
                passphrase=passphrase_bytes(request.passphrase),
                reporter=reporter,
            )
        except DiskImageError as e:
            return reporter.fail(e)

        if isinstance(lookup, NotFound):
            reporter.info("Attached, but no mount point was reported")
            return reporter.done(f"Attached {request.image}")

        mount_point = lookup.value
        reveal = self.config.reveal_on_attach if request.reveal is None else request.reveal
        if reveal:
            await self._reveal(mount_point, reporter)
        return reporter.done(f"Mounted {request.image} at {mount_point}", mount_point=mount_point)

    async def _hdiutil(
        self, reporter: ProgressReporter, args: list[str], passphrase: bytes | None = None
    ) -> ProcessResult:
        reporter.command(self.config.hdiutil_path, args)
        result = await self.executor.run(self.config.hdiutil_path, args, stdin=passphrase)
        reporter.output(result.stdout, result.stderr)
        if not result.succeeded:
            raise ProcessFailure(args[0], result.exit_code, result.stderr)
        return result

    async def _release(self, image: Path, reporter: ProgressReporter) -> None:
        reporter.start(Stage.DETACH, f"Checking mounts for {image}")
        if not await self.registry.ensure_detached(image, reporter):
            raise MountBusy(str(image))

    async def _remove_existing(self, path: Path, reporter: ProgressReporter) -> None:
        if not path.exists() and not path.is_symlink():
            return
        try:
            if path.is_dir() and not path.is_symlink():
                await anyio.to_thread.run_sync(shutil.rmtree, path)
            else:
                await aiofiles.os.remove(path)
        except OSError as e:
            raise DiskImageError(f"Could not remove existing {path}: {e}") from e
        reporter.info(f"Removed existing {path}")

    async def _compress(
        self, source: Path, destination: Path, passphrase: bytes | None, reporter: ProgressReporter
    ) -> None:
        args = build_convert_arguments(
            source, destination, ImageFormat.READ_ONLY, self.config.compression_level, passphrase is not None
        )
        await self._hdiutil(reporter, args, passphrase)
        reporter.succeeded(f"Compressed to {destination}")

    async def _expand(self, request: ConversionRequest, passphrase: bytes | None, reporter: ProgressReporter) -> None:
        reporter.start(Stage.CONVERT, f"Converting {request.source} to a writable image")
        args = build_convert_arguments(
            request.source, request.destination, ImageFormat.READ_WRITE, with_passphrase=passphrase is not None
        )
        await self._hdiutil(reporter, args, passphrase)
        reporter.succeeded(f"Converted to {request.destination}")

        increment = self.config.resize_increment
        reporter.start(Stage.RESIZE, f"Growing {request.destination} by {increment}")
        resize_args = ["resize", "-size", f"+{increment}", str(request.destination)]
        if passphrase is not None:
            resize_args.append("-stdinpass")
        try:
            await self._hdiutil(reporter, resize_args, passphrase)
        except (ProcessFailure, SpawnError) as e:
            reporter.warn(f"Resize failed, image keeps its converted size: {e}", getattr(e, "exit_code", None))
        else:
            reporter.succeeded(f"Grew {request.destination} by {increment}")

    async def _compress_with_icon(
        self,
        request: ConversionRequest,
        passphrase: bytes | None,
        reporter: ProgressReporter,
        artifacts: ArtifactTracker,
    ) -> None:
        reporter.start(Stage.EXTRACT_APP, "Looking for an application bundle")
        app = await self._extract_application(request.source, passphrase, reporter, artifacts)
        if isinstance(app, NotFound):
            reporter.info(f"No application icon available: {app.reason}")
            reporter.start(Stage.COMPRESS, f"Compressing {request.source}")
            await self._compress(request.source, request.destination, passphrase, reporter)
            return

        try:
            if self.config.compaction == "sparse":
                await self._sparse_compress(request, app.value, passphrase, reporter, artifacts)
            else:
                await self._recreate_compress(request, app.value, passphrase, reporter, artifacts)
        except (ProcessFailure, SpawnError) as e:
            reporter.info(f"Optimized conversion unavailable ({e}); compressing the source directly")
            await artifacts.release_mounts()
            await self._remove_existing(request.destination, reporter)
            reporter.start(Stage.COMPRESS, f"Compressing {request.source}")
            await self._compress(request.source, request.destination, passphrase, reporter)

        reporter.start(Stage.IMAGE_ICON, f"Setting image icon on {request.destination}")
        outcome = await self.icons.embed_on_image_file(app.value, request.destination, reporter)
        self._report_icon(outcome, request.destination, reporter)

    async def _extract_application(
        self,
        source: Path,
        passphrase: bytes | None,
        reporter: ProgressReporter,
        artifacts: ArtifactTracker,
    ) -> Lookup[Path]:
        """Copy the source's application bundle to a private location."""
        try:
            lookup = await self.registry.attach(source, readonly=True, passphrase=passphrase, reporter=reporter)
        except DiskImageError as e:
            reporter.info(f"Temporary attach failed: {e}")
            return NotFound(str(e))
        if isinstance(lookup, NotFound):
            return lookup

        mount = artifacts.track_mount(lookup.value, source)
        reporter.info(f"Temporarily attached at {mount.path}")
        try:
            found = await self.icons.find_application(mount.path)
            if isinstance(found, NotFound):
                return found
            reporter.info(f"Found {found.value.name}")

            workdir = artifacts.new_directory("app_for_icon")
            copy = workdir.path / found.value.name
            try:
                await anyio.to_thread.run_sync(partial(shutil.copytree, found.value, copy, symlinks=True))
            except OSError as e:
                reporter.info(f"Copying {found.value.name} failed: {e}")
                return NotFound(str(e))
            reporter.info(f"Copied application to {copy}")
            return Found(copy)
        finally:
            await artifacts.release(mount)

    async def _recreate_compress(
        self,
        request: ConversionRequest,
        app: Path,
        passphrase: bytes | None,
        reporter: ProgressReporter,
        artifacts: ArtifactTracker,
    ) -> None:
        """Rebuild a right-sized writable image from the mounted contents, then compress it."""
        reporter.start(Stage.RECREATE, f"Re-creating {request.source} from its contents")
        lookup = await self.registry.attach(request.source, passphrase=passphrase, reporter=reporter)
        if isinstance(lookup, NotFound):
            raise ProcessFailure("attach", 0, message="No mount point reported for writable attach")

        mount = artifacts.track_mount(lookup.value, request.source)
        recreated = artifacts.new_file("recreated", ".dmg")
        preserved: Path | None = None
        try:
            volume_name = volume_name_of(mount.path)
            existing_icon = mount.path / VOLUME_ICON_NAME
            if existing_icon.is_file():
                saved = artifacts.new_file("volume_icon", ".icns")
                try:
                    await anyio.to_thread.run_sync(shutil.copyfile, existing_icon, saved.path)
                    preserved = saved.path
                    reporter.info("Preserved existing volume icon")
                except OSError as e:
                    reporter.info(f"Could not preserve volume icon: {e}")

            args = ["create", "-srcfolder", str(mount.path), "-volname", volume_name, "-format", "UDRW"]
            if passphrase is not None:
                args += ["-encryption", self.config.encryption, "-stdinpass"]
            args.append(str(recreated.path))
            await self._hdiutil(reporter, args, passphrase)
        finally:
            await artifacts.release(mount)

        reporter.start(Stage.VOLUME_ICON, "Applying volume icon")
        if preserved is not None:
            outcome = await self.icons.embed_on_volume(preserved, recreated.path, reporter, passphrase)
        else:
            outcome = await self.icons.embed_app_icon_on_volume(app, recreated.path, reporter, passphrase)
        self._report_icon(outcome, recreated.path, reporter)

        reporter.start(Stage.COMPRESS, f"Compressing {recreated.path.name}")
        await self._compress(recreated.path, request.destination, passphrase, reporter)
        await artifacts.release(recreated)

    async def _sparse_compress(
        self,
        request: ConversionRequest,
        app: Path,
        passphrase: bytes | None,
        reporter: ProgressReporter,
        artifacts: ArtifactTracker,
    ) -> None:
        """Copy to a writable image, compact it as a sparse image, then compress it."""
        with_passphrase = passphrase is not None

        reporter.start(Stage.CONVERT, "Creating a temporary writable copy")
        writable = artifacts.new_file("writable", ".dmg")
        await self._hdiutil(
            reporter,
            build_convert_arguments(
                request.source, writable.path, ImageFormat.READ_WRITE, with_passphrase=with_passphrase
            ),
            passphrase,
        )

        reporter.start(Stage.VOLUME_ICON, "Applying volume icon")
        outcome = await self.icons.embed_app_icon_on_volume(app, writable.path, reporter, passphrase)
        self._report_icon(outcome, writable.path, reporter)

        reporter.start(Stage.SPARSE, "Compacting unused space (sparse conversion)")
        sparse = artifacts.new_file("sparse", ".sparseimage")
        # The utility appends the sparse extension itself.
        await self._hdiutil(
            reporter,
            build_convert_arguments(
                writable.path, sparse.path.with_suffix(""), ImageFormat.SPARSE, with_passphrase=with_passphrase
            ),
            passphrase,
        )
        await artifacts.release(writable)

        reporter.start(Stage.COMPRESS, f"Compressing {sparse.path.name}")
        await self._compress(sparse.path, request.destination, passphrase, reporter)
        await artifacts.release(sparse)

    def _report_icon(self, outcome: IconOutcome, target: Path, reporter: ProgressReporter) -> None:
        try:
            ensure_icon_applied(outcome, target)
        except IconNotFound as e:
            reporter.info(str(e))
        except IconMethodFailed as e:
            reporter.warn(str(e))

    async def _reveal(self, mount_point: Path, reporter: ProgressReporter) -> None:
        try:
            result = await anyio.to_thread.run_sync(
                self.executor.run_sync, self.config.open_path, ["-R", str(mount_point)]
            )
        except SpawnError as e:
            reporter.info(f"Could not reveal {mount_point}: {e}")
            return
        if not result.succeeded:
            reporter.info(f"Could not reveal {mount_point}: exit code {result.exit_code}")
