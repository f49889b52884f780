# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import TracebackType
from uuid import uuid4

import aiofiles.os
import anyio
from loguru import logger

from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.errors import DiskImageError, MountBusy, ProcessFailure
from coreason_diskimage.events import ProgressReporter
from coreason_diskimage.mounts import MountRegistry


class ArtifactKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    MOUNT = "mount"


@dataclass(eq=False)
class TemporaryArtifact:
    """A file, directory or mount point created only to support a pipeline step.

    Attributes:
        kind: What has to be undone.
        path: The file, directory or mount point.
        image: For mounts, the image file backing the mount.
    """

    kind: ArtifactKind
    path: Path
    image: Path | None = None


class ArtifactTracker:
    """Owns the temporary artifacts of one pipeline run.

    Used as an async context manager: on exit every artifact still recorded is
    released, mounts first, then files and directories in reverse creation
    order. A temporary image is never deleted while it is still attached; one
    that cannot be released is left in place with a warning.
    """

    def __init__(
        self,
        config: DiskImageConfig,
        registry: MountRegistry,
        reporter: ProgressReporter | None = None,
    ):
        self.base_dir = Path(config.temp_dir) if config.temp_dir else Path(tempfile.gettempdir())
        self.registry = registry
        self.reporter = reporter
        self.artifacts: list[TemporaryArtifact] = []

    async def __aenter__(self) -> "ArtifactTracker":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.cleanup()

    def new_file(self, prefix: str, suffix: str = "") -> TemporaryArtifact:
        """Reserve a unique file path. The file itself is created by the caller."""
        path = self.base_dir / f"{prefix}_{uuid4().hex}{suffix}"
        return self.track(ArtifactKind.FILE, path)

    def new_directory(self, prefix: str) -> TemporaryArtifact:
        """Create a private temporary directory."""
        path = Path(tempfile.mkdtemp(prefix=f"{prefix}_", dir=self.base_dir))
        return self.track(ArtifactKind.DIRECTORY, path)

    def track(self, kind: ArtifactKind, path: Path, image: Path | None = None) -> TemporaryArtifact:
        artifact = TemporaryArtifact(kind=kind, path=path, image=image)
        self.artifacts.append(artifact)
        logger.debug(f"Tracking temporary {kind.value}: {path}")
        return artifact

    def track_mount(self, mount_point: Path, image: Path) -> TemporaryArtifact:
        return self.track(ArtifactKind.MOUNT, mount_point, image=image)

    async def release(self, artifact: TemporaryArtifact) -> None:
        """Undo one artifact now instead of at cleanup."""
        if artifact not in self.artifacts:
            return
        if artifact.kind is not ArtifactKind.MOUNT:
            for mount in [a for a in self.artifacts if a.kind is ArtifactKind.MOUNT]:
                if mount.image is not None and mount.image.is_relative_to(artifact.path):
                    await self.release(mount)
        self.artifacts.remove(artifact)
        await self._dispose(artifact)

    async def cleanup(self) -> None:
        """Release every artifact still recorded."""
        mounts = [a for a in self.artifacts if a.kind is ArtifactKind.MOUNT]
        others = [a for a in self.artifacts if a.kind is not ArtifactKind.MOUNT]
        self.artifacts.clear()
        for artifact in reversed(mounts):
            await self._dispose(artifact)
        for artifact in reversed(others):
            await self._dispose(artifact)

    async def _dispose(self, artifact: TemporaryArtifact) -> None:
        try:
            if artifact.kind is ArtifactKind.MOUNT:
                await self._detach(artifact)
            elif artifact.kind is ArtifactKind.DIRECTORY:
                if artifact.path.exists():
                    await anyio.to_thread.run_sync(shutil.rmtree, artifact.path)
                    logger.debug(f"Removed temporary directory {artifact.path}")
            elif artifact.path.exists():
                # Also covers mounts made outside the tracker.
                if not await self.registry.ensure_detached(artifact.path, self.reporter):
                    raise MountBusy(str(artifact.path))
                await aiofiles.os.remove(artifact.path)
                logger.debug(f"Removed temporary file {artifact.path}")
        except (OSError, DiskImageError) as e:
            message = f"Could not clean up {artifact.path}: {e}"
            if self.reporter is not None:
                self.reporter.warn(message)
            else:
                logger.warning(message)

    async def _detach(self, artifact: TemporaryArtifact) -> None:
        result = await self.registry.detach(artifact.path)
        if not result.succeeded:
            logger.warning(f"Detach of {artifact.path} failed ({result.exit_code}), forcing")
            result = await self.registry.detach(artifact.path, force=True)
        if result.succeeded:
            if self.reporter is not None:
                self.reporter.info(f"Detached temporary mount {artifact.path}")
        else:
            raise ProcessFailure("detach", result.exit_code, result.stderr)

    async def release_mounts(self) -> None:
        """Detach every tracked mount now."""
        for artifact in [a for a in reversed(self.artifacts) if a.kind is ArtifactKind.MOUNT]:
            await self.release(artifact)
