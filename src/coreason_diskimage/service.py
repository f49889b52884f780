# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

import math
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from typing import TypeVar

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from loguru import logger

from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.models import (
    AttachRequest,
    ConversionRequest,
    CreationRequest,
    EventSink,
    MountedImageEntry,
    PipelineResult,
    ProgressEvent,
)
from coreason_diskimage.mounts import normalize_image_path
from coreason_diskimage.pipeline import ConversionPipeline
from coreason_diskimage.process import ProcessExecutor

RequestT = TypeVar("RequestT", AttachRequest, ConversionRequest, CreationRequest)


class ImageLocks:
    """Per-image mutual exclusion keyed by normalized path.

    Guards against two runs of this process touching the same image at once.
    The OS mount table stays the source of truth for everything else.
    """

    def __init__(self) -> None:
        self._locks: dict[str, anyio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, image: str | os.PathLike[str]) -> anyio.Lock:
        return self._lock(normalize_image_path(image))

    def _lock(self, key: str) -> anyio.Lock:
        if key not in self._locks:
            self._locks[key] = anyio.Lock()
        return self._locks[key]

    def _prune(self, keys: list[str]) -> None:
        """Forget locks nobody holds or waits for."""
        for key in keys:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked() and lock.statistics().tasks_waiting == 0:
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, *images: str | os.PathLike[str]) -> AsyncIterator[None]:
        """Hold the locks of several images, acquired in sorted order."""
        keys = sorted({normalize_image_path(image) for image in images})
        try:
            async with AsyncExitStack() as stack:
                for key in keys:
                    await stack.enter_async_context(self._lock(key))
                yield
        finally:
            self._prune(keys)


def _forward(send: MemoryObjectSendStream[ProgressEvent]) -> EventSink:
    def _sink(event: ProgressEvent) -> None:
        try:
            send.send_nowait(event)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # The consumer stopped reading; the run carries on without it.
            pass

    return _sink


def _chain(first: EventSink, second: EventSink | None) -> EventSink:
    def _sink(event: ProgressEvent) -> None:
        first(event)
        if second is not None:
            second(event)

    return _sink


class DiskImageAsync:
    """Async-native disk-image service.

    Serializes runs per image and exposes each operation both as a
    call returning a PipelineResult and as a stream of progress events.
    """

    def __init__(
        self,
        config: DiskImageConfig | None = None,
        executor: ProcessExecutor | None = None,
        pipeline: ConversionPipeline | None = None,
    ):
        """Initializes the service.

        Args:
            config: Configuration. Defaults are read from the environment.
            executor: Optional process executor, mainly for tests.
            pipeline: Optional pre-built pipeline.
        """
        self.config = config or DiskImageConfig()
        self.pipeline = pipeline or ConversionPipeline(self.config, executor)
        self.locks = ImageLocks()

    async def create(self, request: CreationRequest) -> PipelineResult:
        paths = [request.destination]
        if request.source_folder is not None:
            paths.append(request.source_folder)
        async with self.locks.hold(*paths):
            logger.info(f"Creating image {request.destination}")
            return await self.pipeline.create(request)

    async def convert(self, request: ConversionRequest) -> PipelineResult:
        async with self.locks.hold(request.source, request.destination):
            logger.info(f"Converting {request.source} -> {request.destination} ({request.direction.value})")
            return await self.pipeline.convert(request)

    async def attach(self, request: AttachRequest) -> PipelineResult:
        async with self.locks.hold(request.image):
            logger.info(f"Attaching {request.image}")
            return await self.pipeline.attach(request)

    async def list_mounted_images(self) -> list[MountedImageEntry]:
        return await self.pipeline.registry.list_mounted_images()

    def stream_create(self, request: CreationRequest) -> AsyncIterator[ProgressEvent]:
        """Run a creation and yield its events as they happen."""
        return self._stream(self.create, request)

    def stream_convert(self, request: ConversionRequest) -> AsyncIterator[ProgressEvent]:
        """Run a conversion and yield its events as they happen."""
        return self._stream(self.convert, request)

    def stream_attach(self, request: AttachRequest) -> AsyncIterator[ProgressEvent]:
        """Run an attach and yield its events as they happen."""
        return self._stream(self.attach, request)

    async def _stream(
        self, operation: Callable[[RequestT], Awaitable[PipelineResult]], request: RequestT
    ) -> AsyncIterator[ProgressEvent]:
        send: MemoryObjectSendStream[ProgressEvent]
        receive: MemoryObjectReceiveStream[ProgressEvent]
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)

        async def _run() -> None:
            async with send:
                # Shielded: a run always completes and releases its temporary artifacts.
                with anyio.CancelScope(shield=True):
                    await operation(request.model_copy(update={"sink": _chain(_forward(send), request.sink)}))

        async with anyio.create_task_group() as tg:
            tg.start_soon(_run)
            async with receive:
                try:
                    async for event in receive:
                        yield event
                except GeneratorExit:
                    logger.debug("Event consumer closed the stream early; waiting for the run to finish")


class DiskImage:
    """Sync facade for DiskImageAsync.

    Each call runs the async operation to completion via anyio.run.
    """

    def __init__(
        self,
        config: DiskImageConfig | None = None,
        executor: ProcessExecutor | None = None,
    ):
        self._async = DiskImageAsync(config, executor)

    def create(self, request: CreationRequest) -> PipelineResult:
        """Creates an image synchronously."""
        return anyio.run(self._async.create, request)

    def convert(self, request: ConversionRequest) -> PipelineResult:
        """Converts an image synchronously."""
        return anyio.run(self._async.convert, request)

    def attach(self, request: AttachRequest) -> PipelineResult:
        """Attaches an image synchronously."""
        return anyio.run(self._async.attach, request)

    def list_mounted_images(self) -> list[MountedImageEntry]:
        """Lists attached images synchronously."""
        return anyio.run(self._async.list_mounted_images)
