# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from coreason_diskimage.errors import DiskImageError, ErrorKind
from coreason_diskimage.models import EventSink, EventStatus, PipelineResult, ProgressEvent, Stage
from coreason_diskimage.process import printable_command


class ProgressReporter:
    """Collects the events of one pipeline run and forwards them to a sink.

    Every event is mirrored to the application log. The reporter also tracks
    the current stage and accumulated warnings so that the run can be closed
    with a structured PipelineResult.
    """

    def __init__(self, sink: EventSink | None = None):
        self.sink = sink
        self.stage = Stage.VALIDATE
        self.events: list[ProgressEvent] = []
        self.warnings: list[str] = []

    def emit(
        self, status: EventStatus, message: str, stage: Stage | None = None, exit_code: int | None = None
    ) -> ProgressEvent:
        event = ProgressEvent(stage=stage or self.stage, status=status, message=message, exit_code=exit_code)
        self.events.append(event)

        log = logger.bind(stage=event.stage.value, status=event.status.value)
        if status is EventStatus.ERROR:
            log.error(message)
        elif status is EventStatus.WARNING:
            log.warning(message)
        else:
            log.info(message)

        if self.sink is not None:
            try:
                self.sink(event)
            except Exception as e:
                # A failing consumer must not interrupt the run or its cleanup.
                logger.warning(f"Progress sink failed, no further events are forwarded: {e}")
                self.sink = None
        return event

    def start(self, stage: Stage, message: str) -> None:
        self.stage = stage
        self.emit(EventStatus.STARTED, message)

    def info(self, message: str) -> None:
        self.emit(EventStatus.INFO, message)

    def succeeded(self, message: str, exit_code: int | None = None) -> None:
        self.emit(EventStatus.SUCCEEDED, message, exit_code=exit_code)

    def warn(self, message: str, exit_code: int | None = None) -> None:
        self.warnings.append(message)
        self.emit(EventStatus.WARNING, message, exit_code=exit_code)

    def command(self, command: str, args: Sequence[str]) -> None:
        self.emit(EventStatus.COMMAND, f"$ {printable_command(command, args)}")

    def output(self, stdout: str, stderr: str) -> None:
        """Forward non-empty process output as info lines."""
        for text in (stdout, stderr):
            if text.strip():
                self.info(text.strip())

    def done(
        self, message: str, destination: Path | None = None, mount_point: Path | None = None
    ) -> PipelineResult:
        self.emit(EventStatus.DONE, message)
        return PipelineResult(
            succeeded=True,
            stage=self.stage,
            destination=destination,
            mount_point=mount_point,
            message=message,
            warnings=list(self.warnings),
            events=list(self.events),
        )

    def fail(self, error: DiskImageError) -> PipelineResult:
        exit_code = getattr(error, "exit_code", None)
        message = str(error)
        self.emit(EventStatus.ERROR, message, exit_code=exit_code)
        kind: ErrorKind = error.kind
        return PipelineResult(
            succeeded=False,
            stage=self.stage,
            error_kind=kind,
            exit_code=exit_code,
            message=message,
            warnings=list(self.warnings),
            events=list(self.events),
        )
