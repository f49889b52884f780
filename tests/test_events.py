# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_diskimage

from pathlib import Path

from pydantic import SecretStr

from coreason_diskimage.errors import ErrorKind, MountBusy, ProcessFailure, SpawnError
from coreason_diskimage.events import ProgressReporter
from coreason_diskimage.models import EventStatus, ProgressEvent, Stage, passphrase_bytes


def test_reporter_forwards_and_records_events() -> None:
    received: list[ProgressEvent] = []
    reporter = ProgressReporter(received.append)

    reporter.start(Stage.CONVERT, "Converting")
    reporter.command("/usr/bin/hdiutil", ["convert", "/tmp/My Image.dmg"])
    reporter.output("created: /tmp/out.dmg\n", "  ")
    result = reporter.done("Converted", destination=Path("/tmp/out.dmg"))

    assert [e.status for e in received] == [
        EventStatus.STARTED,
        EventStatus.COMMAND,
        EventStatus.INFO,
        EventStatus.DONE,
    ]
    assert received[1].message == '$ hdiutil convert "/tmp/My Image.dmg"'
    assert all(e.stage is Stage.CONVERT for e in received)
    assert result.succeeded
    assert result.stage is Stage.CONVERT
    assert result.events == received


def test_reporter_fail_classifies_error() -> None:
    reporter = ProgressReporter()
    reporter.start(Stage.CREATE, "Creating")
    reporter.warn("disk nearly full")

    result = reporter.fail(ProcessFailure("create", 1, "hdiutil: create failed"))

    assert not result.succeeded
    assert result.error_kind is ErrorKind.PROCESS_FAILURE
    assert result.exit_code == 1
    assert result.warnings == ["disk nearly full"]
    assert result.events[-1].status is EventStatus.ERROR
    assert result.events[-1].status.terminal


def test_error_kinds() -> None:
    assert MountBusy("/tmp/a.dmg").kind is ErrorKind.MOUNT_BUSY
    spawn = SpawnError("/usr/bin/hdiutil", FileNotFoundError(2, "No such file or directory"))
    assert spawn.kind is ErrorKind.SPAWN
    assert "No such file or directory" in str(spawn)
    failure = ProcessFailure("attach", 0, message="No mount point reported")
    assert str(failure) == "No mount point reported"


def test_passphrase_bytes() -> None:
    assert passphrase_bytes(None) is None
    assert passphrase_bytes(SecretStr("")) is None
    assert passphrase_bytes(SecretStr("pässword")) == "pässword".encode("utf-8")


def test_reporter_survives_failing_sink() -> None:
    calls: list[ProgressEvent] = []

    def flaky_sink(event: ProgressEvent) -> None:
        calls.append(event)
        raise RuntimeError("stream closed")

    reporter = ProgressReporter(flaky_sink)
    reporter.start(Stage.CLEANUP, "Cleaning up")
    reporter.info("Detached temporary mount /Volumes/Source")

    assert len(calls) == 1
    assert reporter.sink is None
    assert [e.status for e in reporter.events] == [EventStatus.STARTED, EventStatus.INFO]
