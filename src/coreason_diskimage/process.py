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
import subprocess
from collections.abc import Sequence
from typing import Any

import anyio
from loguru import logger

from coreason_diskimage.errors import SpawnError
from coreason_diskimage.models import ProcessResult


def printable_command(command: str, args: Sequence[str]) -> str:
    """Render an invocation as a reproducible shell line.

    Arguments containing a space are double-quoted.
    """
    name = os.path.basename(command) or command
    parts = [name, *(f'"{arg}"' if " " in arg else arg for arg in args)]
    return " ".join(parts)


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class ProcessExecutor:
    """Spawns external utilities and collects their output.

    Both variants drain stdout and stderr completely before returning, and
    close stdin after writing the supplied bytes. A non-zero exit status is
    returned as data; only a failure to launch raises.
    """

    def __init__(self, env: dict[str, str] | None = None):
        """Initializes the executor.

        Args:
            env: Optional environment for child processes. Inherits when None.
        """
        self.env = env

    async def run(self, command: str, args: Sequence[str], stdin: bytes | None = None) -> ProcessResult:
        """Run a utility without blocking the event loop.

        Args:
            command: Absolute path of the executable.
            args: Arguments, not including the executable.
            stdin: Bytes to feed on standard input. Stdin is /dev/null when None.

        Returns:
            ProcessResult: Captured output and exit status.

        Raises:
            SpawnError: If the executable cannot be launched.
        """
        kwargs: dict[str, Any] = {"check": False, "env": self.env}
        if stdin is None:
            kwargs["stdin"] = subprocess.DEVNULL
        else:
            kwargs["input"] = stdin

        logger.debug(f"Spawning {printable_command(command, args)}")
        try:
            completed = await anyio.run_process([command, *args], **kwargs)
        except OSError as e:
            logger.error(f"Failed to launch {command}: {e}")
            raise SpawnError(command, e) from e

        return ProcessResult(
            stdout=_decode(completed.stdout),
            stderr=_decode(completed.stderr),
            exit_code=completed.returncode,
        )

    def run_sync(self, command: str, args: Sequence[str], stdin: bytes | None = None) -> ProcessResult:
        """Run a utility and wait inline for it to finish.

        Same contract as `run`.
        """
        kwargs: dict[str, Any] = {"capture_output": True, "check": False, "env": self.env}
        if stdin is None:
            kwargs["stdin"] = subprocess.DEVNULL
        else:
            kwargs["input"] = stdin

        logger.debug(f"Spawning (sync) {printable_command(command, args)}")
        try:
            completed = subprocess.run([command, *args], **kwargs)
        except OSError as e:
            logger.error(f"Failed to launch {command}: {e}")
            raise SpawnError(command, e) from e

        return ProcessResult(
            stdout=_decode(completed.stdout),
            stderr=_decode(completed.stderr),
            exit_code=completed.returncode,
        )
