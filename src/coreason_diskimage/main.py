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
from typing import Literal

from mcp.server.fastmcp import FastMCP
from mcp.types import TextContent
from pydantic import SecretStr

from coreason_diskimage.models import (
    AttachRequest,
    ConversionRequest,
    CreateMode,
    CreationRequest,
    Direction,
    FileSystem,
    ImageFormat,
    PipelineResult,
)
from coreason_diskimage.service import DiskImageAsync
from coreason_diskimage.utils.logger import logger

# Initialize Disk Image Service
service = DiskImageAsync()

# Initialize MCP Server
mcp = FastMCP("coreason-diskimage")


def _secret(value: str) -> SecretStr | None:
    return SecretStr(value) if value else None


def render_result(result: PipelineResult) -> list[TextContent]:
    """Render the event log of a run followed by a status line."""
    output = [TextContent(type="text", text=event.message) for event in result.events]
    if result.succeeded:
        status = "Status: done"
        if result.warnings:
            status += f" ({len(result.warnings)} warning(s))"
    else:
        kind = result.error_kind.value if result.error_kind else "unknown"
        status = f"Status: error ({kind}, stage {result.stage.value})"
    output.append(TextContent(type="text", text=status))
    return output


@mcp.tool()  # type: ignore[misc]
async def create_image(
    destination: str,
    volume_name: str,
    mode: Literal["from-folder", "empty"] = "from-folder",
    source_folder: str | None = None,
    size: str = "",
    filesystem: Literal["APFS", "HFS+J"] = "APFS",
    read_only: bool = True,
    passphrase: str = "",
) -> list[TextContent]:
    """
    Create a disk image from a folder, or an empty image of the given size.
    """
    request = CreationRequest(
        mode=CreateMode(mode),
        volume_name=volume_name,
        destination=Path(destination),
        source_folder=Path(source_folder) if source_folder else None,
        size=size,
        filesystem=FileSystem(filesystem),
        access=ImageFormat.READ_ONLY if read_only else ImageFormat.READ_WRITE,
        passphrase=_secret(passphrase),
    )
    return render_result(await service.create(request))


@mcp.tool()  # type: ignore[misc]
async def convert_image(
    source: str,
    destination: str,
    direction: Literal["rw-to-ro", "ro-to-rw"] = "rw-to-ro",
    embed_app_icon: bool = False,
    passphrase: str = "",
) -> list[TextContent]:
    """
    Convert a writable image to a compressed read-only one, or back.
    """
    request = ConversionRequest(
        source=Path(source),
        destination=Path(destination),
        direction=Direction(direction),
        embed_app_icon=embed_app_icon,
        passphrase=_secret(passphrase),
    )
    return render_result(await service.convert(request))


@mcp.tool()  # type: ignore[misc]
async def attach_image(image: str, readonly: bool = False, passphrase: str = "") -> list[TextContent]:
    """
    Attach a disk image and report its mount point.
    """
    request = AttachRequest(image=Path(image), readonly=readonly, reveal=False, passphrase=_secret(passphrase))
    return render_result(await service.attach(request))


@mcp.tool()  # type: ignore[misc]
async def list_mounted_images() -> list[str]:
    """
    List attached disk images with their devices and mount points.
    """
    try:
        entries = await service.list_mounted_images()
    except Exception as e:
        logger.error(f"Listing mounted images failed: {e}")
        return [f"Error listing mounted images: {e!s}"]
    return [
        f"{entry.image_path}: devices={','.join(entry.device_nodes)} mounts={','.join(entry.mount_points)}"
        for entry in entries
    ]


def main() -> None:
    """Entry point for the MCP server."""
    logger.info("Starting coreason-diskimage MCP server")
    mcp.run()


if __name__ == "__main__":  # pragma: no cover
    main()
