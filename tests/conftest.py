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
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from coreason_diskimage.config import DiskImageConfig
from coreason_diskimage.errors import SpawnError
from coreason_diskimage.models import ProcessResult
from coreason_diskimage.process import ProcessExecutor


@dataclass
class Attachment:
    image: str
    devices: list[str]
    mounts: list[str]
    readonly: bool = False


@dataclass
class Failure:
    prefix: str
    exit_code: int
    stderr: str
    contains: str | None = None


@dataclass
class Call:
    tool: str
    args: list[str]
    stdin: bytes | None = None
    sync: bool = False

    @property
    def line(self) -> str:
        return " ".join([self.tool, *self.args])


def _key(path: str | os.PathLike[str]) -> str:
    return os.path.realpath(os.fspath(path))


@dataclass
class FakeToolchain(ProcessExecutor):
    """In-memory stand-in for the disk-image and icon utilities.

    Every image has a backing directory holding its volume contents. Attaching
    copies the contents to a mount directory under `volumes`; detaching a
    writable mount copies them back.
    """

    root: Path
    calls: list[Call] = field(default_factory=list)
    attached: dict[str, Attachment] = field(default_factory=dict)
    backing: dict[str, Path] = field(default_factory=dict)
    volume_names: dict[str, str] = field(default_factory=dict)
    failures: list[Failure] = field(default_factory=list)
    missing: set[str] = field(default_factory=set)
    sticky: set[str] = field(default_factory=set)
    unreleasable: set[str] = field(default_factory=set)
    getfileinfo_output: str = "1"
    env: dict[str, str] | None = None
    _counter: int = 0

    def __post_init__(self) -> None:
        self.volumes = self.root / "Volumes"
        self.store = self.root / "store"
        self.volumes.mkdir(parents=True, exist_ok=True)
        self.store.mkdir(parents=True, exist_ok=True)

    # Test helpers

    def fail(self, prefix: str, exit_code: int = 1, stderr: str = "", contains: str | None = None) -> None:
        self.failures.append(Failure(prefix, exit_code, stderr, contains))

    def add_image(
        self, path: Path, files: dict[str, bytes] | None = None, volume_name: str = "Source"
    ) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"image")
        backing = self._new_backing()
        for name, content in (files or {}).items():
            target = backing / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        self.backing[_key(path)] = backing
        self.volume_names[_key(path)] = volume_name
        return path

    def seed_mount(self, image: Path, devices: list[str], mounts: list[str]) -> None:
        self.attached[_key(image)] = Attachment(_key(image), devices, mounts)

    def contents(self, image: Path) -> set[str]:
        backing = self.backing[_key(image)]
        return {p.relative_to(backing).as_posix() for p in backing.rglob("*")}

    def calls_to(self, prefix: str) -> list[Call]:
        return [c for c in self.calls if c.line.startswith(prefix)]

    # Executor interface

    async def run(self, command: str, args: Sequence[str], stdin: bytes | None = None) -> ProcessResult:
        return self._dispatch(command, list(args), stdin, sync=False)

    def run_sync(self, command: str, args: Sequence[str], stdin: bytes | None = None) -> ProcessResult:
        return self._dispatch(command, list(args), stdin, sync=True)

    def _dispatch(self, command: str, args: list[str], stdin: bytes | None, sync: bool) -> ProcessResult:
        tool = os.path.basename(command)
        call = Call(tool, args, stdin, sync)
        self.calls.append(call)
        if tool in self.missing:
            raise SpawnError(command, FileNotFoundError(2, "No such file or directory"))
        for failure in self.failures:
            if call.line.startswith(failure.prefix) and (failure.contains is None or failure.contains in args):
                return ProcessResult(stdout="", stderr=failure.stderr, exit_code=failure.exit_code)
        if tool == "hdiutil":
            return self._hdiutil(args)
        if tool == "sips" and args[0] == "--getProperty":
            return ProcessResult(stdout=f"{args[-1]}\n  pixelWidth: 512\n", stderr="", exit_code=0)
        if tool == "GetFileInfo":
            return ProcessResult(stdout=f"{self.getfileinfo_output}\n", stderr="", exit_code=0)
        if tool == "file":
            return ProcessResult(stdout=f"{args[-1]}: Mac OS X icon\n", stderr="", exit_code=0)
        return ProcessResult(stdout="", stderr="", exit_code=0)

    def _ok(self, stdout: str = "") -> ProcessResult:
        return ProcessResult(stdout=stdout, stderr="", exit_code=0)

    def _new_backing(self) -> Path:
        self._counter += 1
        backing = self.store / f"image{self._counter}"
        backing.mkdir()
        return backing

    def _write_image(self, path: Path, source: Path | None, volume_name: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"image")
        backing = self._new_backing()
        if source is not None and source.is_dir():
            shutil.copytree(source, backing, symlinks=True, dirs_exist_ok=True)
        self.backing[_key(path)] = backing
        self.volume_names[_key(path)] = volume_name

    def _hdiutil(self, args: list[str]) -> ProcessResult:
        verb = args[0]
        if verb == "info":
            images = [
                {
                    "image-path": a.image,
                    "system-entities": [{"dev-entry": d} for d in a.devices] + [{"mount-point": m} for m in a.mounts],
                }
                for a in self.attached.values()
            ]
            return self._ok(plistlib.dumps({"images": images}).decode("utf-8"))
        if verb == "attach":
            return self._attach(args)
        if verb == "detach":
            return self._detach(args[-1], force="-force" in args)
        if verb == "create":
            destination = Path(args[-1])
            source = Path(args[args.index("-srcfolder") + 1]) if "-srcfolder" in args else None
            self._write_image(destination, source, args[args.index("-volname") + 1])
            return self._ok(f"created: {destination}\n")
        if verb == "convert":
            origin = _key(args[1])
            destination = args[args.index("-o") + 1]
            if args[args.index("-format") + 1] == "UDSP" and not destination.endswith(".sparseimage"):
                destination += ".sparseimage"
            self._write_image(Path(destination), self.backing.get(origin), self.volume_names.get(origin, "Untitled"))
            return self._ok(f"created: {destination}\n")
        return self._ok()

    def _attach(self, args: list[str]) -> ProcessResult:
        image = Path(args[1])
        key = _key(image)
        if not image.exists():
            return ProcessResult(stdout="", stderr="hdiutil: attach failed - No such file or directory", exit_code=1)
        self._counter += 1
        device = f"/dev/disk{self._counter}"
        mount = self.volumes / self.volume_names.get(key, "Untitled")
        if mount.exists():
            mount = self.volumes / f"{mount.name} {self._counter}"
        backing = self.backing.get(key)
        if backing is not None:
            shutil.copytree(backing, mount, symlinks=True)
        else:
            mount.mkdir()
        self.attached[key] = Attachment(key, [device, f"{device}s1"], [str(mount)], readonly="-readonly" in args)
        return self._ok(f"{device}\tGUID_partition_scheme\t\n{device}s1\tApple_HFS\t{mount}\n")

    def _detach(self, target: str, force: bool) -> ProcessResult:
        for key, attachment in list(self.attached.items()):
            if target not in attachment.mounts and target not in attachment.devices:
                continue
            if key in self.unreleasable or (key in self.sticky and not force):
                busy = f"hdiutil: couldn't unmount {target} - Resource busy"
                return ProcessResult(stdout="", stderr=busy, exit_code=16)
            del self.attached[key]
            for mount in map(Path, attachment.mounts):
                if not mount.is_dir():
                    continue
                if not attachment.readonly and key in self.backing:
                    shutil.rmtree(self.backing[key])
                    shutil.copytree(mount, self.backing[key], symlinks=True)
                shutil.rmtree(mount)
            return self._ok(f'"{target}" ejected.\n')
        return ProcessResult(stdout="", stderr="hdiutil: detach failed - No such file or directory", exit_code=1)


APP_INFO_PLIST = plistlib.dumps({"CFBundleName": "MyApp", "CFBundleIconFile": "AppIcon"})


def app_bundle_files(name: str = "MyApp") -> dict[str, bytes]:
    return {
        f"{name}.app/Contents/Info.plist": APP_INFO_PLIST,
        f"{name}.app/Contents/Resources/AppIcon.icns": b"icns-data",
        f"{name}.app/Contents/MacOS/{name}": b"binary",
    }


@pytest.fixture
def fake(tmp_path: Path) -> FakeToolchain:
    return FakeToolchain(root=tmp_path / "system")


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def config(fake: FakeToolchain, work_dir: Path) -> DiskImageConfig:
    return DiskImageConfig(
        mount_root=f"{fake.volumes}/",
        settle_interval=0,
        temp_dir=work_dir,
        reveal_on_attach=False,
    )
