"""Precondition guards run before anything is resolved or written."""

from __future__ import annotations

import os
import platform
import stat

from .errors import InvalidDeviceError, MissingDiskArgumentError, NotRootError, UnsupportedArchitectureError
from .model import FirmwareKind

SUPPORTED_MACHINES = ("x86_64", "amd64")


def require_root() -> None:
    if os.geteuid() != 0:
        raise NotRootError("grubluks must be run as root")


def require_x86_64() -> None:
    machine = platform.machine().lower()
    if machine not in SUPPORTED_MACHINES:
        raise UnsupportedArchitectureError(f"unsupported architecture {machine or '<unknown>'}; only x86_64 is supported")


def require_block_device(path: str) -> str:
    try:
        st = os.stat(path)
    except OSError as exc:
        raise InvalidDeviceError(f"{path}: {exc.strerror or exc}") from exc
    if not stat.S_ISBLK(st.st_mode):
        raise InvalidDeviceError(f"{path} is not a block device")
    return path


def require_disk_argument(firmware: FirmwareKind, disk: str | None) -> str | None:
    """The disk argument is mandatory on BIOS systems and ignored on EFI."""

    if firmware is FirmwareKind.EFI:
        return None
    if not disk:
        raise MissingDiskArgumentError(
            "legacy BIOS system detected: pass the disk GRUB boots from, e.g. grubluks /dev/sda"
        )
    return require_block_device(disk)
