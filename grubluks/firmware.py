"""Firmware type and GRUB platform selection."""
import os

from .errors import FirmwareDetectionError
from .model import FirmwareKind

EFI_SYSFS = "/sys/firmware/efi"

PLATFORMS = {
    FirmwareKind.EFI: "x86_64-efi",
    FirmwareKind.BIOS: "i386-pc",
}


def detect_firmware(sysfs: str = EFI_SYSFS) -> FirmwareKind:
    if not os.path.isdir(sysfs):
        return FirmwareKind.BIOS
    # 32-bit UEFI on a 64-bit CPU cannot load an x86_64-efi image.
    size_path = os.path.join(sysfs, "fw_platform_size")
    try:
        with open(size_path, "r", encoding="utf-8") as fh:
            size = fh.read().strip()
    except FileNotFoundError:
        size = ""
    if size and size != "64":
        raise FirmwareDetectionError(f"{size}-bit UEFI firmware is not supported")
    return FirmwareKind.EFI


def platform_for(firmware: FirmwareKind) -> str:
    return PLATFORMS[firmware]
