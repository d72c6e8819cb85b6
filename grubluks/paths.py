from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/grubluks"

BOOT_DIR = "/boot"
GRUB_SUBDIR = "grub"

INSTALL_LOG_NAME = "grub-install.log"
BIOS_SETUP_LOG_NAME = "grub-bios-setup.log"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for grubluks logs.

    Overridable through ``GRUBLUKS_BASE_PATH``; falls back to
    ``/var/lib/grubluks``.
    """

    override = os.environ.get("GRUBLUKS_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def grub_dir(boot_dir: str = BOOT_DIR) -> str:
    return os.path.join(boot_dir, GRUB_SUBDIR)


def bios_image_dir(boot_dir: str = BOOT_DIR) -> str:
    return os.path.join(grub_dir(boot_dir), "i386-pc")


def bios_boot_image(boot_dir: str = BOOT_DIR) -> str:
    return os.path.join(bios_image_dir(boot_dir), "boot.img")


def bios_core_image(boot_dir: str = BOOT_DIR) -> str:
    return os.path.join(bios_image_dir(boot_dir), "core.img")


def diagnostic_log(name: str) -> str:
    """Diagnostic logs are kept in the directory the operator ran us from."""
    return os.path.join(os.getcwd(), name)
