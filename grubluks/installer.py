"""Run grub-install and recover what it decided from its verbose log."""

from __future__ import annotations

import os
import re

from .errors import InstallerExecutionError
from .executil import run_logged, trace
from .firmware import platform_for
from .model import FirmwareKind, InstallLog, StagedFiles
from .mounts import Cleanup, make_temp, preserve_log
from .paths import BOOT_DIR, INSTALL_LOG_NAME, bios_core_image, diagnostic_log

CORE_IMAGES = {
    "x86_64-efi": "core.efi",
    "i386-pc": "core.img",
}

_READING_RE = re.compile(r"\breading\s+\S*?([^/\s`']+)\.mod\b")
_COPYING_RE = re.compile(r"\bcopying\s+[`'\"]?(?P<src>[^`'\"]+?)[`'\"]?\s+->\s+[`'\"]?(?P<dst>[^`'\"]+?)[`'\"]?\.?\s*$")


def parse_install_log(text: str, platform: str) -> InstallLog:
    """Extract the modules grub-install read and where it copied the core image.

    Only the verbose ``info:`` lines are relied on:

        grub-install: info: reading /usr/lib/grub/x86_64-efi/part_gpt.mod.
        grub-install: info: copying `/boot/grub/x86_64-efi/core.efi' -> `/boot/efi/EFI/GRUB/grubx64.efi'.
    """

    modules: list[str] = []
    seen: set[str] = set()
    core_image = None
    core_name = CORE_IMAGES.get(platform)
    for line in (text or "").splitlines():
        match = _READING_RE.search(line)
        if match:
            name = match.group(1)
            if name not in seen:
                seen.add(name)
                modules.append(name)
            continue
        match = _COPYING_RE.search(line)
        if match and core_name and os.path.basename(match.group("src")) == core_name:
            core_image = match.group("dst")
    return InstallLog(modules=tuple(modules), core_image=core_image)


def grub_install_command(
        firmware: FirmwareKind,
        *,
        boot_dir: str = BOOT_DIR,
        esp_dir: str | None = None,
        bootloader_id: str = "GRUB",
        disk: str | None = None,
) -> list[str]:
    cmd = ["grub-install", "--verbose", f"--target={platform_for(firmware)}", f"--boot-directory={boot_dir}"]
    if firmware is FirmwareKind.EFI:
        if not esp_dir:
            raise InstallerExecutionError("EFI staging requires an EFI system partition directory")
        cmd += [f"--efi-directory={esp_dir}", f"--bootloader-id={bootloader_id}"]
    else:
        if not disk:
            raise InstallerExecutionError("BIOS staging requires a target disk")
        # The boot sector is written last, once the final core image exists.
        cmd += ["--no-bootsector", disk]
    return cmd


def _fail(cleanup: Cleanup, log_path: str, message: str) -> InstallerExecutionError:
    dest = preserve_log(cleanup, log_path, diagnostic_log(INSTALL_LOG_NAME))
    return InstallerExecutionError(f"{message}; see {dest}", log_path=dest)


def stage_boot_files(
        cleanup: Cleanup,
        firmware: FirmwareKind,
        *,
        boot_dir: str = BOOT_DIR,
        esp_dir: str | None = None,
        bootloader_id: str = "GRUB",
        disk: str | None = None,
) -> StagedFiles:
    cmd = grub_install_command(
        firmware,
        boot_dir=boot_dir,
        esp_dir=esp_dir,
        bootloader_id=bootloader_id,
        disk=disk,
    )
    env = dict(os.environ, GRUB_ENABLE_CRYPTODISK="y")
    log_path = make_temp(cleanup, suffix=".log")
    try:
        res = run_logged(cmd, log_path, env=env)
    except OSError as exc:
        raise _fail(cleanup, log_path, f"unable to run grub-install: {exc}") from exc
    if res.rc != 0:
        raise _fail(cleanup, log_path, f"grub-install failed (rc={res.rc})")

    with open(log_path, "r", encoding="utf-8", errors="replace") as fh:
        parsed = parse_install_log(fh.read(), platform_for(firmware))

    if firmware is FirmwareKind.EFI:
        if not parsed.core_image:
            raise _fail(cleanup, log_path, "grub-install did not report where it installed core.efi")
        output = parsed.core_image
    else:
        output = bios_core_image(boot_dir)

    if not parsed.modules:
        raise _fail(cleanup, log_path, "grub-install did not report reading any modules")

    trace("installer.staged", modules=list(parsed.modules), output=output, log_path=log_path)
    return StagedFiles(log_path=log_path, implicit_modules=parsed.modules, image_output_path=output)
