"""Write GRUB's boot sector for legacy BIOS systems."""
from __future__ import annotations

import os

from .errors import SectorInstallError
from .executil import run_logged, trace
from .mounts import Cleanup, make_temp, preserve_log
from .paths import BIOS_SETUP_LOG_NAME, diagnostic_log


def bios_setup_command(disk: str, boot_image: str, core_image: str) -> list[str]:
    directory = os.path.dirname(boot_image)
    cmd = ["grub-bios-setup", "--verbose", "-d", directory, "-b", os.path.basename(boot_image)]
    if os.path.dirname(core_image) == directory:
        cmd += ["-c", os.path.basename(core_image)]
    else:
        cmd += ["-c", core_image]
    cmd.append(disk)
    return cmd


def install_boot_sector(cleanup: Cleanup, disk: str, boot_image: str, core_image: str) -> None:
    for label, path in (("boot image", boot_image), ("core image", core_image)):
        if not os.path.isfile(path):
            raise SectorInstallError(
                f"{label} {path} is missing after grub-install reported success",
                state={"path": path},
            )

    cmd = bios_setup_command(disk, boot_image, core_image)
    log_path = make_temp(cleanup, suffix=".log")
    try:
        res = run_logged(cmd, log_path)
    except OSError as exc:
        dest = preserve_log(cleanup, log_path, diagnostic_log(BIOS_SETUP_LOG_NAME))
        raise SectorInstallError(f"unable to run grub-bios-setup: {exc}; see {dest}", log_path=dest) from exc
    if res.rc != 0:
        dest = preserve_log(cleanup, log_path, diagnostic_log(BIOS_SETUP_LOG_NAME))
        raise SectorInstallError(f"grub-bios-setup failed (rc={res.rc}); see {dest}", log_path=dest)
    trace("bootsector.installed", disk=disk, boot_image=boot_image, core_image=core_image)
