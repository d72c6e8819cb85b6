"""Build plan resolution and core image assembly with grub-mkimage."""

from __future__ import annotations

import os
import posixpath
from typing import Sequence

from .errors import ImageBuildError, UnsupportedRootLayoutError
from .executil import run, trace
from .model import BuildPlan, CryptoParams, DeviceKind, DeviceNode, ModuleSet
from .mounts import Cleanup, make_temp, temp_file
from .paths import BOOT_DIR, grub_dir


def root_specifier(stack: Sequence[DeviceNode]) -> str:
    """How GRUB names the boot filesystem's device once the container is open."""

    if not stack:
        raise UnsupportedRootLayoutError("empty device stack")
    top = stack[0]
    if top.kind is DeviceKind.CRYPT:
        # The embedded config unlocks exactly one container.
        return "(crypto0)"
    if top.kind is DeviceKind.LVM:
        return f"(lvm/{top.name})"
    raise UnsupportedRootLayoutError(
        f"boot filesystem sits on a {top.kind.value} device ({top.path}); "
        "expected a LUKS mapping or an LVM volume inside one",
        state={"path": top.path, "kind": top.kind.value},
    )


def grub_prefix(root: str, boot_dir: str = BOOT_DIR, boot_mount: str = "/") -> str:
    """``root`` plus the GRUB directory relative to the filesystem holding it."""

    rel = posixpath.relpath(grub_dir(boot_dir), boot_mount or "/")
    return f"{root}/{rel}"


def build_plan(
        stack: Sequence[DeviceNode],
        modules: ModuleSet,
        *,
        output_path: str,
        platform: str,
        boot_dir: str = BOOT_DIR,
        boot_mount: str = "/",
) -> BuildPlan:
    root = root_specifier(stack)
    plan = BuildPlan(
        root=root,
        prefix=grub_prefix(root, boot_dir, boot_mount),
        output_path=output_path,
        platform=platform,
        modules=tuple(modules),
    )
    trace("image.plan", **plan.as_dict())
    return plan


def embedded_config(params: CryptoParams) -> str:
    return f"cryptomount -u {params.uuid_literal}\n"


def write_embedded_config(path: str, params: CryptoParams) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(embedded_config(params))


def mkimage_command(plan: BuildPlan, config_path: str, output_path: str | None = None) -> list[str]:
    return [
        "grub-mkimage",
        "-c", config_path,
        "-o", output_path or plan.output_path,
        "-O", plan.platform,
        "-p", plan.prefix,
        *plan.modules,
    ]


def assemble_image(cleanup: Cleanup, plan: BuildPlan, params: CryptoParams) -> list[str]:
    """Write the core image to ``plan.output_path``.

    grub-mkimage writes next to the destination first and the result is
    renamed into place, so a failed build never leaves a partial image.
    Returns the module list the image was built with.
    """

    out_dir = os.path.dirname(plan.output_path) or "."
    staging = make_temp(cleanup, suffix=".img", directory=out_dir)
    with temp_file(cleanup, suffix=".cfg") as config_path:
        write_embedded_config(config_path, params)
        cmd = mkimage_command(plan, config_path, staging)
        try:
            res = run(cmd, check=False)
        except OSError as exc:
            raise ImageBuildError(f"unable to run grub-mkimage: {exc}") from exc

    err = (res.err or "").strip()
    if res.rc != 0 or err:
        raise ImageBuildError(
            f"grub-mkimage failed (rc={res.rc}): {err or 'no error output'}",
            state={"cmd": cmd, "rc": res.rc, "err": err},
        )
    os.replace(staging, plan.output_path)
    trace("image.assembled", output=plan.output_path, modules=list(plan.modules))
    return list(plan.modules)
