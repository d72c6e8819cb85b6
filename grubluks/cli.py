"""CLI entrypoint: build a GRUB core image that unlocks LUKS2 /boot on its own."""

from __future__ import annotations

import argparse
import functools
import json
import sys
import time
from typing import Any, Dict, Optional

from . import __version__
from .bootsector import install_boot_sector
from .devices import find_encryption_container, resolve_stack
from .errors import DeviceNotFoundError, GrubLuksError, OperatorAbortError
from .executil import append_jsonl, resolve_log_path, trace
from .firmware import detect_firmware, platform_for
from .image import assemble_image, build_plan, root_specifier
from .installer import stage_boot_files
from .luks import describe
from .model import CryptoParams, DeviceNode, EncryptionContainer, Flags, FirmwareKind, ModuleSet
from .modules import add_crypto_modules, add_topology_modules, select_modules
from .mounts import (
    Cleanup,
    ensure_mounted,
    is_whole_disk,
    locate_esp,
    mount_source,
    mount_target,
    mountpoints_below,
    shares_root_filesystem,
)
from .paths import BOOT_DIR, bios_boot_image
from .safety import require_disk_argument, require_root, require_x86_64

RESULT_CODES: Dict[str, int] = {
    "PLAN_OK": 0,
    "DONE_OK": 0,
    "FAIL_UNHANDLED": 1,
}

CLI_START_MONO = time.perf_counter()


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": __version__}
    if extra:
        payload.update({k: v for k, v in extra.items() if v is not None})
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("trace_log", log_path)
        append_jsonl(log_path, payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def _confirm(question: str, assume_yes: bool) -> bool:
    if assume_yes:
        print(f"[INFO] {question} yes (--yes)")
        return True
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _enter(state: str, **fields) -> None:
    trace("pipeline.state", state=state, **fields)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grubluks",
        description="Rebuild the GRUB core image so it unlocks the LUKS2 container holding /boot.",
    )
    parser.add_argument("disk", nargs="?", default=None, help="disk to install the boot sector on (legacy BIOS only)")
    parser.add_argument("--yes", dest="assume_yes", action="store_true", help="answer yes to every prompt")
    parser.add_argument("--plan", action="store_true", help="resolve and print the build plan, change nothing")
    parser.add_argument("--boot-directory", default=BOOT_DIR)
    parser.add_argument("--efi-directory", default=None, help="EFI system partition mountpoint (auto-detected)")
    parser.add_argument("--bootloader-id", default="GRUB")
    return parser


def _summary(
        firmware: FirmwareKind,
        boot_device: str,
        container: EncryptionContainer,
        params: CryptoParams,
        disk: str | None,
        esp_dir: str | None,
) -> list[str]:
    lines = [
        f"firmware:    {firmware.value} ({platform_for(firmware)})",
        f"boot device: {boot_device}",
        f"container:   {container.device} UUID={params.uuid}",
        f"crypto:      cipher={params.cipher} hash={params.hash} kdf={params.kdf}",
    ]
    if esp_dir:
        lines.append(f"esp:         {esp_dir}")
    if disk:
        lines.append(f"disk:        {disk}")
    return lines


def _stack_payload(stack: list[DeviceNode]) -> list[dict]:
    payload = []
    for node in stack:
        entry: Dict[str, Any] = {"path": node.path, "kind": node.kind.value}
        if node.scheme:
            entry["scheme"] = node.scheme.value
        if node.raid_metadata:
            entry["raid_metadata"] = node.raid_metadata.value
            entry["raid_level"] = node.raid_level
        payload.append(entry)
    return payload


def _check_legacy_disk(disk: str, flags: Flags) -> None:
    if not is_whole_disk(disk):
        if not _confirm(f"{disk} is not a whole disk; GRUB normally goes to the disk's boot sector. Continue?", flags.assume_yes):
            raise OperatorAbortError(f"aborted: {disk} is not a whole disk")
    busy = mountpoints_below(disk)
    if busy:
        print(f"[INFO] {disk} is in use (mounted: {', '.join(busy)})")
        trace("cli.disk_busy", disk=disk, mountpoints=busy)


def _run(args: argparse.Namespace, flags: Flags, cleanup: Cleanup) -> None:
    confirm = functools.partial(_confirm, assume_yes=flags.assume_yes)

    _enter("Init")
    require_root()
    require_x86_64()
    firmware = detect_firmware()
    disk = require_disk_argument(firmware, args.disk)
    boot_dir = args.boot_directory

    ensure_mounted(cleanup, boot_dir, confirm)
    esp_dir = locate_esp(cleanup, confirm, args.efi_directory) if firmware is FirmwareKind.EFI else None

    boot_device = mount_source(boot_dir)
    if not boot_device:
        raise DeviceNotFoundError(f"unable to determine the device holding {boot_dir}")
    if shares_root_filesystem(boot_dir):
        if not confirm(f"{boot_dir} is part of the root filesystem on {boot_device}. Use it as the boot device?"):
            raise OperatorAbortError("aborted: boot device not confirmed")

    _enter("ResolveTopology", boot_device=boot_device)
    stack = resolve_stack(boot_device)
    container = find_encryption_container(stack)
    root = root_specifier(stack)

    _enter("IntrospectCrypto", device=container.device)
    params = describe(container)
    # Resolve the stack and crypto modules now so unsupported inputs fail
    # before grub-install touches anything.
    derived = add_crypto_modules(add_topology_modules(ModuleSet(), stack), params)

    if flags.plan:
        _emit_result("PLAN_OK", extra={
            "firmware": firmware.value,
            "platform": platform_for(firmware),
            "boot_device": boot_device,
            "stack": _stack_payload(stack),
            "container": container.device,
            "uuid": params.uuid,
            "cipher": params.cipher,
            "hash": params.hash,
            "kdf": params.kdf,
            "root": root,
            "derived_modules": derived.as_list(),
            "esp": esp_dir,
            "disk": disk,
        })

    if disk:
        _check_legacy_disk(disk, flags)

    for line in _summary(firmware, boot_device, container, params, disk, esp_dir):
        print(f"[INFO] {line}")
    if not confirm("Install GRUB with the configuration above?"):
        raise OperatorAbortError("aborted by operator")

    _enter("StageFiles")
    staged = stage_boot_files(
        cleanup,
        firmware,
        boot_dir=boot_dir,
        esp_dir=esp_dir,
        bootloader_id=args.bootloader_id,
        disk=disk,
    )

    _enter("SelectModules", staged=list(staged.implicit_modules))
    modules = select_modules(staged.implicit_modules, stack, params)
    plan = build_plan(
        stack,
        modules,
        output_path=staged.image_output_path,
        platform=platform_for(firmware),
        boot_dir=boot_dir,
        boot_mount=mount_target(boot_dir) or "/",
    )

    _enter("AssembleImage", output=plan.output_path)
    used = assemble_image(cleanup, plan, params)
    print(f"[INFO] modules: {' '.join(used)}")

    if firmware is FirmwareKind.BIOS:
        _enter("InstallSector", disk=disk)
        install_boot_sector(cleanup, disk, bios_boot_image(boot_dir), plan.output_path)

    _enter("Done")
    _emit_result("DONE_OK", extra={
        "firmware": firmware.value,
        "boot_device": boot_device,
        "uuid": params.uuid,
        "plan": plan.as_dict(),
        "disk": disk,
    })


def _main_impl(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    flags = Flags(plan=args.plan, assume_yes=args.assume_yes)
    cleanup = Cleanup()
    cleanup.install()
    try:
        _run(args, flags, cleanup)
    finally:
        cleanup.release()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except GrubLuksError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        _emit_result(exc.result, extra={
            "why": str(exc),
            "log_path": getattr(exc, "log_path", None),
            "state": exc.state or None,
        })
    except Exception as exc:  # noqa: BLE001
        print(f"[FAIL] unexpected error: {exc}", file=sys.stderr)
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 1


if __name__ == "__main__":
    sys.exit(main())
