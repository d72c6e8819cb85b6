"""Block-device stack resolution below the boot filesystem."""
from __future__ import annotations

import json

from .errors import (
    DeviceNotFoundError,
    NoEncryptionContainerError,
    ToolInvocationError,
    UnsupportedDeviceKindError,
    UnsupportedPartitionSchemeError,
    UnsupportedRaidMetadataError,
)
from .executil import run, trace, udev_settle
from .model import DeviceKind, DeviceNode, EncryptionContainer, PartitionScheme, RaidMetadata

LSBLK_COLUMNS = "NAME,PATH,TYPE,PTTYPE"

# lsblk reports md arrays by level (raid1, raid5, ...) or plain "md".
_RAID_TYPES = {"md", "linear", "raid0", "raid1", "raid4", "raid5", "raid6", "raid10"}


def classify_kind(raw_type: str, path: str = "") -> DeviceKind:
    value = (raw_type or "").strip().lower()
    if value in _RAID_TYPES:
        return DeviceKind.RAID
    for kind in DeviceKind:
        if kind is not DeviceKind.RAID and kind.value == value:
            return kind
    raise UnsupportedDeviceKindError(
        f"unsupported block device type {raw_type!r} for {path or '<unknown>'}",
        state={"path": path, "type": raw_type},
    )


def classify_scheme(pttype: str, path: str = "") -> PartitionScheme:
    value = (pttype or "").strip().lower()
    if value == "dos":
        return PartitionScheme.DOS
    if value == "gpt":
        return PartitionScheme.GPT
    raise UnsupportedPartitionSchemeError(
        f"unsupported partition table type {pttype!r} on {path or '<unknown>'}",
        state={"path": path, "pttype": pttype},
    )


def classify_raid_metadata(version: str, path: str = "") -> RaidMetadata:
    value = (version or "").strip()
    if value.startswith("1."):
        return RaidMetadata.V1X
    if value.startswith("0.9"):
        return RaidMetadata.V09
    raise UnsupportedRaidMetadataError(
        f"unsupported md metadata version {version!r} on {path or '<unknown>'}",
        state={"path": path, "metadata": version},
    )


def _lsblk(cmd: list[str]):
    try:
        return run(cmd, check=False)
    except OSError as exc:
        raise ToolInvocationError(f"unable to run {cmd[0]}: {exc}") from exc


def partition_scheme(path: str, reported: str | None = None) -> PartitionScheme:
    """Partition table type of the disk ``path`` lives on."""

    pttype = (reported or "").strip()
    if not pttype:
        res = _lsblk(["lsblk", "-ndo", "PTTYPE", path])
        if res.rc != 0:
            raise ToolInvocationError(f"lsblk failed to report PTTYPE for {path}: rc={res.rc}")
        pttype = (res.out or "").strip().splitlines()[0] if (res.out or "").strip() else ""
    return classify_scheme(pttype, path)


def _parse_mdadm_export(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in (text or "").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields[key.strip()] = value.strip()
    return fields


def _raid_level(level: str) -> int | None:
    digits = level.lower().removeprefix("raid")
    try:
        return int(digits)
    except ValueError:
        return None


def raid_details(path: str) -> tuple[RaidMetadata, int | None]:
    try:
        res = run(["mdadm", "--detail", "--export", path], check=False)
    except OSError as exc:
        raise ToolInvocationError(f"unable to run mdadm: {exc}") from exc
    if res.rc != 0:
        raise ToolInvocationError(f"mdadm --detail failed for {path}: rc={res.rc}")
    fields = _parse_mdadm_export(res.out)
    metadata = classify_raid_metadata(fields.get("MD_METADATA", ""), path)
    level = _raid_level(fields.get("MD_LEVEL", ""))
    trace("devices.raid", path=path, metadata=fields.get("MD_METADATA"), md_level=fields.get("MD_LEVEL"))
    return metadata, level


def _node_path(entry: dict) -> str:
    path = entry.get("path") or entry.get("name") or ""
    if path and not path.startswith("/"):
        path = f"/dev/{path}"
    return path


def _flatten(entries: list[dict]) -> list[dict]:
    # Depth-first, nearest layer first; a device reachable through two
    # branches (md members on one disk) is only listed once.
    ordered: list[dict] = []
    seen: set[str] = set()
    pending = list(reversed(entries))
    while pending:
        entry = pending.pop()
        path = _node_path(entry)
        if path in seen:
            continue
        seen.add(path)
        ordered.append(entry)
        pending.extend(reversed(entry.get("children") or []))
    return ordered


def _build_node(entry: dict) -> DeviceNode:
    path = _node_path(entry)
    kind = classify_kind(entry.get("type", ""), path)
    backed_by = tuple(_node_path(child) for child in (entry.get("children") or []))
    scheme = None
    raid_metadata = None
    raid_level = None
    if kind is DeviceKind.PARTITION:
        scheme = partition_scheme(path, entry.get("pttype"))
    elif kind is DeviceKind.RAID:
        raid_metadata, raid_level = raid_details(path)
    return DeviceNode(
        path=path,
        name=entry.get("name") or path.rsplit("/", 1)[-1],
        kind=kind,
        backed_by=backed_by,
        scheme=scheme,
        raid_metadata=raid_metadata,
        raid_level=raid_level,
        raw={k: v for k, v in entry.items() if k != "children"},
    )


def resolve_stack(device: str) -> list[DeviceNode]:
    """Return ``device`` and every device it is built on, nearest first."""

    udev_settle()
    res = _lsblk(["lsblk", "--json", "--inverse", "-o", LSBLK_COLUMNS, device])
    if res.rc != 0:
        raise DeviceNotFoundError(
            f"lsblk could not resolve {device}: {(res.err or '').strip() or f'rc={res.rc}'}",
            state={"device": device},
        )
    try:
        payload = json.loads(res.out or "{}")
    except json.JSONDecodeError as exc:
        raise ToolInvocationError(f"failed to parse lsblk output for {device}: {exc}") from exc

    entries = _flatten(payload.get("blockdevices") or [])
    if not entries:
        raise DeviceNotFoundError(f"lsblk did not report device {device}", state={"device": device})

    stack = [_build_node(entry) for entry in entries]
    trace(
        "devices.stack",
        device=device,
        stack=[{"path": n.path, "kind": n.kind.value} for n in stack],
    )
    return stack


def find_encryption_container(stack: list[DeviceNode]) -> EncryptionContainer:
    crypts = [n for n in stack if n.kind is DeviceKind.CRYPT]
    if not crypts:
        raise NoEncryptionContainerError(
            "no encrypted layer found below the boot filesystem",
            state={"stack": [n.path for n in stack]},
        )
    if len(crypts) > 1:
        # The embedded config unlocks a single container.
        raise NoEncryptionContainerError(
            "more than one encrypted layer below the boot filesystem: %s" % ", ".join(n.path for n in crypts),
            state={"mappings": [n.path for n in crypts]},
        )
    node = crypts[0]
    if not node.backed_by:
        raise NoEncryptionContainerError(f"{node.path} has no backing device")
    backing = node.backed_by[0]
    try:
        res = run(["cryptsetup", "isLuks", "--type", "luks2", backing], check=False)
    except OSError as exc:
        raise ToolInvocationError(f"unable to run cryptsetup: {exc}") from exc
    if res.rc != 0:
        raise NoEncryptionContainerError(
            f"{node.path} is a dm-crypt mapping but {backing} is not a LUKS2 container",
            state={"mapping": node.path, "device": backing, "rc": res.rc},
        )
    trace("devices.container", mapping=node.path, device=backing)
    return EncryptionContainer(node=node, device=backing)
