import json

import pytest

from conftest import DummyResult, FakeRunner
from grubluks import devices
from grubluks.errors import (
    DeviceNotFoundError,
    NoEncryptionContainerError,
    ToolInvocationError,
    UnsupportedDeviceKindError,
    UnsupportedPartitionSchemeError,
    UnsupportedRaidMetadataError,
)
from grubluks.model import DeviceKind, PartitionScheme, RaidMetadata

LSBLK = ("lsblk", "--json", "--inverse", "-o", devices.LSBLK_COLUMNS)


def _lsblk(device, tree):
    return {LSBLK + (device,): DummyResult(json.dumps({"blockdevices": tree}))}


@pytest.fixture(autouse=True)
def no_udev(monkeypatch):
    monkeypatch.setattr(devices, "udev_settle", lambda: None)


def test_resolve_stack_walks_nearest_first(monkeypatch):
    tree = [
        {
            "name": "luks-0d5c",
            "path": "/dev/mapper/luks-0d5c",
            "type": "crypt",
            "pttype": None,
            "children": [
                {
                    "name": "nvme0n1p2",
                    "path": "/dev/nvme0n1p2",
                    "type": "part",
                    "pttype": "gpt",
                    "children": [
                        {"name": "nvme0n1", "path": "/dev/nvme0n1", "type": "disk", "pttype": "gpt"},
                    ],
                }
            ],
        }
    ]
    runner = FakeRunner(_lsblk("/dev/mapper/luks-0d5c", tree))
    monkeypatch.setattr(devices, "run", runner)

    stack = devices.resolve_stack("/dev/mapper/luks-0d5c")

    assert [n.kind for n in stack] == [DeviceKind.CRYPT, DeviceKind.PARTITION, DeviceKind.DISK]
    assert stack[0].backed_by == ("/dev/nvme0n1p2",)
    assert stack[1].scheme is PartitionScheme.GPT
    assert stack[2].backed_by == ()
    assert len(runner.calls) == 1


def test_resolve_stack_queries_raid_and_missing_pttype(monkeypatch):
    tree = [
        {
            "name": "vg-root",
            "path": "/dev/mapper/vg-root",
            "type": "lvm",
            "children": [
                {
                    "name": "luks-md",
                    "path": "/dev/mapper/luks-md",
                    "type": "crypt",
                    "children": [
                        {
                            "name": "md0",
                            "path": "/dev/md0",
                            "type": "raid5",
                            "children": [
                                {"name": "sda1", "path": "/dev/sda1", "type": "part", "pttype": "",
                                 "children": [{"name": "sda", "path": "/dev/sda", "type": "disk"}]},
                                {"name": "sdb1", "path": "/dev/sdb1", "type": "part", "pttype": "dos",
                                 "children": [{"name": "sdb", "path": "/dev/sdb", "type": "disk"}]},
                            ],
                        }
                    ],
                }
            ],
        }
    ]
    responses = _lsblk("/dev/mapper/vg-root", tree)
    responses[("mdadm", "--detail", "--export", "/dev/md0")] = DummyResult(
        "MD_LEVEL=raid5\nMD_DEVICES=3\nMD_METADATA=1.2\nMD_UUID=abc\n"
    )
    responses[("lsblk", "-ndo", "PTTYPE", "/dev/sda1")] = DummyResult("dos\n")
    monkeypatch.setattr(devices, "run", FakeRunner(responses))

    stack = devices.resolve_stack("/dev/mapper/vg-root")

    assert [n.path for n in stack] == [
        "/dev/mapper/vg-root",
        "/dev/mapper/luks-md",
        "/dev/md0",
        "/dev/sda1",
        "/dev/sda",
        "/dev/sdb1",
        "/dev/sdb",
    ]
    md = stack[2]
    assert md.kind is DeviceKind.RAID
    assert md.raid_metadata is RaidMetadata.V1X
    assert md.raid_level == 5
    assert stack[3].scheme is PartitionScheme.DOS


def test_resolve_stack_rejects_unknown_type(monkeypatch):
    tree = [{"name": "loop0", "path": "/dev/loop0", "type": "loop"}]
    monkeypatch.setattr(devices, "run", FakeRunner(_lsblk("/dev/loop0", tree)))
    with pytest.raises(UnsupportedDeviceKindError):
        devices.resolve_stack("/dev/loop0")


def test_resolve_stack_reports_missing_device(monkeypatch):
    monkeypatch.setattr(devices, "run", FakeRunner(default=DummyResult("", rc=32, err="not a block device")))
    with pytest.raises(DeviceNotFoundError):
        devices.resolve_stack("/dev/nope")


def test_resolve_stack_rejects_garbage_output(monkeypatch):
    monkeypatch.setattr(devices, "run", FakeRunner(default=DummyResult("{not json")))
    with pytest.raises(ToolInvocationError):
        devices.resolve_stack("/dev/sda")


def test_resolve_stack_empty_output(monkeypatch):
    monkeypatch.setattr(devices, "run", FakeRunner(default=DummyResult('{"blockdevices": []}')))
    with pytest.raises(DeviceNotFoundError):
        devices.resolve_stack("/dev/sda")


@pytest.mark.parametrize("pttype", ["atari", "sun", "", None])
def test_classify_scheme_rejects_unknown(pttype):
    with pytest.raises(UnsupportedPartitionSchemeError):
        devices.classify_scheme(pttype, "/dev/sda1")


@pytest.mark.parametrize(
    "version, expected",
    [("1.2", RaidMetadata.V1X), ("1.0", RaidMetadata.V1X), ("0.90", RaidMetadata.V09)],
)
def test_classify_raid_metadata(version, expected):
    assert devices.classify_raid_metadata(version) is expected


def test_classify_raid_metadata_rejects_external_formats():
    with pytest.raises(UnsupportedRaidMetadataError):
        devices.classify_raid_metadata("imsm")


def test_classify_kind_accepts_md_levels():
    assert devices.classify_kind("raid1") is DeviceKind.RAID
    assert devices.classify_kind("md") is DeviceKind.RAID
    assert devices.classify_kind("part") is DeviceKind.PARTITION


def test_find_encryption_container_checks_backing_device(monkeypatch):
    stack = [
        devices.DeviceNode(path="/dev/mapper/vg-root", name="vg-root", kind=DeviceKind.LVM, backed_by=("/dev/mapper/luks",)),
        devices.DeviceNode(path="/dev/mapper/luks", name="luks", kind=DeviceKind.CRYPT, backed_by=("/dev/sda2",)),
        devices.DeviceNode(path="/dev/sda2", name="sda2", kind=DeviceKind.PARTITION, scheme=PartitionScheme.GPT),
    ]
    runner = FakeRunner()
    monkeypatch.setattr(devices, "run", runner)

    container = devices.find_encryption_container(stack)

    assert container.device == "/dev/sda2"
    assert container.node.path == "/dev/mapper/luks"
    assert runner.calls == [["cryptsetup", "isLuks", "--type", "luks2", "/dev/sda2"]]


def test_find_encryption_container_rejects_non_luks(monkeypatch):
    stack = [devices.DeviceNode(path="/dev/mapper/plain", name="plain", kind=DeviceKind.CRYPT, backed_by=("/dev/sda2",))]
    monkeypatch.setattr(devices, "run", FakeRunner(default=DummyResult(rc=1)))
    with pytest.raises(NoEncryptionContainerError):
        devices.find_encryption_container(stack)


def test_find_encryption_container_requires_crypt_layer():
    stack = [devices.DeviceNode(path="/dev/sda1", name="sda1", kind=DeviceKind.PARTITION, scheme=PartitionScheme.GPT)]
    with pytest.raises(NoEncryptionContainerError):
        devices.find_encryption_container(stack)


def test_find_encryption_container_rejects_nested_containers():
    stack = [
        devices.DeviceNode(path="/dev/mapper/inner", name="inner", kind=DeviceKind.CRYPT, backed_by=("/dev/mapper/outer",)),
        devices.DeviceNode(path="/dev/mapper/outer", name="outer", kind=DeviceKind.CRYPT, backed_by=("/dev/sda2",)),
    ]
    with pytest.raises(NoEncryptionContainerError) as exc:
        devices.find_encryption_container(stack)
    assert exc.value.state["mappings"] == ["/dev/mapper/inner", "/dev/mapper/outer"]
