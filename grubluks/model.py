from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Optional


class DeviceKind(Enum):
    DISK = "disk"
    PARTITION = "part"
    RAID = "raid"
    LVM = "lvm"
    CRYPT = "crypt"


class PartitionScheme(Enum):
    DOS = "dos"
    GPT = "gpt"


class RaidMetadata(Enum):
    V09 = "0.90"
    V1X = "1.x"


class FirmwareKind(Enum):
    EFI = "efi"
    BIOS = "bios"


@dataclass
class Flags:
    plan: bool = False
    assume_yes: bool = False


@dataclass(frozen=True)
class DeviceNode:
    """One layer of the block-device stack below the boot filesystem.

    ``backed_by`` lists the paths of the devices this node is built on, in
    the order ``lsblk`` reports them.  ``scheme`` is set for partitions,
    ``raid_metadata``/``raid_level`` for md arrays.
    """

    path: str
    name: str
    kind: DeviceKind
    backed_by: tuple[str, ...] = ()
    scheme: Optional[PartitionScheme] = None
    raid_metadata: Optional[RaidMetadata] = None
    raid_level: Optional[int] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class EncryptionContainer:
    node: DeviceNode
    device: str


@dataclass(frozen=True)
class CryptoParams:
    uuid: str
    cipher: str
    hash: str
    kdf: str

    @property
    def uuid_literal(self) -> str:
        return self.uuid.replace("-", "")


class ModuleSet:
    """Ordered set of GRUB module names.

    Adding a name that is already present is a no-op and keeps its original
    position.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._names: list[str] = []
        self._seen: set[str] = set()
        self.extend(names)

    def add(self, name: str) -> "ModuleSet":
        if name not in self._seen:
            self._seen.add(name)
            self._names.append(name)
        return self

    def extend(self, names: Iterable[str]) -> "ModuleSet":
        for name in names:
            self.add(name)
        return self

    def as_list(self) -> list[str]:
        return list(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._seen

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._names))

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ModuleSet):
            return self._names == other._names
        if isinstance(other, list):
            return self._names == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"ModuleSet({self._names!r})"


@dataclass(frozen=True)
class InstallLog:
    modules: tuple[str, ...]
    core_image: Optional[str] = None


@dataclass(frozen=True)
class StagedFiles:
    log_path: str
    implicit_modules: tuple[str, ...]
    image_output_path: str


@dataclass(frozen=True)
class BuildPlan:
    root: str
    prefix: str
    output_path: str
    platform: str
    modules: tuple[str, ...]

    def as_dict(self) -> dict:
        return {
            "root": self.root,
            "prefix": self.prefix,
            "output_path": self.output_path,
            "platform": self.platform,
            "modules": list(self.modules),
        }
