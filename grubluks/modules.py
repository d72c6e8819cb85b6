"""GRUB module selection.

Maps the resolved device stack and LUKS parameters onto the modules that
must be linked into the core image.  Every unrecognised input is an error:
a missing module only shows up as a machine that cannot unlock its disk.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from .errors import UnsupportedCipherError, UnsupportedDeviceKindError, UnsupportedHashError, UnsupportedKdfError
from .errors import UnsupportedPartitionSchemeError, UnsupportedRaidMetadataError
from .model import CryptoParams, DeviceKind, DeviceNode, ModuleSet, PartitionScheme, RaidMetadata

CRYPTO_MODULES = ("cryptodisk", "luks2")

PARTITION_MODULES = {
    PartitionScheme.DOS: "part_msdos",
    PartitionScheme.GPT: "part_gpt",
}

RAID_METADATA_MODULES = {
    RaidMetadata.V09: "mdraid09",
    RaidMetadata.V1X: "mdraid1x",
}

RAID_RECOVERY_MODULES = {
    5: "raid5rec",
    6: "raid6rec",
}

LVM_MODULE = "lvm"

# Prefix match against the cipher family, first hit wins.
CIPHER_MODULES = (
    ("aes", "gcry_rijndael"),
    ("blowfish", "gcry_blowfish"),
    ("camellia", "gcry_camellia"),
    ("cast5", "gcry_cast5"),
    ("des3_ede", "gcry_des"),
    ("des", "gcry_des"),
    ("serpent", "gcry_serpent"),
    ("twofish", "gcry_twofish"),
)

HASH_MODULES = {
    "crc32": "gcry_crc",
    "md4": "gcry_md4",
    "md5": "gcry_md5",
    "ripemd160": "gcry_rmd160",
    "sha1": "gcry_sha1",
    "sha256": "gcry_sha256",
    "sha512": "gcry_sha512",
    "whirlpool": "gcry_whirlpool",
}

KDF_MODULES = {
    "pbkdf2": "pbkdf2",
}


def node_modules(node: DeviceNode) -> list[str]:
    """Modules needed to read through one (non-crypt) stack layer."""

    kind = node.kind
    if kind is DeviceKind.DISK:
        return []
    if kind is DeviceKind.PARTITION:
        module = PARTITION_MODULES.get(node.scheme)
        if module is None:
            raise UnsupportedPartitionSchemeError(f"no partition module for {node.path} ({node.scheme})")
        return [module]
    if kind is DeviceKind.RAID:
        module = RAID_METADATA_MODULES.get(node.raid_metadata)
        if module is None:
            raise UnsupportedRaidMetadataError(f"no md metadata module for {node.path} ({node.raid_metadata})")
        mods = [module]
        recovery = RAID_RECOVERY_MODULES.get(node.raid_level)
        if recovery:
            mods.append(recovery)
        return mods
    if kind is DeviceKind.LVM:
        return [LVM_MODULE]
    if kind is DeviceKind.CRYPT:
        return list(CRYPTO_MODULES)
    raise UnsupportedDeviceKindError(f"no module mapping for {node.path} ({kind})")


def add_topology_modules(modules: ModuleSet, stack: Iterable[DeviceNode]) -> ModuleSet:
    for node in stack:
        if node.kind is DeviceKind.CRYPT:
            continue
        modules.extend(node_modules(node))
    return modules


def cipher_module(cipher: str) -> str:
    value = (cipher or "").lower()
    for prefix, module in CIPHER_MODULES:
        if value.startswith(prefix):
            return module
    raise UnsupportedCipherError(f"no GRUB module known for cipher {cipher!r}", state={"cipher": cipher})


def hash_module(name: str) -> str:
    module = HASH_MODULES.get((name or "").lower())
    if module is None:
        raise UnsupportedHashError(f"no GRUB module known for hash {name!r}", state={"hash": name})
    return module


def kdf_module(kdf: str) -> str:
    module = KDF_MODULES.get((kdf or "").lower())
    if module is None:
        raise UnsupportedKdfError(f"no GRUB module known for key derivation {kdf!r}", state={"kdf": kdf})
    return module


def add_crypto_modules(modules: ModuleSet, params: CryptoParams) -> ModuleSet:
    modules.extend(CRYPTO_MODULES)
    modules.add(cipher_module(params.cipher))
    modules.add(hash_module(params.hash))
    modules.add(kdf_module(params.kdf))
    return modules


def select_modules(staged: Sequence[str], stack: Sequence[DeviceNode], params: CryptoParams) -> ModuleSet:
    modules = ModuleSet(staged)
    add_topology_modules(modules, stack)
    add_crypto_modules(modules, params)
    return modules
