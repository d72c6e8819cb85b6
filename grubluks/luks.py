"""LUKS2 header introspection."""

from __future__ import annotations

import re

from .errors import MetadataParseError, ToolInvocationError, UnsupportedKdfError
from .executil import run, trace
from .model import CryptoParams, EncryptionContainer

# GRUB's LUKS2 reader only derives keys with PBKDF2; argon2 keyslots cannot
# be opened before the kernel is loaded.
SUPPORTED_KDFS = ("pbkdf2",)

_LABELS = {
    "uuid": re.compile(r"^\s*UUID:\s*(\S+)", re.MULTILINE),
    "cipher": re.compile(r"^\s*cipher:\s*(\S+)", re.MULTILINE),
    "kdf": re.compile(r"^\s*PBKDF:\s*(\S+)", re.MULTILINE),
    "hash": re.compile(r"^\s*Hash:\s*(\S+)", re.MULTILINE),
}


def parse_luks_dump(text: str) -> dict[str, str]:
    """Pick the first ``UUID``, segment ``cipher``, ``PBKDF`` and ``Hash``."""

    fields: dict[str, str] = {}
    missing: list[str] = []
    for key, pattern in _LABELS.items():
        match = pattern.search(text or "")
        if match:
            fields[key] = match.group(1)
        else:
            missing.append(key)
    if missing:
        raise MetadataParseError(
            f"luksDump output is missing: {', '.join(missing)}",
            state={"missing": missing},
        )
    return fields


def require_supported_kdf(kdf: str) -> str:
    if kdf not in SUPPORTED_KDFS:
        raise UnsupportedKdfError(
            f"keyslot uses {kdf!r}; GRUB can only unlock {', '.join(SUPPORTED_KDFS)} keyslots. "
            f"Convert it first, e.g. cryptsetup luksConvertKey --pbkdf pbkdf2 <device>",
            state={"kdf": kdf},
        )
    return kdf


def describe(container: EncryptionContainer) -> CryptoParams:
    try:
        res = run(["cryptsetup", "luksDump", container.device], check=False)
    except OSError as exc:
        raise ToolInvocationError(f"unable to run cryptsetup: {exc}") from exc
    if res.rc != 0:
        raise MetadataParseError(
            f"cryptsetup luksDump failed for {container.device}: rc={res.rc}",
            state={"device": container.device, "err": (res.err or "").strip()},
        )
    fields = parse_luks_dump(res.out)
    params = CryptoParams(
        uuid=fields["uuid"],
        cipher=fields["cipher"],
        hash=fields["hash"],
        kdf=fields["kdf"],
    )
    trace(
        "luks.describe",
        device=container.device,
        uuid=params.uuid,
        cipher=params.cipher,
        hash=params.hash,
        kdf=params.kdf,
    )
    require_supported_kdf(params.kdf)
    return params
