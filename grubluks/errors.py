"""Error taxonomy for a grubluks run.

Every failure is fatal for the run.  Each class carries the ``result`` code
reported in the final JSON line so operators (and scripts wrapping the tool)
can tell failures apart without parsing the message.
"""

from __future__ import annotations


class GrubLuksError(RuntimeError):
    result = "FAIL_GENERIC"

    def __init__(self, message: str, *, state: dict | None = None) -> None:
        super().__init__(message)
        self.state = state or {}


# --- (a) preconditions -----------------------------------------------------

class PreconditionError(GrubLuksError):
    result = "FAIL_PRECONDITION"


class NotRootError(PreconditionError):
    result = "FAIL_NOT_ROOT"


class UnsupportedArchitectureError(PreconditionError):
    result = "FAIL_ARCH"


class FirmwareDetectionError(PreconditionError):
    result = "FAIL_FIRMWARE"


class InvalidDeviceError(PreconditionError):
    result = "FAIL_INVALID_DEVICE"


class MissingDiskArgumentError(PreconditionError):
    result = "FAIL_USAGE"


class UnmountedFilesystemError(PreconditionError):
    result = "FAIL_UNMOUNTED"


class OperatorAbortError(PreconditionError):
    result = "FAIL_OPERATOR_ABORT"


# --- (b) topology / metadata resolution ------------------------------------

class ResolutionError(GrubLuksError):
    result = "FAIL_RESOLUTION"


class DeviceNotFoundError(ResolutionError):
    result = "FAIL_DEVICE_NOT_FOUND"


class ToolInvocationError(ResolutionError):
    result = "FAIL_TOOL_INVOCATION"


class NoEncryptionContainerError(ResolutionError):
    result = "FAIL_NO_LUKS"


class UnsupportedDeviceKindError(ResolutionError):
    result = "FAIL_DEVICE_KIND"


class UnsupportedPartitionSchemeError(ResolutionError):
    result = "FAIL_PARTITION_SCHEME"


class UnsupportedRaidMetadataError(ResolutionError):
    result = "FAIL_RAID_METADATA"


class UnsupportedRootLayoutError(ResolutionError):
    result = "FAIL_ROOT_LAYOUT"


class MetadataParseError(ResolutionError):
    result = "FAIL_LUKS_METADATA"


# --- (c) module policy -----------------------------------------------------

class PolicyError(GrubLuksError):
    result = "FAIL_POLICY"


class UnsupportedCipherError(PolicyError):
    result = "FAIL_CIPHER"


class UnsupportedHashError(PolicyError):
    result = "FAIL_HASH"


class UnsupportedKdfError(PolicyError):
    result = "FAIL_KDF"


# --- (d) external tools ----------------------------------------------------

class ExternalToolError(GrubLuksError):
    result = "FAIL_EXTERNAL_TOOL"

    def __init__(self, message: str, *, log_path: str | None = None, state: dict | None = None) -> None:
        super().__init__(message, state=state)
        self.log_path = log_path


class InstallerExecutionError(ExternalToolError):
    result = "FAIL_GRUB_INSTALL"


class ImageBuildError(ExternalToolError):
    result = "FAIL_GRUB_MKIMAGE"


class SectorInstallError(ExternalToolError):
    result = "FAIL_GRUB_BIOS_SETUP"
