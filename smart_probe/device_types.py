from __future__ import annotations

from enum import Enum


class DetectedType(Enum):
    """Device family as far as smartctl invocation and parsing are concerned.

    The value is the storable name used in parser facts and snapshots.
    """

    UNKNOWN = "unknown"
    NEEDS_EXPLICIT_TYPE = "needs_explicit_type"
    ATA_ANY = "any_ata"
    ATA_HDD = "ata_hdd"
    ATA_SSD = "ata_ssd"
    NVME = "nvme"
    BASIC_SCSI = "basic_scsi"
    CD_DVD = "cd_dvd"
    UNSUPPORTED_RAID = "unsupported_raid"

    @property
    def is_transient(self) -> bool:
        return self in (DetectedType.UNKNOWN, DetectedType.NEEDS_EXPLICIT_TYPE)

    @property
    def is_ata(self) -> bool:
        return self in (DetectedType.ATA_ANY, DetectedType.ATA_HDD, DetectedType.ATA_SSD)

    @property
    def displayable_name(self) -> str:
        return _DISPLAYABLE_NAMES[self]

    @classmethod
    def from_storable_name(cls, name: str, default: DetectedType) -> DetectedType:
        try:
            return cls(name)
        except ValueError:
            return default


_DISPLAYABLE_NAMES = {
    DetectedType.UNKNOWN: "Unknown",
    DetectedType.NEEDS_EXPLICIT_TYPE: "Needs Explicit Type",
    DetectedType.ATA_ANY: "(S)ATA",
    DetectedType.ATA_HDD: "(S)ATA HDD",
    DetectedType.ATA_SSD: "(S)ATA SSD",
    DetectedType.NVME: "NVMe",
    DetectedType.BASIC_SCSI: "SCSI",
    DetectedType.CD_DVD: "CD/DVD",
    DetectedType.UNSUPPORTED_RAID: "RAID",
}


class ParseStatus(Enum):
    NONE = 0
    BASIC = 1
    FULL = 2


class SmartStatus(Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSUPPORTED = "unsupported"


class SelfTestSupportStatus(Enum):
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"


class SmartctlParserType(Enum):
    BASIC = "basic"
    ATA = "ata"
    NVME = "nvme"
    SCSI = "scsi"


class OutputFormat(Enum):
    TEXT = "text"
    JSON = "json"


class FetchPhase(Enum):
    BASIC = "basic"
    FULL = "full"


def parser_type_for(detected_type: DetectedType) -> SmartctlParserType:
    """Family parser used for the full output of a device of this type."""
    if detected_type.is_ata:
        return SmartctlParserType.ATA
    if detected_type is DetectedType.NVME:
        return SmartctlParserType.NVME
    if detected_type is DetectedType.BASIC_SCSI:
        return SmartctlParserType.SCSI
    # Optical drives, unsupported RAID and transient types only get identity data.
    return SmartctlParserType.BASIC
