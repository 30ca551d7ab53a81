from __future__ import annotations

import logging
import platform
from typing import Callable

from smart_probe.device_types import DetectedType
from smart_probe.properties import PropertyRepository

logger = logging.getLogger("TypeResolver")

# Set by the text parser only.
TEXT_DRIVE_TYPE_KEY = "_text_only/custom/parser_detected_drive_type"

OpticalPredicate = Callable[[str], bool]


def is_linux_optical_device(device_base: str) -> bool:
    """Linux exposes optical drives as /dev/srN."""
    return platform.system() == "Linux" and device_base.startswith("sr")


def _ata_type_by_rotation(repository: PropertyRepository) -> DetectedType:
    rotation_rate = repository.lookup_value("rotation_rate")
    try:
        rpm = int(rotation_rate) if rotation_rate is not None else 0
    except (TypeError, ValueError):
        rpm = 0
    return DetectedType.ATA_HDD if rpm else DetectedType.ATA_SSD


def resolve_detected_type(
    current: DetectedType,
    repository: PropertyRepository,
    device_base: str = "",
    is_optical_device: OpticalPredicate = is_linux_optical_device,
    device_name: str = "",
) -> DetectedType:
    """Narrow the detected type using freshly parsed facts.

    Never returns a transient type: anything still unknown falls back to
    basic SCSI so the full fetch always has a parser to use.
    """
    detected = current
    device_name = device_name or device_base or "device"

    text_type = repository.lookup_value(TEXT_DRIVE_TYPE_KEY)
    device_type = repository.lookup_value("device/type")

    if text_type is not None:
        detected = DetectedType.from_storable_name(str(text_type), DetectedType.BASIC_SCSI)
        if detected is DetectedType.ATA_ANY:
            detected = _ata_type_by_rotation(repository)

    elif device_type is not None:
        # USB flash drives in non-scsi mode do not have "device/type".
        smartctl_type = str(device_type)
        protocol = str(repository.lookup_value("device/protocol", "")).lower()

        if smartctl_type == "scsi":
            # USB flash in scsi mode, optical, plain SCSI.
            if is_optical_device(device_base):
                detected = DetectedType.CD_DVD
            else:
                detected = DetectedType.BASIC_SCSI
        elif smartctl_type == "sat" or protocol == "ata":
            # (S)ATA, including behind supported RAID controllers.
            detected = _ata_type_by_rotation(repository)
        elif smartctl_type == "nvme" or protocol == "nvme":
            # NVMe behind a USB bridge reports e.g. "sntrealtek" with protocol "nvme".
            detected = DetectedType.NVME
        else:
            # TODO: classify RAID passthrough types (e.g. "megaraid,N") as UNSUPPORTED_RAID
            logger.warning(
                "Unsupported type %s (protocol: %s) reported by smartctl for %s.",
                smartctl_type, protocol, device_name,
            )

    if detected.is_transient:
        detected = DetectedType.BASIC_SCSI

    if detected is not current:
        logger.info(
            "Device %s detected after parsing to be of type %s.", device_name, detected.value
        )
    return detected
