"""Parsers for smartctl ``--json`` output."""
from __future__ import annotations

import json
import logging
from typing import Any

from smart_probe.device_types import OutputFormat, SmartctlParserType
from smart_probe.errors import ParserError
from smart_probe.parsers.base import SmartctlParser, normalize_output
from smart_probe.properties import (
    PropertyRepository,
    PropertySection,
    StorageProperty,
    format_capacity,
    format_size,
)
from smart_probe.schema import validate_output

S = PropertySection

# Section of every fact, by the top-level JSON key it comes from.
SECTION_BY_KEY: dict[str, PropertySection] = {
    "device": S.INFO,
    "model_name": S.INFO,
    "model_family": S.INFO,
    "serial_number": S.INFO,
    "firmware_version": S.INFO,
    "wwn": S.INFO,
    "user_capacity": S.INFO,
    "logical_block_size": S.INFO,
    "physical_block_size": S.INFO,
    "rotation_rate": S.INFO,
    "form_factor": S.INFO,
    "trim": S.INFO,
    "in_smartctl_database": S.INFO,
    "ata_version": S.INFO,
    "sata_version": S.INFO,
    "interface_speed": S.INFO,
    "local_time": S.INFO,
    "scsi_vendor": S.INFO,
    "scsi_product": S.INFO,
    "scsi_model_name": S.INFO,
    "scsi_revision": S.INFO,
    "scsi_version": S.INFO,
    "nvme_pci_vendor": S.INFO,
    "nvme_ieee_oui_identifier": S.INFO,
    "nvme_total_capacity": S.INFO,
    "nvme_unallocated_capacity": S.INFO,
    "nvme_controller_id": S.INFO,
    "nvme_version": S.INFO,
    "nvme_number_of_namespaces": S.INFO,
    "nvme_namespaces": S.INFO,
    "smart_status": S.OVERALL_HEALTH,
    "smart_support": S.CAPABILITIES,
    "ata_smart_data": S.CAPABILITIES,
    "ata_sct_capabilities": S.CAPABILITIES,
    "nvme_optional_admin_commands": S.CAPABILITIES,
    "nvme_optional_nvm_commands": S.CAPABILITIES,
    "nvme_log_page_attributes": S.CAPABILITIES,
    "nvme_power_states": S.CAPABILITIES,
    "ata_smart_attributes": S.ATTRIBUTES,
    "ata_device_statistics": S.STATISTICS,
    "power_on_time": S.STATISTICS,
    "power_cycle_count": S.STATISTICS,
    "scsi_grown_defect_list": S.STATISTICS,
    "scsi_start_stop_cycle_counter": S.STATISTICS,
    "ata_smart_error_log": S.ERROR_LOG,
    "nvme_error_information_log": S.ERROR_LOG,
    "scsi_error_counter_log": S.ERROR_LOG,
    "ata_smart_self_test_log": S.SELFTEST_LOG,
    "nvme_self_test_log": S.SELFTEST_LOG,
    "scsi_self_test_log": S.SELFTEST_LOG,
    "ata_smart_selective_self_test_log": S.SELECTIVE_SELFTEST_LOG,
    "temperature": S.TEMPERATURE_LOG,
    "ata_sct_status": S.TEMPERATURE_LOG,
    "ata_sct_temperature_history": S.TEMPERATURE_LOG,
    "ata_sct_erc": S.ERC_LOG,
    "sata_phy_event_counters": S.PHY_LOG,
    "ata_log_directory": S.DIRECTORY_LOG,
    "nvme_smart_health_information_log": S.NVME_HEALTH,
}

# Sections a basic (identity only) parse keeps.
BASIC_SECTIONS = frozenset({S.INFO, S.OVERALL_HEALTH, S.CAPABILITIES, S.INTERNAL})

# A family parse only succeeds if one of these top-level keys is present.
# Identity, health and capability keys (ata_smart_data, smart_status) are
# part of every basic capture and do not count.
FAMILY_MARKERS: dict[SmartctlParserType, tuple[str, ...]] = {
    SmartctlParserType.ATA: ("ata_smart_attributes",),
    SmartctlParserType.NVME: ("nvme_smart_health_information_log",),
    SmartctlParserType.SCSI: (
        "scsi_error_counter_log",
        "scsi_grown_defect_list",
        "scsi_start_stop_cycle_counter",
        "scsi_self_test_0",
    ),
}

# The embedded text output is large and only useful for pattern checks.
_SKIPPED_KEYS = frozenset({"smartctl/output"})


def section_for_key(key: str) -> PropertySection:
    if key in SECTION_BY_KEY:
        return SECTION_BY_KEY[key]
    # SCSI self-test log entries are "scsi_self_test_0", "scsi_self_test_1", ...
    if key.startswith("scsi_self_test_"):
        return S.SELFTEST_LOG
    if key.startswith("scsi_sas_port_"):
        return S.PHY_LOG
    return S.INTERNAL


class SmartctlJsonParser(SmartctlParser):
    output_format = OutputFormat.JSON

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)

    def parse(self, output: str) -> PropertyRepository:
        data = self._decode(output)
        self._check_family(data)
        properties: list[StorageProperty] = []
        for key, value in data.items():
            section = section_for_key(key)
            if not self._keeps_section(section):
                continue
            if key == "ata_smart_attributes":
                properties.extend(self._attribute_properties(value))
            else:
                properties.extend(self._flatten(key, value, section))
        properties.extend(self._synthesized_properties(data))
        self.logger.debug("Parsed %d properties from JSON output.", len(properties))
        return PropertyRepository(properties)

    def _decode(self, output: str) -> dict[str, Any]:
        text = normalize_output(output)
        if not text:
            raise ParserError("Empty smartctl output.")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParserError(f"Invalid JSON data: {exc}") from exc
        errors = validate_output(data)
        if errors:
            raise ParserError(f"Unexpected smartctl JSON structure: {'; '.join(errors[:3])}")
        return data

    def _check_family(self, data: dict[str, Any]) -> None:
        markers = FAMILY_MARKERS.get(self.parser_type)
        if markers and not any(marker in data for marker in markers):
            raise ParserError(
                f"No {self.parser_type.value.upper()} SMART data found in smartctl output."
            )

    def _keeps_section(self, section: PropertySection) -> bool:
        return True

    def _flatten(
        self, path: str, value: Any, section: PropertySection
    ) -> list[StorageProperty]:
        if path in _SKIPPED_KEYS:
            return []
        if isinstance(value, dict):
            properties: list[StorageProperty] = []
            for sub_key, sub_value in value.items():
                properties.extend(self._flatten(f"{path}/{sub_key}", sub_value, section))
            return properties
        if path == "user_capacity/bytes" and isinstance(value, int):
            return [
                StorageProperty(path, value, section, readable_value=format_capacity(value)),
                StorageProperty(
                    f"{path}/_short", value, section, readable_value=format_size(value)
                ),
            ]
        return [StorageProperty(path, value, section)]

    def _attribute_properties(self, value: Any) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        if not isinstance(value, dict):
            return properties
        for key, sub_value in value.items():
            if key != "table":
                properties.extend(
                    self._flatten(f"ata_smart_attributes/{key}", sub_value, S.ATTRIBUTES)
                )
                continue
            for attribute in sub_value:
                attr_id = attribute.get("id")
                raw = attribute.get("raw", {})
                properties.append(
                    StorageProperty(
                        f"ata_smart_attributes/table/{attr_id}",
                        attribute,
                        S.ATTRIBUTES,
                        readable_value=str(raw.get("string", raw.get("value", ""))),
                        displayable_name=str(attribute.get("name", "")),
                    )
                )
        return properties

    def _synthesized_properties(self, data: dict[str, Any]) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        version = data.get("smartctl", {}).get("version")
        if version:
            properties.append(
                StorageProperty(
                    "smartctl/version/_merged",
                    ".".join(str(part) for part in version),
                    S.INTERNAL,
                )
            )
        protocol = str(data.get("device", {}).get("protocol", "")).lower()
        # NVMe drives always have SMART enabled, smartctl does not report it.
        if protocol == "nvme" and "smart_support" not in data:
            properties.append(StorageProperty("smart_support/available", True, S.CAPABILITIES))
            properties.append(StorageProperty("smart_support/enabled", True, S.CAPABILITIES))
        return properties


class SmartctlJsonBasicParser(SmartctlJsonParser):
    parser_type = SmartctlParserType.BASIC

    def _keeps_section(self, section: PropertySection) -> bool:
        return section in BASIC_SECTIONS


class SmartctlJsonAtaParser(SmartctlJsonParser):
    parser_type = SmartctlParserType.ATA


class SmartctlJsonNvmeParser(SmartctlJsonParser):
    parser_type = SmartctlParserType.NVME


class SmartctlJsonScsiParser(SmartctlJsonParser):
    parser_type = SmartctlParserType.SCSI
