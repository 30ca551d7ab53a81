"""Parsers for the legacy smartctl text output."""
from __future__ import annotations

import logging
import re
from typing import Any

from smart_probe.device_types import DetectedType, OutputFormat, SmartctlParserType
from smart_probe.errors import ParserError
from smart_probe.parsers.base import SmartctlParser, normalize_output, slugify
from smart_probe.properties import (
    PropertyRepository,
    PropertySection,
    StorageProperty,
    format_size,
)
from smart_probe.type_resolver import TEXT_DRIVE_TYPE_KEY

S = PropertySection

_VERSION_RE = re.compile(
    r"^smartctl\s+(?:version\s+)?(\d+\.\d+\S*)", re.MULTILINE | re.IGNORECASE
)
_SECTION_RE = re.compile(r"^=== START OF (.+?) SECTION ===\s*$", re.MULTILINE)
_KEY_VALUE_RE = re.compile(r"^(?P<key>[A-Za-z0-9][^:]*?):\s*(?P<value>.*)$")
# "500,107,862,016 bytes [500 GB]" (ATA, SCSI) or "1,024,209,543,168 [1.02 TB]" (NVMe)
_CAPACITY_RE = re.compile(r"^(?P<bytes>\d[\d,.' ]*)(?:bytes)?\s*(?:\[(?P<short>[^\]]+)\])?")
_FIRST_NUMBER_RE = re.compile(r"(0x[0-9a-fA-F]+|[\d,.' ]*\d)")

_HEALTH_ATA_RE = re.compile(
    r"^SMART overall-health self-assessment test result:\s*(\S+)", re.MULTILINE
)
_HEALTH_SCSI_RE = re.compile(r"^SMART Health Status:\s*(.+)$", re.MULTILINE)

# Information section keys mapped to the generic names the JSON dialect uses.
INFO_KEYS = {
    "model family": "model_family",
    "device model": "model_name",
    "model number": "model_name",
    "product": "scsi_model_name",
    "vendor": "scsi_vendor",
    "revision": "scsi_revision",
    "serial number": "serial_number",
    "firmware version": "firmware_version",
    "lu wwn device id": "wwn/_merged",
    "form factor": "form_factor/name",
    "ata version is": "ata_version/string",
    "sata version is": "sata_version/string",
    "nvme version": "nvme_version/string",
    "pci vendor/subsystem id": "nvme_pci_vendor/_merged",
    "local time is": "local_time/asctime",
    "device type": "scsi_device_type/name",
}

_ATA_MARKER_KEYS = ("ata version is", "sata version is", "device model")
_NVME_MARKER_KEYS = ("nvme version", "pci vendor/subsystem id", "model number")


def _parse_int(value: str) -> int | None:
    match = _FIRST_NUMBER_RE.search(value)
    if match is None:
        return None
    number = match.group(1)
    if number.lower().startswith("0x"):
        return int(number, 16)
    digits = re.sub(r"[^\d]", "", number)
    return int(digits) if digits else None


def _int_or_str(token: str) -> int | str:
    return int(token) if token.isdigit() else token


def split_sections(output: str) -> dict[str, str]:
    """Map "INFORMATION", "READ SMART DATA", ... to the text following each marker."""
    sections: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(output))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(output)
        sections[match.group(1).strip().upper()] = output[match.end():end]
    return sections


class SmartctlTextParser(SmartctlParser):
    output_format = OutputFormat.TEXT

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)

    def parse(self, output: str) -> PropertyRepository:
        text = normalize_output(output)
        if not text:
            raise ParserError("Empty smartctl output.")
        version = _VERSION_RE.search(text)
        if version is None:
            raise ParserError("Cannot find smartctl version information.")
        sections = split_sections(text)
        if not sections:
            raise ParserError("No smartctl data sections found.")

        properties = [
            StorageProperty("smartctl/version/_merged", version.group(1), S.INTERNAL)
        ]
        properties.extend(self._parse_info(sections.get("INFORMATION", "")))
        properties.extend(self._parse_health(text))
        properties.extend(self._parse_family(text, sections))
        self.logger.debug("Parsed %d properties from text output.", len(properties))
        return PropertyRepository(properties)

    def _parse_family(self, text: str, sections: dict[str, str]) -> list[StorageProperty]:
        return []

    def _parse_info(self, body: str) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        seen_keys: dict[str, str] = {}
        for line in body.splitlines():
            match = _KEY_VALUE_RE.match(line.strip())
            if match is None:
                continue
            key = match.group("key").strip()
            value = match.group("value").strip()
            lowered = key.lower()
            seen_keys.setdefault(lowered, value)

            if lowered in ("user capacity", "total nvm capacity"):
                properties.extend(self._capacity_properties(value))
            elif lowered == "rotation rate":
                rpm = 0 if value.lower().startswith("solid state") else _parse_int(value)
                if rpm is not None:
                    properties.append(
                        StorageProperty("rotation_rate", rpm, S.INFO, readable_value=value)
                    )
            elif lowered == "smart support is":
                properties.extend(self._support_properties(value))
            elif lowered in INFO_KEYS:
                properties.append(
                    StorageProperty(INFO_KEYS[lowered], value, S.INFO, displayable_name=key)
                )
            else:
                properties.append(
                    StorageProperty(
                        f"_text_only/info/{slugify(key)}", value, S.INFO, displayable_name=key
                    )
                )

        drive_type = self._detect_drive_type(seen_keys)
        if drive_type is not None:
            properties.append(StorageProperty(TEXT_DRIVE_TYPE_KEY, drive_type.value, S.INTERNAL))
            if drive_type is DetectedType.NVME and "smart support is" not in seen_keys:
                # NVMe drives always have SMART enabled, smartctl does not report it.
                properties.append(StorageProperty("smart_support/available", True, S.CAPABILITIES))
                properties.append(StorageProperty("smart_support/enabled", True, S.CAPABILITIES))
        return properties

    def _capacity_properties(self, value: str) -> list[StorageProperty]:
        match = _CAPACITY_RE.match(value)
        if match is None:
            return []
        size_b = _parse_int(match.group("bytes"))
        if size_b is None:
            return []
        short = match.group("short") or format_size(size_b)
        return [
            StorageProperty("user_capacity/bytes", size_b, S.INFO, readable_value=value),
            StorageProperty("user_capacity/bytes/_short", size_b, S.INFO, readable_value=short),
        ]

    def _support_properties(self, value: str) -> list[StorageProperty]:
        lowered = value.lower()
        if lowered.startswith("available"):
            return [StorageProperty("smart_support/available", True, S.CAPABILITIES, value)]
        if lowered.startswith("unavailable"):
            return [StorageProperty("smart_support/available", False, S.CAPABILITIES, value)]
        if lowered.startswith("enabled"):
            return [StorageProperty("smart_support/enabled", True, S.CAPABILITIES, value)]
        if lowered.startswith("disabled"):
            return [StorageProperty("smart_support/enabled", False, S.CAPABILITIES, value)]
        # "Ambiguous - ATA IDENTIFY DEVICE words 82-83 don't show if SMART supported."
        return []

    def _detect_drive_type(self, keys: dict[str, str]) -> DetectedType | None:
        if any(key in keys for key in _ATA_MARKER_KEYS):
            return DetectedType.ATA_ANY
        if any(key in keys for key in _NVME_MARKER_KEYS):
            return DetectedType.NVME
        if "cd/dvd" in keys.get("device type", "").lower():
            return DetectedType.CD_DVD
        if "vendor" in keys or "product" in keys:
            return DetectedType.BASIC_SCSI
        return None

    def _parse_health(self, text: str) -> list[StorageProperty]:
        match = _HEALTH_ATA_RE.search(text)
        if match is not None:
            result = match.group(1)
            return [
                StorageProperty(
                    "smart_status/passed", result.upper() == "PASSED", S.OVERALL_HEALTH, result
                )
            ]
        match = _HEALTH_SCSI_RE.search(text)
        if match is not None:
            result = match.group(1).strip()
            return [
                StorageProperty(
                    "smart_status/passed", result.upper().startswith("OK"), S.OVERALL_HEALTH, result
                )
            ]
        return []


class SmartctlTextBasicParser(SmartctlTextParser):
    parser_type = SmartctlParserType.BASIC


_ATA_CAPABILITY_RE = re.compile(
    r"^(?P<name>[A-Za-z][^:(\n]*?):\s*\(\s*(?P<num>0x[0-9a-fA-F]+|\d+)\)\s*(?P<rest>.*)$"
)
_ATA_ATTRIBUTE_HEADER_RE = re.compile(r"^ID# ATTRIBUTE_NAME", re.MULTILINE)
_ATA_ERROR_COUNT_RE = re.compile(r"^(?:ATA|Device) Error Count:\s*(\d+)", re.MULTILINE)
_ATA_ERROR_LOG_RE = re.compile(
    r"^SMART (?:Extended Comprehensive )?Error Log(?: Version)?", re.MULTILINE | re.IGNORECASE
)
_SELFTEST_LOG_RE = re.compile(r"^SMART (?:Extended )?Self-test [Ll]og", re.MULTILINE)
_NO_SELFTESTS_RE = re.compile(r"^No self-tests have been logged", re.MULTILINE | re.IGNORECASE)
_ATA_SELFTEST_ENTRY_RE = re.compile(
    r"^#\s*(?P<num>\d+)\s+(?P<type>.+?)\s{2,}(?P<status>.+?)\s+(?P<remaining>\d+)%"
    r"\s+(?P<hours>\d+)\s+(?P<lba>\S+)",
    re.MULTILINE,
)
_SCT_TEMPERATURE_RE = re.compile(r"^Current Temperature:\s+(\d+) Celsius", re.MULTILINE)
_SCT_ERC_RE = re.compile(
    r"^\s+(?P<kind>Read|Write):\s+(?:(?P<value>\d+)\s+\(|(?P<disabled>Disabled))",
    re.MULTILINE,
)


class SmartctlTextAtaParser(SmartctlTextParser):
    parser_type = SmartctlParserType.ATA

    def _parse_family(self, text: str, sections: dict[str, str]) -> list[StorageProperty]:
        data = sections.get("READ SMART DATA")
        if data is None or not _ATA_ATTRIBUTE_HEADER_RE.search(data):
            raise ParserError("No ATA SMART attributes found in smartctl output.")
        properties: list[StorageProperty] = []
        properties.extend(self._parse_capabilities(data))
        properties.extend(self._parse_attributes(data))
        properties.extend(self._parse_error_log(text))
        properties.extend(self._parse_selftest_log(text))
        properties.extend(self._parse_sct(text))
        return properties

    def _parse_capabilities(self, data: str) -> list[StorageProperty]:
        properties = []
        for line in data.splitlines():
            match = _ATA_CAPABILITY_RE.match(line.strip())
            if match is None:
                continue
            name = match.group("name").strip()
            properties.append(
                StorageProperty(
                    f"ata_smart_data/_text/{slugify(name)}",
                    _parse_int(match.group("num")),
                    S.CAPABILITIES,
                    readable_value=match.group("rest").strip(),
                    displayable_name=name,
                )
            )
        return properties

    def _parse_attributes(self, data: str) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        in_table = False
        for line in data.splitlines():
            if line.startswith("ID#"):
                in_table = True
                continue
            if not in_table:
                continue
            tokens = line.split()
            if not tokens or not tokens[0].isdigit():
                break
            attribute = self._attribute_from_tokens(tokens)
            if attribute is None:
                self.logger.debug("Skipping unrecognized attribute line: %s", line)
                continue
            properties.append(
                StorageProperty(
                    f"ata_smart_attributes/table/{attribute['id']}",
                    attribute,
                    S.ATTRIBUTES,
                    readable_value=attribute["raw"]["string"],
                    displayable_name=attribute["name"],
                )
            )
        return properties

    def _attribute_from_tokens(self, tokens: list[str]) -> dict[str, Any] | None:
        # Old format: ID# ATTRIBUTE_NAME FLAG VALUE WORST THRESH TYPE UPDATED WHEN_FAILED RAW_VALUE
        if len(tokens) >= 10 and tokens[2].lower().startswith("0x"):
            return {
                "id": int(tokens[0]),
                "name": tokens[1],
                "flags": {"value": int(tokens[2], 16), "string": tokens[2]},
                "value": _int_or_str(tokens[3]),
                "worst": _int_or_str(tokens[4]),
                "thresh": _int_or_str(tokens[5]),
                "when_failed": "" if tokens[8] == "-" else tokens[8],
                "raw": {"string": " ".join(tokens[9:])},
            }
        # Brief format: ID# ATTRIBUTE_NAME FLAGS VALUE WORST THRESH FAIL RAW_VALUE
        if len(tokens) >= 8:
            return {
                "id": int(tokens[0]),
                "name": tokens[1],
                "flags": {"string": tokens[2]},
                "value": _int_or_str(tokens[3]),
                "worst": _int_or_str(tokens[4]),
                "thresh": _int_or_str(tokens[5]),
                "when_failed": "" if tokens[6] == "-" else tokens[6],
                "raw": {"string": " ".join(tokens[7:])},
            }
        return None

    def _parse_error_log(self, text: str) -> list[StorageProperty]:
        match = _ATA_ERROR_COUNT_RE.search(text)
        if match is not None:
            count = int(match.group(1))
        elif _ATA_ERROR_LOG_RE.search(text) and "No Errors Logged" in text:
            count = 0
        else:
            return []
        return [StorageProperty("ata_smart_error_log/extended/count", count, S.ERROR_LOG)]

    def _parse_selftest_log(self, text: str) -> list[StorageProperty]:
        if not _SELFTEST_LOG_RE.search(text):
            return []
        properties: list[StorageProperty] = []
        if not _NO_SELFTESTS_RE.search(text):
            for match in _ATA_SELFTEST_ENTRY_RE.finditer(text):
                entry = {
                    "type": match.group("type").strip(),
                    "status": match.group("status").strip(),
                    "remaining_percent": int(match.group("remaining")),
                    "lifetime_hours": int(match.group("hours")),
                    "lba": match.group("lba"),
                }
                properties.append(
                    StorageProperty(
                        f"ata_smart_self_test_log/extended/table/{match.group('num')}",
                        entry,
                        S.SELFTEST_LOG,
                        readable_value=f"{entry['type']}: {entry['status']}",
                    )
                )
        properties.insert(
            0,
            StorageProperty(
                "ata_smart_self_test_log/extended/count", len(properties), S.SELFTEST_LOG
            ),
        )
        return properties

    def _parse_sct(self, text: str) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        match = _SCT_TEMPERATURE_RE.search(text)
        if match is not None:
            properties.append(
                StorageProperty(
                    "ata_sct_status/temperature/current", int(match.group(1)), S.TEMPERATURE_LOG
                )
            )
        erc_start = text.find("SCT Error Recovery Control:")
        if erc_start >= 0:
            for match in _SCT_ERC_RE.finditer(text, erc_start):
                kind = match.group("kind").lower()
                enabled = match.group("disabled") is None
                properties.append(StorageProperty(f"ata_sct_erc/{kind}/enabled", enabled, S.ERC_LOG))
                if enabled:
                    properties.append(
                        StorageProperty(
                            f"ata_sct_erc/{kind}/deciseconds", int(match.group("value")), S.ERC_LOG
                        )
                    )
        return properties


_NVME_HEALTH_RE = re.compile(r"^SMART/Health Information \(NVMe Log 0x02", re.MULTILINE)
_NVME_ERROR_LOG_RE = re.compile(r"^Error Information \(NVMe Log 0x01", re.MULTILINE)
_NVME_SELFTEST_LOG_RE = re.compile(r"^Self-test Log \(NVMe Log 0x06", re.MULTILINE)
_NVME_SELFTEST_ENTRY_RE = re.compile(
    r"^\s*(?P<num>\d+)\s+(?P<type>\S+(?: \S+)?)\s{2,}(?P<status>.+?)\s{2,}(?P<hours>\d+)\b"
)
_NVME_ERROR_ENTRY_RE = re.compile(r"^\s*\d+\s+\d+\s+\d+\s+0x")

# NVMe health keys whose JSON name differs from the slugified text key.
NVME_HEALTH_KEYS = {
    "host read commands": "host_reads",
    "host write commands": "host_writes",
    "media and data integrity errors": "media_errors",
    "error information log entries": "num_err_log_entries",
    "warning comp. temperature time": "warning_temp_time",
    "critical comp. temperature time": "critical_comp_time",
}


def _block_after(text: str, start: int) -> list[str]:
    """Lines following the header line at ``start``, up to the next blank line."""
    lines = text[start:].splitlines()[1:]
    block = []
    for line in lines:
        if not line.strip():
            break
        block.append(line)
    return block


class SmartctlTextNvmeParser(SmartctlTextParser):
    parser_type = SmartctlParserType.NVME

    def _parse_family(self, text: str, sections: dict[str, str]) -> list[StorageProperty]:
        match = _NVME_HEALTH_RE.search(text)
        if match is None:
            raise ParserError("No NVMe SMART/Health Information found in smartctl output.")
        properties = self._parse_health_log(_block_after(text, match.start()))
        properties.extend(self._parse_error_log(text))
        properties.extend(self._parse_selftest_log(text))
        return properties

    def _parse_health_log(self, lines: list[str]) -> list[StorageProperty]:
        properties = []
        for line in lines:
            match = _KEY_VALUE_RE.match(line.strip())
            if match is None:
                continue
            key = re.sub(r"\s+", " ", match.group("key").strip())
            value = match.group("value").strip()
            name = NVME_HEALTH_KEYS.get(key.lower(), slugify(key))
            number = _parse_int(value)
            properties.append(
                StorageProperty(
                    f"nvme_smart_health_information_log/{name}",
                    number if number is not None else value,
                    S.NVME_HEALTH,
                    readable_value=value,
                    displayable_name=key,
                )
            )
        return properties

    def _parse_error_log(self, text: str) -> list[StorageProperty]:
        match = _NVME_ERROR_LOG_RE.search(text)
        if match is None:
            return []
        block = _block_after(text, match.start())
        count = sum(1 for line in block if _NVME_ERROR_ENTRY_RE.match(line))
        return [StorageProperty("nvme_error_information_log/count", count, S.ERROR_LOG)]

    def _parse_selftest_log(self, text: str) -> list[StorageProperty]:
        match = _NVME_SELFTEST_LOG_RE.search(text)
        if match is None:
            return []
        properties: list[StorageProperty] = []
        for line in _block_after(text, match.start()):
            entry_match = _NVME_SELFTEST_ENTRY_RE.match(line)
            if entry_match is None:
                continue
            entry = {
                "type": entry_match.group("type"),
                "status": entry_match.group("status").strip(),
                "power_on_hours": int(entry_match.group("hours")),
            }
            properties.append(
                StorageProperty(
                    f"nvme_self_test_log/table/{entry_match.group('num')}",
                    entry,
                    S.SELFTEST_LOG,
                    readable_value=f"{entry['type']}: {entry['status']}",
                )
            )
        properties.insert(
            0, StorageProperty("nvme_self_test_log/count", len(properties), S.SELFTEST_LOG)
        )
        return properties


_SCSI_TEMPERATURE_RE = re.compile(r"^Current Drive Temperature:\s+(\d+) C", re.MULTILINE)
_SCSI_TRIP_RE = re.compile(r"^Drive Trip Temperature:\s+(\d+) C", re.MULTILINE)
_SCSI_DEFECTS_RE = re.compile(r"^Elements in grown defect list:\s+(\d+)", re.MULTILINE)
_SCSI_START_STOP_RE = re.compile(r"^Accumulated start-stop cycles:\s+(\d+)", re.MULTILINE)
_SCSI_POWER_ON_RE = re.compile(r"^Accumulated power on time, hours:minutes\s+(\d+):", re.MULTILINE)
_SCSI_SELFTEST_ENTRY_RE = re.compile(
    r"^#\s*(?P<num>\d+)\s+(?P<type>.+?)\s{2,}(?P<status>.+?)\s{2,}(?P<rest>.*)$", re.MULTILINE
)


class SmartctlTextScsiParser(SmartctlTextParser):
    parser_type = SmartctlParserType.SCSI

    def _parse_family(self, text: str, sections: dict[str, str]) -> list[StorageProperty]:
        properties: list[StorageProperty] = []
        for regex, name, section in (
            (_SCSI_TEMPERATURE_RE, "temperature/current", S.TEMPERATURE_LOG),
            (_SCSI_TRIP_RE, "temperature/drive_trip", S.TEMPERATURE_LOG),
            (_SCSI_DEFECTS_RE, "scsi_grown_defect_list", S.STATISTICS),
            (
                _SCSI_START_STOP_RE,
                "scsi_start_stop_cycle_counter/accumulated_start_stop_cycles",
                S.STATISTICS,
            ),
            (_SCSI_POWER_ON_RE, "power_on_time/hours", S.STATISTICS),
        ):
            match = regex.search(text)
            if match is not None:
                properties.append(StorageProperty(name, int(match.group(1)), section))
        properties.extend(self._parse_selftest_log(text))
        # temperature alone is printed by --health too
        if not any(prop.section is not S.TEMPERATURE_LOG for prop in properties):
            raise ParserError("No SCSI SMART data found in smartctl output.")
        return properties

    def _parse_selftest_log(self, text: str) -> list[StorageProperty]:
        if not _SELFTEST_LOG_RE.search(text):
            return []
        properties: list[StorageProperty] = []
        if not _NO_SELFTESTS_RE.search(text):
            for match in _SCSI_SELFTEST_ENTRY_RE.finditer(text):
                entry = {
                    "type": match.group("type").strip(),
                    "status": match.group("status").strip(),
                    "details": match.group("rest").strip(),
                }
                properties.append(
                    StorageProperty(
                        f"scsi_self_test_log/table/{match.group('num')}",
                        entry,
                        S.SELFTEST_LOG,
                        readable_value=f"{entry['type']}: {entry['status']}",
                    )
                )
        properties.insert(
            0, StorageProperty("scsi_self_test_log/count", len(properties), S.SELFTEST_LOG)
        )
        return properties
