"""smartctl output parsers, one per (parser type, output format) pair."""
from __future__ import annotations

from smart_probe.device_types import OutputFormat, SmartctlParserType
from smart_probe.parsers.base import SmartctlParser, detect_output_format, normalize_output
from smart_probe.parsers.json_parser import (
    SmartctlJsonAtaParser,
    SmartctlJsonBasicParser,
    SmartctlJsonNvmeParser,
    SmartctlJsonScsiParser,
)
from smart_probe.parsers.text_parser import (
    SmartctlTextAtaParser,
    SmartctlTextBasicParser,
    SmartctlTextNvmeParser,
    SmartctlTextScsiParser,
)

PARSERS: dict[tuple[SmartctlParserType, OutputFormat], type[SmartctlParser]] = {
    (SmartctlParserType.BASIC, OutputFormat.TEXT): SmartctlTextBasicParser,
    (SmartctlParserType.ATA, OutputFormat.TEXT): SmartctlTextAtaParser,
    (SmartctlParserType.NVME, OutputFormat.TEXT): SmartctlTextNvmeParser,
    (SmartctlParserType.SCSI, OutputFormat.TEXT): SmartctlTextScsiParser,
    (SmartctlParserType.BASIC, OutputFormat.JSON): SmartctlJsonBasicParser,
    (SmartctlParserType.ATA, OutputFormat.JSON): SmartctlJsonAtaParser,
    (SmartctlParserType.NVME, OutputFormat.JSON): SmartctlJsonNvmeParser,
    (SmartctlParserType.SCSI, OutputFormat.JSON): SmartctlJsonScsiParser,
}


def create_parser(parser_type: SmartctlParserType, output_format: OutputFormat) -> SmartctlParser:
    parser_class = PARSERS.get((parser_type, output_format))
    assert parser_class is not None, f"No parser for {parser_type} / {output_format}"
    return parser_class()


__all__ = [
    "PARSERS",
    "SmartctlParser",
    "create_parser",
    "detect_output_format",
    "normalize_output",
]
