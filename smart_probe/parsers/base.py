from __future__ import annotations

from abc import ABC, abstractmethod
import re

from smart_probe.device_types import OutputFormat, SmartctlParserType
from smart_probe.properties import PropertyRepository

_TEXT_HEADER_RE = re.compile(r"^smartctl\s+(?:version\s+)?\d+\.\d+", re.MULTILINE | re.IGNORECASE)


def normalize_output(output: str) -> str:
    """Convert any line endings to LF and trim surrounding whitespace."""
    return output.replace("\r\n", "\n").replace("\r", "\n").strip()


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def detect_output_format(output: str) -> OutputFormat | None:
    """Guess the smartctl output format, or None if it looks like neither."""
    stripped = output.lstrip()
    if stripped.startswith("{"):
        return OutputFormat.JSON
    if _TEXT_HEADER_RE.search(stripped):
        return OutputFormat.TEXT
    return None


class SmartctlParser(ABC):
    """Turns captured smartctl output into a property repository.

    Subclasses raise ParserError when the output cannot be interpreted.
    """

    parser_type: SmartctlParserType
    output_format: OutputFormat

    @abstractmethod
    def parse(self, output: str) -> PropertyRepository:
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.parser_type.value}, {self.output_format.value})"
