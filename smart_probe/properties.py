from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator


class PropertySection(Enum):
    INFO = "info"
    OVERALL_HEALTH = "overall_health"
    CAPABILITIES = "capabilities"
    ATTRIBUTES = "attributes"
    STATISTICS = "statistics"
    ERROR_LOG = "error_log"
    SELFTEST_LOG = "selftest_log"
    SELECTIVE_SELFTEST_LOG = "selective_selftest_log"
    TEMPERATURE_LOG = "temperature_log"
    ERC_LOG = "erc_log"
    PHY_LOG = "phy_log"
    DIRECTORY_LOG = "directory_log"
    NVME_HEALTH = "nvme_health"
    INTERNAL = "internal"


@dataclass(frozen=True)
class StorageProperty:
    generic_name: str
    value: Any
    section: PropertySection = PropertySection.INTERNAL
    readable_value: str = ""
    displayable_name: str = ""

    @property
    def readable(self) -> str:
        if self.readable_value:
            return self.readable_value
        if isinstance(self.value, bool):
            return "Yes" if self.value else "No"
        return str(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.generic_name,
            "section": self.section.value,
            "value": self.value,
            "readable": self.readable,
        }


class PropertyRepository:
    """Read-only collection of parsed facts, looked up by generic name.

    A repository is never modified after construction; a new parse produces a
    new repository which replaces the previous one as a whole.
    """

    def __init__(self, properties: Iterable[StorageProperty] = ()) -> None:
        self._properties = tuple(properties)
        self._by_name: dict[str, StorageProperty] = {}
        for prop in self._properties:
            # First occurrence wins, same as a linear lookup would.
            self._by_name.setdefault(prop.generic_name, prop)

    def lookup(
        self, generic_name: str, section: PropertySection | None = None
    ) -> StorageProperty | None:
        prop = self._by_name.get(generic_name)
        if prop is None:
            return None
        if section is not None and prop.section is not section:
            for candidate in self._properties:
                if candidate.generic_name == generic_name and candidate.section is section:
                    return candidate
            return None
        return prop

    def lookup_value(self, generic_name: str, default: Any = None) -> Any:
        prop = self.lookup(generic_name)
        return default if prop is None else prop.value

    def for_section(self, section: PropertySection) -> list[StorageProperty]:
        return [prop for prop in self._properties if prop.section is section]

    def has_properties_for_section(self, section: PropertySection) -> bool:
        return any(prop.section is section for prop in self._properties)

    def to_list(self) -> list[dict[str, Any]]:
        return [prop.to_dict() for prop in self._properties]

    def __iter__(self) -> Iterator[StorageProperty]:
        return iter(self._properties)

    def __len__(self) -> int:
        return len(self._properties)

    def __bool__(self) -> bool:
        return bool(self._properties)

    def __repr__(self) -> str:
        return f"PropertyRepository({len(self._properties)} properties)"


_SIZE_UNITS = ("bytes", "KB", "MB", "GB", "TB", "PB")


def format_size(size_b: int, decimal: bool = True) -> str:
    """Format a byte count the way drive vendors do (1000-based by default)."""
    base = 1000 if decimal else 1024
    value = float(size_b)
    unit = 0
    while value >= base and unit < len(_SIZE_UNITS) - 1:
        value /= base
        unit += 1
    if unit == 0:
        return f"{size_b} bytes"
    if value >= 100:
        return f"{value:.0f} {_SIZE_UNITS[unit]}"
    return f"{value:.2f}".rstrip("0").rstrip(".") + f" {_SIZE_UNITS[unit]}"


def format_capacity(size_b: int) -> str:
    return f"{size_b:,} bytes [{format_size(size_b)}]"
