from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import configparser
import re
import shlex

from smart_probe.device_types import OutputFormat, SmartctlParserType

DEFAULT_FILENAME_FORMAT = "smartctl-data_{model}_{serial}_{date}.txt"

_DEVICE_OPTION_RE = re.compile(
    r"^\s*(?P<device>.+?)(?:::(?P<type>[^:\s]+))?\s*:\s*(?P<options>.*?)\s*$"
)


@dataclass(frozen=True)
class DeviceOptionEntry:
    device: str
    type_argument: str
    options: str


@dataclass(frozen=True)
class SmartctlConfig:
    smartctl_path: str = "smartctl"
    smartctl_options: str = ""
    timeout_s: int = 60
    basic_format: OutputFormat = OutputFormat.JSON
    ata_format: OutputFormat = OutputFormat.JSON
    nvme_format: OutputFormat = OutputFormat.JSON
    scsi_format: OutputFormat = OutputFormat.JSON
    device_options: list[DeviceOptionEntry] = field(default_factory=list)
    output_filename_format: str = DEFAULT_FILENAME_FORMAT

    def format_for(self, parser_type: SmartctlParserType) -> OutputFormat:
        """Default output format requested from smartctl for a parser type."""
        return {
            SmartctlParserType.BASIC: self.basic_format,
            SmartctlParserType.ATA: self.ata_format,
            SmartctlParserType.NVME: self.nvme_format,
            SmartctlParserType.SCSI: self.scsi_format,
        }[parser_type]

    def default_arguments(self) -> list[str]:
        return shlex.split(self.smartctl_options)


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    discovery_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int = 60


@dataclass(frozen=True)
class AppConfig:
    smartctl: SmartctlConfig
    mqtt: MqttConfig | None


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_format(value: str | None, option: str) -> OutputFormat:
    if value is None or not value.strip():
        return OutputFormat.JSON
    try:
        return OutputFormat(value.strip().lower())
    except ValueError:
        raise ValueError(f"Invalid output format for {option}: {value!r}") from None


def parse_device_options(value: str | None) -> list[DeviceOptionEntry]:
    """Parse ``device[::type]: options; ...`` into entries, keeping file order."""
    entries: list[DeviceOptionEntry] = []
    if value is None:
        return entries
    for chunk in value.split(";"):
        if not chunk.strip():
            continue
        match = _DEVICE_OPTION_RE.match(chunk)
        if match is None:
            raise ValueError(f"Invalid device_options entry: {chunk.strip()!r}")
        entries.append(
            DeviceOptionEntry(
                device=match.group("device").strip(),
                type_argument=match.group("type") or "",
                options=match.group("options"),
            )
        )
    return entries


def resolve_device_options(
    entries: list[DeviceOptionEntry], device: str, type_argument: str
) -> list[str]:
    """Return configured smartctl options for a device, in file order."""
    args: list[str] = []
    for entry in entries:
        if entry.device != device:
            continue
        if entry.type_argument and entry.type_argument != type_argument:
            continue
        args.extend(shlex.split(entry.options))
    return args


def default_config() -> AppConfig:
    return AppConfig(smartctl=SmartctlConfig(), mqtt=None)


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser(interpolation=None)
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    # Use parser.get with fallback to handle a missing [smartctl] section
    smartctl = SmartctlConfig(
        smartctl_path=parser.get("smartctl", "smartctl_path", fallback="smartctl"),
        smartctl_options=parser.get("smartctl", "smartctl_options", fallback=""),
        timeout_s=parser.getint("smartctl", "timeout_s", fallback=60),
        basic_format=_get_format(
            parser.get("smartctl", "basic_format", fallback=None), "basic_format"
        ),
        ata_format=_get_format(
            parser.get("smartctl", "ata_format", fallback=None), "ata_format"
        ),
        nvme_format=_get_format(
            parser.get("smartctl", "nvme_format", fallback=None), "nvme_format"
        ),
        scsi_format=_get_format(
            parser.get("smartctl", "scsi_format", fallback=None), "scsi_format"
        ),
        device_options=parse_device_options(
            parser.get("smartctl", "device_options", fallback=None)
        ),
        output_filename_format=parser.get(
            "smartctl", "output_filename_format", fallback=DEFAULT_FILENAME_FORMAT
        ),
    )

    mqtt = None
    if parser.has_section("mqtt"):
        mqtt_section = parser["mqtt"]
        mqtt = MqttConfig(
            host=mqtt_section.get("host", "localhost"),
            port=mqtt_section.getint("port", 1883),
            base_topic=mqtt_section.get("base_topic", "smart_probe"),
            discovery_topic=mqtt_section.get("discovery_topic", "homeassistant"),
            client_id=mqtt_section.get("client_id", "smart-probe"),
            username=_get_optional(mqtt_section.get("username")),
            password=_get_optional(mqtt_section.get("password")),
            qos=mqtt_section.getint("qos", 0),
            retain=mqtt_section.getboolean("retain", False),
            tls_enabled=mqtt_section.getboolean("tls", False),
            ca_cert=_get_optional(mqtt_section.get("ca_cert")),
            keepalive=mqtt_section.getint("keepalive", 60),
        )

    return AppConfig(smartctl=smartctl, mqtt=mqtt)
