from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import re
import threading
from typing import Any, Callable, Sequence

from smart_probe.command_builder import (
    FALLBACK_TYPE_ARGUMENT,
    build_command_arguments,
    build_device_options,
    build_smart_switch_options,
)
from smart_probe.config import SmartctlConfig, resolve_device_options
from smart_probe.device_types import (
    DetectedType,
    FetchPhase,
    OutputFormat,
    ParseStatus,
    SelfTestSupportStatus,
    SmartctlParserType,
    SmartStatus,
    parser_type_for,
)
from smart_probe.errors import (
    CannotExecuteOnVirtualError,
    CommandFailedError,
    CommandUnknownError,
    ExecutionError,
    ParseError,
    ParserError,
    TestRunningError,
)
from smart_probe.executor import CommandExecutor, SmartctlExecutor
from smart_probe.parsers import create_parser, detect_output_format, normalize_output
from smart_probe.properties import PropertyRepository, PropertySection, StorageProperty
from smart_probe.type_resolver import (
    OpticalPredicate,
    is_linux_optical_device,
    resolve_detected_type,
)

# Matched against the raw output, so it also works with --json=o.
_NEEDS_TYPE_RE = re.compile(r"specify device type with the -d option", re.IGNORECASE | re.MULTILINE)
_PERMISSION_DENIED_RE = re.compile(r"Smartctl open device.+Permission denied", re.IGNORECASE)
# Searched at line start, the same words appear inside other sentences too.
_SMART_SWITCHED_RE = re.compile(r"^SMART (?:Enabled|Disabled)", re.IGNORECASE | re.MULTILINE)
_MANDATORY_FAILED_RE = re.compile(
    r"^A mandatory SMART command failed", re.IGNORECASE | re.MULTILINE
)
_UNSAFE_FILENAME_RE = re.compile(r"[^\w.\-]+")

ChangeCallback = Callable[["StorageDevice"], None]

_STATUS_NAMES = {
    SmartStatus.ENABLED: "Enabled",
    SmartStatus.DISABLED: "Disabled",
    SmartStatus.UNSUPPORTED: "Unsupported",
}


def get_status_displayable_name(status: SmartStatus) -> str:
    return _STATUS_NAMES.get(status, "[internal_error]")


def compute_smart_status(supported: bool | None, enabled: bool | None) -> SmartStatus:
    """Combine the parsed SMART support and enabled flags into one status.

    When the drive says SMART is supported but the enabled state is unknown
    (or disabled with unknown support) we report DISABLED, so that the user
    at least gets a chance to try enabling it.
    """
    if enabled is True:
        return SmartStatus.ENABLED
    if enabled is False:
        if supported is False:
            return SmartStatus.UNSUPPORTED
        return SmartStatus.DISABLED
    if supported is True:
        return SmartStatus.DISABLED
    return SmartStatus.UNSUPPORTED


@dataclass(frozen=True)
class CommonProperties:
    """Identity facts extracted from a repository right after it is parsed."""

    smart_supported: bool | None = None
    smart_enabled: bool | None = None
    model_name: str | None = None
    family_name: str | None = None
    serial_number: str | None = None
    size: str | None = None

    @classmethod
    def from_repository(cls, repository: PropertyRepository) -> CommonProperties:
        def first(*names: str) -> StorageProperty | None:
            for name in names:
                prop = repository.lookup(name)
                if prop is not None:
                    return prop
            return None

        supported = repository.lookup("smart_support/available")
        enabled = repository.lookup("smart_support/enabled")
        # scsi_* aliases are what USB flash drives report
        model = first("model_name", "scsi_model_name")
        family = first("model_family", "scsi_vendor")
        serial = first("serial_number")
        size = first("user_capacity/bytes/_short", "user_capacity/bytes")
        return cls(
            smart_supported=bool(supported.value) if supported is not None else None,
            smart_enabled=bool(enabled.value) if enabled is not None else None,
            model_name=str(model.value) if model is not None else None,
            family_name=str(family.value) if family is not None else None,
            serial_number=str(serial.value) if serial is not None else None,
            size=size.readable if size is not None else None,
        )


class StorageDevice:
    """One storage device: runs smartctl on it, parses and caches the results.

    All state is guarded by a per-device lock. Fetches on the same device are
    serialized by that lock; while a self-test is marked active every fetch
    and SMART switch request is rejected with TestRunningError.
    """

    def __init__(
        self,
        device: str,
        type_argument: str = "",
        extra_arguments: Sequence[str] = (),
        config: SmartctlConfig | None = None,
        executor: CommandExecutor | None = None,
        is_optical_device: OpticalPredicate = is_linux_optical_device,
    ) -> None:
        self.config = config or SmartctlConfig()
        self.executor = executor or SmartctlExecutor(self.config.timeout_s)
        self.logger = logging.getLogger(self.__class__.__name__)
        self._device = device
        self._is_virtual = False
        self._virtual_file: Path | None = None
        self._type_argument = type_argument
        self._extra_arguments = list(extra_arguments)
        self._is_optical_device = is_optical_device

        self._lock = threading.RLock()
        self._observers: list[ChangeCallback] = []
        self._detected_type = DetectedType.UNKNOWN
        self._parse_status = ParseStatus.NONE
        self._basic_output = ""
        self._full_output = ""
        self._repository = PropertyRepository()
        self._common = CommonProperties()
        self._test_is_active = False
        self._generation = 0
        self._signal_cache: dict[str, tuple[int, Any]] = {}

    @classmethod
    def from_virtual_output(
        cls, output: str, virtual_file: str | Path | None = None, **kwargs: Any
    ) -> StorageDevice:
        """Device replaying previously captured smartctl output."""
        device = cls("", **kwargs)
        device._is_virtual = True
        device._virtual_file = Path(virtual_file) if virtual_file is not None else None
        device._full_output = output
        return device

    @classmethod
    def from_virtual_file(cls, path: str | Path, **kwargs: Any) -> StorageDevice:
        output = Path(path).read_text(encoding="utf-8", errors="replace")
        return cls.from_virtual_output(output, virtual_file=path, **kwargs)

    # Change notification

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback(device)`` whenever the device state changes."""
        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _emit_changed(self) -> None:
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(self)
            except Exception:
                self.logger.exception("Change listener %r failed.", callback)

    def _invalidate(self) -> None:
        self._generation += 1

    def _reset_parse_status(self) -> None:
        if self._parse_status is not ParseStatus.NONE:
            self._parse_status = ParseStatus.NONE
            self._invalidate()

    def _cached(self, name: str, compute: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._signal_cache.get(name)
            if entry is not None and entry[0] == self._generation:
                return entry[1]
            value = compute()
            self._signal_cache[name] = (self._generation, value)
            return value

    # Fetching and parsing

    def fetch_basic_data_and_parse(self) -> None:
        """Run smartctl for identity, health and capabilities, then parse it.

        Raises TestRunningError, CannotExecuteOnVirtualError, ExecutionError
        or ParseError.
        """
        with self._lock:
            self._check_can_execute()
            while True:
                self._reset_parse_status()
                # Full data is stale once identity data is refetched.
                self._basic_output = ""
                self._full_output = ""
                error: ExecutionError | None = None
                arguments = self._command_arguments(
                    FetchPhase.BASIC, self.config.format_for(SmartctlParserType.BASIC)
                )
                try:
                    self._basic_output = self._execute_smartctl(arguments, check_type=True)
                except ExecutionError as exc:
                    self._basic_output = exc.output
                    error = exc

                # Some devices (e.g. behind unknown USB bridges) make smartctl refuse
                # to run without "-d". Retry once as SCSI to get at least some info.
                # A non-empty type argument stops this from firing again.
                if (
                    self._detected_type is DetectedType.NEEDS_EXPLICIT_TYPE
                    and not self._type_argument
                ):
                    self.logger.info(
                        "The device %s seems to be of different type than auto-detected, "
                        "trying again with %s.",
                        self._device, FALLBACK_TYPE_ARGUMENT,
                    )
                    self._type_argument = FALLBACK_TYPE_ARGUMENT
                    self._detected_type = DetectedType.BASIC_SCSI
                    continue
                break

            if error is not None:
                raise error
            self._parse_basic_data()
        self._emit_changed()

    def parse_basic_data(self) -> None:
        """Parse the stored basic output again."""
        with self._lock:
            self._parse_basic_data()
        self._emit_changed()

    def _parse_basic_data(self) -> None:
        self._reset_parse_status()
        output_format = self._detect_format(self._basic_output)
        repository = self._run_parser(SmartctlParserType.BASIC, output_format, self._basic_output)
        self._apply_repository(repository, None)

    def fetch_full_data_and_parse(self) -> None:
        """Run smartctl for the complete data set of the device's family, then parse it.

        The device type must have been resolved first, normally by
        fetch_basic_data_and_parse().
        """
        with self._lock:
            self._check_can_execute()
            assert not self._detected_type.is_transient, (
                f"Full data requested for {self.get_device_with_type()} "
                f"before its type was resolved ({self._detected_type.value})"
            )
            self._reset_parse_status()
            self._full_output = ""
            parser_type = parser_type_for(self._detected_type)
            arguments = self._command_arguments(
                FetchPhase.FULL, self.config.format_for(parser_type)
            )
            try:
                self._full_output = self._execute_smartctl(arguments)
            except ExecutionError as exc:
                self._full_output = exc.output
                raise
            self._parse_full_data(parser_type)
        self._emit_changed()

    def parse_full_data(self, parser_type: SmartctlParserType | None = None) -> None:
        """Parse the stored full output again."""
        with self._lock:
            self._parse_full_data(parser_type or parser_type_for(self._detected_type))
        self._emit_changed()

    def _parse_full_data(self, parser_type: SmartctlParserType) -> None:
        self._reset_parse_status()
        output_format = self._detect_format(self._full_output)
        repository = self._run_parser(parser_type, output_format, self._full_output)
        status = ParseStatus.BASIC if parser_type is SmartctlParserType.BASIC else ParseStatus.FULL
        self._apply_repository(repository, status)

    def parse_any_data_for_virtual(self) -> None:
        """Parse captured output of unknown origin, as loaded into a virtual device.

        Identity is parsed first to find out the device type; if that type has
        its own parser and it accepts the output, the status becomes FULL.
        """
        with self._lock:
            output = self._full_output or self._basic_output
            self._reset_parse_status()
            output_format = detect_output_format(output)
            if output_format is None:
                raise ParseError("Cannot detect smartctl output format.")

            basic_repository = self._run_parser(SmartctlParserType.BASIC, output_format, output)
            self._detected_type = self._resolve_type(basic_repository)
            repository, status = basic_repository, ParseStatus.BASIC

            parser_type = parser_type_for(self._detected_type)
            if parser_type is not SmartctlParserType.BASIC:
                try:
                    repository = self._run_parser(parser_type, output_format, output)
                    status = ParseStatus.FULL
                except ParseError as exc:
                    self.logger.debug("Only basic data available for virtual device: %s", exc)

            self._apply_repository(repository, status, resolve_type=False)
        self._emit_changed()

    def _detect_format(self, output: str) -> OutputFormat:
        output_format = detect_output_format(output)
        if output_format is None:
            self.logger.warning("Cannot detect smartctl output format. Assuming text.")
            return OutputFormat.TEXT
        return output_format

    def _run_parser(
        self, parser_type: SmartctlParserType, output_format: OutputFormat, output: str
    ) -> PropertyRepository:
        parser = create_parser(parser_type, output_format)
        try:
            return parser.parse(output)
        except ParserError as exc:
            raise ParseError(f"Cannot parse smartctl output: {exc}") from exc

    def _resolve_type(self, repository: PropertyRepository) -> DetectedType:
        return resolve_detected_type(
            self._detected_type,
            repository,
            device_base=self.get_device_base(),
            is_optical_device=self._is_optical_device,
            device_name=self.get_device_with_type(),
        )

    def _apply_repository(
        self,
        repository: PropertyRepository,
        status: ParseStatus | None,
        resolve_type: bool = True,
    ) -> None:
        if resolve_type:
            self._detected_type = self._resolve_type(repository)
        common = CommonProperties.from_repository(repository)
        self._repository = repository
        self._common = common
        if status is None:
            # A model name (or its alias) is a good sign there was any data at all.
            status = ParseStatus.BASIC if common.model_name is not None else ParseStatus.NONE
        self._parse_status = status
        self._invalidate()
        self.logger.debug(
            "Drive %s set to be %s device, parse status %s.",
            self.get_device_with_type(), self._detected_type.displayable_name, status.name,
        )

    # Command execution

    def _check_can_execute(self) -> None:
        if self._test_is_active:
            raise TestRunningError()
        if self._is_virtual:
            self.logger.warning("Cannot execute smartctl on a virtual device.")
            raise CannotExecuteOnVirtualError()

    def get_device_options(self) -> list[str]:
        """Device targeting arguments: type, then caller extras, then configured overrides."""
        if self._is_virtual:
            self.logger.warning("Cannot get device options of a virtual device.")
            return []
        return build_device_options(
            self._type_argument,
            self._extra_arguments,
            resolve_device_options(self.config.device_options, self._device, self._type_argument),
        )

    def _command_arguments(self, phase: FetchPhase, output_format: OutputFormat) -> list[str]:
        return build_command_arguments(
            phase,
            self._device,
            self._detected_type,
            output_format,
            type_argument=self._type_argument,
            extra_arguments=self._extra_arguments,
            config_options=resolve_device_options(
                self.config.device_options, self._device, self._type_argument
            ),
            default_options=self.config.default_arguments(),
        )

    def _execute_smartctl(self, arguments: list[str], check_type: bool = False) -> str:
        if self._is_virtual:
            raise CannotExecuteOnVirtualError()

        result = self.executor.execute(self.config.smartctl_path, arguments)
        output = normalize_output(result.stdout)
        if not result.ok:
            self.logger.warning(
                "Smartctl binary did not execute cleanly for %s: %s", self._device, result.error
            )
            if (
                check_type
                and self._detected_type is DetectedType.UNKNOWN
                and _NEEDS_TYPE_RE.search(output)
            ):
                self._detected_type = DetectedType.NEEDS_EXPLICIT_TYPE
            if _PERMISSION_DENIED_RE.search(output):
                raise ExecutionError("Permission denied while opening device.", output)
            raise ExecutionError(result.error or "Smartctl execution failed.", output)

        if not output:
            self.logger.error("Smartctl returned an empty output for %s.", self._device)
            raise ExecutionError("Smartctl returned an empty output.", output)
        return output

    def set_smart_enabled(self, enabled: bool) -> None:
        """Enable or disable SMART on the drive.

        Success is judged from the response text only, as smartctl uses the
        same exit code for unrelated failures. Does not refresh any data.
        """
        with self._lock:
            self._check_can_execute()
            arguments = [
                *self.config.default_arguments(),
                *self.get_device_options(),
                *build_smart_switch_options(enabled),
                self._device,
            ]
            output = self._execute_smartctl(arguments)

        if _SMART_SWITCHED_RE.search(output):
            return
        if _MANDATORY_FAILED_RE.search(output):
            raise CommandFailedError("Mandatory SMART command failed.")
        raise CommandUnknownError()

    # Test state

    @property
    def test_is_active(self) -> bool:
        with self._lock:
            return self._test_is_active

    def set_test_is_active(self, active: bool) -> None:
        with self._lock:
            changed = self._test_is_active != active
            self._test_is_active = active
            if changed:
                self._invalidate()
        if changed:
            # Listeners must stop anything that assumes the drive is idle.
            self._emit_changed()

    # Derived signals

    def get_smart_status(self) -> SmartStatus:
        return self._cached(
            "smart_status",
            lambda: compute_smart_status(self._common.smart_supported, self._common.smart_enabled),
        )

    def get_smart_switch_supported(self) -> bool:
        # NVMe does not support switching SMART on/off
        return (
            not self._is_virtual
            and self.get_smart_status() is not SmartStatus.UNSUPPORTED
            and self.detected_type is not DetectedType.NVME
        )

    def get_health_property(self) -> StorageProperty | None:
        return self._cached(
            "health_property",
            lambda: self._repository.lookup("smart_status/passed", PropertySection.OVERALL_HEALTH),
        )

    def get_self_test_support_status(self) -> SelfTestSupportStatus:
        def compute() -> SelfTestSupportStatus:
            if self._parse_status is ParseStatus.FULL:
                if self._repository.has_properties_for_section(PropertySection.SELFTEST_LOG):
                    return SelfTestSupportStatus.SUPPORTED
                return SelfTestSupportStatus.UNSUPPORTED
            if self._parse_status is ParseStatus.BASIC:
                if self.get_smart_status() is SmartStatus.ENABLED:
                    return SelfTestSupportStatus.UNKNOWN
                return SelfTestSupportStatus.UNSUPPORTED
            return SelfTestSupportStatus.UNKNOWN

        return self._cached("self_test_support", compute)

    # Accessors

    @property
    def device(self) -> str:
        return self._device

    def get_device_base(self) -> str:
        if self._is_virtual:
            return ""
        return self._device.rsplit("/", 1)[-1]

    def get_device_with_type(self) -> str:
        if self._is_virtual:
            filename = self.virtual_filename
            return f"Virtual ({filename or '[empty]'})"
        if self._type_argument:
            return f"{self._device} ({self._type_argument})"
        return self._device

    @property
    def type_argument(self) -> str:
        return self._type_argument

    @property
    def extra_arguments(self) -> list[str]:
        return list(self._extra_arguments)

    @property
    def is_virtual(self) -> bool:
        return self._is_virtual

    @property
    def virtual_file(self) -> Path | None:
        return self._virtual_file if self._is_virtual else None

    @property
    def virtual_filename(self) -> str:
        return self._virtual_file.name if self._is_virtual and self._virtual_file else ""

    @property
    def detected_type(self) -> DetectedType:
        with self._lock:
            return self._detected_type

    @property
    def parse_status(self) -> ParseStatus:
        with self._lock:
            return self._parse_status

    @property
    def basic_output(self) -> str:
        with self._lock:
            return self._basic_output

    @property
    def full_output(self) -> str:
        with self._lock:
            return self._full_output

    @property
    def property_repository(self) -> PropertyRepository:
        with self._lock:
            return self._repository

    @property
    def generation(self) -> int:
        """Incremented whenever cached signals become stale; pollable instead of subscribing."""
        with self._lock:
            return self._generation

    @property
    def model_name(self) -> str:
        return self._common.model_name or ""

    @property
    def family_name(self) -> str:
        return self._common.family_name or ""

    @property
    def serial_number(self) -> str:
        return self._common.serial_number or ""

    @property
    def device_size(self) -> str:
        return self._common.size or ""

    def get_save_filename(
        self, filename_format: str | None = None, now: datetime | None = None
    ) -> str:
        date = (now or datetime.now()).strftime("%Y-%m-%d_%H%M")
        filename = (
            (filename_format or self.config.output_filename_format)
            .replace("{serial}", self.serial_number)
            .replace("{model}", self.model_name)
            .replace("{date}", date)
        )
        return _UNSAFE_FILENAME_RE.sub("_", filename)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            health = self.get_health_property()
            return {
                "device": self.get_device_with_type(),
                "path": self._device,
                "virtual": self._is_virtual,
                "type_argument": self._type_argument,
                "detected_type": self._detected_type.value,
                "detected_type_name": self._detected_type.displayable_name,
                "parse_status": self._parse_status.name.lower(),
                "model": self.model_name,
                "family": self.family_name,
                "serial": self.serial_number,
                "size": self.device_size,
                "smart_status": self.get_smart_status().value,
                "smart_switch_supported": self.get_smart_switch_supported(),
                "health_passed": health.value if health is not None else None,
                "self_test_support": self.get_self_test_support_status().value,
                "test_is_active": self._test_is_active,
                "properties": self._repository.to_list(),
            }

    def __repr__(self) -> str:
        return f"StorageDevice({self.get_device_with_type()!r}, {self._detected_type.value})"
