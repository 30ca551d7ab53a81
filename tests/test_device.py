"""Tests for the StorageDevice fetch/parse pipeline and its derived signals."""
from __future__ import annotations

from datetime import datetime
import threading

import pytest

from conftest import FakeExecutor, load_fixture
from smart_probe.command_builder import ATA_FULL_OPTIONS, JSON_OPTION
from smart_probe.config import DeviceOptionEntry, SmartctlConfig
from smart_probe.device import (
    StorageDevice,
    compute_smart_status,
    get_status_displayable_name,
)
from smart_probe.device_types import (
    DetectedType,
    ParseStatus,
    SelfTestSupportStatus,
    SmartStatus,
)
from smart_probe.errors import (
    CannotExecuteOnVirtualError,
    CommandFailedError,
    CommandUnknownError,
    ExecutionError,
    ParseError,
    StorageDeviceErrorType,
    TestRunningError,
)
from smart_probe.executor import ExecutionResult

DEVICE_OPEN_FAILED = "Device open failed, device did not return an IDENTIFY DEVICE structure."


def not_optical(device_base: str) -> bool:
    return False


def make_device(executor, path="/dev/sda", config=None, **kwargs) -> StorageDevice:
    return StorageDevice(
        path,
        config=config or SmartctlConfig(),
        executor=executor,
        is_optical_device=not_optical,
        **kwargs,
    )


class TestSmartStatusTable:
    """Test the SMART status derivation from support and enabled flags."""

    @pytest.mark.parametrize(
        ("supported", "enabled", "expected"),
        [
            (None, True, SmartStatus.ENABLED),
            (True, True, SmartStatus.ENABLED),
            (False, True, SmartStatus.ENABLED),
            (None, False, SmartStatus.DISABLED),
            (True, False, SmartStatus.DISABLED),
            (False, False, SmartStatus.UNSUPPORTED),
            (None, None, SmartStatus.UNSUPPORTED),
            (True, None, SmartStatus.DISABLED),
            (False, None, SmartStatus.UNSUPPORTED),
        ],
    )
    def test_compute_smart_status(self, supported, enabled, expected):
        assert compute_smart_status(supported, enabled) is expected

    def test_displayable_names(self):
        assert get_status_displayable_name(SmartStatus.ENABLED) == "Enabled"
        assert get_status_displayable_name(SmartStatus.UNSUPPORTED) == "Unsupported"


class TestBasicFetch:
    """Test fetch_basic_data_and_parse."""

    def test_json_ata_ssd(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)

        device.fetch_basic_data_and_parse()

        assert device.detected_type is DetectedType.ATA_SSD
        assert device.parse_status is ParseStatus.BASIC
        assert device.model_name == "Samsung SSD 860 EVO 500GB"
        assert device.family_name == "Samsung based SSDs"
        assert device.serial_number == "S3Z1NB0K123456A"
        assert device.device_size == "500 GB"
        assert device.get_smart_status() is SmartStatus.ENABLED
        assert device.get_health_property().value is True
        assert device.get_self_test_support_status() is SelfTestSupportStatus.UNKNOWN
        assert device.get_smart_switch_supported() is True

        program, arguments = executor.calls[0]
        assert program == "smartctl"
        assert arguments == ["--info", "--health", "--capabilities", JSON_OPTION, "/dev/sda"]

    def test_text_ata_hdd(self, executor, text_config):
        executor.queue(load_fixture("ata_hdd_basic.txt"))
        device = make_device(executor, config=text_config)

        device.fetch_basic_data_and_parse()

        assert device.detected_type is DetectedType.ATA_HDD
        assert device.parse_status is ParseStatus.BASIC
        assert device.model_name == "WDC WD10EZEX-08WN4A0"
        assert device.device_size == "1.00 TB"
        assert device.get_smart_status() is SmartStatus.ENABLED
        assert JSON_OPTION not in executor.calls[0][1]

    def test_usb_flash_uses_scsi_aliases(self, executor):
        executor.queue(load_fixture("scsi_basic.json"))
        device = make_device(executor, path="/dev/sdb")

        device.fetch_basic_data_and_parse()

        assert device.detected_type is DetectedType.BASIC_SCSI
        assert device.model_name == "SanDisk Ultra"
        assert device.family_name == "SanDisk"
        assert device.get_smart_status() is SmartStatus.UNSUPPORTED
        assert device.get_smart_switch_supported() is False
        assert device.get_health_property() is None

    def test_optical_device(self, executor):
        executor.queue(load_fixture("scsi_basic.json"))
        device = StorageDevice(
            "/dev/sr0", executor=executor, is_optical_device=lambda base: base.startswith("sr")
        )

        device.fetch_basic_data_and_parse()

        assert device.detected_type is DetectedType.CD_DVD

    def test_missing_model_name_keeps_status_none(self, executor):
        executor.queue('{"smartctl": {"version": [7, 3]}, "device": {"type": "scsi"}}')
        device = make_device(executor)

        device.fetch_basic_data_and_parse()

        assert device.parse_status is ParseStatus.NONE
        assert device.detected_type is DetectedType.BASIC_SCSI

    def test_repeated_fetch_is_idempotent(self, executor):
        output = load_fixture("ata_ssd_basic.json")
        executor.queue(output)
        executor.queue(output)
        device = make_device(executor)

        device.fetch_basic_data_and_parse()
        first = (device.detected_type, device.parse_status, device.property_repository.to_list())
        device.fetch_basic_data_and_parse()
        second = (device.detected_type, device.parse_status, device.property_repository.to_list())

        assert first == second

    def test_output_is_normalized(self, executor):
        executor.queue("\r\n" + load_fixture("ata_hdd_basic.txt").replace("\n", "\r\n") + "\r\n")
        device = make_device(executor)

        device.fetch_basic_data_and_parse()

        assert "\r" not in device.basic_output
        assert device.basic_output.startswith("smartctl 7.3")
        assert device.detected_type is DetectedType.ATA_HDD

    def test_execution_error_keeps_output(self, executor):
        executor.queue("smartctl 7.3\n\nSomething broke", error=DEVICE_OPEN_FAILED, exit_status=2)
        device = make_device(executor)

        with pytest.raises(ExecutionError) as exc_info:
            device.fetch_basic_data_and_parse()

        assert exc_info.value.kind is StorageDeviceErrorType.EXECUTION_ERROR
        assert exc_info.value.message == DEVICE_OPEN_FAILED
        assert device.basic_output == "smartctl 7.3\n\nSomething broke"
        assert device.parse_status is ParseStatus.NONE
        assert len(executor.calls) == 1

    def test_permission_denied(self, executor):
        executor.queue(
            "Smartctl open device: /dev/sda failed: Permission denied",
            error=DEVICE_OPEN_FAILED,
            exit_status=2,
        )
        device = make_device(executor)

        with pytest.raises(ExecutionError, match="Permission denied while opening device."):
            device.fetch_basic_data_and_parse()

    def test_empty_output(self, executor):
        executor.queue("  \n")
        device = make_device(executor)

        with pytest.raises(ExecutionError, match="Smartctl returned an empty output."):
            device.fetch_basic_data_and_parse()

    def test_unparsable_output(self, executor):
        executor.queue("{not json")
        device = make_device(executor)

        with pytest.raises(ParseError):
            device.fetch_basic_data_and_parse()
        assert device.parse_status is ParseStatus.NONE

    def test_argument_order(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        config = SmartctlConfig(
            smartctl_path="/usr/sbin/smartctl",
            smartctl_options="-q noserial",
            device_options=[DeviceOptionEntry("/dev/sda", "", "-T permissive")],
        )
        device = make_device(
            executor, config=config, type_argument="sat", extra_arguments=["--nocheck=standby"]
        )

        device.fetch_basic_data_and_parse()

        program, arguments = executor.calls[0]
        assert program == "/usr/sbin/smartctl"
        assert arguments == [
            "-q", "noserial",
            "-d", "sat",
            "--nocheck=standby",
            "-T", "permissive",
            "--info", "--health", "--capabilities", JSON_OPTION,
            "/dev/sda",
        ]


class TestExplicitTypeRetry:
    """Test the one-shot retry with "-d scsi" for devices smartctl cannot classify."""

    def test_retries_once_as_scsi(self, executor):
        executor.queue(load_fixture("needs_type.txt"), error=DEVICE_OPEN_FAILED, exit_status=2)
        executor.queue(load_fixture("scsi_basic.json"))
        device = make_device(executor, path="/dev/sdb")

        device.fetch_basic_data_and_parse()

        assert len(executor.calls) == 2
        assert "-d" not in executor.calls[0][1]
        assert executor.calls[1][1][:2] == ["-d", "scsi"]
        assert device.type_argument == "scsi"
        assert device.detected_type is DetectedType.BASIC_SCSI
        assert device.get_device_with_type() == "/dev/sdb (scsi)"
        assert device.parse_status is ParseStatus.BASIC

    def test_retry_is_bounded(self, executor):
        executor.queue(load_fixture("needs_type.txt"), error=DEVICE_OPEN_FAILED, exit_status=2)
        executor.queue(load_fixture("needs_type.txt"), error=DEVICE_OPEN_FAILED, exit_status=2)
        device = make_device(executor, path="/dev/sdb")

        with pytest.raises(ExecutionError):
            device.fetch_basic_data_and_parse()

        assert len(executor.calls) == 2
        assert device.type_argument == "scsi"

    def test_no_retry_with_explicit_type(self, executor):
        executor.queue(load_fixture("needs_type.txt"), error=DEVICE_OPEN_FAILED, exit_status=2)
        device = make_device(executor, path="/dev/sdb", type_argument="sat")

        with pytest.raises(ExecutionError):
            device.fetch_basic_data_and_parse()

        assert len(executor.calls) == 1
        assert device.type_argument == "sat"

    def test_no_retry_on_other_failures(self, executor):
        executor.queue("smartctl 7.3\nNo such device", error=DEVICE_OPEN_FAILED, exit_status=2)
        device = make_device(executor)

        with pytest.raises(ExecutionError):
            device.fetch_basic_data_and_parse()

        assert len(executor.calls) == 1
        assert device.detected_type is DetectedType.UNKNOWN


class TestFullFetch:
    """Test fetch_full_data_and_parse."""

    def test_json_ata_ssd(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        executor.queue(load_fixture("ata_ssd_full.json"))
        device = make_device(executor)

        device.fetch_basic_data_and_parse()
        device.fetch_full_data_and_parse()

        assert device.parse_status is ParseStatus.FULL
        assert device.basic_output
        assert device.full_output
        assert device.get_self_test_support_status() is SelfTestSupportStatus.SUPPORTED
        assert device.property_repository.lookup("ata_smart_attributes/table/9").readable == "12345"
        assert executor.calls[1][1] == [*ATA_FULL_OPTIONS, JSON_OPTION, "/dev/sda"]

    def test_text_ata_hdd(self, executor, text_config):
        executor.queue(load_fixture("ata_hdd_basic.txt"))
        executor.queue(load_fixture("ata_hdd_full.txt"))
        device = make_device(executor, config=text_config)

        device.fetch_basic_data_and_parse()
        device.fetch_full_data_and_parse()

        assert device.detected_type is DetectedType.ATA_HDD
        assert device.parse_status is ParseStatus.FULL
        repository = device.property_repository
        assert repository.lookup_value("ata_smart_self_test_log/extended/count") == 2
        assert repository.lookup_value("ata_sct_status/temperature/current") == 35
        assert device.get_self_test_support_status() is SelfTestSupportStatus.SUPPORTED

    def test_nvme(self, executor):
        executor.queue(load_fixture("nvme_basic.json"))
        executor.queue(load_fixture("nvme_full.json"))
        device = make_device(executor, path="/dev/nvme0")

        device.fetch_basic_data_and_parse()
        device.fetch_full_data_and_parse()

        assert device.detected_type is DetectedType.NVME
        assert device.parse_status is ParseStatus.FULL
        assert device.get_smart_status() is SmartStatus.ENABLED
        assert device.get_smart_switch_supported() is False
        assert device.get_self_test_support_status() is SelfTestSupportStatus.UNSUPPORTED
        assert executor.calls[1][1] == ["--xall", JSON_OPTION, "/dev/nvme0"]

    def test_requires_resolved_type(self, executor):
        device = make_device(executor)

        with pytest.raises(AssertionError):
            device.fetch_full_data_and_parse()
        assert executor.calls == []

    def test_wrong_family_output_is_parse_error(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        executor.queue(load_fixture("nvme_full.json"))
        device = make_device(executor)

        device.fetch_basic_data_and_parse()
        with pytest.raises(ParseError):
            device.fetch_full_data_and_parse()

        assert device.parse_status is ParseStatus.NONE
        # The previous fact store survives a failed parse.
        assert device.model_name == "Samsung SSD 860 EVO 500GB"

    def test_optical_device_gets_basic_status(self, executor):
        executor.queue(load_fixture("scsi_basic.json"))
        executor.queue(load_fixture("scsi_basic.json"))
        device = StorageDevice("/dev/sr0", executor=executor, is_optical_device=lambda base: True)

        device.fetch_basic_data_and_parse()
        device.fetch_full_data_and_parse()

        assert device.detected_type is DetectedType.CD_DVD
        assert device.parse_status is ParseStatus.BASIC


class TestTestActiveGuard:
    """Test that a running self-test blocks smartctl invocations."""

    def test_fetches_are_rejected(self, executor):
        device = make_device(executor)
        device.set_test_is_active(True)

        with pytest.raises(TestRunningError):
            device.fetch_basic_data_and_parse()
        with pytest.raises(TestRunningError):
            device.set_smart_enabled(True)

        assert executor.calls == []

    def test_full_fetch_is_rejected(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)
        device.fetch_basic_data_and_parse()
        device.set_test_is_active(True)

        with pytest.raises(TestRunningError):
            device.fetch_full_data_and_parse()
        assert len(executor.calls) == 1

    def test_emits_only_on_change(self, executor):
        device = make_device(executor)
        events = []
        device.subscribe(events.append)

        device.set_test_is_active(True)
        device.set_test_is_active(True)
        device.set_test_is_active(False)

        assert events == [device, device]
        assert device.test_is_active is False


class TestVirtualDevice:
    """Test devices replaying saved smartctl output."""

    def test_text_full_output(self, tmp_path):
        path = tmp_path / "wd.txt"
        path.write_text(load_fixture("ata_hdd_full.txt"), encoding="utf-8")
        device = StorageDevice.from_virtual_file(path)
        events = []
        device.subscribe(events.append)

        device.parse_any_data_for_virtual()

        assert events == [device]
        assert device.is_virtual
        assert device.detected_type is DetectedType.ATA_HDD
        assert device.parse_status is ParseStatus.FULL
        assert device.get_device_with_type() == "Virtual (wd.txt)"
        assert device.get_device_base() == ""
        assert device.get_smart_switch_supported() is False

    def test_nvme_text_output(self):
        device = StorageDevice.from_virtual_output(load_fixture("nvme_full.txt"))

        device.parse_any_data_for_virtual()

        assert device.detected_type is DetectedType.NVME
        assert device.parse_status is ParseStatus.FULL
        assert device.model_name == "Samsung SSD 970 EVO Plus 1TB"
        assert device.device_size == "1.00 TB"
        assert device.get_self_test_support_status() is SelfTestSupportStatus.SUPPORTED
        assert device.get_device_with_type() == "Virtual ([empty])"

    def test_basic_only_output_degrades(self):
        device = StorageDevice.from_virtual_output(load_fixture("ata_ssd_basic.json"))

        device.parse_any_data_for_virtual()

        assert device.detected_type is DetectedType.ATA_SSD
        assert device.parse_status is ParseStatus.BASIC
        assert device.model_name == "Samsung SSD 860 EVO 500GB"
        assert device.get_self_test_support_status() is SelfTestSupportStatus.UNKNOWN

    def test_basic_text_output_degrades(self):
        device = StorageDevice.from_virtual_output(load_fixture("ata_hdd_basic.txt"))

        device.parse_any_data_for_virtual()

        assert device.detected_type is DetectedType.ATA_HDD
        assert device.parse_status is ParseStatus.BASIC
        assert device.get_smart_status() is SmartStatus.ENABLED
        assert device.get_self_test_support_status() is SelfTestSupportStatus.UNKNOWN
        assert device.get_health_property().value is True

    def test_undetectable_format(self):
        device = StorageDevice.from_virtual_output("hello world")
        events = []
        device.subscribe(events.append)

        with pytest.raises(ParseError):
            device.parse_any_data_for_virtual()
        assert events == []

    def test_cannot_execute(self, executor):
        device = StorageDevice.from_virtual_output(
            load_fixture("ata_hdd_full.txt"), executor=executor
        )

        with pytest.raises(CannotExecuteOnVirtualError):
            device.fetch_basic_data_and_parse()
        assert device.detected_type is DetectedType.UNKNOWN

        with pytest.raises(CannotExecuteOnVirtualError) as exc_info:
            device.fetch_full_data_and_parse()
        assert exc_info.value.kind is StorageDeviceErrorType.CANNOT_EXECUTE_ON_VIRTUAL
        with pytest.raises(CannotExecuteOnVirtualError):
            device.set_smart_enabled(False)
        assert executor.calls == []
        assert device.full_output


class TestSmartSwitch:
    """Test enabling and disabling SMART."""

    def test_enable(self, executor):
        executor.queue(
            "smartctl 7.3\n\n=== START OF ENABLE/DISABLE COMMANDS SECTION ===\n"
            "SMART Enabled.\nSMART Attribute Autosave Enabled."
        )
        device = make_device(executor)

        device.set_smart_enabled(True)

        assert executor.calls[0][1] == ["--smart=on", "--saveauto=on", "/dev/sda"]

    def test_disable_with_type(self, executor):
        executor.queue(
            "smartctl 7.3\n\n=== START OF ENABLE/DISABLE COMMANDS SECTION ===\n"
            "SMART Disabled. Use option -s with argument 'on' to enable it."
        )
        device = make_device(executor, type_argument="sat")

        device.set_smart_enabled(False)

        assert executor.calls[0][1] == ["-d", "sat", "--smart=off", "/dev/sda"]

    def test_mandatory_command_failed(self, executor):
        executor.queue(
            "smartctl 7.3\n\nA mandatory SMART command failed: exiting. "
            "To continue, add one or more '-T permissive' options.",
            exit_status=4,
        )
        device = make_device(executor)

        with pytest.raises(CommandFailedError, match="Mandatory SMART command failed."):
            device.set_smart_enabled(True)

    def test_unknown_response(self, executor):
        executor.queue("smartctl 7.3\n\nSomething unexpected happened.")
        device = make_device(executor)

        with pytest.raises(CommandUnknownError) as exc_info:
            device.set_smart_enabled(True)
        assert exc_info.value.message == "Unknown error occurred."

    def test_does_not_refresh_data(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        executor.queue("SMART Disabled.")
        device = make_device(executor)
        device.fetch_basic_data_and_parse()
        events = []
        device.subscribe(events.append)

        device.set_smart_enabled(False)

        assert events == []
        assert device.get_smart_status() is SmartStatus.ENABLED


class TestChangeNotification:
    """Test observers, caching and the generation counter."""

    def test_fetch_emits_once(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)
        events = []
        device.subscribe(events.append)

        device.fetch_basic_data_and_parse()

        assert events == [device]

    def test_failed_fetch_does_not_emit(self, executor):
        executor.queue("", error=DEVICE_OPEN_FAILED, exit_status=2)
        device = make_device(executor)
        events = []
        device.subscribe(events.append)

        with pytest.raises(ExecutionError):
            device.fetch_basic_data_and_parse()
        assert events == []

    def test_unsubscribe(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)
        events = []
        unsubscribe = device.subscribe(events.append)
        unsubscribe()

        device.fetch_basic_data_and_parse()

        assert events == []

    def test_failing_listener_does_not_break_fetch(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)
        events = []

        def broken(dev):
            raise RuntimeError("boom")

        device.subscribe(broken)
        device.subscribe(events.append)

        device.fetch_basic_data_and_parse()

        assert events == [device]

    def test_cached_signals_follow_new_data(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        executor.queue(
            load_fixture("ata_ssd_basic.json").replace(
                '"enabled": true', '"enabled": false'
            ).replace('"passed": true', '"passed": false')
        )
        device = make_device(executor)

        device.fetch_basic_data_and_parse()
        generation = device.generation
        assert device.get_smart_status() is SmartStatus.ENABLED
        assert device.get_health_property().value is True

        device.fetch_basic_data_and_parse()

        assert device.generation > generation
        assert device.get_smart_status() is SmartStatus.DISABLED
        assert device.get_health_property().value is False
        assert device.get_self_test_support_status() is SelfTestSupportStatus.UNSUPPORTED

    def test_test_state_bumps_generation(self, executor):
        device = make_device(executor)
        generation = device.generation

        device.set_test_is_active(True)

        assert device.generation == generation + 1

    def test_concurrent_fetches_are_serialized(self):
        output = load_fixture("ata_ssd_basic.json")
        executor = FakeExecutor(*(ExecutionResult(stdout=output, exit_status=0) for _ in range(8)))
        device = make_device(executor)
        errors = []

        def worker():
            try:
                device.fetch_basic_data_and_parse()
            except Exception as exc:  # pragma: no cover - reported below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(executor.calls) == 8
        assert device.parse_status is ParseStatus.BASIC


class TestAccessors:
    """Test naming helpers and the snapshot."""

    def test_device_base(self, executor):
        device = make_device(executor, path="/dev/disk/by-id/ata-WDC")
        assert device.get_device_base() == "ata-WDC"

    def test_save_filename(self, executor):
        executor.queue(load_fixture("ata_ssd_basic.json"))
        device = make_device(executor)
        device.fetch_basic_data_and_parse()

        filename = device.get_save_filename(now=datetime(2026, 10, 17, 12, 30))

        assert filename == "smartctl-data_Samsung_SSD_860_EVO_500GB_S3Z1NB0K123456A_2026-10-17_1230.txt"

    def test_save_filename_custom_format(self, executor):
        device = make_device(executor)

        filename = device.get_save_filename("{model}/{serial}.log", now=datetime(2026, 1, 2))

        assert filename == "_.log"

    def test_to_dict(self, executor):
        executor.queue(load_fixture("nvme_basic.json"))
        device = make_device(executor, path="/dev/nvme0")
        device.fetch_basic_data_and_parse()

        snapshot = device.to_dict()

        assert snapshot["device"] == "/dev/nvme0"
        assert snapshot["detected_type"] == "nvme"
        assert snapshot["detected_type_name"] == "NVMe"
        assert snapshot["parse_status"] == "basic"
        assert snapshot["smart_status"] == "enabled"
        assert snapshot["health_passed"] is True
        assert snapshot["smart_switch_supported"] is False
        assert snapshot["size"] == "1 TB"
        assert any(prop["name"] == "serial_number" for prop in snapshot["properties"])

    def test_repr(self, executor):
        device = make_device(executor, type_argument="sat")
        assert repr(device) == "StorageDevice('/dev/sda (sat)', unknown)"
