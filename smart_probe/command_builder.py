"""Build smartctl argument lists for the basic and full fetch phases."""
from __future__ import annotations

from typing import Sequence

from smart_probe.device_types import DetectedType, FetchPhase, OutputFormat

# Interface type forced on a device which smartctl refuses to probe without -d.
FALLBACK_TYPE_ARGUMENT = "scsi"

# "--json" flags: "o" includes the original text output, so text pattern
# checks on the captured output keep working.
JSON_OPTION = "--json=o"

# Not "--all": on some devices it runs commands which mess up the output.
BASIC_OPTIONS = ("--info", "--health", "--capabilities")

# Everything "--xall" covers for ATA, listed one by one so that additions to
# "--xall" in newer smartctl versions do not change what we capture.
ATA_FULL_OPTIONS = (
    "--health",
    "--info",
    "--get=all",
    "--capabilities",
    "--attributes",
    "--format=brief",
    "--log=xerror,50,error",
    "--log=xselftest,50,selftest",
    "--log=selective",
    "--log=directory",
    "--log=scttemp",
    "--log=scterc",
    "--log=devstat",
    "--log=sataphy",
)

XALL_OPTIONS = ("--xall",)

SMART_ON_OPTIONS = ("--smart=on", "--saveauto=on")
SMART_OFF_OPTIONS = ("--smart=off",)


def build_basic_options(output_format: OutputFormat) -> list[str]:
    options = list(BASIC_OPTIONS)
    if output_format is OutputFormat.JSON:
        options.append(JSON_OPTION)
    return options


def build_full_options(detected_type: DetectedType, output_format: OutputFormat) -> list[str]:
    assert not detected_type.is_transient, (
        f"Full options requested for a device of unresolved type {detected_type.value}"
    )
    if detected_type.is_ata:
        options = list(ATA_FULL_OPTIONS)
    else:
        # NVMe, SCSI, optical and unsupported RAID all use the umbrella option.
        options = list(XALL_OPTIONS)
    if output_format is OutputFormat.JSON:
        options.append(JSON_OPTION)
    return options


def build_smart_switch_options(enabled: bool) -> list[str]:
    return list(SMART_ON_OPTIONS if enabled else SMART_OFF_OPTIONS)


def build_device_options(
    type_argument: str,
    extra_arguments: Sequence[str],
    config_options: Sequence[str],
) -> list[str]:
    """Device targeting arguments, lowest priority first.

    smartctl lets a later "-d" override an earlier one, so the order is:
    detected or overridden type, caller-supplied arguments, then per-device
    options from the configuration file.
    """
    args: list[str] = []
    if type_argument:
        args.extend(["-d", type_argument])
    args.extend(extra_arguments)
    args.extend(config_options)
    return args


def build_command_arguments(
    phase: FetchPhase,
    device: str,
    detected_type: DetectedType,
    output_format: OutputFormat,
    type_argument: str = "",
    extra_arguments: Sequence[str] = (),
    config_options: Sequence[str] = (),
    default_options: Sequence[str] = (),
) -> list[str]:
    """Complete smartctl argument list (without the program) for a fetch phase."""
    if phase is FetchPhase.BASIC:
        command_options = build_basic_options(output_format)
    else:
        command_options = build_full_options(detected_type, output_format)
    return [
        *default_options,
        *build_device_options(type_argument, extra_arguments, config_options),
        *command_options,
        device,
    ]
