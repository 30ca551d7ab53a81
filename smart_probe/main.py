from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import shlex
import sys
import time

from smart_probe.config import default_config, load_config
from smart_probe.device import StorageDevice
from smart_probe.errors import StorageDeviceError
from smart_probe.logging_utils import configure_logging, resolve_log_level
from smart_probe.mqtt_client import MqttPublisher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Query S.M.A.R.T. data of a storage device")
    parser.add_argument(
        "device",
        nargs="?",
        help="Device path, e.g. /dev/sda",
    )
    parser.add_argument(
        "--virtual",
        metavar="FILE",
        help="Parse previously saved smartctl output instead of querying a device",
    )
    parser.add_argument(
        "--config",
        help="Path to CFG configuration file (built-in defaults when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "-d",
        "--type",
        default="",
        dest="type_argument",
        help="smartctl device type (passed as -d), e.g. sat or scsi",
    )
    parser.add_argument(
        "--extra-args",
        default="",
        help="Additional smartctl arguments for this device, quoted as one string",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Fetch the complete data set after the basic one",
    )
    parser.add_argument(
        "--smart",
        choices=("on", "off"),
        help="Enable or disable SMART on the device before fetching",
    )
    parser.add_argument(
        "--dump-json",
        metavar="FILE",
        help="Write the JSON snapshot to a file",
    )
    parser.add_argument(
        "--save-output",
        metavar="DIR",
        help="Save the raw smartctl output into DIR using the configured file name format",
    )
    parser.add_argument(
        "--publish",
        action="store_true",
        help="Publish the snapshot and Home Assistant discovery to MQTT",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if bool(args.device) == bool(args.virtual):
        parser.error("exactly one of DEVICE or --virtual is required")

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("smart_probe")
    config = load_config(args.config) if args.config else default_config()
    pretty_print = level <= logging.DEBUG

    if args.publish and config.mqtt is None:
        logger.error("--publish requires an [mqtt] section in the configuration.")
        return 2

    try:
        if args.virtual:
            device = StorageDevice.from_virtual_file(args.virtual, config=config.smartctl)
            device.parse_any_data_for_virtual()
        else:
            device = StorageDevice(
                args.device,
                type_argument=args.type_argument,
                extra_arguments=shlex.split(args.extra_args),
                config=config.smartctl,
            )
            if args.smart:
                device.set_smart_enabled(args.smart == "on")
                logger.info("SMART switched %s on %s.", args.smart, args.device)
            device.fetch_basic_data_and_parse()
            if args.full:
                device.fetch_full_data_and_parse()
    except StorageDeviceError as exc:
        logger.error("%s", exc.message)
        return 1

    snapshot = device.to_dict()
    snapshot_json = json.dumps(snapshot, indent=2) if pretty_print else json.dumps(snapshot)
    print(snapshot_json)

    if args.dump_json:
        with open(args.dump_json, "w", encoding="utf-8") as handle:
            handle.write(snapshot_json)
    if args.save_output and not device.is_virtual:
        path = Path(args.save_output) / device.get_save_filename()
        path.write_text(device.full_output or device.basic_output, encoding="utf-8")
        logger.info("Saved smartctl output to %s", path)

    if args.publish:
        publisher = MqttPublisher(config.mqtt)
        publisher.connect()
        # Wait briefly for connection to establish
        time.sleep(0.5)
        if not publisher.connected:
            logger.error("Failed to connect to MQTT broker")
            publisher.disconnect()
            return 1
        publisher.publish_discovery(device)
        publisher.publish_device(device)
        # Wait for message delivery
        time.sleep(0.5)
        publisher.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
