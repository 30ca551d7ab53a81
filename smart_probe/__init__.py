"""S.M.A.R.T. device probe built around smartctl."""

from smart_probe.config import AppConfig, SmartctlConfig, load_config
from smart_probe.device import StorageDevice, compute_smart_status
from smart_probe.device_types import DetectedType, ParseStatus, SmartStatus
from smart_probe.errors import StorageDeviceError
from smart_probe.mqtt_client import MqttPublisher

__all__ = [
    "AppConfig",
    "DetectedType",
    "MqttPublisher",
    "ParseStatus",
    "SmartStatus",
    "SmartctlConfig",
    "StorageDevice",
    "StorageDeviceError",
    "compute_smart_status",
    "load_config",
]
