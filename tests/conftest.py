"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from pathlib import Path

import pytest

from smart_probe.config import SmartctlConfig
from smart_probe.device_types import OutputFormat
from smart_probe.executor import CommandExecutor, ExecutionResult

FIXTURES = Path(__file__).parent / "fixtures"


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (needs smartctl and a drive)"
    )
    config.addinivalue_line(
        "markers", "mqtt: mark test as exercising the MQTT publisher"
    )


class FakeExecutor(CommandExecutor):
    """Replays queued results and records every invocation."""

    def __init__(self, *results: ExecutionResult) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, list[str]]] = []

    def queue(self, stdout: str, error: str | None = None, exit_status: int | None = 0) -> None:
        self.results.append(ExecutionResult(stdout=stdout, error=error, exit_status=exit_status))

    def execute(self, program: str, arguments: list[str]) -> ExecutionResult:
        self.calls.append((program, list(arguments)))
        assert self.results, f"Unexpected smartctl call: {arguments}"
        return self.results.pop(0)


def load_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def text_config():
    return SmartctlConfig(
        basic_format=OutputFormat.TEXT,
        ata_format=OutputFormat.TEXT,
        nvme_format=OutputFormat.TEXT,
        scsi_format=OutputFormat.TEXT,
    )
