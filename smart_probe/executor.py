from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
import os
import subprocess

import psutil

from smart_probe.logging_utils import TRACE_LEVEL

# smartctl exit status is a bit mask, see smartctl(8) "RETURN VALUES".
EXIT_STATUS_MESSAGES = {
    0x01: "Command line did not parse.",
    0x02: (
        "Device open failed, device did not return an IDENTIFY DEVICE structure, "
        "or device is in a low-power mode."
    ),
    0x04: (
        "Some SMART or other ATA command to the disk failed, "
        "or there was a checksum error in a SMART data structure."
    ),
    0x08: 'SMART status check returned "DISK FAILING".',
    0x10: "Some prefail attributes are at or below threshold.",
    0x20: "SMART status is OK but some attributes were at or below threshold in the past.",
    0x40: "The device error log contains records of errors.",
    0x80: "The device self-test log contains records of errors.",
}

# Only these bits mean smartctl could not do its job; the rest describe the drive.
EXECUTION_FAILURE_MASK = 0x01 | 0x02


@dataclass(frozen=True)
class ExecutionResult:
    stdout: str
    error: str | None = None
    exit_status: int | None = None

    @property
    def ok(self) -> bool:
        return not self.error


def describe_exit_status(exit_status: int) -> list[str]:
    return [message for bit, message in EXIT_STATUS_MESSAGES.items() if exit_status & bit]


class CommandExecutor(ABC):
    """Runs an external program and captures its standard output."""

    @abstractmethod
    def execute(self, program: str, arguments: list[str]) -> ExecutionResult:
        ...


class SmartctlExecutor(CommandExecutor):
    def __init__(self, timeout_s: int = 60) -> None:
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(self.__class__.__name__)

    def execute(self, program: str, arguments: list[str]) -> ExecutionResult:
        command = [program, *arguments]
        self.logger.debug("Executing: %s", " ".join(command))
        # smartctl messages are matched by the caller, keep them untranslated
        env = dict(os.environ, LC_ALL="C")
        try:
            proc = psutil.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                env=env,
            )
        except FileNotFoundError:
            self.logger.debug("Command not found: %s", program)
            return ExecutionResult(stdout="", error=f"Smartctl binary {program!r} not found.")
        except PermissionError:
            return ExecutionResult(
                stdout="", error=f"Permission denied while executing {program!r}."
            )

        try:
            stdout, stderr = proc.communicate(timeout=self.timeout_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(
                "Command timed out after %s seconds: %s", self.timeout_s, " ".join(command)
            )
            self._kill_tree(proc)
            stdout, stderr = proc.communicate()
            return ExecutionResult(
                stdout=stdout or "",
                error=f"Smartctl did not finish within {self.timeout_s} seconds.",
            )

        if stdout:
            self.logger.log(TRACE_LEVEL, "stdout: %s", stdout.strip())
        if stderr:
            self.logger.log(TRACE_LEVEL, "stderr: %s", stderr.strip())

        exit_status = proc.returncode
        if exit_status < 0:
            return ExecutionResult(
                stdout=stdout or "",
                error=f"Smartctl was terminated by signal {-exit_status}.",
                exit_status=exit_status,
            )
        messages = describe_exit_status(exit_status)
        if exit_status & EXECUTION_FAILURE_MASK:
            self.logger.debug("Command failed (%s): %s", exit_status, " ".join(command))
            return ExecutionResult(
                stdout=stdout or "",
                error=" ".join(
                    msg for bit, msg in EXIT_STATUS_MESSAGES.items()
                    if exit_status & bit & EXECUTION_FAILURE_MASK
                ),
                exit_status=exit_status,
            )
        if messages:
            self.logger.debug("Smartctl exit status %s: %s", exit_status, " ".join(messages))
        return ExecutionResult(stdout=stdout or "", exit_status=exit_status)

    def _kill_tree(self, proc: psutil.Popen) -> None:
        try:
            children = proc.children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
