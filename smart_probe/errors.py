from __future__ import annotations

from enum import Enum


class StorageDeviceErrorType(Enum):
    TEST_RUNNING = "test_running"
    CANNOT_EXECUTE_ON_VIRTUAL = "cannot_execute_on_virtual"
    EXECUTION_ERROR = "execution_error"
    PARSE_ERROR = "parse_error"
    COMMAND_FAILED = "command_failed"
    COMMAND_UNKNOWN_ERROR = "command_unknown_error"


class StorageDeviceError(Exception):
    """Base class for failures reported by a storage device operation.

    The message is meant to be shown to the user as-is.
    """

    kind: StorageDeviceErrorType

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TestRunningError(StorageDeviceError):
    kind = StorageDeviceErrorType.TEST_RUNNING
    __test__ = False

    def __init__(self, message: str = "A test is currently being performed on this drive.") -> None:
        super().__init__(message)


class CannotExecuteOnVirtualError(StorageDeviceError):
    kind = StorageDeviceErrorType.CANNOT_EXECUTE_ON_VIRTUAL

    def __init__(self, message: str = "Cannot execute smartctl on a virtual device.") -> None:
        super().__init__(message)


class ExecutionError(StorageDeviceError):
    kind = StorageDeviceErrorType.EXECUTION_ERROR

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class ParseError(StorageDeviceError):
    kind = StorageDeviceErrorType.PARSE_ERROR


class CommandFailedError(StorageDeviceError):
    kind = StorageDeviceErrorType.COMMAND_FAILED


class CommandUnknownError(StorageDeviceError):
    kind = StorageDeviceErrorType.COMMAND_UNKNOWN_ERROR

    def __init__(self, message: str = "Unknown error occurred.") -> None:
        super().__init__(message)


class ParserError(Exception):
    """Raised by output parsers when the captured output cannot be interpreted."""
