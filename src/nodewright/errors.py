"""Error taxonomy for the nodewright worker client.

Provides the client error types reported to the server, the server status
codes found in protocol responses, local filesystem exceptions and the
exponential backoff used when re-trying uploads.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Iterator, Optional, Type, Union

from .utils.files import no_free_space_on_disk

logger = logging.getLogger(__name__)


# =============================================================================
# Exit codes
# =============================================================================

class ExitCode(IntEnum):
    """Process exit codes returned by the lifecycle controller."""
    OK = 0
    AUTHENTICATION_FAILED = -1
    NO_RENDERING_RIGHT = -2
    OS_NOT_SUPPORTED = -3
    CPU_NOT_SUPPORTED = -4
    USER_ABORT_DURING_TEST_FRAME = -5
    FILESYSTEM_FATAL = -50
    UNKNOWN = -99


# =============================================================================
# Server status codes
# =============================================================================

class ServerCode(IntEnum):
    """Status attribute values found in the server's XML documents.

    A handful of values (connection failed, bad response, no root) never
    come from the server; the protocol client uses them to describe
    transport-level outcomes with the same type.
    """
    OK = 0
    UNKNOWN = 999

    SERVER_CONNECTION_FAILED = 601
    ERROR_NO_ROOT = 602
    ERROR_BAD_RESPONSE = 603

    CONFIGURATION_ERROR_NO_CLIENT_VERSION_GIVEN = 100
    CONFIGURATION_ERROR_CLIENT_TOO_OLD = 101
    CONFIGURATION_ERROR_AUTH_FAILED = 102
    CONFIGURATION_ERROR_WEB_SESSION_EXPIRED = 103
    CONFIGURATION_ERROR_MISSING_PARAMETER = 104

    JOB_REQUEST_NOJOB = 200
    JOB_REQUEST_ERROR_NO_RENDERING_RIGHT = 201
    JOB_REQUEST_ERROR_DEAD_SESSION = 202
    JOB_REQUEST_ERROR_SESSION_DISABLED = 203
    JOB_REQUEST_ERROR_INTERNAL_ERROR = 204
    JOB_REQUEST_ERROR_RENDERER_NOT_AVAILABLE = 205
    JOB_REQUEST_SERVER_IN_MAINTENANCE = 206
    JOB_REQUEST_SERVER_OVERLOADED = 207
    JOB_REQUEST_ERROR_SESSION_DISABLED_DENOISING_NOT_SUPPORTED = 208

    JOB_VALIDATION_ERROR_MISSING_PARAMETER = 300
    JOB_VALIDATION_ERROR_BROKEN_MACHINE = 301
    JOB_VALIDATION_ERROR_FRAME_IS_NOT_IMAGE = 302
    JOB_VALIDATION_ERROR_UPLOAD_FAILED = 303
    JOB_VALIDATION_ERROR_SESSION_DISABLED = 304
    JOB_VALIDATION_IMAGE_TOO_LARGE = 306
    JOB_VALIDATION_ERROR_IMAGE_WRONG_DIMENSION = 308

    KEEPMEALIVE_STOP_RENDERING = 400

    @classmethod
    def from_int(cls, value: Union[int, str, None]) -> "ServerCode":
        """Map a raw status value to a code, defaulting to UNKNOWN."""
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNKNOWN


# =============================================================================
# Client error types
# =============================================================================

class ErrorType(Enum):
    """Outcome of a client-side operation, as reported to the server."""
    OK = 0
    WRONG_CONFIGURATION = 1
    AUTHENTICATION_FAILED = 2
    TOO_OLD_CLIENT = 3
    SESSION_DISABLED = 4
    RENDERER_NOT_AVAILABLE = 5
    MISSING_RENDERER = 6
    MISSING_SCENE = 7
    NOOUTPUTFILE = 8
    DOWNLOAD_FILE = 9
    CAN_NOT_CREATE_DIRECTORY = 10
    NETWORK_ISSUE = 11
    RENDERER_CRASHED = 12
    RENDERER_OUT_OF_VIDEO_MEMORY = 13
    RENDERER_KILLED = 14
    RENDERER_KILLED_BY_USER = 15
    RENDERER_KILLED_BY_USER_OVER_TIME = 16
    RENDERER_KILLED_BY_SERVER = 17
    VALIDATION_FAILED = 18
    GPU_NOT_SUPPORTED = 19
    OS_NOT_SUPPORTED = 20
    RENDERER_OUT_OF_MEMORY = 21
    CPU_NOT_SUPPORTED = 22
    RENDERER_CRASHED_PYTHON_ERROR = 24
    IMAGE_TOO_LARGE = 26
    IMAGE_WRONG_DIMENSION = 27
    ERROR_BAD_UPLOAD_RESPONSE = 28
    UNKNOWN = 99
    NO_SPACE_LEFT_ON_DEVICE = 100
    ERROR_BAD_SERVER_RESPONSE = 101
    PATH_INVALID = 102
    NO_WRITE_PERMISSION = 103
    SERVER_IN_MAINTENANCE = 104
    SERVER_OVERLOADED = 105
    DENOISING_NOT_SUPPORTED = 106
    SERVER_DOWN = 107

    @property
    def is_filesystem_fatal(self) -> bool:
        """Whether this outcome must terminate the process."""
        return self in _FILESYSTEM_FATAL

    @property
    def allows_immediate_request(self) -> bool:
        """Whether a new job may be requested right after reporting this error."""
        return self in _IMMEDIATE_RETRY

    def human_string(self) -> str:
        """Operator-facing description of the error."""
        return _HUMAN_STRINGS.get(self, f"Unknown error ({self.name})")


_FILESYSTEM_FATAL = frozenset({
    ErrorType.NO_SPACE_LEFT_ON_DEVICE,
    ErrorType.PATH_INVALID,
    ErrorType.NO_WRITE_PERMISSION,
})

_IMMEDIATE_RETRY = frozenset({
    ErrorType.OK,
    ErrorType.RENDERER_CRASHED,
    ErrorType.RENDERER_KILLED_BY_USER,
    ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME,
    ErrorType.RENDERER_KILLED_BY_SERVER,
    ErrorType.MISSING_SCENE,
})

_HUMAN_STRINGS = {
    ErrorType.OK: "No error",
    ErrorType.WRONG_CONFIGURATION: "Synchronization problem with the server. Please restart the client.",
    ErrorType.AUTHENTICATION_FAILED: "Failed to authenticate, please check your login and password",
    ErrorType.TOO_OLD_CLIENT: "This client is too old, you need to update it",
    ErrorType.SESSION_DISABLED: "The server has disabled your session. Your client may have generated broken frames (GPU not compatible, not enough RAM/VRAM, etc).",
    ErrorType.DENOISING_NOT_SUPPORTED: "The server has disabled your session because your GPU does not support denoising.",
    ErrorType.RENDERER_NOT_AVAILABLE: "No renderer is available on the server for your machine.",
    ErrorType.MISSING_RENDERER: "Unable to locate the renderer binary on your machine.",
    ErrorType.MISSING_SCENE: "Unable to locate the scene file on your machine.",
    ErrorType.NOOUTPUTFILE: "Renderer has exited without producing an image. The project may be corrupted.",
    ErrorType.IMAGE_TOO_LARGE: "The rendered image is too large to be uploaded to the server.",
    ErrorType.IMAGE_WRONG_DIMENSION: "The rendered image has the wrong dimensions. The server has rejected it.",
    ErrorType.DOWNLOAD_FILE: "Unable to download the project files. The server may be overloaded.",
    ErrorType.CAN_NOT_CREATE_DIRECTORY: "Unable to create the working directory. Check the cache directory permissions.",
    ErrorType.NETWORK_ISSUE: "Could not connect to the server, please check your connectivity.",
    ErrorType.RENDERER_CRASHED: "Renderer has crashed. The project may be corrupted or your machine may be unstable.",
    ErrorType.RENDERER_CRASHED_PYTHON_ERROR: "Renderer has crashed due to a script error in the project.",
    ErrorType.RENDERER_OUT_OF_VIDEO_MEMORY: "Renderer has crashed due to a lack of video memory (VRAM).",
    ErrorType.RENDERER_OUT_OF_MEMORY: "Renderer has crashed due to a lack of memory (RAM).",
    ErrorType.RENDERER_KILLED: "The render was stopped.",
    ErrorType.RENDERER_KILLED_BY_USER: "The render was stopped by the user.",
    ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME: "The render took longer than the configured maximum render time.",
    ErrorType.RENDERER_KILLED_BY_SERVER: "The render was stopped by the server (the project was removed or the frame was already rendered).",
    ErrorType.GPU_NOT_SUPPORTED: "The GPU is not supported.",
    ErrorType.OS_NOT_SUPPORTED: "This operating system is not supported.",
    ErrorType.CPU_NOT_SUPPORTED: "This CPU is not supported.",
    ErrorType.NO_SPACE_LEFT_ON_DEVICE: "No space left on the device holding the cache directory.",
    ErrorType.PATH_INVALID: "The cache directory path is invalid.",
    ErrorType.NO_WRITE_PERMISSION: "No write permission on the cache directory.",
    ErrorType.ERROR_BAD_SERVER_RESPONSE: "The server sent an unexpected response.",
    ErrorType.ERROR_BAD_UPLOAD_RESPONSE: "The server sent an unexpected response to the frame upload.",
    ErrorType.VALIDATION_FAILED: "The server did not validate the rendered frame.",
    ErrorType.SERVER_IN_MAINTENANCE: "The server is under maintenance.",
    ErrorType.SERVER_OVERLOADED: "The server is overloaded.",
    ErrorType.SERVER_DOWN: "The server is down.",
    ErrorType.UNKNOWN: "Unknown error",
}


def server_code_to_error_type(code: ServerCode) -> ErrorType:
    """Translate a configuration-stage server status to a client error."""
    mapping = {
        ServerCode.OK: ErrorType.OK,
        ServerCode.CONFIGURATION_ERROR_CLIENT_TOO_OLD: ErrorType.TOO_OLD_CLIENT,
        ServerCode.CONFIGURATION_ERROR_NO_CLIENT_VERSION_GIVEN: ErrorType.WRONG_CONFIGURATION,
        ServerCode.CONFIGURATION_ERROR_MISSING_PARAMETER: ErrorType.WRONG_CONFIGURATION,
        ServerCode.CONFIGURATION_ERROR_AUTH_FAILED: ErrorType.AUTHENTICATION_FAILED,
        ServerCode.CONFIGURATION_ERROR_WEB_SESSION_EXPIRED: ErrorType.AUTHENTICATION_FAILED,
        ServerCode.JOB_REQUEST_SERVER_IN_MAINTENANCE: ErrorType.SERVER_IN_MAINTENANCE,
        ServerCode.JOB_REQUEST_SERVER_OVERLOADED: ErrorType.SERVER_OVERLOADED,
    }
    return mapping.get(code, ErrorType.UNKNOWN)


# =============================================================================
# Exceptions
# =============================================================================

class NodewrightError(Exception):
    """Base exception for all nodewright errors."""
    pass


class ConfigurationError(NodewrightError):
    """Invalid configuration value."""
    pass


class ProtocolError(NodewrightError):
    """The server answered with something the client cannot interpret."""
    pass


class FilesystemError(NodewrightError):
    """Local filesystem failure that makes rendering impossible."""

    error_type: ErrorType = ErrorType.UNKNOWN


class NoSpaceLeftError(FilesystemError):
    """No space left on the device holding the cache."""

    error_type = ErrorType.NO_SPACE_LEFT_ON_DEVICE


class PathInvalidError(FilesystemError):
    """Destination directory does not exist or is not a directory."""

    error_type = ErrorType.PATH_INVALID


class NoWritePermissionError(FilesystemError):
    """Destination directory is not writable."""

    error_type = ErrorType.NO_WRITE_PERMISSION


def classify_filesystem_error(destination: Union[str, Path]) -> Optional[Type[FilesystemError]]:
    """Work out why writing to ``destination`` failed.

    Args:
        destination: File that could not be written

    Returns:
        The matching FilesystemError subclass, or None if the directory
        looks healthy and the failure is something else (network, ...)
    """
    parent = Path(destination).parent

    if not parent.is_dir():
        return PathInvalidError
    if not os.access(parent, os.W_OK):
        return NoWritePermissionError

    if no_free_space_on_disk(parent):
        return NoSpaceLeftError

    return None


# =============================================================================
# Retry Logic
# =============================================================================

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 22.0
    exponential_base: float = 2.0
    max_delay: Optional[float] = None

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.exponential_base ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each attempt after the first."""
        for attempt in range(1, self.max_attempts):
            yield self.get_delay(attempt)
