"""Nodewright - worker client for a distributed render farm."""
__version__ = "1.0.0"

from .config import Configuration, ConfigFileLoader, load_configuration

from .errors import (
    NodewrightError,
    ConfigurationError,
    ProtocolError,
    FilesystemError,
    NoSpaceLeftError,
    PathInvalidError,
    NoWritePermissionError,
    ErrorType,
    ExitCode,
    ServerCode,
    RetryConfig,
)

from .utils.logging import LogConfig, CheckpointLog, configure_logging, get_logger

from .distributed import (
    Job,
    JobLifecycleController,
    RequestResult,
    ServerProtocolClient,
    DownloadCoordinator,
    UploadQueue,
)

__all__ = [
    "__version__",
    "Configuration",
    "ConfigFileLoader",
    "load_configuration",
    "NodewrightError",
    "ConfigurationError",
    "ProtocolError",
    "FilesystemError",
    "NoSpaceLeftError",
    "PathInvalidError",
    "NoWritePermissionError",
    "ErrorType",
    "ExitCode",
    "ServerCode",
    "RetryConfig",
    "LogConfig",
    "CheckpointLog",
    "configure_logging",
    "get_logger",
    "Job",
    "JobLifecycleController",
    "RequestResult",
    "ServerProtocolClient",
    "DownloadCoordinator",
    "UploadQueue",
]
