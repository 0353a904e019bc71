"""
Nodewright Utilities Package
Filesystem, hardware, transfer statistics and logging helpers.
"""

from .files import (
    md5,
    unzip_into,
    move_into,
    link_or_copy,
    delete,
    format_bytes,
    format_duration,
    parse_size,
)

from .hardware import CPUInfo, GPUDevice, SystemInfo

from .logging import (
    LogConfig,
    CheckpointLog,
    configure_logging,
    get_logger,
)

from .stats import TransferStats

__all__ = [
    "md5",
    "unzip_into",
    "move_into",
    "link_or_copy",
    "delete",
    "format_bytes",
    "format_duration",
    "parse_size",
    "CPUInfo",
    "GPUDevice",
    "SystemInfo",
    "LogConfig",
    "CheckpointLog",
    "configure_logging",
    "get_logger",
    "TransferStats",
]
