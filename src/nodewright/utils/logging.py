"""Logging setup and checkpoint-scoped log buffers for nodewright.

Two concerns live here:

- Process-wide handler configuration (``LogConfig`` + ``configure_logging``)
  applied once on the ``nodewright`` package logger, in text or JSON form,
  optionally mirrored to a rotating file.
- ``CheckpointLog``: per-job buffers of log lines. The controller opens a
  checkpoint for each loop iteration, components append lines to it, and the
  lines are attached to diagnostic reports sent to the server.

Example usage:
    >>> from nodewright.utils.logging import CheckpointLog, LogConfig, configure_logging
    >>> configure_logging(LogConfig(log_level="DEBUG"))
    >>> log = CheckpointLog()
    >>> checkpoint = log.open()
    >>> log.info(checkpoint, "Requesting job")
    >>> lines = log.close(checkpoint)
"""

import json
import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Deque, Dict, List, Literal, Optional

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]

ROOT_LOGGER = "nodewright"
_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class LogConfig:
    """Handler configuration for the ``nodewright`` logger tree.

    Attributes:
        log_level: Default level for every component
        log_format: 'text' for operators, 'json' for log shippers
        log_file: Optional path of a rotating log file
        component_levels: Per-module overrides, keyed by the module path
            below ``nodewright`` (e.g. ``distributed.server``)
        max_file_size_mb: Size at which the log file rotates
        backup_count: Number of rotated files kept
    """

    log_level: LogLevel = "INFO"
    log_format: LogFormat = "text"
    log_file: Optional[str] = None
    component_levels: Dict[str, LogLevel] = field(default_factory=dict)
    max_file_size_mb: int = 10
    backup_count: int = 5

    def __post_init__(self) -> None:
        if self.log_level.upper() not in _VALID_LEVELS:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. "
                f"Must be one of: {sorted(_VALID_LEVELS)}"
            )
        if self.log_format not in ("text", "json"):
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. Must be 'text' or 'json'"
            )
        for component, level in self.component_levels.items():
            if level.upper() not in _VALID_LEVELS:
                raise ValueError(
                    f"Invalid log level '{level}' for component '{component}'"
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogConfig":
        """Create LogConfig from dictionary."""
        return cls(
            log_level=data.get("log_level", "INFO"),
            log_format=data.get("log_format", "text"),
            log_file=data.get("log_file"),
            component_levels=data.get("component_levels", {}),
            max_file_size_mb=data.get("max_file_size_mb", 10),
            backup_count=data.get("backup_count", 5),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "log_level": self.log_level,
            "log_format": self.log_format,
            "log_file": self.log_file,
            "component_levels": dict(self.component_levels),
            "max_file_size_mb": self.max_file_size_mb,
            "backup_count": self.backup_count,
        }


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Records logged through ``CheckpointLog`` carry their checkpoint id,
    which is emitted as the ``checkpoint`` key.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        checkpoint = getattr(record, "checkpoint", None)
        if checkpoint is not None:
            entry["checkpoint"] = checkpoint
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable one-line format.

    2026-01-12 10:30:45 | INFO     | nodewright.distributed.client | Requesting job
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)-12s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


_log_config: Optional[LogConfig] = None


def _make_formatter(config: LogConfig) -> logging.Formatter:
    if config.log_format == "json":
        return JSONFormatter()
    return TextFormatter()


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """Install handlers on the ``nodewright`` logger.

    Safe to call more than once; previous handlers are replaced.

    Args:
        config: Logging configuration. If None, uses defaults.
    """
    global _log_config

    if config is None:
        config = LogConfig()
    _log_config = config

    level = getattr(logging, config.log_level.upper())
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = _make_formatter(config)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    for component, component_level in config.component_levels.items():
        logging.getLogger(f"{ROOT_LOGGER}.{component}").setLevel(
            getattr(logging, component_level.upper())
        )

    root_logger.propagate = False


def get_logger(component: str) -> logging.Logger:
    """Get the logger of a component below the package root.

    Args:
        component: Dotted name below ``nodewright`` (e.g. 'distributed.server')
    """
    if _log_config is None:
        configure_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")


def get_config() -> Optional[LogConfig]:
    """Get current logging configuration."""
    return _log_config


# =============================================================================
# Checkpoint buffers
# =============================================================================

class CheckpointLog:
    """Thread-safe collection of per-checkpoint log buffers.

    Each checkpoint keeps at most ``max_lines`` of its most recent lines.
    Every appended line is also forwarded to ``logger`` so that the regular
    handlers see it.

    Args:
        max_lines: Bound of each checkpoint buffer
        logger: Logger that receives a copy of each line
    """

    # Checkpoint 0 collects lines logged outside of any job
    GLOBAL = 0

    def __init__(self, max_lines: int = 10000, logger: Optional[logging.Logger] = None):
        self.max_lines = max_lines
        self._logger = logger or logging.getLogger(f"{ROOT_LOGGER}.checkpoint")
        self._lock = threading.Lock()
        self._buffers: Dict[int, Deque[str]] = {self.GLOBAL: deque(maxlen=max_lines)}
        self._last_checkpoint = self.GLOBAL

    def open(self) -> int:
        """Start a new checkpoint and return its id."""
        with self._lock:
            self._last_checkpoint += 1
            checkpoint = self._last_checkpoint
            self._buffers[checkpoint] = deque(maxlen=self.max_lines)
        return checkpoint

    def append(self, checkpoint: int, level: int, message: str) -> None:
        """Record ``message`` under ``checkpoint``.

        Lines for an unknown (already closed) checkpoint go to the global
        buffer instead of being dropped.
        """
        stamp = datetime.now().strftime("%d-%m %H:%M:%S")
        line = f"{stamp} ({checkpoint}) {message}"
        with self._lock:
            buffer = self._buffers.get(checkpoint)
            if buffer is None:
                buffer = self._buffers[self.GLOBAL]
            buffer.append(line)
        self._logger.log(level, message, extra={"checkpoint": checkpoint})

    def debug(self, checkpoint: int, message: str) -> None:
        self.append(checkpoint, logging.DEBUG, message)

    def info(self, checkpoint: int, message: str) -> None:
        self.append(checkpoint, logging.INFO, message)

    def error(self, checkpoint: int, message: str) -> None:
        self.append(checkpoint, logging.ERROR, message)

    def lines(self, checkpoint: int) -> List[str]:
        """Copy of the lines recorded under ``checkpoint``."""
        with self._lock:
            return list(self._buffers.get(checkpoint, ()))

    def close(self, checkpoint: int) -> List[str]:
        """Return the lines of ``checkpoint`` and discard its buffer.

        The global checkpoint is emptied but never removed.
        """
        with self._lock:
            if checkpoint == self.GLOBAL:
                buffer = self._buffers[self.GLOBAL]
                lines = list(buffer)
                buffer.clear()
                return lines
            return list(self._buffers.pop(checkpoint, ()))

    def is_open(self, checkpoint: int) -> bool:
        with self._lock:
            return checkpoint in self._buffers
