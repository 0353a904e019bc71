"""Configuration for the nodewright worker client.

Supports loading configuration from:
1. User config: ~/.nodewright/config.yaml
2. Project config: .nodewright.yaml (in current directory)
3. CLI arguments (highest precedence)

The merged values build a ``Configuration``, which also owns the on-disk
cache layout (working, storage and archive directories).
"""

import logging
import re
import socket
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigurationError
from .utils import files

logger = logging.getLogger(__name__)

WORK_DIR_NAME = "work"
STORAGE_DIR_NAME = "binary_cache"
ARCHIVE_DIR_NAME = "render_archive"

DEFAULT_SERVER = "https://client.nodewright.io"

KIB_PER_GIB = 1024 * 1024


class ComputeMethod(Enum):
    """Which devices jobs may be rendered on. The value is sent to the server."""
    CPU_GPU = 0
    CPU = 1
    GPU = 2

    @property
    def uses_gpu(self) -> bool:
        return self in (ComputeMethod.CPU_GPU, ComputeMethod.GPU)

    @property
    def uses_cpu(self) -> bool:
        return self in (ComputeMethod.CPU_GPU, ComputeMethod.CPU)


class ShutdownMode(Enum):
    """What happens when the scheduled shutdown time is reached."""
    WAIT = "wait"  # finish the current frame and uploads first
    HARD = "hard"  # stop immediately, pending uploads are abandoned


@dataclass(frozen=True)
class RequestWindow:
    """Time of day interval during which jobs may be requested.

    A window whose end is before its start spans midnight.
    """
    start: time
    end: time

    def contains(self, moment: datetime) -> bool:
        current = moment.time()
        if self.start <= self.end:
            return self.start <= current <= self.end
        return current >= self.start or current <= self.end

    def next_start(self, moment: datetime) -> datetime:
        """First occurrence of the window start strictly after ``moment``."""
        candidate = datetime.combine(moment.date(), self.start)
        if candidate <= moment:
            candidate += timedelta(days=1)
        return candidate

    def __str__(self) -> str:
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"


def next_request_time(windows: Optional[List[RequestWindow]], now: datetime) -> Optional[datetime]:
    """When the next job request is allowed.

    Returns:
        None when requests are allowed right now (no windows configured or
        ``now`` falls inside one), otherwise the earliest upcoming window
        start, wrapping to the next day when needed
    """
    if not windows:
        return None
    if any(window.contains(now) for window in windows):
        return None
    return min(window.next_start(now) for window in windows)


def _parse_clock(value: str) -> time:
    match = re.fullmatch(r"\s*(\d{1,2}):(\d{2})\s*", value)
    if not match:
        raise ConfigurationError(f"Invalid time of day: {value!r} (expected HH:MM)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ConfigurationError(f"Invalid time of day: {value!r}")
    return time(hour, minute)


def parse_request_time(value: Optional[str]) -> List[RequestWindow]:
    """Parse '2:00-8:30,17:00-23:00' into request windows."""
    if not value:
        return []
    windows = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        start, sep, end = part.partition("-")
        if not sep:
            raise ConfigurationError(f"Invalid request time interval: {part!r} (expected HH:MM-HH:MM)")
        windows.append(RequestWindow(_parse_clock(start), _parse_clock(end)))
    return windows


def parse_shutdown(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a shutdown time: '+30' (minutes from now) or an ISO date/time."""
    if not value:
        return None
    now = now or datetime.now()
    value = value.strip()
    if value.startswith("+"):
        try:
            minutes = int(value[1:])
        except ValueError:
            raise ConfigurationError(f"Invalid relative shutdown time: {value!r}")
        return now + timedelta(minutes=minutes)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ConfigurationError(f"Invalid shutdown time: {value!r}")


def parse_memory(value: Union[str, int, None]) -> int:
    """Parse a memory limit into KiB. Plain numbers are KiB, '2G' style values are bytes."""
    if value is None:
        return -1
    if isinstance(value, int):
        return value
    text = value.strip()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    try:
        return files.parse_size(text) // 1024
    except ValueError as e:
        raise ConfigurationError(str(e))


@dataclass
class Configuration:
    """Worker client settings.

    Attributes:
        login: Account name on the server
        password: Account password, or the render key issued by the server
        server_url: Base URL of the server
        cache_dir: Root of the on-disk cache; a temporary one is used if None
        shared_downloads_dir: Directory shared with other clients for archives
        proxy: Optional HTTP proxy URL
        max_uploading_jobs: Ceiling of frames awaiting validation
        cores: CPU cores to render with (-1 = all)
        max_memory_kib: Memory ceiling for renders in KiB (-1 = unlimited)
        max_render_time: Seconds before a render is killed (-1 = unlimited)
        priority: Renderer niceness, clamped to [-19, 19]
        compute_method: Devices accepted for rendering
        gpu_device: GPU id (e.g. 'OPTIX_0') when rendering on GPU
        request_time: Windows during which jobs may be requested
        shutdown_time: When to stop the client and power off the machine
        shutdown_mode: How the scheduled shutdown treats running work
        extras: Free-form string forwarded to the server
        headless: Whether the machine has no display
        ui_type: Name of the UI reported to the server
        hostname: Name reported to the server
        memory_reserve_kib: Memory kept free for the OS when reporting free memory
        memory_reserve_platforms: Platforms on which the reserve is doubled
    """

    login: str = ""
    password: str = ""
    server_url: str = DEFAULT_SERVER
    cache_dir: Optional[Path] = None
    shared_downloads_dir: Optional[Path] = None
    proxy: Optional[str] = None
    max_uploading_jobs: int = 1
    cores: int = -1
    max_memory_kib: int = -1
    max_render_time: int = -1
    priority: int = 19
    compute_method: ComputeMethod = ComputeMethod.CPU
    gpu_device: Optional[str] = None
    request_time: List[RequestWindow] = field(default_factory=list)
    shutdown_time: Optional[datetime] = None
    shutdown_mode: ShutdownMode = ShutdownMode.WAIT
    extras: str = ""
    headless: bool = False
    ui_type: str = "text"
    hostname: str = field(default_factory=socket.gethostname)
    memory_reserve_kib: int = KIB_PER_GIB
    memory_reserve_platforms: List[str] = field(default_factory=lambda: ["windows"])

    # Resolved by setup_directories()
    working_dir: Optional[Path] = field(default=None, init=False, repr=False)
    storage_dir: Optional[Path] = field(default=None, init=False, repr=False)
    archive_dir: Optional[Path] = field(default=None, init=False, repr=False)
    user_has_cache_dir: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir).expanduser()
        if self.shared_downloads_dir is not None:
            self.shared_downloads_dir = Path(self.shared_downloads_dir).expanduser()
        if isinstance(self.compute_method, str):
            try:
                self.compute_method = ComputeMethod[self.compute_method.upper()]
            except KeyError:
                raise ConfigurationError(f"Invalid compute method: {self.compute_method!r}")
        if isinstance(self.shutdown_mode, str):
            try:
                self.shutdown_mode = ShutdownMode(self.shutdown_mode.lower())
            except ValueError:
                raise ConfigurationError(f"Invalid shutdown mode: {self.shutdown_mode!r}")
        if isinstance(self.request_time, str):
            self.request_time = parse_request_time(self.request_time)
        if isinstance(self.shutdown_time, str):
            self.shutdown_time = parse_shutdown(self.shutdown_time)
        if isinstance(self.max_memory_kib, str):
            self.max_memory_kib = parse_memory(self.max_memory_kib)

        self.priority = max(-19, min(19, int(self.priority)))

        if self.max_uploading_jobs < 1:
            raise ConfigurationError("max_uploading_jobs must be at least 1")
        if self.compute_method.uses_gpu and not self.gpu_device:
            raise ConfigurationError(f"Compute method {self.compute_method.name} requires a GPU device")

    # ------------------------------------------------------------------
    # Memory policy
    # ------------------------------------------------------------------

    def memory_reserve_for(self, platform_name: str) -> int:
        """KiB of memory kept free for the OS on ``platform_name``."""
        if platform_name.lower() in (p.lower() for p in self.memory_reserve_platforms):
            return self.memory_reserve_kib * 2
        return self.memory_reserve_kib

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def setup_directories(self) -> None:
        """Create the working, storage and archive directories."""
        if self.cache_dir is None:
            self.user_has_cache_dir = False
            self.working_dir = Path(tempfile.mkdtemp(prefix="farm_"))
            parent = self.working_dir.parent
        else:
            self.user_has_cache_dir = True
            parent = self.cache_dir.absolute()
            self.working_dir = parent / WORK_DIR_NAME

        self.storage_dir = parent / STORAGE_DIR_NAME
        self.archive_dir = parent / ARCHIVE_DIR_NAME
        for directory in (self.working_dir, self.storage_dir, self.archive_dir):
            directory.mkdir(parents=True, exist_ok=True)

        if self.shared_downloads_dir is not None:
            try:
                self.shared_downloads_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Unable to create shared downloads directory {self.shared_downloads_dir}: {e}")

    def _require_directories(self) -> None:
        if self.working_dir is None:
            self.setup_directories()

    def clean_directory(self, directory: Optional[Path]) -> None:
        """Delete everything in ``directory`` except valid ``<md5>.zip`` archives."""
        if directory is None or not directory.is_dir():
            return
        for entry in directory.iterdir():
            if entry.is_dir():
                files.delete(entry)
            elif entry.suffix.lower() == ".zip":
                if files.md5(entry) != entry.stem:
                    logger.debug(f"Removing corrupted archive {entry}")
                    files.delete(entry)
            else:
                files.delete(entry)

    def clean_working_directory(self) -> None:
        """Remove anything that is not a valid cached archive from the working and storage dirs."""
        self._require_directories()
        self.clean_directory(self.working_dir)
        self.clean_directory(self.storage_dir)

    def remove_working_directory(self) -> None:
        """Clean the cache if the user chose it, delete it entirely if it is temporary."""
        if self.working_dir is None:
            return
        if self.user_has_cache_dir:
            self.clean_working_directory()
        else:
            files.delete(self.working_dir)

    def local_cache_files(self) -> List[Path]:
        """Archives whose content matches their ``<md5>.zip`` name, across all cache dirs."""
        self._require_directories()
        result = []
        for directory in (self.working_dir, self.storage_dir, self.shared_downloads_dir):
            if directory is None or not directory.is_dir():
                continue
            for entry in directory.iterdir():
                if entry.is_file() and entry.suffix.lower() == ".zip" and files.md5(entry) == entry.stem:
                    result.append(entry)
        return result

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        """Create a Configuration from a (merged) dictionary, ignoring unknown keys."""
        known = {
            "login", "password", "server_url", "cache_dir", "shared_downloads_dir",
            "proxy", "max_uploading_jobs", "cores", "max_memory_kib", "max_render_time",
            "priority", "compute_method", "gpu_device", "request_time", "shutdown_time",
            "shutdown_mode", "extras", "headless", "ui_type", "hostname",
            "memory_reserve_kib", "memory_reserve_platforms",
        }
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. The password is never included."""
        return {
            "login": self.login,
            "server_url": self.server_url,
            "cache_dir": str(self.cache_dir) if self.cache_dir else None,
            "shared_downloads_dir": str(self.shared_downloads_dir) if self.shared_downloads_dir else None,
            "proxy": self.proxy,
            "max_uploading_jobs": self.max_uploading_jobs,
            "cores": self.cores,
            "max_memory_kib": self.max_memory_kib,
            "max_render_time": self.max_render_time,
            "priority": self.priority,
            "compute_method": self.compute_method.name,
            "gpu_device": self.gpu_device,
            "request_time": ",".join(str(w) for w in self.request_time) or None,
            "shutdown_time": self.shutdown_time.isoformat() if self.shutdown_time else None,
            "shutdown_mode": self.shutdown_mode.value,
            "extras": self.extras,
            "headless": self.headless,
            "ui_type": self.ui_type,
            "hostname": self.hostname,
            "memory_reserve_kib": self.memory_reserve_kib,
            "memory_reserve_platforms": list(self.memory_reserve_platforms),
        }

    def report_lines(self) -> List[str]:
        """One 'CFG:' line per setting, for the initial diagnostic report."""
        values = self.to_dict()
        values["working_dir"] = str(self.working_dir)
        values["storage_dir"] = str(self.storage_dir)
        values["archive_dir"] = str(self.archive_dir)
        return [f"    CFG: {key:<26}{value}" for key, value in values.items()]


# =============================================================================
# Config files
# =============================================================================

@dataclass
class ConfigFileLoader:
    """Loads and merges YAML configuration files.

    Attributes:
        user_config_path: Path to user-level config file
        project_config_path: Path to project-local config file
        loaded_config: The merged configuration dictionary
    """

    user_config_path: Path = field(default_factory=lambda: Path.home() / ".nodewright" / "config.yaml")
    project_config_path: Path = field(default_factory=lambda: Path.cwd() / ".nodewright.yaml")
    loaded_config: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.user_config_path = Path(self.user_config_path)
        self.project_config_path = Path(self.project_config_path)

    def load(self, extra_path: Optional[Path] = None) -> Dict[str, Any]:
        """Load and merge configuration from all files.

        Order of precedence (later overrides earlier):
        1. User config (~/.nodewright/config.yaml)
        2. Project config (.nodewright.yaml)
        3. ``extra_path`` (the --config option)

        Raises:
            ConfigurationError: If a file exists but is not valid YAML
        """
        config: Dict[str, Any] = {}
        for path in (self.user_config_path, self.project_config_path, extra_path):
            if path is None:
                continue
            path = Path(path)
            if not path.exists():
                if path == extra_path:
                    raise ConfigurationError(f"Config file not found: {path}")
                continue
            config = self._deep_merge(config, self._load_yaml_file(path))

        self.loaded_config = config
        return config

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"YAML parsing error in {path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping at top level")
        logger.debug(f"Loaded configuration file {path}")
        return data

    def _deep_merge(self, base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in overlay.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def merge_with_cli_args(self, cli_args: Dict[str, Any]) -> Dict[str, Any]:
        """Overlay non-None CLI values on the loaded files."""
        result = self.loaded_config.copy()
        for key, value in cli_args.items():
            if value is not None:
                result[key] = value
        return result


def load_configuration(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    loader: Optional[ConfigFileLoader] = None,
) -> Configuration:
    """Build a Configuration from config files overlaid with CLI values."""
    loader = loader or ConfigFileLoader()
    loader.load(config_path)
    return Configuration.from_dict(loader.merge_with_cli_args(cli_args or {}))
