"""Job definitions for the worker client."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Jobs below this id are test frames
MIN_JOB_ID = 20


class KillReason(Enum):
    """Who asked for the renderer to be killed, by increasing precedence."""
    NONE = 0
    USER = 1
    USER_OVER_TIME = 2
    SERVER = 3


@dataclass
class RenderStats:
    """Measurements of one renderer execution."""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    peak_memory_kib: int = 0
    remaining_seconds: int = -1
    exit_code: Optional[int] = None
    process: Any = field(default=None, repr=False)

    def start(self, clock=time.time) -> None:
        self.start_time = clock()
        self.end_time = None

    def finish(self, clock=time.time) -> None:
        self.end_time = clock()

    def duration(self, clock=time.time) -> int:
        """Seconds rendered so far, or in total once finished."""
        if self.start_time is None:
            return 0
        end = self.end_time if self.end_time is not None else clock()
        return max(0, int(end - self.start_time))

    def record_memory(self, kib: int) -> None:
        if kib > self.peak_memory_kib:
            self.peak_memory_kib = kib


@dataclass
class Job:
    """A frame granted by the server.

    Attributes:
        id: Job id (below MIN_JOB_ID for test frames)
        frame_number: Frame to render
        path: Scene file path relative to the extracted scene archive
        use_gpu: Whether the frame renders on the GPU
        renderer_command: Command line template of the renderer
        validation_url: URL the rendered frame is posted to
        script: Python script passed to the renderer
        scene_md5: Checksum (and cache name) of the scene archive
        renderer_md5: Checksum (and cache name) of the renderer archive
        name: Project name
        password: Optional password of the scene archive
        synchronous_upload: Whether the frame must be uploaded before the next request
        update_method: How the renderer reports progress
    """

    id: str
    frame_number: str
    path: str
    use_gpu: bool
    renderer_command: str
    validation_url: str
    script: str
    scene_md5: str
    renderer_md5: str
    name: str = ""
    password: Optional[str] = None
    synchronous_upload: bool = False
    update_method: str = ""

    render: RenderStats = field(default_factory=RenderStats)
    output_image_path: Optional[Path] = None
    output_image_size: int = 0

    _kill_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _kill_reasons: set = field(default_factory=set, repr=False, compare=False)

    @property
    def numeric_id(self) -> int:
        try:
            return int(self.id)
        except (TypeError, ValueError):
            return -1

    @property
    def is_test_frame(self) -> bool:
        return self.numeric_id < MIN_JOB_ID

    # ------------------------------------------------------------------
    # Kill attribution
    # ------------------------------------------------------------------

    def request_kill(self, reason: KillReason) -> None:
        """Record that ``reason`` asked for the renderer to stop."""
        if reason is KillReason.NONE:
            return
        with self._kill_lock:
            self._kill_reasons.add(reason)
        logger.debug(f"Job {self.id}: kill requested ({reason.name})")

    @property
    def kill_reason(self) -> KillReason:
        """Highest-precedence kill reason recorded, NONE if never killed."""
        with self._kill_lock:
            if not self._kill_reasons:
                return KillReason.NONE
            return max(self._kill_reasons, key=lambda r: r.value)

    @property
    def server_blocked(self) -> bool:
        with self._kill_lock:
            return KillReason.SERVER in self._kill_reasons

    @property
    def user_blocked(self) -> bool:
        with self._kill_lock:
            return KillReason.USER in self._kill_reasons

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (password excluded)."""
        return {
            "id": self.id,
            "frame_number": self.frame_number,
            "name": self.name,
            "path": self.path,
            "use_gpu": self.use_gpu,
            "scene_md5": self.scene_md5,
            "renderer_md5": self.renderer_md5,
            "synchronous_upload": self.synchronous_upload,
            "render_time": self.render.duration(),
            "peak_memory_kib": self.render.peak_memory_kib,
        }

    def __str__(self) -> str:
        return f"Job(id={self.id}, frame={self.frame_number}, name={self.name!r})"


@dataclass(frozen=True)
class QueuedJob:
    """A rendered job waiting for validation, tagged with its checkpoint."""
    checkpoint: int
    job: Job


@dataclass(frozen=True)
class JobPaths:
    """Filesystem locations derived from a job's artifact hashes."""
    working_dir: Path
    storage_dir: Path
    shared_dir: Optional[Path]
    renderer_md5: str
    scene_md5: str
    scene_relative_path: str
    renderer_binary: str

    @property
    def renderer_archive(self) -> Path:
        """Where the renderer archive is kept locally."""
        return self.storage_dir / f"{self.renderer_md5}.zip"

    @property
    def required_renderer_archive(self) -> Path:
        """Where the renderer archive is downloaded to."""
        if self.shared_dir is not None:
            return self.shared_dir / f"{self.renderer_md5}.zip"
        return self.renderer_archive

    @property
    def renderer_directory(self) -> Path:
        return self.working_dir / self.renderer_md5

    @property
    def renderer_path(self) -> Path:
        return self.renderer_directory / self.renderer_binary

    @property
    def scene_archive(self) -> Path:
        return self.working_dir / f"{self.scene_md5}.zip"

    @property
    def required_scene_archive(self) -> Path:
        if self.shared_dir is not None:
            return self.shared_dir / f"{self.scene_md5}.zip"
        return self.scene_archive

    @property
    def scene_directory(self) -> Path:
        return self.working_dir / self.scene_md5

    @property
    def scene_path(self) -> Path:
        return self.scene_directory / self.scene_relative_path

    @classmethod
    def for_job(cls, job: Job, configuration, renderer_binary: str) -> "JobPaths":
        return cls(
            working_dir=configuration.working_dir,
            storage_dir=configuration.storage_dir,
            shared_dir=configuration.shared_downloads_dir,
            renderer_md5=job.renderer_md5,
            scene_md5=job.scene_md5,
            scene_relative_path=job.path,
            renderer_binary=renderer_binary,
        )
