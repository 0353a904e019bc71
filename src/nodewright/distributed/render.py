"""Execution of the external renderer for one job.

The renderer's merged stdout/stderr is read line by line to follow its
progress and detect well known failures, while a watchdog thread samples
its memory use and enforces the maximum render time.
"""

import logging
import re
import shlex
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..config import Configuration
from ..errors import ErrorType
from ..platform import PlatformRunner
from ..ui import Gui
from ..utils.files import format_duration
from ..utils.logging import CheckpointLog
from .job import Job, JobPaths, KillReason

logger = logging.getLogger(__name__)

# Lines showing that the renderer has finished reading the scene file
SCENE_LOADED_MARKERS = ("Read blend:", "Fra:")

_REMAINING_RE = re.compile(r"Remaining:\s*(?:(\d+):)?(\d+):(\d+)(?:\.\d+)?")

_VIDEO_MEMORY_ERRORS = (
    "CUDA error: Out of memory",
    "CUDA error: out of memory",
    "System is out of GPU memory",
    "OPTIX_ERROR_OUT_OF_MEMORY",
)
_MEMORY_ERRORS = ("out of memory", "Malloc returns null")
_PYTHON_ERROR = "Error: Python:"


def parse_remaining(line: str) -> Optional[int]:
    """Seconds from a ``Remaining:MM:SS.ss`` (or ``HH:MM:SS``) progress line."""
    match = _REMAINING_RE.search(line)
    if match is None:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds)


def detect_error(line: str) -> ErrorType:
    """Failure reported by a renderer output line, OK if none."""
    if any(marker in line for marker in _VIDEO_MEMORY_ERRORS):
        return ErrorType.RENDERER_OUT_OF_VIDEO_MEMORY
    lowered = line.lower()
    if any(marker.lower() in lowered for marker in _MEMORY_ERRORS):
        return ErrorType.RENDERER_OUT_OF_MEMORY
    if _PYTHON_ERROR in line:
        return ErrorType.RENDERER_CRASHED_PYTHON_ERROR
    return ErrorType.OK


def output_prefix(job: Job, paths: JobPaths) -> Path:
    return paths.working_dir / f"{job.id}_"


def find_output(prefix: Path) -> Optional[Path]:
    """First file of the prefix's directory whose name starts with the prefix."""
    if not prefix.parent.is_dir():
        return None
    candidates = sorted(
        p for p in prefix.parent.iterdir()
        if p.is_file() and p.name.startswith(prefix.name) and not p.name.endswith(".py")
    )
    return candidates[0] if candidates else None


def build_command(job: Job, paths: JobPaths, script_path: Optional[Path] = None) -> List[str]:
    """Render command line of ``job`` with its tokens substituted.

    ``.e`` is the renderer binary, ``.c`` the scene file, ``.o`` the output
    prefix and ``.f`` the frame number. A script, if any, is passed with
    ``-P`` right after the scene.
    """
    tokens = {
        ".e": str(paths.renderer_path),
        ".c": str(paths.scene_path),
        ".o": str(output_prefix(job, paths)),
        ".f": job.frame_number,
    }
    command = []
    for arg in shlex.split(job.renderer_command):
        command.append(tokens.get(arg, arg))
        if arg == ".c" and script_path is not None:
            command.extend(["-P", str(script_path)])
    return command


class RenderProcess:
    """Runs the renderer of a job through the platform runner.

    Args:
        platform: OS runner used to start and kill the renderer
        configuration: Client configuration (priority, max render time)
        gui: UI sink
        log: Checkpoint log
        clock: Wall clock in seconds
        watch_interval: Seconds between two watchdog samples
    """

    def __init__(
        self,
        platform: PlatformRunner,
        configuration: Configuration,
        gui: Gui,
        log: CheckpointLog,
        clock: Callable[[], float] = time.time,
        watch_interval: float = 1.0,
    ):
        self.platform = platform
        self.configuration = configuration
        self.gui = gui
        self.log = log
        self.clock = clock
        self.watch_interval = watch_interval

    def kill(self, job: Job) -> None:
        self.platform.kill(job.render.process)

    def _environment(self, paths: JobPaths) -> dict:
        env = {name: str(paths.working_dir) for name in ("TEMP", "TMP", "TMPDIR")}
        if self.configuration.cores > 0:
            env["CORES"] = str(self.configuration.cores)
        return env

    def _priority(self) -> int:
        priority = self.configuration.priority
        if priority < 0 and not self.platform.supports_high_priority():
            logger.warning(f"Priority {priority} needs administrator rights, rendering at priority 0")
            return 0
        return priority

    def _write_script(self, job: Job, paths: JobPaths) -> Optional[Path]:
        if not job.script:
            return None
        script_path = paths.working_dir / f"{job.id}_script.py"
        script_path.write_text(job.script, encoding="utf-8")
        return script_path

    def _watch(self, job: Job, stop: threading.Event) -> None:
        max_time = self.configuration.max_render_time
        while not stop.wait(self.watch_interval):
            job.render.record_memory(self.platform.process_memory_kib(job.render.process))
            elapsed = job.render.duration(self.clock)
            self.gui.set_rendering_time(format_duration(elapsed))
            if 0 < max_time < elapsed and job.kill_reason is KillReason.NONE:
                logger.info(f"{job} exceeded the maximum render time ({max_time}s), killing it")
                job.request_kill(KillReason.USER_OVER_TIME)
                self.kill(job)

    def render(
        self,
        job: Job,
        paths: JobPaths,
        checkpoint: int = CheckpointLog.GLOBAL,
        on_scene_loaded: Optional[Callable[[], None]] = None,
    ) -> ErrorType:
        """Render ``job`` and locate its output image.

        Args:
            job: Job to render; its render stats and output fields are filled in
            paths: Locations of the extracted renderer and scene
            checkpoint: Checkpoint receiving the renderer output
            on_scene_loaded: Called once, when the renderer no longer needs the scene file

        Returns:
            ErrorType.OK if an output image was produced
        """
        script_path = self._write_script(job, paths)
        command = build_command(job, paths, script_path)
        self.gui.set_compute_method("GPU" if job.use_gpu else "CPU")
        self.gui.status("Rendering")
        self.log.debug(checkpoint, f"Render command: {' '.join(command)}")

        try:
            process = self.platform.exec(command, self._environment(paths), self._priority())
        except OSError as e:
            self.log.error(checkpoint, f"Unable to start the renderer: {e}")
            return ErrorType.RENDERER_CRASHED

        job.render.process = process
        job.render.start(self.clock)

        stop = threading.Event()
        watchdog = threading.Thread(target=self._watch, args=(job, stop), name="nodewright-render-watch", daemon=True)
        watchdog.start()

        detected = ErrorType.OK
        scene_released = False
        try:
            for line in process.stdout:
                line = line.rstrip()
                if not line:
                    continue
                self.log.debug(checkpoint, line)

                if not scene_released and any(m in line for m in SCENE_LOADED_MARKERS):
                    scene_released = True
                    if on_scene_loaded is not None:
                        on_scene_loaded()

                remaining = parse_remaining(line)
                if remaining is not None:
                    job.render.remaining_seconds = remaining
                    self.gui.set_remaining_time(format_duration(remaining))

                error = detect_error(line)
                if error is not ErrorType.OK and detected is ErrorType.OK:
                    detected = error
            process.wait()
        finally:
            stop.set()
            watchdog.join(timeout=5.0)
            job.render.finish(self.clock)
            job.render.exit_code = process.returncode
            job.render.record_memory(self.platform.process_memory_kib(process))
            job.render.process = None
            if script_path is not None:
                script_path.unlink(missing_ok=True)

        self.log.debug(checkpoint, f"Renderer exited with {process.returncode} after {job.render.duration()}s "
                                   f"(peak memory {job.render.peak_memory_kib} KiB)")
        return self._outcome(job, paths, detected, checkpoint)

    def _outcome(self, job: Job, paths: JobPaths, detected: ErrorType, checkpoint: int) -> ErrorType:
        reason = job.kill_reason
        if reason is KillReason.SERVER:
            return ErrorType.RENDERER_KILLED_BY_SERVER
        if reason is KillReason.USER_OVER_TIME:
            return ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME
        if reason is KillReason.USER:
            return ErrorType.RENDERER_KILLED_BY_USER

        if detected is not ErrorType.OK:
            self.log.error(checkpoint, f"Renderer reported {detected.name}")
            return detected

        output = find_output(output_prefix(job, paths))
        if output is None:
            self.log.error(checkpoint, "Renderer did not produce an output file")
            return ErrorType.NOOUTPUTFILE
        if job.render.exit_code not in (0, None):
            self.log.error(checkpoint, f"Renderer crashed (exit code {job.render.exit_code})")
            return ErrorType.RENDERER_CRASHED

        job.output_image_path = output
        job.output_image_size = output.stat().st_size
        return ErrorType.OK
