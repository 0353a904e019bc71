"""Validation of rendered frames.

Frames whose job does not require a synchronous upload are put on a small
bounded queue drained by a single consumer thread, so the main loop can
start the next render while the previous frame is being uploaded.
"""

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from ..errors import ErrorType, RetryConfig, ServerCode
from ..ui import Gui
from ..utils import files
from ..utils.logging import CheckpointLog
from .job import Job, QueuedJob

logger = logging.getLogger(__name__)

QUEUE_CAPACITY = 5

# server answer -> (client error, worth retrying)
_VALIDATION_OUTCOMES: Dict[ServerCode, Tuple[ErrorType, bool]] = {
    ServerCode.OK: (ErrorType.OK, False),
    ServerCode.JOB_VALIDATION_ERROR_SESSION_DISABLED: (ErrorType.SESSION_DISABLED, False),
    ServerCode.JOB_VALIDATION_ERROR_BROKEN_MACHINE: (ErrorType.SESSION_DISABLED, False),
    ServerCode.JOB_VALIDATION_ERROR_IMAGE_WRONG_DIMENSION: (ErrorType.IMAGE_WRONG_DIMENSION, False),
    ServerCode.JOB_VALIDATION_ERROR_MISSING_PARAMETER: (ErrorType.UNKNOWN, False),
    ServerCode.JOB_VALIDATION_IMAGE_TOO_LARGE: (ErrorType.IMAGE_TOO_LARGE, False),
    ServerCode.SERVER_CONNECTION_FAILED: (ErrorType.NETWORK_ISSUE, True),
    ServerCode.ERROR_BAD_RESPONSE: (ErrorType.ERROR_BAD_UPLOAD_RESPONSE, True),
}


def validation_outcome(code: ServerCode) -> Tuple[ErrorType, bool]:
    """Client error of an upload answer and whether another attempt may help."""
    return _VALIDATION_OUTCOMES.get(code, (ErrorType.UNKNOWN, True))


def confirm_job(
    server,
    job: Job,
    checkpoint: int,
    gui: Gui,
    log: CheckpointLog,
    archive_dir: Optional[Path],
    sleep: Callable[[float], None] = time.sleep,
    retry: Optional[RetryConfig] = None,
) -> ErrorType:
    """Upload the frame of ``job`` to its validation URL.

    Retries with exponential backoff on transient failures. The frame is
    moved to ``archive_dir/<scene_md5>`` afterwards, whatever the outcome.

    Returns:
        ErrorType.OK once the server validated the frame, otherwise the last error
    """
    retry = retry or RetryConfig()
    if job.output_image_path is None:
        log.error(checkpoint, f"{job} has no output image to upload")
        return ErrorType.NOOUTPUTFILE

    url = (
        f"{job.validation_url}&rendertime={job.render.duration()}"
        f"&memoryused={job.render.peak_memory_kib}"
    )
    log.debug(checkpoint, f"Validation url {url}")

    delays = retry.delays()
    ret = ErrorType.UNKNOWN
    for attempt in range(1, retry.max_attempts + 1):
        code = server.upload_file(url, job.output_image_path, checkpoint)
        ret, retryable = validation_outcome(code)
        if not retryable:
            break
        delay = next(delays, None)
        if delay is None:
            break
        log.debug(checkpoint, f"Upload attempt {attempt} failed ({code.name}), retrying in {delay:.0f}s")
        sleep(delay)

    if ret is ErrorType.OK:
        if not job.is_test_frame:
            gui.add_frame_rendered()
    else:
        log.error(checkpoint, f"Unable to validate {job}: {ret.name}")

    if archive_dir is not None:
        files.move_into(job.output_image_path, Path(archive_dir) / job.scene_md5)
    return ret


class UploadCounters:
    """Number and total size of frames waiting for validation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._size = 0
        self._volume = 0

    def add(self, volume: int) -> Tuple[int, int]:
        with self._lock:
            self._size += 1
            self._volume += volume
            return self._size, self._volume

    def remove(self, volume: int) -> Tuple[int, int]:
        with self._lock:
            self._size -= 1
            self._volume -= volume
            return self._size, self._volume

    def snapshot(self) -> Tuple[int, int]:
        """(size, volume) read together."""
        with self._lock:
            return self._size, self._volume

    @property
    def size(self) -> int:
        with self._lock:
            return self._size


class UploadQueue:
    """Bounded queue of rendered frames with a single validating consumer.

    Args:
        server: Protocol client providing ``upload_file``
        gui: UI sink
        log: Checkpoint log; each queued checkpoint is closed once validated
        archive_dir: Where validated (or rejected) frames are moved
        on_failure: Called with ``(checkpoint, job, error)`` when validation fails
        capacity: Maximum number of queued frames
        sleep: Sleep function used between upload attempts
        retry: Backoff of the upload attempts
    """

    def __init__(
        self,
        server,
        gui: Gui,
        log: CheckpointLog,
        archive_dir: Optional[Path],
        on_failure: Optional[Callable[[int, Job, ErrorType], None]] = None,
        capacity: int = QUEUE_CAPACITY,
        sleep: Callable[[float], None] = time.sleep,
        retry: Optional[RetryConfig] = None,
    ):
        self.server = server
        self.gui = gui
        self.log = log
        self.archive_dir = archive_dir
        self.on_failure = on_failure
        self.sleep = sleep
        self.retry = retry or RetryConfig()
        self.counters = UploadCounters()

        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._validating = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_validating(self) -> bool:
        return self._validating.is_set()

    @property
    def size(self) -> int:
        return self.counters.size

    def outstanding(self) -> int:
        """Frames not yet validated.

        A queued frame counts until its validation finished, including while
        the consumer uploads it. A frame validated synchronously through
        :meth:`confirm` counts while it is being uploaded.
        """
        return self.counters.size + (1 if self.is_validating else 0)

    def should_wait(self, max_uploading_jobs: int) -> bool:
        """Whether the main loop must hold off before rendering another frame."""
        return self.outstanding() >= max_uploading_jobs

    def put(self, job: Job, checkpoint: int) -> None:
        """Queue the frame of ``job``; blocks while the queue is full."""
        size, volume = self.counters.add(job.output_image_size)
        self._queue.put(QueuedJob(checkpoint, job))
        self.gui.display_upload_queue_stats(size, volume)

    def confirm(self, job: Job, checkpoint: int) -> ErrorType:
        """Validate ``job`` now, flagging the queue as busy meanwhile."""
        self._validating.set()
        try:
            return confirm_job(self.server, job, checkpoint, self.gui, self.log,
                               self.archive_dir, sleep=self.sleep, retry=self.retry)
        finally:
            self._validating.clear()

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Validate one queued frame.

        Returns:
            False if nothing was queued within ``timeout``
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False

        job = item.job
        try:
            ret = confirm_job(self.server, job, item.checkpoint, self.gui, self.log,
                              self.archive_dir, sleep=self.sleep, retry=self.retry)
            if ret is not ErrorType.OK:
                self.gui.error(ret.human_string())
                if self.on_failure is not None:
                    self.on_failure(item.checkpoint, job, ret)
        finally:
            self.log.close(item.checkpoint)
            size, volume = self.counters.remove(job.output_image_size)
            self.gui.display_upload_queue_stats(size, volume)
            self._queue.task_done()
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.process_next(timeout=1.0)
            except Exception as e:
                logger.error(f"Frame validation failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="nodewright-uploader", daemon=True)
        self._thread.start()
        logger.debug("Upload consumer started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the consumer; frames still queued are abandoned."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
