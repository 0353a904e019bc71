"""Job lifecycle of the worker client.

``JobLifecycleController.run()`` is the main loop: it authenticates, then
repeatedly requests a job, downloads what the job needs, renders it and
hands the frame over for validation. Two background activities run beside
it for the whole session, the keep-alive ``Heartbeat`` and the
``UploadQueue`` consumer.
"""

import logging
import random
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlencode

from .. import __version__
from ..config import Configuration, ShutdownMode, next_request_time
from ..errors import ErrorType, ExitCode, FilesystemError, classify_filesystem_error
from ..platform import PlatformRunner
from ..ui import Gui
from ..utils import files
from ..utils.hardware import SystemInfo
from ..utils.logging import CheckpointLog
from .downloads import DownloadCoordinator
from .job import Job, JobPaths, KillReason
from .render import RenderProcess
from .server import Heartbeat, JobRequestOutcome, RequestResult, ServerProtocolClient
from .uploads import UploadQueue

logger = logging.getLogger(__name__)

# Waits after consecutive "no job" answers, in seconds
NO_JOB_BACKOFF = (300, 480, 720, 900, 1200)

# Random waits (minutes) after a failed job request
SERVER_DOWN_WAIT = (10, 30)
SERVER_OVERLOADED_WAIT = (10, 30)
MAINTENANCE_WAIT = (20, 30)
BAD_RESPONSE_WAIT = (15, 30)

ERROR_REPORT_PAUSE = 5 * 60
SLEEP_STEP = 1.0
BACKPRESSURE_POLL = 4.0
DRAIN_PAUSE = 2.3

REPORT_SEPARATOR = "=" * 100
TEST_FRAME_HINT = " The error happened during the test frame render. Restart the client and try again."

_IDLE_FOREVER = {
    JobRequestOutcome.SESSION_DISABLED: ErrorType.SESSION_DISABLED,
    JobRequestOutcome.DENOISING_UNSUPPORTED: ErrorType.DENOISING_NOT_SUPPORTED,
    JobRequestOutcome.RENDERER_UNAVAILABLE: ErrorType.RENDERER_NOT_AVAILABLE,
}


class JobLifecycleController:
    """Drives jobs from request to validation.

    Collaborators are built from the configuration when not given, tests
    inject their own. ``sleep``, ``clock`` and ``rng`` are used for every
    wait so that no test has to wait for real.

    Args:
        configuration: Client configuration
        gui: UI sink
        platform: OS runner
        log: Checkpoint log shared with the collaborators
        server: Protocol client
        downloads: Archive download coordinator
        uploads: Frame validation queue
        renderer: Renderer runner
        sleep: Sleep function (seconds)
        clock: Wall clock (seconds since the epoch)
        rng: Random source of the backoff durations
        heartbeat_interval: Seconds between two keep-alive checks
    """

    def __init__(
        self,
        configuration: Configuration,
        gui: Gui,
        platform: PlatformRunner,
        log: Optional[CheckpointLog] = None,
        server: Optional[ServerProtocolClient] = None,
        downloads: Optional[DownloadCoordinator] = None,
        uploads: Optional[UploadQueue] = None,
        renderer: Optional[RenderProcess] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        heartbeat_interval: float = 60.0,
    ):
        self.configuration = configuration
        self.gui = gui
        self.platform = platform
        self.log = log or CheckpointLog()
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

        if configuration.working_dir is None:
            configuration.setup_directories()

        if server is None:
            gpu = SystemInfo.find_gpu(configuration.gpu_device) if configuration.compute_method.uses_gpu else None
            server = ServerProtocolClient(configuration.server_url, configuration, gui, platform, self.log, gpu=gpu)
        self.server = server
        self.downloads = downloads or DownloadCoordinator(
            server, gui, configuration.shared_downloads_dir, sleep=sleep
        )
        self.uploads = uploads or UploadQueue(
            server, gui, self.log, configuration.archive_dir, on_failure=self.send_error, sleep=sleep
        )
        self.renderer = renderer or RenderProcess(platform, configuration, gui, self.log, clock=clock)
        self.heartbeat = Heartbeat(server, self._heartbeat_state, self.renderer.kill, interval=heartbeat_interval)

        self._state = threading.Condition()
        self.running = False
        self.suspended = False
        self.shutting_down = False
        self.awaiting_stop = False
        self.error_sending_disabled = False
        self.rendering_job: Optional[Job] = None

        self.no_job_retry_iter = 0
        self.start_time: Optional[float] = None
        self._halted = False
        self._exit_code = ExitCode.OK
        self._shutdown_timer: Optional[threading.Timer] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self) -> int:
        """Terminate the session: kill the render, log out, stop background threads."""
        with self._state:
            if self.error_sending_disabled:
                return 0
            self.running = False
            self.error_sending_disabled = True
            job = self.rendering_job
            self._state.notify_all()

        if job is not None:
            self.gui.status("Stopping")
            job.request_kill(KillReason.USER)
            if job.render.process is not None:
                self.renderer.kill(job)

        if self._shutdown_timer is not None:
            self._shutdown_timer.cancel()

        self.configuration.remove_working_directory()

        if self.server.resolve_endpoint("logout"):
            self.gui.status("Disconnecting from server")
            self.server.logout()
        self.heartbeat.stop()
        self.uploads.stop()
        return 0

    def suspend(self) -> None:
        with self._state:
            self.suspended = True
        self.gui.status("Client will pause when the current job finishes", overwrite=True)

    def resume(self) -> None:
        with self._state:
            self.suspended = False
            self._state.notify_all()

    def ask_for_stop(self) -> None:
        """Finish the current job and pending uploads, then exit."""
        logger.debug("Stop requested, waiting for the current job")
        with self._state:
            self.running = False
            self.awaiting_stop = True

    def cancel_stop(self) -> None:
        logger.debug("Stop request cancelled")
        with self._state:
            self.running = True
            self.awaiting_stop = False

    @property
    def _stopped(self) -> bool:
        return self.error_sending_disabled

    def _heartbeat_state(self):
        return self.suspended, self.rendering_job

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep ``seconds`` in short steps, returning early on stop or shutdown."""
        slept = 0.0
        while slept < seconds and self.running and not self.shutting_down:
            step = min(SLEEP_STEP, seconds - slept)
            self.sleep(step)
            slept += step

    def _idle_until_shutdown(self) -> None:
        """Keep the last message on screen until the client is shut down."""
        while not self.shutting_down and not self._stopped:
            self.sleep(SLEEP_STEP)

    def _wait_while_suspended(self) -> None:
        with self._state:
            if self.suspended:
                self.gui.status("Client paused", overwrite=True)
            while self.suspended and not self.shutting_down and not self._stopped:
                self._state.wait(timeout=SLEEP_STEP)

    def _wait_for_request_window(self) -> None:
        now = datetime.fromtimestamp(self.clock())
        next_time = next_request_time(self.configuration.request_time, now)
        if next_time is None:
            return
        self.gui.status(f"Waiting until {next_time:%H:%M} before requesting job")
        self._interruptible_sleep((next_time - now).total_seconds())

    def _random_wait(self, minutes_range, message: str) -> None:
        minutes = self.rng.randint(*minutes_range)
        seconds = minutes * 60
        retry_at = datetime.fromtimestamp(self.clock() + seconds)
        self.gui.status(f"{message} Will try again at {retry_at:%H:%M}")
        self._interruptible_sleep(seconds)

    def next_no_job_wait(self) -> int:
        """Seconds to wait after a "no job" answer; escalates up to the last step."""
        index = min(self.no_job_retry_iter, len(NO_JOB_BACKOFF) - 1)
        if self.no_job_retry_iter < len(NO_JOB_BACKOFF):
            self.no_job_retry_iter += 1
        return NO_JOB_BACKOFF[index]

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Serve jobs until stopped.

        Returns:
            Process exit code (see ExitCode)
        """
        if not self.platform.is_supported():
            self.gui.error(ErrorType.OS_NOT_SUPPORTED.human_string())
            return ExitCode.OS_NOT_SUPPORTED
        if not self.platform.cpu().have_data():
            self.gui.error(ErrorType.CPU_NOT_SUPPORTED.human_string())
            return ExitCode.CPU_NOT_SUPPORTED

        with self._state:
            self.running = True

        try:
            return self._run()
        except Exception as e:
            logger.error(f"Unexpected failure of the main loop: {e}", exc_info=True)
            return ExitCode.UNKNOWN

    def _run(self) -> int:
        step = self.log.open()
        self.gui.status("Starting")
        ret = self.server.handshake()
        if ret is not ErrorType.OK:
            self.gui.error(ret.human_string())
            if ret is not ErrorType.AUTHENTICATION_FAILED:
                for line in self.log.lines(step):
                    logger.error(line)
            self.log.close(step)
            return ExitCode.AUTHENTICATION_FAILED
        self.log.close(step)

        self._schedule_shutdown()
        self._report_configuration()
        self.configuration.clean_working_directory()

        self.start_time = self.clock()
        self.heartbeat.start()
        self.uploads.start()

        while True:
            while self.running and not self._halted:
                code = self._serve_one()
                if code is not None:
                    return code

            # the main loop only exits once the pending frames are sent,
            # unless stop() abandoned them
            if self._stopped:
                break
            self.sleep(DRAIN_PAUSE)
            if self.uploads.size <= 0 and (self._halted or not self.running):
                break
            self.gui.status("Uploading rendered frames before exiting. Please wait")

        if self.shutting_down:
            logger.info("Shutting down the computer in 1 minute")
            self.platform.shutdown_computer(1)
        self.gui.stop()
        return self._exit_code

    def _serve_one(self) -> Optional[int]:
        """One iteration of the main loop. Returns an exit code to terminate."""
        with self._state:
            self.rendering_job = None
        self._wait_while_suspended()

        step = self.log.open()
        self._wait_for_request_window()
        if not self.running or self.shutting_down:
            self.log.close(step)
            return None

        self.gui.status("Requesting Job")
        result = self.server.request_job()
        if result.outcome is JobRequestOutcome.NO_SESSION:
            result = self._renew_session(step)
            if result is None:
                self.log.close(step)
                return None

        if not result.has_job:
            code = self._handle_request_failure(step, result)
            self.log.close(step)
            return code

        return self._process_job(step, result.job)

    def _renew_session(self, step: int) -> Optional[RequestResult]:
        self.log.debug(step, "Session expired, authenticating again")
        if self.server.handshake() is not ErrorType.OK:
            return RequestResult.failure(JobRequestOutcome.NO_JOB, "re-authentication failed")

        # the server started a new session
        self.start_time = self.clock()
        self._wait_for_request_window()
        if not self.running or self.shutting_down:
            return None

        self.gui.status("Requesting Job")
        result = self.server.request_job()
        if result.has_job:
            return result
        return RequestResult.failure(JobRequestOutcome.NO_JOB, result.detail)

    def _handle_request_failure(self, step: int, result: RequestResult) -> Optional[int]:
        outcome = result.outcome
        if outcome is JobRequestOutcome.NO_RIGHTS:
            self.gui.error("User does not have enough right to render scene")
            return ExitCode.NO_RENDERING_RIGHT

        if outcome in _IDLE_FOREVER:
            self.gui.error(_IDLE_FOREVER[outcome].human_string())
            self._idle_until_shutdown()
        elif outcome is JobRequestOutcome.SERVER_DOWN:
            self._random_wait(SERVER_DOWN_WAIT, "Cannot connect to the server. Please check your connectivity.")
        elif outcome is JobRequestOutcome.SERVER_OVERLOADED:
            self._random_wait(SERVER_OVERLOADED_WAIT, "The server is overloaded and cannot allocate a job.")
        elif outcome is JobRequestOutcome.IN_MAINTENANCE:
            self._random_wait(MAINTENANCE_WAIT, "The server is under maintenance and cannot allocate a job.")
        elif outcome is JobRequestOutcome.BAD_RESPONSE:
            self._random_wait(BAD_RESPONSE_WAIT, "Bad answer from the server.")
        elif outcome is JobRequestOutcome.ERROR:
            self.gui.error(f"Job request failed: {result.detail}")
            self.log.error(step, f"Job request failed: {result.detail}")
            self.send_error(step)
        else:
            wait = self.next_no_job_wait()
            retry_at = datetime.fromtimestamp(self.clock() + wait)
            self.gui.status(f"No job available. Will try again at {retry_at:%H:%M}")
            self._interruptible_sleep(wait)
        return None

    def _process_job(self, step: int, job: Job) -> Optional[int]:
        with self._state:
            self.rendering_job = job
        self.log.debug(step, f"Got work to do id: {job.id} frame: {job.frame_number}")
        self.no_job_retry_iter = 0

        ret = self.work(job, step)
        if ret is not ErrorType.OK:
            with self._state:
                self.rendering_job = None
            self.gui.error(ret.human_string())
            self.send_error(step, job, ret)
            self.log.close(step)

            if ret.is_filesystem_fatal:
                return ExitCode.FILESYSTEM_FATAL

            if job.is_test_frame:
                self.gui.error(ret.human_string() + TEST_FRAME_HINT)
                self._idle_until_shutdown()
                self._halted = True
                self._exit_code = ExitCode.USER_ABORT_DURING_TEST_FRAME
            return None

        size_mb = job.output_image_size / 1024.0 / 1024.0
        if job.synchronous_upload:
            self.gui.status(f"Uploading frame ({size_mb:.2f}MB)")
            ret = self.uploads.confirm(job, step)
            if ret is not ErrorType.OK:
                self.gui.error(f"Frame validation failed (returned {ret.name})")
                self.send_error(step, job, ErrorType.VALIDATION_FAILED)
            self.log.close(step)
        else:
            self.gui.status(f"Queuing frame for upload ({size_mb:.2f}MB)")
            # the queue owns the checkpoint from now on
            self.uploads.put(job, step)
        with self._state:
            self.rendering_job = None

        if self.uploads.should_wait(self.configuration.max_uploading_jobs):
            self.gui.status("Sending frames. Please wait")
            while self.uploads.should_wait(self.configuration.max_uploading_jobs) and not self._stopped:
                self.sleep(BACKPRESSURE_POLL)
        return None

    # ------------------------------------------------------------------
    # Job work
    # ------------------------------------------------------------------

    def _archive_url(self, archive_type: str, job: Job) -> str:
        base = self.server.resolve_endpoint("download-archive")
        return f"{base}?{urlencode({'type': archive_type, 'job': job.id})}"

    def work(self, job: Job, step: int = CheckpointLog.GLOBAL) -> ErrorType:
        """Download, extract and render ``job``.

        Returns:
            ErrorType.OK with the job's output image set, otherwise the failure
        """
        self.gui.set_rendering_project_name(job.name)
        paths = JobPaths.for_job(job, self.configuration, self.platform.renderer_binary)

        try:
            ret, _ = self.downloads.acquire(job.renderer_md5, self._archive_url("binary", job),
                                            "renderer", paths.renderer_archive, job)
            if ret is not ErrorType.OK:
                self.gui.set_rendering_project_name("")
                self.log.error(step, f"Renderer download failed ({ret.name})")
                return ret

            ret, _ = self.downloads.acquire(job.scene_md5, self._archive_url("job", job),
                                            "project", paths.scene_archive, job)
            if ret is not ErrorType.OK:
                self.gui.set_rendering_project_name("")
                self.log.error(step, f"Project download failed ({ret.name})")
                return ret

            if not self.prepare_working_directory(job, paths, step):
                self.gui.set_rendering_project_name("")
                return ErrorType.CAN_NOT_CREATE_DIRECTORY
        except FilesystemError as e:
            self.gui.set_rendering_project_name("")
            self.log.error(step, f"Job preparation failed: {e}")
            return e.error_type

        if not paths.scene_path.exists():
            self.gui.set_rendering_project_name("")
            self.log.error(step, f"Scene file {paths.scene_path} does not exist, cleaning directory in hope to recover")
            self.configuration.clean_working_directory()
            return ErrorType.MISSING_SCENE

        if not paths.renderer_path.exists():
            self.gui.set_rendering_project_name("")
            self.log.error(step, f"Renderer {paths.renderer_path} does not exist, cleaning directory in hope to recover")
            self.configuration.clean_working_directory()
            return ErrorType.MISSING_RENDERER

        def archive_scene() -> None:
            files.move_into(paths.scene_path, self.configuration.archive_dir / job.scene_md5)

        ret = self.renderer.render(job, paths, step, on_scene_loaded=archive_scene)
        self.gui.set_rendering_project_name("")
        self.gui.set_remaining_time("")
        self.gui.set_rendering_time("")
        self.gui.set_compute_method("")

        if ret is not ErrorType.OK:
            self.log.error(step, f"Render failed ({ret.name})")
            if ret is ErrorType.RENDERER_CRASHED_PYTHON_ERROR:
                self.log.error(step, "Render failed with a script error, cleaning directory in hope to recover")
                self.configuration.clean_working_directory()
            return ret
        return ErrorType.OK

    def prepare_working_directory(self, job: Job, paths: JobPaths, step: int = CheckpointLog.GLOBAL) -> bool:
        """Extract the renderer and scene archives unless already extracted.

        Raises:
            FilesystemError: If extraction failed because of the disk
        """
        if not paths.renderer_directory.exists():
            self.gui.status("Extracting renderer")
            if not self._extract(paths.renderer_archive, paths.renderer_directory, None, step):
                self.gui.error("Unable to extract the renderer")
                return False
            files.make_tree_executable(paths.renderer_directory)

        if not paths.scene_directory.exists():
            self.gui.status("Extracting project")
            if not self._extract(paths.scene_archive, paths.scene_directory, job.password, step):
                self.gui.error("Unable to extract the scene")
                return False
        return True

    def _extract(self, archive: Path, directory: Path, password: Optional[str], step: int) -> bool:
        try:
            directory.mkdir(parents=True)
            extracted = files.unzip_into(archive, directory, password)
        except OSError as e:
            self.log.error(step, f"Unable to create {directory}: {e}")
            extracted = False

        if extracted:
            return True
        self.log.error(step, f"Unable to extract {archive} into {directory}")
        failure = classify_filesystem_error(directory / archive.name)
        files.delete(directory)
        if failure is not None:
            raise failure(f"Unable to extract {archive.name}")
        return False

    # ------------------------------------------------------------------
    # Error reports
    # ------------------------------------------------------------------

    def _report_header(self, job: Optional[Job], error: Optional[ErrorType]) -> List[str]:
        config = self.configuration
        cpu = self.platform.cpu()
        cores = config.cores if config.cores > 0 else cpu.cores
        memory_kib = config.max_memory_kib if config.max_memory_kib > 0 else self.platform.total_memory_kib()

        lines = [
            REPORT_SEPARATOR,
            f"{config.login}  /  {config.hostname}  /  {self.platform.name}  /  nodewright v{__version__}",
            f"{cpu.name}  x{cores}  {memory_kib / 1024.0 / 1024.0:.1f} GB RAM",
        ]
        gpu = self.server.gpu
        if config.compute_method.uses_gpu and gpu is not None:
            lines.append(f"{gpu.id}   {gpu.model}   {gpu.memory / 1024.0 ** 3:.1f} GB VRAM")
        lines.append(REPORT_SEPARATOR)
        if job is not None:
            lines.append(f"Project ::: {job.name}")
            lines.append(f"Project id: {job.id}  frame: {job.frame_number}")
            lines.append("")
            lines.append(f"ERROR Type :: {error.name if error else 'N/A'}")
        else:
            lines.append("Project ::: No project allocated.")
            lines.append(f"ERROR Type :: {error.name if error else 'N/A'}")
        lines.append(REPORT_SEPARATOR)
        lines.append("")
        return lines

    def send_error(self, step: int, job: Optional[Job] = None, error: Optional[ErrorType] = None) -> None:
        """Upload a diagnostic report of checkpoint ``step`` to the server.

        Disabled once ``stop()`` has run. Unless ``error`` allows an immediate
        new request, pauses for five minutes afterwards.
        """
        if self.error_sending_disabled:
            logger.debug("Error sending is disabled, do not send log")
            return

        logger.debug(f"Sending error to server (type: {error.name if error else None})")
        url = self.server.resolve_endpoint("error")
        report: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile("w", prefix="farm_", suffix=".txt", delete=False,
                                             encoding="utf-8") as output:
                report = Path(output.name)
                output.write("\n".join(self._report_header(job, error)) + "\n")
                for line in self.log.lines(step):
                    output.write(line + "\n")

            if url:
                params = {"type": str(error.value) if error is not None else ""}
                if job is not None:
                    params.update({
                        "frame": job.frame_number,
                        "job": job.id,
                        "render_time": str(job.render.duration()),
                        "memoryused": str(job.render.peak_memory_kib),
                    })
                self.server.upload_file(f"{url}?{urlencode(params)}", report, step)
        except OSError as e:
            logger.debug(f"Unable to send the error report: {e}")
        finally:
            files.delete(report)

        if error is None or not error.allows_immediate_request:
            self._interruptible_sleep(ERROR_REPORT_PAUSE)

    def _report_configuration(self) -> None:
        step = self.log.open()
        cpu = self.platform.cpu()
        self.log.info(step, f"HWID: {SystemInfo.get_hwid()}")
        self.log.info(step, f"OS: {self.platform.version()} {cpu.arch}")
        for line in self.configuration.report_lines():
            self.log.info(step, line)
        self.send_error(step, None, ErrorType.OK)
        self.log.close(step)

    # ------------------------------------------------------------------
    # Scheduled shutdown
    # ------------------------------------------------------------------

    def _schedule_shutdown(self) -> None:
        when = self.configuration.shutdown_time
        if when is None:
            return
        delay = max(0.0, when.timestamp() - self.clock())
        logger.info(f"Computer shutdown scheduled at {when:%Y-%m-%d %H:%M} ({self.configuration.shutdown_mode.value})")
        self._shutdown_timer = threading.Timer(delay, self.on_shutdown_time)
        self._shutdown_timer.daemon = True
        self._shutdown_timer.start()

    def on_shutdown_time(self) -> None:
        """Scheduled shutdown reached."""
        with self._state:
            self.shutting_down = True
            self._state.notify_all()
        logger.info("Initiating the computer's shutdown")
        if self.configuration.shutdown_mode is ShutdownMode.WAIT:
            self.ask_for_stop()
        else:
            self.stop()
