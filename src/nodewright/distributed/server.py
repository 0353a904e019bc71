"""HTTP protocol client of the render farm server.

Every call is synchronous and goes through one ``requests.Session`` so the
server's session cookie is kept across calls. Operational endpoints are
never hard-coded: the handshake returns a map of logical names
(``request-job``, ``keepmealive``, ``error``...) to paths.
"""

import logging
import mimetypes
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from .. import __version__
from ..config import Configuration
from ..errors import (
    ErrorType,
    ProtocolError,
    ServerCode,
    classify_filesystem_error,
    server_code_to_error_type,
)
from ..platform import PlatformRunner
from ..ui import Gui
from ..utils.files import delete, format_bytes
from ..utils.hardware import GPUDevice, SystemInfo
from ..utils.logging import CheckpointLog
from ..utils.stats import TransferStats
from .job import Job, KillReason
from .payloads import (
    ServerConfig,
    build_md5_cache,
    build_speedtest_answer,
    parse_job_request,
    parse_server_config,
    parse_status,
)
from .speedtest import SpeedTest

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30
WRITE_TIMEOUT = 60
READ_TIMEOUT = 60
PROXY_READ_TIMEOUT = 10 * 60

DEFAULT_KEEPMEALIVE = 15 * 60
KEEPMEALIVE_MARGIN = 120
DOWNLOAD_CHUNK = 8 * 1024
PROGRESS_STEP = 1000 * 1000
SPEEDTEST_RESULTS = 3


class JobRequestOutcome(Enum):
    """Closed set of answers to a job request."""
    JOB = "job"
    NO_JOB = "no_job"
    NO_RIGHTS = "no_rights"
    SESSION_DISABLED = "session_disabled"
    DENOISING_UNSUPPORTED = "denoising_unsupported"
    RENDERER_UNAVAILABLE = "renderer_unavailable"
    NO_SESSION = "no_session"
    SERVER_DOWN = "server_down"
    SERVER_OVERLOADED = "server_overloaded"
    IN_MAINTENANCE = "in_maintenance"
    BAD_RESPONSE = "bad_response"
    ERROR = "error"


_OUTCOME_BY_CODE = {
    ServerCode.JOB_REQUEST_NOJOB: JobRequestOutcome.NO_JOB,
    ServerCode.JOB_REQUEST_ERROR_NO_RENDERING_RIGHT: JobRequestOutcome.NO_RIGHTS,
    ServerCode.JOB_REQUEST_ERROR_DEAD_SESSION: JobRequestOutcome.NO_SESSION,
    ServerCode.JOB_REQUEST_ERROR_SESSION_DISABLED: JobRequestOutcome.SESSION_DISABLED,
    ServerCode.JOB_REQUEST_ERROR_SESSION_DISABLED_DENOISING_NOT_SUPPORTED: JobRequestOutcome.DENOISING_UNSUPPORTED,
    ServerCode.JOB_REQUEST_ERROR_INTERNAL_ERROR: JobRequestOutcome.BAD_RESPONSE,
    ServerCode.JOB_REQUEST_ERROR_RENDERER_NOT_AVAILABLE: JobRequestOutcome.RENDERER_UNAVAILABLE,
    ServerCode.JOB_REQUEST_SERVER_IN_MAINTENANCE: JobRequestOutcome.IN_MAINTENANCE,
    ServerCode.JOB_REQUEST_SERVER_OVERLOADED: JobRequestOutcome.SERVER_OVERLOADED,
}


@dataclass(frozen=True)
class RequestResult:
    """Result of ``ServerProtocolClient.request_job``.

    ``job`` is set only when ``outcome`` is JOB; ``detail`` describes failures.
    """
    outcome: JobRequestOutcome
    job: Optional[Job] = None
    detail: str = ""

    @classmethod
    def granted(cls, job: Job) -> "RequestResult":
        return cls(JobRequestOutcome.JOB, job)

    @classmethod
    def failure(cls, outcome: JobRequestOutcome, detail: str = "") -> "RequestResult":
        return cls(outcome, None, detail)

    @property
    def has_job(self) -> bool:
        return self.outcome is JobRequestOutcome.JOB


def _content_type(response: requests.Response) -> str:
    return response.headers.get("Content-Type", "")


def _truncate(path: Path) -> None:
    try:
        with open(path, "wb"):
            pass
    except OSError as e:
        logger.debug(f"Unable to empty {path}: {e}")


def _mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(str(path))
    if guessed:
        return guessed
    suffix = path.suffix.lower()
    if suffix == ".tga":
        return "image/tga"
    if suffix == ".exr":
        return "image/x-exr"
    return "application/octet-stream"


class ServerProtocolClient:
    """Talks to the server on behalf of the lifecycle controller.

    Args:
        base_url: Server root URL
        configuration: Client configuration (the password may be rotated)
        gui: UI sink
        platform: OS runner, for machine introspection
        log: Checkpoint log shared with the controller
        session: HTTP session (one is created when omitted)
        gpu: GPU reported in job requests when GPU rendering is enabled
        clock: Wall clock in seconds
    """

    def __init__(
        self,
        base_url: str,
        configuration: Configuration,
        gui: Gui,
        platform: PlatformRunner,
        log: CheckpointLog,
        session: Optional[requests.Session] = None,
        gpu: Optional[GPUDevice] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.configuration = configuration
        self.gui = gui
        self.platform = platform
        self.log = log
        self.gpu = gpu
        self.clock = clock

        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = f"nodewright/{__version__}"
        if configuration.proxy:
            self.session.proxies.update({"http": configuration.proxy, "https": configuration.proxy})

        self.server_config: Optional[ServerConfig] = None
        self.download_stats = TransferStats()
        self.upload_stats = TransferStats()
        self.keepmealive_duration = DEFAULT_KEEPMEALIVE
        self.session_started = False
        self._last_request_time = 0.0
        self._time_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @property
    def timeout(self) -> Tuple[int, int]:
        """(connect, read) timeout; proxies buffer whole responses before relaying."""
        read = PROXY_READ_TIMEOUT if self.configuration.proxy else READ_TIMEOUT
        return CONNECT_TIMEOUT, read

    @property
    def upload_timeout(self) -> Tuple[int, int]:
        return CONNECT_TIMEOUT, WRITE_TIMEOUT

    @property
    def last_request_time(self) -> float:
        with self._time_lock:
            return self._last_request_time

    def _touch(self) -> None:
        with self._time_lock:
            self._last_request_time = self.clock()

    def idle_seconds(self) -> float:
        return self.clock() - self.last_request_time

    def resolve_endpoint(self, name: str) -> str:
        """Absolute URL of a logical endpoint, or '' when the server did not declare it."""
        if self.server_config is not None:
            endpoint = self.server_config.endpoint(name)
            if endpoint is not None:
                return self.base_url + endpoint.path
        return ""

    def request(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        """GET (or POST when ``data`` is given) and record the request time."""
        logger.debug(f"HTTP request {url} params={params}")
        if data is None:
            response = self.session.get(url, params=params, timeout=self.timeout, stream=stream)
        else:
            response = self.session.post(url, params=params, data=data, headers=headers,
                                         timeout=self.timeout, stream=stream)
        if not response.ok:
            logger.error(f"Unsuccessful HTTP response {response.status_code} from {url}")
        self._touch()
        return response

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _cores(self, cpu_cores: int) -> int:
        if self.configuration.cores <= 0:
            return cpu_cores
        return max(1, self.configuration.cores)

    def handshake(self) -> ErrorType:
        """Authenticate and fetch the endpoint map.

        Returns:
            ErrorType.OK once the session is started, otherwise the reason
        """
        cpu = self.platform.cpu()
        form = {
            "login": self.configuration.login,
            "password": self.configuration.password,
            "cpu_family": cpu.family,
            "cpu_model": cpu.model,
            "cpu_model_name": cpu.name,
            "cpu_cores": str(self._cores(cpu.cores)),
            "os": self.platform.name,
            "os_version": self.platform.version(),
            "ram": str(self.platform.total_memory_kib()),
            "bits": cpu.arch,
            "version": __version__,
            "hostname": self.configuration.hostname,
            "ui": type(self.gui).__name__,
            "extras": self.configuration.extras,
            "headless": "1" if self.configuration.headless else "0",
            "hwid": SystemInfo.get_hwid(),
        }

        url = f"{self.base_url}/server/config.php"
        try:
            response = self.request(url, data=form)
        except requests.ConnectionError as e:
            logger.error(f"Handshake: unable to connect to {url}: {e}")
            return ErrorType.NETWORK_ISSUE
        except requests.RequestException as e:
            logger.error(f"Handshake: request failed: {e}")
            return ErrorType.UNKNOWN

        if response.status_code == 404:
            # the front proxy answers but the server instance is down
            return ErrorType.SERVER_DOWN
        if response.status_code != 200 or not _content_type(response).startswith("text/xml"):
            return ErrorType.ERROR_BAD_SERVER_RESPONSE

        try:
            server_config = parse_server_config(response.text)
        except ProtocolError as e:
            logger.error(f"Handshake: {e}")
            return ErrorType.ERROR_BAD_SERVER_RESPONSE

        if server_config.status is not ServerCode.OK:
            return server_code_to_error_type(server_config.status)

        self.server_config = server_config
        if server_config.public_key:
            self.configuration.password = server_config.public_key

        keepmealive = server_config.endpoint("keepmealive")
        if keepmealive is not None and keepmealive.max_period:
            self.keepmealive_duration = max(60, keepmealive.max_period - KEEPMEALIVE_MARGIN)

        if server_config.speedtest_targets:
            ret = self._speedtest(server_config)
            if ret is not ErrorType.OK:
                return ret

        self.session_started = True
        self.gui.successful_authentication_event(server_config.public_key)
        return ErrorType.OK

    def _speedtest(self, server_config: ServerConfig) -> ErrorType:
        self.gui.status("Checking mirror connection speeds")
        results = SpeedTest(self.session, timeout=self.timeout).best(
            server_config.speedtest_targets, SPEEDTEST_RESULTS
        )
        for result in results:
            self.download_stats.add(result.speed, 1000)

        url = self.resolve_endpoint("speedtest-answer")
        if not url:
            return ErrorType.OK
        try:
            response = self.request(url, data=build_speedtest_answer(results),
                                    headers={"Content-Type": "application/xml"})
        except requests.RequestException as e:
            logger.error(f"Speed test answer failed: {e}")
            return ErrorType.NETWORK_ISSUE
        if response.status_code != 200:
            logger.error("Speed test answer: unexpected response")
            return ErrorType.ERROR_BAD_SERVER_RESPONSE
        return ErrorType.OK

    def logout(self) -> None:
        """Best effort logout; failures are ignored."""
        url = self.resolve_endpoint("logout")
        if not url:
            return
        try:
            self.request(url)
        except requests.RequestException as e:
            logger.debug(f"Logout failed: {e}")

    # ------------------------------------------------------------------
    # Job request
    # ------------------------------------------------------------------

    def available_memory_kib(self) -> int:
        """Memory offered to the server: the configured cap bounded by live free memory."""
        reserve = self.configuration.memory_reserve_for(self.platform.name)
        free = self.platform.free_memory_kib() - reserve
        maximum = self.configuration.max_memory_kib
        if maximum < 0:
            return free
        if free > 0:
            return min(maximum, free)
        return maximum

    def job_request_params(self) -> Dict[str, str]:
        config = self.configuration
        params = {
            "computemethod": str(config.compute_method.value),
            "network_dl": str(self.download_stats.average_speed),
            "network_up": str(self.upload_stats.average_speed),
            "cpu_cores": str(self._cores(self.platform.cpu().cores)),
            "ram_max": str(self.available_memory_kib()),
            "rendertime_max": str(config.max_render_time),
        }
        if config.compute_method.uses_gpu and self.gpu is not None:
            params["gpu_model"] = self.gpu.model
            params["gpu_ram"] = str(self.gpu.memory)
            params["gpu_type"] = self.gpu.type
        return params

    def request_job(self) -> RequestResult:
        """Ask the server for a frame to render."""
        url = self.resolve_endpoint("request-job")
        if not url:
            return RequestResult.failure(JobRequestOutcome.NO_SESSION, "no request-job endpoint")

        manifest = build_md5_cache(p.stem for p in self.configuration.local_cache_files())
        try:
            response = self.request(url, params=self.job_request_params(), data=manifest,
                                    headers={"Content-Type": "application/xml"})
        except requests.ConnectionError as e:
            return RequestResult.failure(JobRequestOutcome.SERVER_DOWN, str(e))
        except requests.RequestException as e:
            return RequestResult.failure(JobRequestOutcome.ERROR, f"request failed: {e}")

        if response.status_code in (503, 408):
            logger.error(f"Job request: server unavailable ({response.status_code})")
            return RequestResult.failure(JobRequestOutcome.SERVER_DOWN, f"HTTP {response.status_code}")
        if not _content_type(response).startswith("text/xml"):
            logger.error(f"Job request: bad content type {_content_type(response)!r}")
            return RequestResult.failure(JobRequestOutcome.BAD_RESPONSE, "content type is not XML")
        if response.status_code != 200:
            return RequestResult.failure(JobRequestOutcome.ERROR, f"HTTP {response.status_code}")

        try:
            answer = parse_job_request(response.text)
        except ProtocolError as e:
            return RequestResult.failure(JobRequestOutcome.BAD_RESPONSE, str(e))

        self._apply_file_actions(answer.file_actions)
        if answer.session_stats is not None:
            self.gui.display_stats(answer.session_stats)

        if answer.status is ServerCode.OK:
            return RequestResult.granted(answer.job)
        outcome = _OUTCOME_BY_CODE.get(answer.status)
        if outcome is None:
            return RequestResult.failure(JobRequestOutcome.ERROR, f"status is {answer.status.name}")
        return RequestResult.failure(outcome, answer.status.name)

    def _apply_file_actions(self, actions) -> None:
        config = self.configuration
        for action in actions:
            if action.action != "delete":
                continue
            base = config.working_dir / action.md5
            logger.debug(f"Server asked to delete cached archive {action.md5}")
            delete(base.with_name(f"{action.md5}.zip"))
            delete(base)
            if config.shared_downloads_dir is not None:
                delete(config.shared_downloads_dir / f"{action.md5}.zip")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def send_heartbeat(self, paused: bool, job: Optional[Job] = None) -> ServerCode:
        """Send a keep-alive carrying render progress. Returns the answer's status."""
        url = self.resolve_endpoint("keepmealive")
        if not url:
            return ServerCode.UNKNOWN
        params = {"paused": str(paused).lower()}
        if job is not None:
            params["frame"] = job.frame_number
            params["job"] = job.id
            params["rendertime"] = str(job.render.duration())
            params["remainingtime"] = str(job.render.remaining_seconds)

        try:
            response = self.request(url, params=params)
        except requests.RequestException as e:
            logger.debug(f"Keep-alive failed: {e}")
            return ServerCode.SERVER_CONNECTION_FAILED

        if response.status_code != 200 or not _content_type(response).startswith("text/xml"):
            return ServerCode.ERROR_BAD_RESPONSE
        return parse_status(response.text, "keepmealive")

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    def download_file(self, url: str, destination: Path, job: Optional[Job] = None,
                      status: str = "") -> ErrorType:
        """Stream ``url`` into ``destination`` through ``<destination>.partial``.

        A ``.partial`` file that already exists is the download sentinel of
        the caller. On failure it is emptied rather than removed so that the
        caller keeps the download across its retries.

        Raises:
            FilesystemError: If the local write failed because of the disk
        """
        destination = Path(destination)
        partial = destination.with_name(destination.name + ".partial")
        claimed = partial.exists()
        completed = False
        try:
            with self.request(url, stream=True) as response:
                if response.status_code != 200:
                    logger.error(f"Download of {url}: HTTP {response.status_code}")
                    return ErrorType.DOWNLOAD_FILE

                size = int(response.headers.get("Content-Length", -1))
                written = 0
                last_update = 0
                start = time.monotonic()
                with open(partial, "wb") as output:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        if job is not None:
                            if job.server_blocked:
                                return ErrorType.RENDERER_KILLED_BY_SERVER
                            if job.user_blocked:
                                return ErrorType.RENDERER_KILLED_BY_USER
                        output.write(chunk)
                        written += len(chunk)
                        if written - last_update > PROGRESS_STEP:
                            if size > 0:
                                self.gui.status(status, int(100 * written / size))
                            last_update = written

                elapsed_ms = int((time.monotonic() - start) * 1000)
                self.download_stats.add(written, elapsed_ms)
                self.gui.display_transfer_stats(self.download_stats, self.upload_stats)
                self.gui.status(status, 100)
                logger.debug(f"Downloaded {format_bytes(written)} from {url} in {elapsed_ms}ms")

            partial.replace(destination)
            completed = True
            self._touch()
            return ErrorType.OK
        except OSError as e:
            # requests exceptions are OSErrors too: a network failure on a
            # healthy disk is classified as nothing and retried by the caller
            failure = classify_filesystem_error(destination)
            if failure is not None:
                raise failure(f"Unable to write {destination}: {e}") from e
            logger.error(f"Download of {url} failed: {e}")
        finally:
            if not completed:
                if claimed:
                    _truncate(partial)
                else:
                    delete(partial)
        return ErrorType.DOWNLOAD_FILE

    def upload_file(self, url: str, path: Path, checkpoint: int = CheckpointLog.GLOBAL) -> ServerCode:
        """POST ``path`` as a multipart form and map the answer to a status."""
        path = Path(path)
        self.log.debug(checkpoint, f"Uploading {path} to {url}")
        try:
            size = path.stat().st_size
            start = time.monotonic()
            with open(path, "rb") as f:
                response = self.session.post(
                    url,
                    files={"file": (path.name, f, _mime_type(path))},
                    timeout=self.upload_timeout,
                )
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self.upload_stats.add(size, elapsed_ms)
            self.gui.display_transfer_stats(self.download_stats, self.upload_stats)
            self.log.debug(checkpoint, f"Uploaded {format_bytes(size)} in {elapsed_ms}ms")
        except requests.ConnectionError as e:
            self.log.error(checkpoint, f"Upload of {path} failed: {e}")
            return ServerCode.SERVER_CONNECTION_FAILED
        except MemoryError as e:
            self.log.error(checkpoint, f"Upload of {path} ran out of memory: {e}")
            return ServerCode.JOB_VALIDATION_ERROR_UPLOAD_FAILED
        except (requests.RequestException, OSError) as e:
            self.log.error(checkpoint, f"Upload of {path} failed: {e}")
            return ServerCode.UNKNOWN

        content_type = _content_type(response)
        if response.status_code == 200 and content_type.startswith("text/xml"):
            self._touch()
            code = parse_status(response.text, "jobvalidate")
            if code in (ServerCode.ERROR_NO_ROOT, ServerCode.UNKNOWN):
                # unparsable body on a 200 is accepted as a validation
                return ServerCode.OK
            if code is not ServerCode.OK:
                self.log.error(checkpoint, f"Upload answered with status {code.name}")
            return code
        if response.status_code == 200 and content_type.startswith("text/html"):
            return ServerCode.ERROR_BAD_RESPONSE
        if response.status_code == 413:
            self.log.error(checkpoint, f"Upload too large: {response.text[:200]}")
            return ServerCode.JOB_VALIDATION_IMAGE_TOO_LARGE
        if response.status_code == 500:
            return ServerCode.ERROR_BAD_RESPONSE
        self.log.error(checkpoint, f"Unknown upload answer {response.status_code}: {response.text[:200]}")
        return ServerCode.UNKNOWN


class Heartbeat:
    """Background keep-alive.

    Wakes every ``interval`` seconds and sends a keep-alive only when the
    server has not heard from the client for ``server.keepmealive_duration``.
    A "stop rendering" answer kills the active render with a server
    attribution.

    Args:
        server: Protocol client
        state: Callable returning ``(paused, rendering_job)``
        kill_render: Callable killing the process of the given job
        interval: Seconds between checks
    """

    def __init__(
        self,
        server: ServerProtocolClient,
        state: Callable[[], Tuple[bool, Optional[Job]]],
        kill_render: Callable[[Job], None],
        interval: float = 60.0,
    ):
        self.server = server
        self.state = state
        self.kill_render = kill_render
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> Optional[ServerCode]:
        """Run one check; returns the keep-alive status when one was sent."""
        if self.server.idle_seconds() <= self.server.keepmealive_duration:
            return None
        paused, job = self.state()
        code = self.server.send_heartbeat(paused, job)
        if code is ServerCode.KEEPMEALIVE_STOP_RENDERING:
            logger.debug("Server asked to stop the current render")
            if job is not None:
                job.request_kill(KillReason.SERVER)
                self.kill_render(job)
        return code

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                logger.debug(f"Keep-alive check failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="nodewright-heartbeat", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
