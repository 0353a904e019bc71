"""Acquisition of renderer and scene archives into a (possibly shared) cache.

Several client processes may share one downloads directory. The
``<md5>.zip.partial`` sentinel, created with O_EXCL and kept across retries,
tells the others that a download is in progress; they poll until the final
file shows up or the wait ceiling expires, at which point the sentinel is
considered abandoned.
"""

import logging
import os
import random
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

from ..errors import ErrorType
from ..ui import Gui
from ..utils import files
from .job import Job

logger = logging.getLogger(__name__)

WAIT_CEILING = 30 * 60  # seconds
POLL_INTERVAL = 1
UI_UPDATE_INTERVAL = 10
MAX_ATTEMPTS = 5

_KILLED = (
    ErrorType.RENDERER_KILLED_BY_SERVER,
    ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME,
    ErrorType.RENDERER_KILLED_BY_USER,
)


def sentinel_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".partial")


def create_sentinel(destination: Path) -> bool:
    """Atomically create the sentinel of ``destination``. False if it already exists."""
    try:
        fd = os.open(sentinel_path(destination), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    os.close(fd)
    return True


class DownloadCoordinator:
    """Downloads each archive at most once across processes sharing a cache.

    Args:
        server: Protocol client providing ``download_file``
        gui: UI sink
        shared_dir: Downloads directory shared with other clients, if any
        max_attempts: Download attempts before giving up
        wait_ceiling: Seconds to wait for another process's download
        sleep: Sleep function (seconds)
        jitter: Returns the start-up delay in seconds used with a shared dir
    """

    def __init__(
        self,
        server,
        gui: Gui,
        shared_dir: Optional[Path] = None,
        max_attempts: int = MAX_ATTEMPTS,
        wait_ceiling: int = WAIT_CEILING,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Optional[Callable[[], float]] = None,
    ):
        self.server = server
        self.gui = gui
        self.shared_dir = Path(shared_dir) if shared_dir else None
        self.max_attempts = max_attempts
        self.wait_ceiling = wait_ceiling
        self.sleep = sleep
        self.jitter = jitter or (lambda: random.randint(1, 9))

    def acquire(
        self,
        md5: str,
        url: str,
        kind: str,
        cache_path: Path,
        job: Optional[Job] = None,
    ) -> Tuple[ErrorType, Optional[Path]]:
        """Make the archive ``md5`` available at ``cache_path``.

        With a shared directory, the archive is fetched there and then
        hard-linked (or copied) into ``cache_path``.

        Returns:
            (ErrorType.OK, cache_path) on success, (error, None) otherwise

        Raises:
            FilesystemError: If the local disk prevents writing the archive
        """
        cache_path = Path(cache_path)
        required = self.shared_dir / f"{md5}.zip" if self.shared_dir else cache_path

        ret = self.fetch(required, md5, url, kind, job)
        if ret is not ErrorType.OK:
            return ret, None

        if required != cache_path and not cache_path.exists():
            self.gui.status(f"Copying {kind} from shared downloads directory")
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            method = files.link_or_copy(required, cache_path)
            logger.debug(f"Placed {cache_path} from {required} ({method})")
        return ErrorType.OK, cache_path

    def wait_for_other_download(self, destination: Path, kind: str) -> bool:
        """Wait while another process downloads ``destination``.

        Returns:
            True if ``destination`` is ready to be reused, False if this
            process now owns the download (sentinel created or purged)
        """
        sentinel = sentinel_path(destination)
        remaining = self.wait_ceiling
        while remaining > 0:
            if destination.exists():
                return True
            if sentinel.exists():
                if remaining % UI_UPDATE_INTERVAL == 0:
                    minutes, seconds = divmod(remaining, 60)
                    self.gui.status(
                        f"Another client is downloading the {kind}. Cancel in {minutes}min {seconds}s"
                    )
            elif create_sentinel(destination):
                return False
            else:
                # another process claimed it between the two checks
                continue
            self.sleep(POLL_INTERVAL)
            remaining -= POLL_INTERVAL

        logger.warning(f"Timed out waiting for another client to download {destination.name}, downloading it now")
        files.delete(sentinel)
        if destination.exists():
            return True
        create_sentinel(destination)
        return False

    def fetch(self, destination: Path, md5: str, url: str, kind: str, job: Optional[Job] = None) -> ErrorType:
        """Download and verify ``destination`` unless it is already cached."""
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if self.shared_dir is not None:
            # spread concurrent starts of clients sharing the cache
            self.sleep(self.jitter())

        if self.wait_for_other_download(destination, kind):
            self.gui.status(f"Reusing cached {kind}")
            return ErrorType.OK

        status = f"Downloading {kind}"
        self.gui.status(status)
        sentinel = sentinel_path(destination)
        ret = ErrorType.DOWNLOAD_FILE
        owned = True
        try:
            for attempt in range(1, self.max_attempts + 1):
                if not owned or not sentinel.exists():
                    owned = create_sentinel(destination)
                if not owned:
                    logger.debug(f"Another client took over the download of {destination.name}")
                    if self.wait_for_other_download(destination, kind):
                        ret = ErrorType.OK
                        self.gui.status(f"Reusing cached {kind}")
                        return ret
                    owned = True

                ret = self.server.download_file(url, destination, job, status)
                if ret in _KILLED:
                    return ret

                if ret is ErrorType.OK:
                    if self.check_file(destination, md5):
                        return ret
                    # the completed archive took the place of the sentinel
                    owned = False
                    ret = ErrorType.DOWNLOAD_FILE
                    self.gui.error(f"Verification of downloaded {kind} has failed. Retrying now")
                else:
                    self.gui.error(f"Unable to download {kind} (error {ret.name}). Retrying now")
                files.delete(destination)
                logger.debug(f"Download of {kind} failed, attempt {attempt}/{self.max_attempts}")

            logger.error(f"Download of {kind} failed after {self.max_attempts} attempts")
            return ErrorType.DOWNLOAD_FILE
        finally:
            if ret is not ErrorType.OK and owned:
                files.delete(sentinel)

    def check_file(self, path: Path, md5: str) -> bool:
        if not path.exists():
            logger.error(f"Cannot check md5 of missing file {path}")
            return False
        local = files.md5(path)
        if local != md5:
            logger.error(f"MD5 mismatch on {path.name}: local '{local}' server '{md5}' (size {path.stat().st_size})")
            return False
        return True
