"""Tests for the shared-cache download coordinator."""
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from nodewright.errors import ErrorType
from nodewright.distributed.downloads import DownloadCoordinator, create_sentinel, sentinel_path

from conftest import md5_of

PAYLOAD = b"archive content" * 100
PAYLOAD_MD5 = md5_of(PAYLOAD)


class FakeDownloadServer:
    """Writes the scripted payloads the way the protocol client does."""

    def __init__(self, results, delay: float = 0.0):
        self.results = list(results)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def download_file(self, url, destination, job=None, status=""):
        with self._lock:
            self.calls.append((url, destination))
            result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            partial = sentinel_path(destination)
            if isinstance(result, ErrorType):
                # the caller's sentinel is emptied, not removed
                if partial.exists():
                    partial.write_bytes(b"")
                return result
            partial.write_bytes(result)
            partial.replace(destination)
            return ErrorType.OK
        finally:
            with self._lock:
                self.active -= 1


def no_sleep(seconds):
    pass


class TestSentinel:
    """Tests for the in-progress marker."""

    def test_exclusive_creation(self, temp_dir):
        """Test that only one process can claim a download."""
        destination = temp_dir / "abc.zip"
        assert create_sentinel(destination)
        assert not create_sentinel(destination)
        assert sentinel_path(destination) == temp_dir / "abc.zip.partial"


class TestFetch:
    """Tests for downloading into one location."""

    def test_fresh_download(self, temp_dir, fake_gui):
        """Test downloading a missing archive."""
        server = FakeDownloadServer([PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)
        destination = temp_dir / "cache" / f"{PAYLOAD_MD5}.zip"

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.OK
        assert destination.read_bytes() == PAYLOAD
        assert not sentinel_path(destination).exists()
        assert len(server.calls) == 1
        assert "Downloading project" in fake_gui.statuses

    def test_reuse_cached(self, temp_dir, fake_gui):
        """Test that an archive already present is not downloaded again."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        destination.write_bytes(PAYLOAD)
        server = FakeDownloadServer([PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "renderer") is ErrorType.OK
        assert server.calls == []
        assert "Reusing cached renderer" in fake_gui.statuses

    def test_retry_after_bad_checksum(self, temp_dir, fake_gui):
        """Test that a corrupted download is retried."""
        server = FakeDownloadServer([b"corrupted", PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.OK
        assert len(server.calls) == 2
        assert "Verification of downloaded project has failed. Retrying now" in fake_gui.errors

    def test_gives_up(self, temp_dir, fake_gui):
        """Test the attempt limit."""
        server = FakeDownloadServer([ErrorType.DOWNLOAD_FILE])
        coordinator = DownloadCoordinator(server, fake_gui, max_attempts=5, sleep=no_sleep)
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.DOWNLOAD_FILE
        assert len(server.calls) == 5
        assert not destination.exists()
        assert not sentinel_path(destination).exists()
        assert "Unable to download project (error DOWNLOAD_FILE). Retrying now" in fake_gui.errors

    @pytest.mark.parametrize("killed", [
        ErrorType.RENDERER_KILLED_BY_SERVER,
        ErrorType.RENDERER_KILLED_BY_USER,
        ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME,
    ])
    def test_killed(self, temp_dir, fake_gui, killed):
        """Test that a kill stops the download without retrying."""
        server = FakeDownloadServer([killed])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is killed
        assert len(server.calls) == 1
        assert not sentinel_path(destination).exists()

    def test_keeps_sentinel_between_attempts(self, temp_dir, fake_gui):
        """Test that another process cannot claim a download this process is retrying."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        claims = []

        class RivalServer(FakeDownloadServer):
            def download_file(self, url, destination, job=None, status=""):
                ret = super().download_file(url, destination, job, status)
                if ret is not ErrorType.OK:
                    claims.append(create_sentinel(destination))
                return ret

        server = RivalServer([ErrorType.DOWNLOAD_FILE, ErrorType.DOWNLOAD_FILE, PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.OK
        assert claims == [False, False]
        assert len(server.calls) == 3
        assert destination.read_bytes() == PAYLOAD
        assert not sentinel_path(destination).exists()

    def test_reclaims_purged_sentinel(self, temp_dir, fake_gui):
        """Test that a sentinel purged between attempts is claimed again before retrying."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        held = []

        class PurgingServer(FakeDownloadServer):
            def download_file(self, url, destination, job=None, status=""):
                held.append(sentinel_path(destination).exists())
                ret = super().download_file(url, destination, job, status)
                if ret is not ErrorType.OK:
                    sentinel_path(destination).unlink()
                return ret

        server = PurgingServer([ErrorType.DOWNLOAD_FILE, PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.OK
        assert held == [True, True]

    def test_waiting_client_does_not_download_during_retry(self, temp_dir, fake_gui):
        """Test that a client waiting on a failing download does not start its own."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        server = FakeDownloadServer([ErrorType.DOWNLOAD_FILE, PAYLOAD], delay=0.2)
        owner = DownloadCoordinator(server, fake_gui, sleep=no_sleep)
        waiter = DownloadCoordinator(server, fake_gui, sleep=lambda seconds: time.sleep(0.05))
        results = {}

        def run_owner():
            results["owner"] = owner.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project")

        owner_thread = threading.Thread(target=run_owner)
        owner_thread.start()
        deadline = time.monotonic() + 5
        while not sentinel_path(destination).exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        results["waiter"] = waiter.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project")
        owner_thread.join(timeout=30)

        assert results["owner"] is ErrorType.OK
        assert results["waiter"] is ErrorType.OK
        assert len(server.calls) == 2
        assert server.max_active == 1
        assert destination.read_bytes() == PAYLOAD

    def test_other_process_takes_over_after_bad_checksum(self, temp_dir, fake_gui):
        """Test waiting for a process that claimed the download after a failed verification."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        server = FakeDownloadServer([b"corrupted", PAYLOAD])
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            destination.write_bytes(PAYLOAD)
            sentinel_path(destination).unlink()

        coordinator = DownloadCoordinator(server, fake_gui, sleep=sleep)
        check_file = coordinator.check_file

        def check_then_claim(path, md5):
            valid = check_file(path, md5)
            if not valid:
                assert create_sentinel(destination)
            return valid

        coordinator.check_file = check_then_claim

        assert coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project") is ErrorType.OK
        assert len(server.calls) == 1
        assert len(sleeps) == 1
        assert "Reusing cached project" in fake_gui.statuses

    def test_no_verification_after_failed_transfer(self, temp_dir, fake_gui):
        """Test that only completed transfers are verified."""
        server = FakeDownloadServer([ErrorType.DOWNLOAD_FILE, PAYLOAD])
        coordinator = DownloadCoordinator(server, fake_gui, sleep=no_sleep)
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"

        with patch.object(coordinator, "check_file", wraps=coordinator.check_file) as check_file:
            ret = coordinator.fetch(destination, PAYLOAD_MD5, "https://farm.test/a", "project")

        assert ret is ErrorType.OK
        assert len(server.calls) == 2
        check_file.assert_called_once_with(destination, PAYLOAD_MD5)

    def test_check_file(self, temp_dir, fake_gui):
        """Test checksum verification."""
        coordinator = DownloadCoordinator(FakeDownloadServer([PAYLOAD]), fake_gui)
        path = temp_dir / "a.zip"
        assert not coordinator.check_file(path, PAYLOAD_MD5)
        path.write_bytes(PAYLOAD)
        assert coordinator.check_file(path, PAYLOAD_MD5)
        assert not coordinator.check_file(path, "0" * 32)


class TestWaitForOtherDownload:
    """Tests for waiting on another process."""

    def test_other_download_completes(self, temp_dir, fake_gui):
        """Test reusing the archive downloaded by another process."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        create_sentinel(destination)
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 3:
                destination.write_bytes(PAYLOAD)

        coordinator = DownloadCoordinator(FakeDownloadServer([PAYLOAD]), fake_gui, wait_ceiling=30, sleep=sleep)

        assert coordinator.wait_for_other_download(destination, "project") is True
        assert len(sleeps) == 3
        assert "Another client is downloading the project. Cancel in 0min 30s" in fake_gui.statuses

    def test_abandoned_sentinel(self, temp_dir, fake_gui):
        """Test taking over a download whose owner disappeared."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        create_sentinel(destination)
        sleeps = []
        coordinator = DownloadCoordinator(FakeDownloadServer([PAYLOAD]), fake_gui, wait_ceiling=5,
                                          sleep=sleeps.append)

        assert coordinator.wait_for_other_download(destination, "project") is False
        assert len(sleeps) == 5
        # the sentinel now belongs to this process
        assert sentinel_path(destination).exists()

    def test_no_other_download(self, temp_dir, fake_gui):
        """Test claiming a download nobody else started."""
        destination = temp_dir / f"{PAYLOAD_MD5}.zip"
        coordinator = DownloadCoordinator(FakeDownloadServer([PAYLOAD]), fake_gui, sleep=no_sleep)

        assert coordinator.wait_for_other_download(destination, "project") is False
        assert sentinel_path(destination).exists()


class TestAcquire:
    """Tests for acquiring archives into the local cache."""

    def test_without_shared_dir(self, temp_dir, fake_gui):
        """Test downloading straight into the cache."""
        sleeps = []
        coordinator = DownloadCoordinator(FakeDownloadServer([PAYLOAD]), fake_gui, sleep=sleeps.append)
        cache_path = temp_dir / "storage" / f"{PAYLOAD_MD5}.zip"

        ret, path = coordinator.acquire(PAYLOAD_MD5, "https://farm.test/a", "renderer", cache_path)

        assert ret is ErrorType.OK
        assert path == cache_path
        assert cache_path.read_bytes() == PAYLOAD
        assert sleeps == []

    def test_shared_dir(self, temp_dir, fake_gui):
        """Test downloading once into the shared directory and linking from there."""
        shared = temp_dir / "shared"
        server = FakeDownloadServer([PAYLOAD])
        sleeps = []
        coordinator = DownloadCoordinator(server, fake_gui, shared_dir=shared, sleep=sleeps.append,
                                          jitter=lambda: 4)
        cache_path = temp_dir / "client1" / f"{PAYLOAD_MD5}.zip"

        ret, path = coordinator.acquire(PAYLOAD_MD5, "https://farm.test/a", "renderer", cache_path)

        assert ret is ErrorType.OK
        assert path == cache_path
        assert (shared / f"{PAYLOAD_MD5}.zip").read_bytes() == PAYLOAD
        assert cache_path.read_bytes() == PAYLOAD
        assert sleeps == [4]
        assert "Copying renderer from shared downloads directory" in fake_gui.statuses

        # a second client on the same machine reuses the shared copy
        other = DownloadCoordinator(server, fake_gui, shared_dir=shared, sleep=no_sleep, jitter=lambda: 0)
        other_cache = temp_dir / "client2" / f"{PAYLOAD_MD5}.zip"
        ret, _ = other.acquire(PAYLOAD_MD5, "https://farm.test/a", "renderer", other_cache)
        assert ret is ErrorType.OK
        assert other_cache.read_bytes() == PAYLOAD
        assert len(server.calls) == 1

    def test_failure(self, temp_dir, fake_gui):
        """Test that a failed download returns no path."""
        coordinator = DownloadCoordinator(FakeDownloadServer([ErrorType.DOWNLOAD_FILE]), fake_gui,
                                          max_attempts=2, sleep=no_sleep)
        ret, path = coordinator.acquire(PAYLOAD_MD5, "https://farm.test/a", "project", temp_dir / "a.zip")
        assert ret is ErrorType.DOWNLOAD_FILE
        assert path is None

    def test_concurrent_clients_download_once(self, temp_dir, fake_gui):
        """Test two processes sharing a directory downloading the same archive."""
        shared = temp_dir / "shared"
        server = FakeDownloadServer([PAYLOAD], delay=0.3)
        results = {}

        def client(name):
            coordinator = DownloadCoordinator(server, fake_gui, shared_dir=shared, jitter=lambda: 0)
            results[name] = coordinator.acquire(PAYLOAD_MD5, "https://farm.test/a", "project",
                                                temp_dir / name / f"{PAYLOAD_MD5}.zip")

        threads = [threading.Thread(target=client, args=(name,)) for name in ("one", "two")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(server.calls) == 1
        assert results["one"][0] is ErrorType.OK
        assert results["two"][0] is ErrorType.OK
        assert (temp_dir / "one" / f"{PAYLOAD_MD5}.zip").read_bytes() == PAYLOAD
        assert (temp_dir / "two" / f"{PAYLOAD_MD5}.zip").read_bytes() == PAYLOAD
        assert not sentinel_path(shared / f"{PAYLOAD_MD5}.zip").exists()
