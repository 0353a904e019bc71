"""Shared pytest fixtures for nodewright tests."""
import hashlib
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from nodewright.config import Configuration
from nodewright.platform import PlatformRunner
from nodewright.ui import Gui
from nodewright.utils.hardware import CPUInfo
from nodewright.utils.logging import CheckpointLog


# ============================================================================
# Filesystem
# ============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    # Cleanup after test
    if temp_path.exists():
        shutil.rmtree(temp_path)


def make_zip(path: Path, members: Dict[str, str]) -> str:
    """Write a zip archive with ``members`` and return its MD5."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return hashlib.md5(path.read_bytes()).hexdigest()


def md5_of(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


# ============================================================================
# Fake collaborators
# ============================================================================

class FakeGui(Gui):
    """Records everything shown to the operator."""

    def __init__(self):
        self.statuses: List[str] = []
        self.errors: List[str] = []
        self.frames_rendered = 0
        self.queue_stats: List[tuple] = []
        self.stats: List[dict] = []
        self.authenticated_with: Optional[str] = None
        self.stopped = False

    def status(self, text, progress=None, overwrite=False):
        self.statuses.append(text)

    def error(self, text):
        self.errors.append(text)

    def display_upload_queue_stats(self, queue_size, queue_volume):
        self.queue_stats.append((queue_size, queue_volume))

    def display_stats(self, stats):
        self.stats.append(stats)

    def add_frame_rendered(self):
        self.frames_rendered += 1

    def successful_authentication_event(self, public_key):
        self.authenticated_with = public_key

    def stop(self):
        self.stopped = True


class FakeProcess:
    """Stand-in for a ``subprocess.Popen`` of the renderer."""

    def __init__(self, lines: List[str], returncode: int = 0, pid: int = 4242):
        self.stdout = iter(line + "\n" for line in lines)
        self.returncode: Optional[int] = None
        self._final_code = returncode
        self.pid = pid
        self.killed = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = self._final_code
        return self.returncode


class FakePlatform(PlatformRunner):
    """Platform runner that never touches the real OS."""

    name = "linux"
    renderer_binary = "rend.exe"

    def __init__(self, supported: bool = True, cpu: Optional[CPUInfo] = None, high_priority: bool = False):
        self.supported = supported
        self.high_priority = high_priority
        self._cpu = cpu or CPUInfo(family="6", model="158", name="Test CPU", cores=4, arch="x86_64")
        self.executed: List[List[str]] = []
        self.environments: List[dict] = []
        self.priorities: List[int] = []
        self.killed: List[object] = []
        self.shutdowns: List[int] = []
        self.process_factory: Callable[[List[str]], FakeProcess] = lambda command: FakeProcess([])

    def exec(self, command, env=None, priority=19):
        self.executed.append(list(command))
        self.environments.append(dict(env or {}))
        self.priorities.append(priority)
        return self.process_factory(command)

    def kill(self, process):
        self.killed.append(process)
        if process is not None:
            process.killed = True

    def shutdown_computer(self, delay_minutes):
        self.shutdowns.append(delay_minutes)

    def is_supported(self):
        return self.supported

    def supports_high_priority(self):
        return self.high_priority

    def version(self):
        return "Linux 6.1"

    def cpu(self):
        return self._cpu

    def total_memory_kib(self):
        return 16 * 1024 * 1024

    def free_memory_kib(self):
        return 8 * 1024 * 1024

    def process_memory_kib(self, process):
        return 2048 if process is not None else 0


@pytest.fixture
def fake_gui():
    return FakeGui()


@pytest.fixture
def fake_platform():
    return FakePlatform()


@pytest.fixture
def checkpoint_log():
    return CheckpointLog(max_lines=1000)


@pytest.fixture
def configuration(temp_dir):
    """Configuration with its cache directories under ``temp_dir``."""
    config = Configuration(
        login="alice",
        password="secret",
        server_url="https://farm.test",
        cache_dir=temp_dir / "cache",
        hostname="render-01",
    )
    config.setup_directories()
    return config


# ============================================================================
# HTTP
# ============================================================================

def make_response(
    status_code: int = 200,
    text: str = "",
    content_type: str = "text/xml",
    content: bytes = b"",
    headers: Optional[Dict[str, str]] = None,
):
    """Mock ``requests.Response`` usable directly or as a context manager."""
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.headers = {"Content-Type": content_type}
    if content:
        response.headers["Content-Length"] = str(len(content))
    if headers:
        response.headers.update(headers)
    response.iter_content.side_effect = lambda chunk_size=8192: iter(
        [content[i:i + chunk_size] for i in range(0, len(content), chunk_size)]
    )
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


@pytest.fixture
def mock_session():
    """Mock HTTP session; tests set ``get``/``post``/``head`` results."""
    session = MagicMock()
    session.headers = {}
    session.proxies = {}
    return session
