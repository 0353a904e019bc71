"""Per-OS process execution, priority and power control.

``get_platform()`` selects the runner for the current OS once; the rest of
the client only talks to the ``PlatformRunner`` interface.
"""

import logging
import os
import platform as _platform
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .utils.hardware import CPUInfo, SystemInfo

logger = logging.getLogger(__name__)

SUPPORTED_ARCHS = ("amd64", "x64", "x86_64")


class PlatformRunner:
    """Capability interface for OS specific operations."""

    name = "unknown"
    renderer_binary = "rend.exe"

    def exec(self, command: List[str], env: Optional[Dict[str, str]] = None, priority: int = 19) -> subprocess.Popen:
        """Start ``command`` with stdout and stderr merged, text mode, line buffered."""
        environment = os.environ.copy()
        if env:
            environment.update(env)
        logger.debug(f"Executing: {' '.join(command)}")
        return subprocess.Popen(
            command,
            env=environment,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )

    def kill(self, process: Optional[subprocess.Popen]) -> None:
        """Kill ``process`` and all of its children."""
        if process is None or process.poll() is not None:
            return
        try:
            parent = psutil.Process(process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        try:
            parent.kill()
        except psutil.NoSuchProcess:
            pass

    def shutdown_computer(self, delay_minutes: int) -> None:
        raise NotImplementedError

    def supports_high_priority(self) -> bool:
        return False

    def is_supported(self) -> bool:
        return _platform.machine().lower() in SUPPORTED_ARCHS

    def version(self) -> str:
        return f"{_platform.system()} {_platform.release()}"

    def cpu(self) -> CPUInfo:
        return SystemInfo.get_cpu()

    def total_memory_kib(self) -> int:
        return SystemInfo.get_total_memory_kib()

    def free_memory_kib(self) -> int:
        return SystemInfo.get_free_memory_kib()

    def process_memory_kib(self, process: Optional[subprocess.Popen]) -> int:
        """Resident memory of ``process`` and its children in KiB, 0 if gone."""
        if process is None:
            return 0
        try:
            parent = psutil.Process(process.pid)
            total = parent.memory_info().rss
            for child in parent.children(recursive=True):
                try:
                    total += child.memory_info().rss
                except psutil.NoSuchProcess:
                    pass
        except psutil.NoSuchProcess:
            return 0
        return int(total / 1024)

    def _run_shutdown(self, command: List[str]) -> None:
        try:
            subprocess.Popen(command)
        except OSError as e:
            logger.error(f"Unable to execute '{' '.join(command)}': {e}")


class LinuxRunner(PlatformRunner):
    """Linux: renderers run under ``nice`` and with the bundled libGL when needed."""

    name = "linux"

    def __init__(self):
        self._nice = shutil.which("nice")

    def exec(self, command: List[str], env: Optional[Dict[str, str]] = None, priority: int = 19) -> subprocess.Popen:
        env = dict(env or {})
        if not self._opengl_installed(command[0]):
            lib_dir = str(Path(command[0]).parent / "lib")
            current = env.get("LD_LIBRARY_PATH", os.environ.get("LD_LIBRARY_PATH"))
            env["LD_LIBRARY_PATH"] = f"{current}:{lib_dir}" if current else lib_dir

        actual = list(command)
        if self._nice:
            actual = [self._nice, "-n", str(priority)] + actual
        else:
            logger.error("No low priority binary, the renderer will run at normal priority")
        return super().exec(actual, env, priority)

    def _opengl_installed(self, binary: str) -> bool:
        """Whether the system already provides libGL to ``binary`` (per ldd)."""
        try:
            result = subprocess.run(["ldd", binary], capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Unable to execute ldd: {e}")
            return False
        for line in result.stdout.splitlines():
            if "libgl.so" in line.lower():
                return "not found" not in line.lower()
        return False

    def supports_high_priority(self) -> bool:
        return os.geteuid() == 0 and self._nice is not None

    def shutdown_computer(self, delay_minutes: int) -> None:
        self._run_shutdown(["shutdown", "-h", str(delay_minutes)])


class MacRunner(PlatformRunner):
    """macOS: same priority handling as Linux, Apple Silicon is accepted."""

    name = "mac"
    renderer_binary = "Blender.app/Contents/MacOS/Blender"

    def __init__(self):
        self._nice = shutil.which("nice")

    def exec(self, command: List[str], env: Optional[Dict[str, str]] = None, priority: int = 19) -> subprocess.Popen:
        actual = list(command)
        if self._nice:
            actual = [self._nice, "-n", str(priority)] + actual
        return super().exec(actual, env, priority)

    def is_supported(self) -> bool:
        return _platform.machine().lower() in SUPPORTED_ARCHS + ("arm64",)

    def supports_high_priority(self) -> bool:
        return os.geteuid() == 0 and self._nice is not None

    def shutdown_computer(self, delay_minutes: int) -> None:
        self._run_shutdown(["shutdown", "-h", f"+{delay_minutes}"])


class WindowsRunner(PlatformRunner):
    """Windows: priority through psutil priority classes."""

    name = "windows"

    _PRIORITY_CLASSES = (
        (15, "IDLE_PRIORITY_CLASS"),
        (5, "BELOW_NORMAL_PRIORITY_CLASS"),
        (-5, "NORMAL_PRIORITY_CLASS"),
        (-15, "ABOVE_NORMAL_PRIORITY_CLASS"),
    )

    def exec(self, command: List[str], env: Optional[Dict[str, str]] = None, priority: int = 19) -> subprocess.Popen:
        process = super().exec(command, env, priority)
        try:
            psutil.Process(process.pid).nice(self._priority_class(priority))
        except (psutil.Error, AttributeError) as e:
            logger.debug(f"Unable to set renderer priority: {e}")
        return process

    def _priority_class(self, priority: int) -> int:
        for threshold, name in self._PRIORITY_CLASSES:
            if priority >= threshold:
                return getattr(psutil, name)
        return getattr(psutil, "HIGH_PRIORITY_CLASS")

    def supports_high_priority(self) -> bool:
        return True

    def shutdown_computer(self, delay_minutes: int) -> None:
        self._run_shutdown(["shutdown", "/s", "/t", str(delay_minutes * 60)])


_runner: Optional[PlatformRunner] = None


def get_platform() -> Optional[PlatformRunner]:
    """Runner for the current OS, or None when the OS is not supported."""
    global _runner
    if _runner is None:
        if sys.platform.startswith("linux"):
            _runner = LinuxRunner()
        elif sys.platform == "darwin":
            _runner = MacRunner()
        elif sys.platform == "win32":
            _runner = WindowsRunner()
    return _runner
