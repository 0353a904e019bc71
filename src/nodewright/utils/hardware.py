"""Machine introspection: CPU, memory, GPUs and a stable hardware id."""

import hashlib
import logging
import os
import platform
import re
import socket
import subprocess
import uuid
from dataclasses import dataclass
from typing import List, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass
class CPUInfo:
    """Processor description sent during the handshake."""
    family: str = ""
    model: str = ""
    name: str = ""
    cores: int = 1
    arch: str = ""

    @property
    def bits(self) -> str:
        return "64bit" if self.arch.lower() in ("x86_64", "amd64", "x64", "arm64", "aarch64") else "32bit"

    def have_data(self) -> bool:
        """Whether enough was detected to describe the CPU to the server."""
        return bool(self.name) and self.cores > 0

    def to_dict(self) -> dict:
        return {
            "family": self.family,
            "model": self.model,
            "name": self.name,
            "cores": self.cores,
            "arch": self.arch,
        }


@dataclass
class GPUDevice:
    """A GPU usable as a compute device."""
    id: str
    model: str
    memory: int = 0  # bytes
    type: str = "OPTIX"

    def to_dict(self) -> dict:
        return {"id": self.id, "model": self.model, "memory": self.memory, "type": self.type}


class SystemInfo:
    """Gather system information for the handshake and job requests."""

    @staticmethod
    def get_hostname() -> str:
        return socket.gethostname()

    @staticmethod
    def get_cpu() -> CPUInfo:
        """Detect the processor. Family/model come from /proc/cpuinfo where present."""
        cores = psutil.cpu_count(logical=True) or os.cpu_count() or 1
        info = CPUInfo(cores=cores, arch=platform.machine(), name=platform.processor())

        cpuinfo = "/proc/cpuinfo"
        if os.path.exists(cpuinfo):
            try:
                with open(cpuinfo, "r") as f:
                    for line in f:
                        key, _, value = line.partition(":")
                        key, value = key.strip(), value.strip()
                        if key == "cpu family" and not info.family:
                            info.family = value
                        elif key == "model" and not info.model:
                            info.model = value
                        elif key == "model name":
                            info.name = value
                        if info.family and info.model and key == "model name":
                            break
            except OSError as e:
                logger.debug(f"Unable to read {cpuinfo}: {e}")

        if not info.name:
            info.name = platform.processor() or platform.machine()
        return info

    @staticmethod
    def get_total_memory_kib() -> int:
        return int(psutil.virtual_memory().total / 1024)

    @staticmethod
    def get_free_memory_kib() -> int:
        return int(psutil.virtual_memory().available / 1024)

    @staticmethod
    def get_hwid() -> str:
        """Stable identifier of this machine (MD5 of the MAC address and hostname)."""
        seed = f"{uuid.getnode():012x}-{socket.gethostname()}"
        return hashlib.md5(seed.encode("utf-8")).hexdigest()

    @staticmethod
    def get_gpus() -> List[GPUDevice]:
        """List NVIDIA GPUs reported by nvidia-smi (empty when unavailable)."""
        try:
            result = subprocess.run(
                ["nvidia-smi", "--query-gpu=index,name,memory.total", "--format=csv,noheader,nounits"],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"nvidia-smi not usable: {e}")
            return []

        if result.returncode != 0:
            return []

        gpus = []
        for line in result.stdout.strip().splitlines():
            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 3:
                continue
            try:
                memory = int(float(parts[2]) * 1024 * 1024)
            except ValueError:
                memory = 0
            gpus.append(GPUDevice(id=f"OPTIX_{parts[0]}", model=parts[1], memory=memory))
        return gpus

    @staticmethod
    def find_gpu(device_id: Optional[str]) -> Optional[GPUDevice]:
        """Look up a GPU by its id ('OPTIX_0') or by model name."""
        if not device_id:
            return None
        for gpu in SystemInfo.get_gpus():
            if gpu.id == device_id or re.fullmatch(re.escape(device_id), gpu.model, re.IGNORECASE):
                return gpu
        return None
