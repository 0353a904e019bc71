"""Filesystem helpers: hashing, archives, moves and size formatting."""

import hashlib
import logging
import os
import random
import re
import shutil
import stat
import time
import zipfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Free space (bytes) under which the disk is considered full
MIN_FREE_SPACE = 512 * 1024

_SIZE_SCALE = {
    "k": 1000,
    "m": 1000 ** 2,
    "g": 1000 ** 3,
    "t": 1000 ** 4,
}


def md5(path: PathLike, chunk_size: int = 8192) -> str:
    """Hex MD5 digest of a file, or an empty string if it cannot be read."""
    hasher = hashlib.md5()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                hasher.update(chunk)
    except OSError as e:
        logger.debug(f"Unable to hash {path}: {e}")
        return ""
    return hasher.hexdigest()


def unzip_into(archive: PathLike, destination: PathLike, password: Optional[str] = None) -> bool:
    """Extract ``archive`` into ``destination``.

    Args:
        archive: Zip file path
        destination: Directory to extract into (created if missing)
        password: Optional password of an encrypted archive

    Returns:
        True on success, False if the archive could not be extracted
    """
    try:
        Path(destination).mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive) as zf:
            pwd = password.encode("utf-8") if password else None
            zf.extractall(destination, pwd=pwd)
    except (zipfile.BadZipFile, RuntimeError, OSError, ValueError) as e:
        logger.debug(f"Unable to extract {archive} into {destination}: {e}")
        return False
    return True


def make_tree_executable(directory: PathLike) -> None:
    """Add the executable bits to every regular file below ``directory``."""
    for root, _dirs, names in os.walk(directory):
        for name in names:
            path = os.path.join(root, name)
            try:
                mode = os.stat(path).st_mode
                os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as e:
                logger.debug(f"chmod +x failed on {path}: {e}")


def delete(path: Optional[PathLike]) -> None:
    """Remove a file or a directory tree, ignoring missing paths."""
    if path is None:
        return
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Unable to delete {path}: {e}")


def move_into(path: Optional[PathLike], directory: PathLike) -> Optional[Path]:
    """Move ``path`` into ``directory`` keeping its name, replacing any existing entry.

    Returns:
        The new location, or None if nothing was moved
    """
    if path is None or not Path(path).exists():
        return None
    source = Path(path)
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / source.name
    try:
        if target.exists():
            delete(target)
        shutil.move(str(source), str(target))
    except OSError as e:
        logger.warning(f"Unable to move {source} to {target_dir}: {e}")
        return None
    return target


def link_or_copy(source: PathLike, target: PathLike) -> str:
    """Hard-link ``source`` to ``target``, copying when linking is impossible.

    Returns:
        'link' or 'copy', the method that succeeded
    """
    target = Path(target)
    if target.exists():
        target.unlink()
    try:
        os.link(source, target)
        return "link"
    except OSError as e:
        logger.debug(f"Hard link {source} -> {target} failed ({e}), copying")
    shutil.copy2(source, target)
    return "copy"


def free_space(path: PathLike) -> int:
    """Free bytes on the filesystem holding ``path`` (or its closest existing parent)."""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free


def no_free_space_on_disk(path: PathLike, attempts: int = 3, sleep=time.sleep) -> bool:
    """Whether the disk holding ``path`` is full.

    Polled a few times because a busy disk can transiently report 0 bytes free.
    """
    for attempt in range(attempts):
        try:
            space = free_space(path)
        except OSError as e:
            logger.debug(f"Unable to read free space of {path}: {e}")
            return False
        if space > MIN_FREE_SPACE:
            return False
        if attempt < attempts - 1:
            delay = random.uniform(0.04, 0.1)
            logger.debug(f"Low free space ({space}) on try {attempt}, waiting {delay:.3f}s")
            sleep(delay)
    return True


def parse_size(value: Union[str, int]) -> int:
    """Parse '32', '10k', '1.3G' or '0,4T' into a number (decimal multiples)."""
    if isinstance(value, int):
        return value
    text = value.strip().replace(",", ".")
    if re.fullmatch(r"\d+", text):
        return int(text)
    match = re.fullmatch(r"([\d.]+)\s*([a-zA-Z])\w*", text)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    scale = _SIZE_SCALE.get(match.group(2).lower(), 1)
    return round(float(match.group(1)) * scale)


def format_bytes(num_bytes: int) -> str:
    """Format a byte count as MB, GB or TB with two decimals."""
    if num_bytes > 1024 ** 4:
        return f"{num_bytes / 1024 ** 4:.2f}TB"
    if num_bytes > 1024 ** 3:
        return f"{num_bytes / 1024 ** 3:.2f}GB"
    return f"{num_bytes / 1024 ** 2:.2f}MB"


def format_duration(seconds: float) -> str:
    """Format seconds as '1h 2min 3s', omitting zero parts."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}min")
    if secs:
        parts.append(f"{secs}s")
    return " ".join(parts)
