"""Operator-facing output sinks.

The lifecycle controller reports everything it does through a ``Gui``.
``NullGui`` discards it, ``TextGui`` prints one line per event and
``OneLineGui`` keeps a single refreshed status line.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.text import Text
from rich.theme import Theme

from .utils.files import format_bytes
from .utils.stats import TransferStats

logger = logging.getLogger(__name__)

NODEWRIGHT_THEME = Theme({
    "brand": "bold cyan",
    "error": "bold red",
    "muted": "dim white",
    "number": "bold white",
    "progress": "green",
})


class Gui:
    """UI sink interface. Every method is a no-op by default."""

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def status(self, text: str, progress: Optional[int] = None, overwrite: bool = False) -> None:
        pass

    def error(self, text: str) -> None:
        pass

    def display_transfer_stats(self, downloads: TransferStats, uploads: TransferStats) -> None:
        pass

    def display_upload_queue_stats(self, queue_size: int, queue_volume: int) -> None:
        pass

    def display_stats(self, stats: Dict[str, Any]) -> None:
        pass

    def add_frame_rendered(self) -> None:
        pass

    def successful_authentication_event(self, public_key: str) -> None:
        pass

    def set_rendering_project_name(self, name: str) -> None:
        pass

    def set_remaining_time(self, text: str) -> None:
        pass

    def set_rendering_time(self, text: str) -> None:
        pass

    def set_compute_method(self, text: str) -> None:
        pass


class NullGui(Gui):
    """Discards all output."""


class TextGui(Gui):
    """Timestamped line per status change on a rich console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(theme=NODEWRIGHT_THEME, highlight=False)
        self.frames_rendered = 0
        self._last_status = ""

    def _line(self, text: str, style: Optional[str] = None) -> None:
        stamp = datetime.now().strftime("%d-%m %H:%M:%S")
        line = Text(f"{stamp} ", style="muted")
        line.append(text, style=style)
        self.console.print(line)

    def start(self) -> None:
        self.console.rule("[brand]nodewright[/brand]")

    def stop(self) -> None:
        self._line(f"Stopped ({self.frames_rendered} frames rendered)")

    def status(self, text: str, progress: Optional[int] = None, overwrite: bool = False) -> None:
        if progress is not None:
            text = f"{text}: {progress}%"
        # progress updates are frequent, print each distinct step once
        if text == self._last_status:
            return
        self._last_status = text
        self._line(text)

    def error(self, text: str) -> None:
        self._line(f"Error: {text}", style="error")

    def display_transfer_stats(self, downloads: TransferStats, uploads: TransferStats) -> None:
        self._line(
            f"Session downloads: {format_bytes(downloads.session_traffic())} "
            f"@ {format_bytes(downloads.average_speed)}/s / "
            f"Uploads: {format_bytes(uploads.session_traffic())} "
            f"@ {format_bytes(uploads.average_speed)}/s",
            style="muted",
        )

    def display_upload_queue_stats(self, queue_size: int, queue_volume: int) -> None:
        self._line(f"Queued uploads: {queue_size} ({format_bytes(queue_volume)})", style="muted")

    def display_stats(self, stats: Dict[str, Any]) -> None:
        parts = ", ".join(f"{key}: {value}" for key, value in stats.items())
        self._line(f"Session stats: {parts}", style="muted")

    def add_frame_rendered(self) -> None:
        self.frames_rendered += 1
        self._line(f"Frames rendered: {self.frames_rendered}", style="progress")

    def successful_authentication_event(self, public_key: str) -> None:
        self._line("Authenticated on the server", style="brand")


class OneLineGui(TextGui):
    """Single status line rewritten in place."""

    def __init__(self, console: Optional[Console] = None):
        super().__init__(console)
        self.project = ""
        self.rendering_time = ""
        self.remaining_time = ""
        self.compute_method = ""
        self.queue = ""

    def _refresh(self, text: str) -> None:
        fields = [f"Frames: {self.frames_rendered}"]
        if self.project:
            fields.append(f"Project: {self.project}")
        if self.compute_method:
            fields.append(self.compute_method)
        if self.rendering_time:
            fields.append(f"Rendering for {self.rendering_time}")
        if self.remaining_time:
            fields.append(f"Remaining {self.remaining_time}")
        if self.queue:
            fields.append(self.queue)
        fields.append(text)
        self.console.print(Text(" | ".join(fields)), end="\r", overflow="crop", no_wrap=True)

    def status(self, text: str, progress: Optional[int] = None, overwrite: bool = False) -> None:
        if progress is not None:
            text = f"{text}: {progress}%"
        self._last_status = text
        self._refresh(text)

    def display_upload_queue_stats(self, queue_size: int, queue_volume: int) -> None:
        self.queue = f"Queue {queue_size} ({format_bytes(queue_volume)})" if queue_size else ""

    def display_transfer_stats(self, downloads: TransferStats, uploads: TransferStats) -> None:
        pass

    def set_rendering_project_name(self, name: str) -> None:
        self.project = name

    def set_remaining_time(self, text: str) -> None:
        self.remaining_time = text

    def set_rendering_time(self, text: str) -> None:
        self.rendering_time = text

    def set_compute_method(self, text: str) -> None:
        self.compute_method = text


def make_gui(ui_type: str) -> Gui:
    """Build the sink named by ``ui_type`` ('text', 'oneline' or 'none')."""
    if ui_type == "oneline":
        return OneLineGui()
    if ui_type == "none":
        return NullGui()
    return TextGui()
