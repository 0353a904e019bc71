"""Render farm worker module for nodewright.

Talks to the farm server, fetches the archives each job needs, runs the
renderer and sends the rendered frames back for validation.
"""

from .job import Job, JobPaths, KillReason, QueuedJob, RenderStats
from .server import Heartbeat, JobRequestOutcome, RequestResult, ServerProtocolClient
from .downloads import DownloadCoordinator
from .uploads import UploadCounters, UploadQueue, confirm_job
from .render import RenderProcess
from .client import JobLifecycleController

__all__ = [
    "Job",
    "JobPaths",
    "KillReason",
    "QueuedJob",
    "RenderStats",
    "Heartbeat",
    "JobRequestOutcome",
    "RequestResult",
    "ServerProtocolClient",
    "DownloadCoordinator",
    "UploadCounters",
    "UploadQueue",
    "confirm_job",
    "RenderProcess",
    "JobLifecycleController",
]
