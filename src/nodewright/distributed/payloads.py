"""XML documents exchanged with the server.

Server configuration (endpoint map, public key, speed-test mirrors):

    <config status="0" publickey="...">
      <request type="request-job" path="/server/request_job.php"/>
      <request type="keepmealive" path="/server/keepmealive.php" max-period="1020"/>
      <speedtest><target url="https://mirror1.example/speedtest"/></speedtest>
    </config>

Job grant:

    <jobrequest status="0">
      <stats frame_remaining="12" credits_total="10" credits_session="2"
             renderable_project="4" waiting_project="1" connected_machine="50"/>
      <file md5="..." action="delete"/>
      <job id="123" frame="0042" path="scene/main.blend" use_gpu="0" name="Project"
           archive_md5="..." password="..." synchronous_upload="0"
           validation_url="https%3A%2F%2F...">
        <renderer md5="..." commandline=".e --factory-startup -b .c -o .o -f .f"
                  update_method="remainingtime"/>
        <script>import bpy</script>
      </job>
    </jobrequest>

Heartbeat and validation answers are a bare root carrying a status:
``<keepmealive status="0"/>`` and ``<jobvalidate status="0"/>``.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import unquote
from xml.etree import ElementTree as ET

from ..errors import ProtocolError, ServerCode
from .job import Job

logger = logging.getLogger(__name__)


def _parse(content: str, root_name: str) -> ET.Element:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ProtocolError(f"Invalid XML document: {e}")
    if root.tag != root_name:
        found = root.find(f".//{root_name}")
        if found is None:
            raise ProtocolError(f"Missing <{root_name}> root (got <{root.tag}>)")
        root = found
    return root


def _status(element: ET.Element) -> ServerCode:
    return ServerCode.from_int(element.get("status"))


def parse_status(content: str, root_name: str) -> ServerCode:
    """Status of a ``<root status=".."/>`` answer.

    Returns ERROR_NO_ROOT when the root element is missing and UNKNOWN when
    it carries no status.
    """
    try:
        root = _parse(content, root_name)
    except ProtocolError as e:
        logger.debug(f"parse_status({root_name}): {e}")
        return ServerCode.ERROR_NO_ROOT
    if root.get("status") is None:
        return ServerCode.UNKNOWN
    return _status(root)


# =============================================================================
# Server configuration
# =============================================================================

@dataclass
class Endpoint:
    """A logical endpoint of the server."""
    name: str
    path: str
    max_period: Optional[int] = None  # seconds


@dataclass
class ServerConfig:
    """Answer to the handshake."""
    status: ServerCode
    public_key: Optional[str] = None
    endpoints: Dict[str, Endpoint] = field(default_factory=dict)
    speedtest_targets: List[str] = field(default_factory=list)

    def endpoint(self, name: str) -> Optional[Endpoint]:
        return self.endpoints.get(name)


def parse_server_config(content: str) -> ServerConfig:
    root = _parse(content, "config")
    config = ServerConfig(status=_status(root), public_key=root.get("publickey") or None)

    for request in root.iter("request"):
        name = request.get("type")
        path = request.get("path")
        if not name or path is None:
            continue
        max_period = request.get("max-period")
        config.endpoints[name] = Endpoint(
            name=name,
            path=path,
            max_period=int(max_period) if max_period and max_period.isdigit() else None,
        )

    speedtest = root.find("speedtest")
    if speedtest is not None:
        config.speedtest_targets = [t.get("url") for t in speedtest.iter("target") if t.get("url")]

    return config


# =============================================================================
# Job request
# =============================================================================

@dataclass
class FileAction:
    """Instruction attached to a job answer about a cached archive."""
    md5: str
    action: str


@dataclass
class JobRequestAnswer:
    """Answer to a job request."""
    status: ServerCode
    job: Optional[Job] = None
    file_actions: List[FileAction] = field(default_factory=list)
    session_stats: Optional[Dict[str, str]] = None


def parse_job_request(content: str) -> JobRequestAnswer:
    root = _parse(content, "jobrequest")
    answer = JobRequestAnswer(status=_status(root))

    for entry in root.findall("file"):
        md5 = entry.get("md5")
        if md5:
            answer.file_actions.append(FileAction(md5=md5, action=entry.get("action", "")))

    stats = root.find("stats")
    if stats is not None:
        answer.session_stats = dict(stats.attrib)

    if answer.status is not ServerCode.OK:
        return answer

    task = root.find("job")
    if task is None:
        raise ProtocolError("Job answer without a <job> element")
    renderer = task.find("renderer")
    if renderer is None:
        raise ProtocolError("Job answer without a <renderer> element")

    script = task.find("script")
    answer.job = Job(
        id=task.get("id", ""),
        frame_number=task.get("frame", ""),
        path=task.get("path", ""),
        use_gpu=task.get("use_gpu") == "1",
        renderer_command=renderer.get("commandline", ""),
        validation_url=unquote(task.get("validation_url", "")),
        script=(script.text or "") if script is not None else "",
        scene_md5=task.get("archive_md5", ""),
        renderer_md5=renderer.get("md5", ""),
        name=task.get("name", ""),
        password=task.get("password") or None,
        synchronous_upload=task.get("synchronous_upload") == "1",
        update_method=renderer.get("update_method", ""),
    )
    if not answer.job.id or not answer.job.scene_md5 or not answer.job.renderer_md5:
        raise ProtocolError("Job answer is missing its id or archive checksums")
    return answer


def build_md5_cache(md5s: Iterable[str]) -> str:
    """Manifest of the archives held locally, sent with each job request."""
    root = ET.Element("cache")
    for md5 in md5s:
        ET.SubElement(root, "file", md5=md5)
    return ET.tostring(root, encoding="unicode")


# =============================================================================
# Speed test
# =============================================================================

@dataclass
class SpeedTestResult:
    """Measured throughput to one mirror."""
    target: str
    speed: int  # bytes per second
    ping: int  # milliseconds


def build_speedtest_answer(results: Iterable[SpeedTestResult]) -> str:
    root = ET.Element("speedtest")
    for result in results:
        ET.SubElement(root, "result", target=result.target, speed=str(result.speed), ping=str(result.ping))
    return ET.tostring(root, encoding="unicode")
