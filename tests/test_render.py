"""Tests for renderer execution."""
import itertools
import threading

import pytest

from nodewright.errors import ErrorType
from nodewright.distributed.job import Job, JobPaths, KillReason
from nodewright.distributed.render import (
    RenderProcess,
    build_command,
    detect_error,
    find_output,
    parse_remaining,
)

from conftest import FakePlatform, FakeProcess


def make_job(**overrides) -> Job:
    values = dict(
        id="123", frame_number="7", path="main.blend", use_gpu=False,
        renderer_command=".e --factory-startup -b .c -o .o -f .f",
        validation_url="https://farm.test/v?job=123",
        script="", scene_md5="a" * 32, renderer_md5="b" * 32, name="Spring",
    )
    values.update(overrides)
    return Job(**values)


@pytest.fixture
def job():
    return make_job()


@pytest.fixture
def paths(job, configuration):
    return JobPaths.for_job(job, configuration, "rend.exe")


def producing(paths, lines, returncode=0, output_name="123_0007.png"):
    """Process factory whose renderer writes an image."""
    def factory(command):
        if output_name:
            (paths.working_dir / output_name).write_bytes(b"image" * 10)
        return FakeProcess(lines, returncode)
    return factory


class TestOutputParsing:
    """Tests for renderer output parsing."""

    def test_parse_remaining(self):
        """Test the remaining time of progress lines."""
        assert parse_remaining("Fra:7 Mem:120M | Time:00:03.12 | Remaining:01:30.50 | Path Tracing") == 90
        assert parse_remaining("Fra:7 | Remaining:1:02:03.00 | Sample 10/128") == 3723
        assert parse_remaining("Fra:7 Mem:120M | Synchronizing object") is None

    @pytest.mark.parametrize("line,expected", [
        ("CUDA error: Out of memory in cuMemAlloc", ErrorType.RENDERER_OUT_OF_VIDEO_MEMORY),
        ("System is out of GPU memory", ErrorType.RENDERER_OUT_OF_VIDEO_MEMORY),
        ("Error: Out of memory in allocator", ErrorType.RENDERER_OUT_OF_MEMORY),
        ("Malloc returns null: len=123", ErrorType.RENDERER_OUT_OF_MEMORY),
        ("Error: Python: Traceback (most recent call last):", ErrorType.RENDERER_CRASHED_PYTHON_ERROR),
        ("Fra:7 Mem:120M | Rendering 1/10 Tiles", ErrorType.OK),
    ])
    def test_detect_error(self, line, expected):
        """Test recognizing known failures."""
        assert detect_error(line) is expected

    def test_find_output(self, temp_dir):
        """Test locating the image written by the renderer."""
        (temp_dir / "123_script.py").write_text("import bpy")
        (temp_dir / "123_0007.png").write_bytes(b"png")
        (temp_dir / "124_0007.png").write_bytes(b"png")

        assert find_output(temp_dir / "123_") == temp_dir / "123_0007.png"
        assert find_output(temp_dir / "999_") is None
        assert find_output(temp_dir / "missing" / "123_") is None


class TestBuildCommand:
    """Tests for command line substitution."""

    def test_tokens(self, job, paths):
        """Test substituting the renderer, scene, output and frame."""
        command = build_command(job, paths)
        assert command == [
            str(paths.renderer_path), "--factory-startup", "-b", str(paths.scene_path),
            "-o", str(paths.working_dir / "123_"), "-f", "7",
        ]

    def test_script(self, job, paths, temp_dir):
        """Test that the script follows the scene."""
        script = temp_dir / "123_script.py"
        command = build_command(job, paths, script)
        scene_index = command.index(str(paths.scene_path))
        assert command[scene_index + 1:scene_index + 3] == ["-P", str(script)]


class TestRenderProcess:
    """Tests for running the renderer."""

    def test_success(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test a successful render."""
        platform = FakePlatform()
        platform.process_factory = producing(paths, [
            "Read blend: /work/main.blend",
            "Fra:7 Mem:120M | Time:00:01.00 | Remaining:00:30.00 | Rendering",
            "Fra:7 Mem:120M | Time:00:31.00 | Finished",
        ])
        loaded = []
        renderer = RenderProcess(platform, configuration, fake_gui, checkpoint_log)

        ret = renderer.render(job, paths, checkpoint_log.open(), on_scene_loaded=lambda: loaded.append(True))

        assert ret is ErrorType.OK
        assert loaded == [True]
        assert job.output_image_path == paths.working_dir / "123_0007.png"
        assert job.output_image_size == 50
        assert job.render.remaining_seconds == 30
        assert job.render.exit_code == 0
        assert job.render.process is None
        assert job.render.peak_memory_kib == 2048
        assert "Rendering" in fake_gui.statuses

    def test_environment(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test the renderer environment."""
        configuration.cores = 6
        platform = FakePlatform()
        platform.process_factory = producing(paths, [])
        RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)

        env = platform.environments[0]
        assert env["TMPDIR"] == str(paths.working_dir)
        assert env["TEMP"] == str(paths.working_dir)
        assert env["CORES"] == "6"

    @pytest.mark.parametrize("priority,high_priority,expected", [
        (19, False, 19),
        (0, False, 0),
        (-10, False, 0),
        (-10, True, -10),
    ])
    def test_priority(self, job, paths, configuration, fake_gui, checkpoint_log, priority, high_priority, expected):
        """Test that a raised priority is only requested where the OS grants it."""
        configuration.priority = priority
        platform = FakePlatform(high_priority=high_priority)
        platform.process_factory = producing(paths, [])
        RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)

        assert platform.priorities == [expected]

    def test_script_file(self, paths, configuration, fake_gui, checkpoint_log):
        """Test that the job script is written for the render and removed afterwards."""
        job = make_job(script="import bpy\nbpy.context.scene.render.threads = 4\n")
        seen = []

        def factory(command):
            script = command[command.index("-P") + 1]
            seen.append(open(script).read())
            return FakeProcess([])

        platform = FakePlatform()
        platform.process_factory = factory
        RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)

        assert seen == [job.script]
        assert not (paths.working_dir / "123_script.py").exists()

    def test_no_output(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test a renderer exiting without an image."""
        platform = FakePlatform()
        platform.process_factory = producing(paths, ["Fra:7 Finished"], output_name=None)
        ret = RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)
        assert ret is ErrorType.NOOUTPUTFILE

    def test_crash(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test a renderer exiting with an error code."""
        platform = FakePlatform()
        platform.process_factory = producing(paths, ["Segmentation fault"], returncode=139)
        ret = RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)
        assert ret is ErrorType.RENDERER_CRASHED
        assert job.output_image_path is None

    def test_detected_error_wins(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test that a recognized failure is reported even with an image."""
        platform = FakePlatform()
        platform.process_factory = producing(paths, [
            "Fra:7 Mem:120M | Rendering",
            "CUDA error: Out of memory in cuLaunchKernel",
            "Error: Python: Traceback",
        ])
        ret = RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)
        assert ret is ErrorType.RENDERER_OUT_OF_VIDEO_MEMORY

    def test_start_failure(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test a renderer that cannot be started."""
        platform = FakePlatform()

        def factory(command):
            raise FileNotFoundError(command[0])

        platform.process_factory = factory
        ret = RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)
        assert ret is ErrorType.RENDERER_CRASHED

    @pytest.mark.parametrize("reason,expected", [
        (KillReason.USER, ErrorType.RENDERER_KILLED_BY_USER),
        (KillReason.USER_OVER_TIME, ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME),
        (KillReason.SERVER, ErrorType.RENDERER_KILLED_BY_SERVER),
    ])
    def test_kill_attribution(self, job, paths, configuration, fake_gui, checkpoint_log, reason, expected):
        """Test the outcome of a killed render."""
        platform = FakePlatform()

        def factory(command):
            job.request_kill(reason)
            return FakeProcess(["Fra:7 Mem:120M | Rendering"], returncode=-9)

        platform.process_factory = factory
        ret = RenderProcess(platform, configuration, fake_gui, checkpoint_log).render(job, paths)
        assert ret is expected

    def test_max_render_time(self, job, paths, configuration, fake_gui, checkpoint_log):
        """Test that the watchdog kills renders lasting too long."""
        configuration.max_render_time = 50
        released = threading.Event()

        class HangingProcess(FakeProcess):
            def __init__(self):
                super().__init__([], returncode=-9)
                self.stdout = self._lines()

            def _lines(self):
                yield "Fra:7 Mem:120M | Rendering\n"
                released.wait(timeout=10)

        class KillingPlatform(FakePlatform):
            def kill(self, process):
                super().kill(process)
                released.set()

        platform = KillingPlatform()
        platform.process_factory = lambda command: HangingProcess()
        ticks = itertools.count(0, 100)
        renderer = RenderProcess(platform, configuration, fake_gui, checkpoint_log,
                                 clock=lambda: next(ticks), watch_interval=0.01)

        ret = renderer.render(job, paths)

        assert ret is ErrorType.RENDERER_KILLED_BY_USER_OVER_TIME
        assert job.kill_reason is KillReason.USER_OVER_TIME
        assert len(platform.killed) == 1
