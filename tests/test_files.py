"""Tests for filesystem helpers and transfer statistics."""
import hashlib
import os
import stat
import threading
from unittest.mock import patch

import pytest

from nodewright.utils import files
from nodewright.utils.stats import TransferStats

from conftest import make_zip


class TestMd5:
    """Tests for file hashing."""

    def test_md5(self, temp_dir):
        """Test hashing a file."""
        path = temp_dir / "data.bin"
        path.write_bytes(b"abc" * 10000)
        assert files.md5(path) == hashlib.md5(b"abc" * 10000).hexdigest()

    def test_md5_missing_file(self, temp_dir):
        """Test hashing a missing file."""
        assert files.md5(temp_dir / "missing") == ""


class TestArchives:
    """Tests for archive extraction."""

    def test_unzip_into(self, temp_dir):
        """Test extracting an archive."""
        archive = temp_dir / "scene.zip"
        make_zip(archive, {"scene/main.blend": "blend", "tex/wood.png": "png"})

        assert files.unzip_into(archive, temp_dir / "out")
        assert (temp_dir / "out" / "scene" / "main.blend").read_text() == "blend"
        assert (temp_dir / "out" / "tex" / "wood.png").exists()

    def test_unzip_corrupted(self, temp_dir):
        """Test that a corrupted archive is reported, not raised."""
        archive = temp_dir / "broken.zip"
        archive.write_bytes(b"PK not really")
        assert files.unzip_into(archive, temp_dir / "out") is False

    def test_make_tree_executable(self, temp_dir):
        """Test adding executable bits."""
        binary = temp_dir / "bin" / "rend.exe"
        binary.parent.mkdir()
        binary.write_text("#!/bin/sh\n")
        os.chmod(binary, 0o644)

        files.make_tree_executable(temp_dir)

        assert os.stat(binary).st_mode & stat.S_IXUSR


class TestMoves:
    """Tests for delete, move and link helpers."""

    def test_delete_file_and_tree(self, temp_dir):
        """Test deleting files and directories."""
        tree = temp_dir / "tree"
        (tree / "sub").mkdir(parents=True)
        (tree / "sub" / "f").write_text("x")
        single = temp_dir / "single"
        single.write_text("x")

        files.delete(tree)
        files.delete(single)
        files.delete(temp_dir / "missing")
        files.delete(None)

        assert not tree.exists()
        assert not single.exists()

    def test_move_into_replaces(self, temp_dir):
        """Test moving a file over an existing one."""
        source = temp_dir / "frame.png"
        source.write_text("new")
        target_dir = temp_dir / "archive"
        target_dir.mkdir()
        (target_dir / "frame.png").write_text("old")

        moved = files.move_into(source, target_dir)

        assert moved == target_dir / "frame.png"
        assert moved.read_text() == "new"
        assert not source.exists()

    def test_move_into_missing(self, temp_dir):
        """Test moving nothing."""
        assert files.move_into(None, temp_dir) is None
        assert files.move_into(temp_dir / "missing", temp_dir) is None

    def test_link_or_copy_links(self, temp_dir):
        """Test hard-linking on the same filesystem."""
        source = temp_dir / "a.zip"
        source.write_bytes(b"zip")
        target = temp_dir / "b.zip"

        assert files.link_or_copy(source, target) == "link"
        assert target.read_bytes() == b"zip"

    def test_link_or_copy_falls_back(self, temp_dir):
        """Test copying when hard links are unsupported."""
        source = temp_dir / "a.zip"
        source.write_bytes(b"zip")
        target = temp_dir / "b.zip"

        with patch("nodewright.utils.files.os.link", side_effect=OSError("cross-device link")):
            assert files.link_or_copy(source, target) == "copy"
        assert target.read_bytes() == b"zip"


class TestFreeSpace:
    """Tests for disk space checks."""

    def test_free_space_of_missing_path(self, temp_dir):
        """Test probing a path that does not exist yet."""
        assert files.free_space(temp_dir / "a" / "b") > 0

    def test_disk_full(self, temp_dir):
        """Test a disk reporting almost no free space."""
        sleeps = []
        with patch("nodewright.utils.files.free_space", return_value=10):
            assert files.no_free_space_on_disk(temp_dir, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_transient_zero(self, temp_dir):
        """Test a disk that reports 0 bytes once."""
        with patch("nodewright.utils.files.free_space", side_effect=[0, 10 ** 9]):
            assert not files.no_free_space_on_disk(temp_dir, sleep=lambda s: None)


class TestFormatting:
    """Tests for size parsing and formatting."""

    @pytest.mark.parametrize("value,expected", [
        ("32", 32),
        ("10k", 10000),
        ("1.5M", 1500000),
        ("0,4T", 400000000000),
        (7, 7),
    ])
    def test_parse_size(self, value, expected):
        """Test size parsing with decimal multiples."""
        assert files.parse_size(value) == expected

    def test_parse_size_invalid(self):
        """Test an invalid size."""
        with pytest.raises(ValueError):
            files.parse_size("many")

    def test_format_bytes(self):
        """Test size formatting."""
        assert files.format_bytes(5 * 1024 ** 2) == "5.00MB"
        assert files.format_bytes(3 * 1024 ** 3 + 1) == "3.00GB"
        assert files.format_bytes(2 * 1024 ** 4 + 1) == "2.00TB"

    def test_format_duration(self):
        """Test duration formatting."""
        assert files.format_duration(3723) == "1h 2min 3s"
        assert files.format_duration(60) == "1min"
        assert files.format_duration(0) == ""


class TestTransferStats:
    """Tests for cumulative throughput."""

    def test_average_speed(self):
        """Test the session average."""
        stats = TransferStats()
        stats.add(1000, 500)
        stats.add(3000, 500)
        assert stats.average_speed == 4000
        assert stats.session_traffic() == 4000

    def test_no_measurement(self):
        """Test the speed before any transfer."""
        assert TransferStats().average_speed == 0

    def test_negative_values_ignored(self):
        """Test that negative samples do not reduce the totals."""
        stats = TransferStats()
        stats.add(-5, -5)
        assert stats.to_dict() == {"bytes": 0, "millis": 0}

    def test_concurrent_adds(self):
        """Test updates from several threads."""
        stats = TransferStats()

        def worker():
            for _ in range(1000):
                stats.add(1, 1)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert stats.to_dict() == {"bytes": 4000, "millis": 4000}
