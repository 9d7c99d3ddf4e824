"""Tests for per-build staging workspaces."""

import logging
import os
import stat
from unittest.mock import patch

import pytest

from mmbuild_mcp.build.state import StagingError
from mmbuild_mcp.build.workspace import (
    DESCRIPTOR_FILENAME,
    SCHEMA_FILENAME,
    JobWorkspace,
    sanitize_job_id,
)


class TestSanitizeJobId:
    """Tests for job id sanitization."""

    def test_plain_id_kept(self):
        """Test safe ids pass through."""
        assert sanitize_job_id("job-42_a.b") == "job-42_a.b"

    def test_integer_id(self):
        """Test numeric ids are accepted."""
        assert sanitize_job_id(1234) == "1234"

    def test_path_characters_replaced(self):
        """Test separators and traversal cannot reach the filesystem."""
        cleaned = sanitize_job_id("../../etc/passwd")

        assert "/" not in cleaned
        assert not cleaned.startswith(".")

    def test_empty_falls_back(self):
        """Test ids with nothing usable still produce a name."""
        assert sanitize_job_id("..") == "job"
        assert sanitize_job_id("") == "job"

    def test_length_is_bounded(self):
        """Test very long ids are shortened."""
        assert len(sanitize_job_id("x" * 500)) <= 48


class TestJobWorkspaceCreate:
    """Tests for JobWorkspace.create()."""

    def test_creates_input_and_output(self, tmp_path):
        """Test layout of a fresh workspace."""
        ws = JobWorkspace.create("7", str(tmp_path))

        assert ws.root.parent == tmp_path
        assert ws.input_dir.is_dir()
        assert ws.output_dir.is_dir()
        assert ws.name.startswith("mm-7-")
        assert ws.result_file == ws.output_dir / "result.json"

    def test_same_job_id_gets_distinct_roots(self, tmp_path):
        """Test names are unique even for the same job id."""
        first = JobWorkspace.create("same", str(tmp_path))
        second = JobWorkspace.create("same", str(tmp_path))

        assert first.root != second.root

    def test_missing_base_dir_raises_staging_error(self, tmp_path):
        """Test unusable parent directory is a staging failure."""
        with pytest.raises(StagingError):
            JobWorkspace.create("1", str(tmp_path / "does-not-exist"))

    def test_partial_workspace_removed_on_failure(self, tmp_path):
        """Test the root is removed when subdirectories cannot be created."""
        with patch("pathlib.Path.mkdir", side_effect=PermissionError("denied")):
            with pytest.raises(StagingError):
                JobWorkspace.create("1", str(tmp_path))

        assert list(tmp_path.iterdir()) == []


class TestJobWorkspaceWriteInput:
    """Tests for JobWorkspace.write_input()."""

    def test_writes_bytes(self, tmp_path):
        """Test artifacts land in input/ unchanged."""
        ws = JobWorkspace.create("1", str(tmp_path))

        path = ws.write_input(SCHEMA_FILENAME, b"\x00<ecore/>")

        assert path == ws.input_dir / SCHEMA_FILENAME
        assert path.read_bytes() == b"\x00<ecore/>"

    def test_writes_empty_blob(self, tmp_path):
        """Test empty artifacts are written as empty files."""
        ws = JobWorkspace.create("1", str(tmp_path))

        path = ws.write_input(DESCRIPTOR_FILENAME, b"")

        assert path.exists()
        assert path.read_bytes() == b""

    @pytest.mark.parametrize("name", ["", ".", "..", "../escape", "sub/file"])
    def test_rejects_unsafe_names(self, tmp_path, name):
        """Test names with directory components are rejected."""
        ws = JobWorkspace.create("1", str(tmp_path))

        with pytest.raises(StagingError):
            ws.write_input(name, b"data")

    def test_io_failure_raises_staging_error(self, tmp_path):
        """Test write errors are reported as staging failures."""
        ws = JobWorkspace.create("1", str(tmp_path))

        with patch("pathlib.Path.write_bytes", side_effect=OSError("disk full")):
            with pytest.raises(StagingError, match="disk full"):
                ws.write_input(SCHEMA_FILENAME, b"data")


class TestJobWorkspaceCleanup:
    """Tests for JobWorkspace.cleanup()."""

    def test_removes_nested_tree(self, tmp_path):
        """Test non-empty nested directories are removed."""
        ws = JobWorkspace.create("1", str(tmp_path))
        ws.write_input(SCHEMA_FILENAME, b"a")
        nested = ws.output_dir / "gen" / "src" / "pkg"
        nested.mkdir(parents=True)
        (nested / "Model.java").write_text("class Model {}")
        ws.result_file.write_text("{}")

        ws.cleanup()

        assert not ws.root.exists()
        assert not ws.exists()

    def test_idempotent(self, tmp_path):
        """Test cleanup can run twice."""
        ws = JobWorkspace.create("1", str(tmp_path))

        ws.cleanup()
        ws.cleanup()

        assert not ws.root.exists()

    def test_tolerates_files_removed_concurrently(self, tmp_path):
        """Test entries vanishing mid-cleanup are not errors."""
        ws = JobWorkspace.create("1", str(tmp_path))
        ws.write_input(SCHEMA_FILENAME, b"a")
        real_unlink = os.unlink

        def unlink_twice(path, *args, **kwargs):
            real_unlink(path)
            # Simulate the runtime having removed it first
            raise FileNotFoundError(path)

        with patch("mmbuild_mcp.build.workspace.os.unlink", side_effect=unlink_twice):
            ws.cleanup()

        assert not ws.root.exists()

    def test_swallows_and_logs_failures(self, tmp_path, caplog):
        """Test deletion errors never escape cleanup."""
        ws = JobWorkspace.create("1", str(tmp_path))

        with caplog.at_level(logging.WARNING):
            with patch(
                "mmbuild_mcp.build.workspace.os.rmdir",
                side_effect=PermissionError("busy"),
            ):
                ws.cleanup()  # Should not raise

        assert "Failed to delete" in caplog.text
        assert ws.root.exists()
        ws.cleanup()
        assert not ws.root.exists()

    def test_removes_read_only_directories(self, tmp_path):
        """Test directories the validator locked down are still removed."""
        ws = JobWorkspace.create("1", str(tmp_path))
        locked = ws.output_dir / "locked"
        sealed = ws.output_dir / "gen" / "sealed"
        locked.mkdir()
        sealed.mkdir(parents=True)
        (locked / "f.txt").write_text("x")
        (sealed / "g.txt").write_text("y")
        os.chmod(locked, 0o500)
        os.chmod(sealed, 0o000)
        os.chmod(ws.output_dir, 0o500)

        ws.cleanup()

        assert not ws.root.exists()

    def test_read_only_directories_with_permission_checks(self, tmp_path):
        """Test removal honours directory write bits, as for a non-root owner."""
        ws = JobWorkspace.create("1", str(tmp_path))
        locked = ws.output_dir / "locked"
        locked.mkdir()
        (locked / "f.txt").write_text("x")
        os.chmod(locked, 0o500)
        real_unlink, real_rmdir = os.unlink, os.rmdir

        def owner_checked(remove):
            def wrapper(path, *args, **kwargs):
                parent = os.path.dirname(os.fspath(path))
                if not os.stat(parent).st_mode & stat.S_IWUSR:
                    raise PermissionError(13, "Permission denied", path)
                return remove(path, *args, **kwargs)

            return wrapper

        with patch("mmbuild_mcp.build.workspace.os.unlink", owner_checked(real_unlink)):
            with patch("mmbuild_mcp.build.workspace.os.rmdir", owner_checked(real_rmdir)):
                ws.cleanup()

        assert not ws.root.exists()

    def test_symlinked_directory_not_followed(self, tmp_path):
        """Test cleanup removes a symlink without touching its target."""
        outside = tmp_path / "outside"
        outside.mkdir()
        os.chmod(outside, 0o755)
        (outside / "keep.txt").write_text("keep")
        base = tmp_path / "work"
        base.mkdir()
        ws = JobWorkspace.create("1", str(base))
        try:
            os.symlink(outside, ws.output_dir / "link", target_is_directory=True)
        except (OSError, NotImplementedError):
            pytest.skip("symlinks not supported")

        ws.cleanup()

        assert not ws.root.exists()
        assert (outside / "keep.txt").exists()
        assert stat.S_IMODE(outside.stat().st_mode) == 0o755


class TestJobWorkspaceContextManager:
    """Tests for scoped workspace usage."""

    def test_cleanup_on_normal_exit(self, tmp_path):
        """Test tree is removed when the block ends."""
        with JobWorkspace.create("1", str(tmp_path)) as ws:
            ws.write_input(SCHEMA_FILENAME, b"a")
            root = ws.root

        assert not root.exists()

    def test_cleanup_on_exception(self, tmp_path):
        """Test tree is removed when the block raises."""
        with pytest.raises(RuntimeError):
            with JobWorkspace.create("1", str(tmp_path)) as ws:
                root = ws.root
                raise RuntimeError("boom")

        assert not root.exists()
