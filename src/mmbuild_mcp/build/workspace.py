"""Per-build staging directories.

Layout of one workspace:
    mm-<job>-<suffix>/
        input/model.ecore
        input/model.genmodel
        output/result.json   (written by the validator)
"""

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
from pathlib import Path
from types import TracebackType

from .state import StagingError

logger = logging.getLogger(__name__)

SCHEMA_FILENAME = "model.ecore"
DESCRIPTOR_FILENAME = "model.genmodel"
RESULT_FILENAME = "result.json"

# Job ids are opaque; only this alphabet reaches the filesystem
_UNSAFE_JOB_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
MAX_JOB_PREFIX = 48


def sanitize_job_id(job_id: str | int) -> str:
    """Map an opaque job id onto a short, filesystem-safe name fragment."""
    cleaned = _UNSAFE_JOB_CHARS.sub("_", str(job_id)).strip("._")
    return cleaned[:MAX_JOB_PREFIX] or "job"


class JobWorkspace:
    """Ephemeral staging tree owned by exactly one build.

    Usage:
        with JobWorkspace.create(job_id) as ws:
            ws.write_input(SCHEMA_FILENAME, data)
            ...
        # tree is gone here
    """

    def __init__(self, root: Path):
        self._root = root
        self._input_dir = root / "input"
        self._output_dir = root / "output"

    @property
    def root(self) -> Path:
        return self._root

    @property
    def name(self) -> str:
        """Unique directory name, also used to name the container."""
        return self._root.name

    @property
    def input_dir(self) -> Path:
        return self._input_dir

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def result_file(self) -> Path:
        return self._output_dir / RESULT_FILENAME

    @classmethod
    def create(cls, job_id: str | int, base_dir: str | None = None) -> JobWorkspace:
        """Allocate a fresh workspace for a job.

        Args:
            job_id: Opaque job identifier (sanitized into the directory name)
            base_dir: Parent directory (system temp dir if None)

        Returns:
            New workspace with empty input/ and output/ directories

        Raises:
            StagingError: If the directories cannot be created
        """
        prefix = f"mm-{sanitize_job_id(job_id)}-"
        try:
            root = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))
        except OSError as e:
            raise StagingError(f"Cannot create workspace in {base_dir or tempfile.gettempdir()}: {e}") from e

        workspace = cls(root)
        try:
            workspace.input_dir.mkdir()
            workspace.output_dir.mkdir()
        except OSError as e:
            workspace.cleanup()
            raise StagingError(f"Cannot create workspace directories in {root}: {e}") from e

        logger.debug(f"Created workspace {root}")
        return workspace

    def write_input(self, name: str, data: bytes) -> Path:
        """Write an input artifact into input/.

        Args:
            name: Plain file name (no directory components)
            data: Raw artifact bytes

        Returns:
            Path of the written file

        Raises:
            StagingError: If the name is unsafe or the write fails
        """
        if not name or name in (".", "..") or os.sep in name or "/" in name:
            raise StagingError(f"Invalid input file name: {name!r}")

        target = self._input_dir / name
        try:
            target.write_bytes(data)
        except OSError as e:
            raise StagingError(f"Cannot write input {name}: {e}") from e
        return target

    def exists(self) -> bool:
        return self._root.exists()

    def cleanup(self) -> None:
        """Delete the whole tree, children before parents.

        Never raises. Entries that disappear concurrently (e.g. removed by the
        container runtime) are skipped; other failures are logged. Directories
        the validator made read-only are made writable again first.
        """
        if not os.path.lexists(self._root):
            return

        _unlock_tree(str(self._root))

        failures = 0
        for dirpath, dirnames, filenames in os.walk(self._root, topdown=False):
            for filename in filenames:
                failures += _remove(os.path.join(dirpath, filename), os.unlink)
            for dirname in dirnames:
                path = os.path.join(dirpath, dirname)
                # Symlinked directories are listed in dirnames but never walked
                remover = os.unlink if os.path.islink(path) else os.rmdir
                failures += _remove(path, remover)
        failures += _remove(str(self._root), os.rmdir)

        if failures:
            logger.warning(f"Workspace cleanup left {failures} entries behind in {self._root}")
        else:
            logger.debug(f"Removed workspace {self._root}")

    def __enter__(self) -> JobWorkspace:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup()

    def __repr__(self) -> str:
        return f"JobWorkspace({str(self._root)!r})"


def _remove(path: str, remover) -> int:
    """Remove one entry; returns 1 on failure, 0 otherwise."""
    try:
        remover(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to delete {path}: {e}")
        return 1
    return 0


def _unlock_tree(root: str) -> None:
    """Give the owner rwx on every directory below root, without following links."""
    _chmod_owner_rwx(root)
    # Top-down: each child is unlocked before os.walk lists it
    for dirpath, dirnames, _ in os.walk(root):
        for dirname in dirnames:
            path = os.path.join(dirpath, dirname)
            if not os.path.islink(path):
                _chmod_owner_rwx(path)


def _chmod_owner_rwx(path: str) -> None:
    try:
        os.chmod(path, stat.S_IRWXU)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Cannot make {path} writable: {e}")
