"""Interpretation of validator output.

Preferred source is the structured result file written by the validator:
    {"success": bool, "errors": int, "warnings": int,
     "report": str, "identifiers": [str]}

Anything else (missing file, invalid JSON, wrong field types, negative
counts) falls back to exit-code inference over the console output.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .state import BuildResult
from .workspace import RESULT_FILENAME

logger = logging.getLogger(__name__)

# Larger result files are treated as malformed
MAX_RESULT_BYTES: int = 5_000_000


class ResultDocument(BaseModel):
    """Schema of result.json. Strict: no coercion between types."""

    model_config = ConfigDict(strict=True, extra="ignore")

    success: bool = False
    errors: int = Field(default=0, ge=0)
    warnings: int = Field(default=0, ge=0)
    report: str | None = None
    # nsUris is the older name of the same field
    identifiers: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("identifiers", "nsUris")
    )


class ResultParser:
    """Turns validator output into a BuildResult. Never raises."""

    def parse(self, output_dir: Path, console: str, exit_code: int | None) -> BuildResult:
        """Interpret the output of a finished validator.

        Args:
            output_dir: Workspace output directory
            console: Captured console text
            exit_code: Process exit code

        Returns:
            Result from result.json if usable, else from the exit code
        """
        document = self.load_document(output_dir / RESULT_FILENAME)
        if document is None:
            return self.from_exit_code(console, exit_code)

        identifiers = tuple(document.identifiers) if document.identifiers else None
        return BuildResult(
            success=document.success,
            error_count=document.errors,
            warning_count=document.warnings,
            report=console if document.report is None else document.report,
            discovered_identifiers=identifiers,
        )

    def load_document(self, path: Path) -> ResultDocument | None:
        """Load and validate the result file; None if absent or unusable.

        The file and its directory are written by the untrusted validator, so
        symlinks are never followed and only regular files are read.
        """
        try:
            if path.parent.is_symlink() or path.is_symlink():
                logger.warning(f"Result file is a symlink, ignoring: {path}")
                return None
            if not path.is_file():
                logger.debug(f"No result file at {path}")
                return None
            data = _read_regular_file(path, MAX_RESULT_BYTES)
            if data is None:
                logger.warning(f"Result file is not a regular file or too large, ignoring: {path}")
                return None
            return ResultDocument.model_validate_json(data)
        except Exception as e:
            logger.warning(f"Malformed result file {path}, using exit code: {e}")
            return None

    @staticmethod
    def from_exit_code(console: str, exit_code: int | None) -> BuildResult:
        """Infer the result from the exit code alone."""
        success = exit_code == 0
        report = console if console.strip() else f"Process exit {exit_code}"
        return BuildResult(
            success=success,
            error_count=0 if success else 1,
            warning_count=0,
            report=report,
        )


def _read_regular_file(path: Path, limit: int) -> bytes | None:
    """Read a regular file without following a final symlink.

    Returns:
        File content, or None if the entry is not a regular file or exceeds limit
    """
    flags = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_NONBLOCK", 0)
    fd = os.open(path, flags)
    with os.fdopen(fd, "rb") as f:
        info = os.fstat(f.fileno())
        if not stat.S_ISREG(info.st_mode) or info.st_size > limit:
            return None
        return f.read(limit + 1)
