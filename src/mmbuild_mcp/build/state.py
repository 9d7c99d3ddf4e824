"""Build inputs, results and error types.

Phase machine for a single build:
INIT → STAGED → EXECUTED → FINALIZED
  |________________________↑  (staging failure)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class BuildPhase(str, Enum):
    """Phases of one ephemeral build."""

    INIT = "init"
    STAGED = "staged"
    EXECUTED = "executed"
    FINALIZED = "finalized"


class BuildError(Exception):
    """Build operation error."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "error": str(self),
            "kind": type(self).__name__,
        }
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code
        return result


class StagingError(BuildError):
    """Workspace could not be created or an input could not be written."""


class LaunchError(BuildError):
    """Validator, interpreter or container runtime could not be started."""


@dataclass(frozen=True)
class BuildInput:
    """Artifacts and flags for one validation run.

    ``job_id`` is opaque and only used to namespace the workspace and the
    container name.
    """

    job_id: str | int
    schema_bytes: bytes
    descriptor_bytes: bytes
    run_extra_pass: bool = False

    def __repr__(self) -> str:
        return (
            f"BuildInput(job_id={self.job_id!r}, "
            f"schema_bytes=<{len(self.schema_bytes)} bytes>, "
            f"descriptor_bytes=<{len(self.descriptor_bytes)} bytes>, "
            f"run_extra_pass={self.run_extra_pass})"
        )


@dataclass(frozen=True)
class BuildResult:
    """Terminal result of a build. Every field is always set."""

    success: bool
    error_count: int = 0
    warning_count: int = 0
    report: str = ""
    discovered_identifiers: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.error_count < 0 or self.warning_count < 0:
            raise ValueError(
                f"Counts must be non-negative: errors={self.error_count}, "
                f"warnings={self.warning_count}"
            )

    @classmethod
    def failure(cls, report: str) -> BuildResult:
        """Single-error failure used by the timeout, launch and crash paths."""
        return cls(success=False, error_count=1, warning_count=0, report=report)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "report": self.report,
        }
        if self.discovered_identifiers is not None:
            result["discoveredIdentifiers"] = list(self.discovered_identifiers)
        return result

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        status = "[OK] Validation succeeded" if self.success else "[FAILED] Validation failed"
        parts = [status]

        if self.error_count > 0:
            parts.append(f"  Errors: {self.error_count}")
        if self.warning_count > 0:
            parts.append(f"  Warnings: {self.warning_count}")
        if self.discovered_identifiers:
            parts.append(f"  Identifiers: {', '.join(self.discovered_identifiers)}")

        # First few report lines only
        lines = self.report.strip().splitlines()
        for line in lines[:5]:
            parts.append(f"    {line}")
        if len(lines) > 5:
            parts.append(f"    ... and {len(lines) - 5} more lines")

        return "\n".join(parts)
