"""Ephemeral sandboxed validation of metamodel artifacts.

Provides:
- Per-build staging workspaces with guaranteed cleanup
- Hardened container launch (direct host launch for tests)
- Timeout supervision with forced termination
- Structured result parsing with exit-code fallback
- Single-flight coordination of identical requests
"""

from .config import BuilderConfig, LaunchMode
from .coordinator import BuildCoordinator, fingerprint_inputs
from .launcher import (
    DirectLauncher,
    ProcessHandle,
    SandboxedLauncher,
    ValidatorLauncher,
    create_launcher,
)
from .parser import ResultParser
from .policy import SandboxPolicy
from .service import BuildService, run_build
from .state import (
    BuildError,
    BuildInput,
    BuildPhase,
    BuildResult,
    LaunchError,
    StagingError,
)
from .supervisor import Outcome, OutcomeKind, wait_with_timeout
from .workspace import JobWorkspace

__all__ = [
    "BuilderConfig",
    "LaunchMode",
    "SandboxPolicy",
    "BuildInput",
    "BuildResult",
    "BuildPhase",
    "BuildError",
    "StagingError",
    "LaunchError",
    "JobWorkspace",
    "ValidatorLauncher",
    "DirectLauncher",
    "SandboxedLauncher",
    "ProcessHandle",
    "create_launcher",
    "Outcome",
    "OutcomeKind",
    "wait_with_timeout",
    "ResultParser",
    "BuildService",
    "run_build",
    "BuildCoordinator",
    "fingerprint_inputs",
]
