"""Sandbox policy - container hardening profile and resource caps.

Security measures (always applied, not configurable):
- Container removed on exit, unique name per build
- Read-only root filesystem, no network namespace
- All Linux capabilities dropped, privilege escalation disabled
- Writable /tmp only as a noexec,nosuid size-capped tmpfs
- Workspace bind-mounted read-write, validator bind-mounted read-only

Only the caps (cpus, memory, pids, tmpfs size) are tunable, and their
values are validated before they reach the container runtime.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Final

# Fixed in-container locations
CONTAINER_WORKDIR: Final[str] = "/work"
CONTAINER_VALIDATOR_DIR: Final[str] = "/opt/validator"
CONTAINER_TMP: Final[str] = "/tmp"

# Flags that every sandboxed run carries, independent of the caps
HARDENING_FLAGS: Final[tuple[str, ...]] = (
    "--rm",
    "--read-only",
    "--network",
    "none",
    "--cap-drop",
    "ALL",
    "--security-opt",
    "no-new-privileges",
)

# Fractional CPU count (e.g., 1, 0.5, 2.25)
CPUS_PATTERN: Final[re.Pattern[str]] = re.compile(r"^(?:[1-9][0-9]*|0)(?:\.[0-9]{1,3})?$")

# Docker size notation (e.g., 1g, 512m, 256MB)
SIZE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[1-9][0-9]*(?:[kmg]b?)?$", re.IGNORECASE)

# Container names: [a-zA-Z0-9][a-zA-Z0-9_.-]+
CONTAINER_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{1,127}$")

# Image references: [registry[:port]/]repo[:tag][@digest], no whitespace or options
IMAGE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-z0-9][a-z0-9._/:-]*(?:@sha256:[a-f0-9]{64})?$", re.IGNORECASE
)

MAX_PIDS_LIMIT: Final[int] = 32768


@dataclass(frozen=True)
class SandboxPolicy:
    """Resource caps for the sandboxed validator.

    Validates:
    - CPU share is a positive decimal
    - Memory and tmpfs sizes use container runtime size notation
    - Process limit is within sane bounds
    """

    cpus: str = "1"
    memory: str = "1g"
    pids_limit: int = 256
    tmpfs_size: str = "256m"

    def __post_init__(self) -> None:
        """Validate caps."""
        if not CPUS_PATTERN.match(self.cpus) or float(self.cpus) <= 0:
            raise ValueError(f"Invalid cpus: {self.cpus}")
        if not SIZE_PATTERN.match(self.memory):
            raise ValueError(f"Invalid memory limit: {self.memory}")
        if not SIZE_PATTERN.match(self.tmpfs_size):
            raise ValueError(f"Invalid tmpfs size: {self.tmpfs_size}")
        if not 1 <= self.pids_limit <= MAX_PIDS_LIMIT:
            raise ValueError(f"Invalid pids limit: {self.pids_limit}")

    @staticmethod
    def validate_image(image: str) -> str:
        """Validate a container image reference.

        Raises:
            ValueError: If the reference is empty or could be read as an option
        """
        if not image or not IMAGE_PATTERN.match(image):
            raise ValueError(f"Invalid image reference: {image!r}")
        return image

    @staticmethod
    def validate_container_name(name: str) -> str:
        """Validate a container name.

        Raises:
            ValueError: If the name is not accepted by the container runtime
        """
        if not CONTAINER_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid container name: {name!r}")
        return name

    def container_validator_path(self, validator_name: str) -> str:
        """In-container location of the read-only mounted validator."""
        return str(PurePosixPath(CONTAINER_VALIDATOR_DIR) / validator_name)

    def run_options(
        self,
        workspace_root: str,
        validator_path: str,
        container_name: str,
        user: str | None = None,
    ) -> list[str]:
        """Build the container runtime options for one build.

        Args:
            workspace_root: Host path of the workspace (mounted at /work)
            validator_path: Host path of the validator (mounted read-only)
            container_name: Unique container name
            user: Optional "uid:gid" to run as

        Returns:
            Options to place between ``run`` and the image reference
        """
        name = self.validate_container_name(container_name)
        validator_target = self.container_validator_path(Path(validator_path).name)

        options = [
            *HARDENING_FLAGS,
            "--name",
            name,
            "--cpus",
            self.cpus,
            "--memory",
            self.memory,
            "--pids-limit",
            str(self.pids_limit),
            "--tmpfs",
            f"{CONTAINER_TMP}:rw,noexec,nosuid,size={self.tmpfs_size}",
            "-v",
            f"{workspace_root}:{CONTAINER_WORKDIR}:rw",
            "-v",
            f"{validator_path}:{validator_target}:ro",
            "-w",
            CONTAINER_WORKDIR,
        ]
        if user:
            options.extend(["--user", user])
        return options
