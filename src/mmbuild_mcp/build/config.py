"""Builder configuration.

Everything is read from the environment (MMBUILD_*), with command-line
overrides applied by the entry point via ``dataclasses.replace``.
Note that ``replace`` re-runs validation.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .policy import SandboxPolicy

DEFAULT_IMAGE = "eclipse-temurin:21-jre"
DEFAULT_INTERPRETER = ("java", "-jar")
DEFAULT_TIMEOUT = 300.0
DEFAULT_RUNTIME = "docker"


class LaunchMode(str, Enum):
    """How the validator is started."""

    SANDBOXED = "sandboxed"
    DIRECT = "direct"


@dataclass(frozen=True)
class BuilderConfig:
    """Settings for the ephemeral build service."""

    mode: LaunchMode = LaunchMode.SANDBOXED
    image: str = DEFAULT_IMAGE
    validator_path: str = ""
    interpreter: tuple[str, ...] = DEFAULT_INTERPRETER
    timeout: float = DEFAULT_TIMEOUT
    runtime: str = DEFAULT_RUNTIME
    work_root: str | None = None
    policy: SandboxPolicy = field(default_factory=SandboxPolicy)

    def __post_init__(self) -> None:
        """Validate settings."""
        # Accept plain strings for the mode (e.g. from argparse)
        object.__setattr__(self, "mode", LaunchMode(self.mode))
        object.__setattr__(self, "interpreter", tuple(self.interpreter))

        if self.timeout <= 0:
            raise ValueError(f"Timeout must be positive: {self.timeout}")
        if not self.runtime:
            raise ValueError("Container runtime must not be empty")
        if self.mode == LaunchMode.SANDBOXED:
            SandboxPolicy.validate_image(self.image)
        if self.work_root is not None and not os.path.isabs(self.work_root):
            object.__setattr__(self, "work_root", os.path.abspath(self.work_root))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BuilderConfig:
        """Build configuration from MMBUILD_* environment variables.

        Args:
            environ: Environment mapping (os.environ if None)

        Returns:
            Validated configuration

        Raises:
            ValueError: If a variable has an invalid value
        """
        env = os.environ if environ is None else environ

        interpreter = DEFAULT_INTERPRETER
        if "MMBUILD_INTERPRETER" in env:
            interpreter = tuple(shlex.split(env["MMBUILD_INTERPRETER"]))

        try:
            timeout = float(env.get("MMBUILD_TIMEOUT", DEFAULT_TIMEOUT))
            pids_limit = int(env.get("MMBUILD_PIDS_LIMIT", 256))
        except ValueError as e:
            raise ValueError(f"Invalid numeric setting: {e}") from e

        policy = SandboxPolicy(
            cpus=env.get("MMBUILD_CPUS", "1"),
            memory=env.get("MMBUILD_MEMORY", "1g"),
            pids_limit=pids_limit,
            tmpfs_size=env.get("MMBUILD_TMPFS_SIZE", "256m"),
        )

        return cls(
            mode=LaunchMode(env.get("MMBUILD_MODE", LaunchMode.SANDBOXED.value).lower()),
            image=env.get("MMBUILD_IMAGE", DEFAULT_IMAGE),
            validator_path=env.get("MMBUILD_VALIDATOR", ""),
            interpreter=interpreter,
            timeout=timeout,
            runtime=env.get("MMBUILD_RUNTIME", DEFAULT_RUNTIME),
            work_root=env.get("MMBUILD_WORK_ROOT") or None,
            policy=policy,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "mode": self.mode.value,
            "validatorPath": self.validator_path,
            "interpreter": list(self.interpreter),
            "timeoutSeconds": self.timeout,
            "workRoot": self.work_root,
        }
        if self.mode == LaunchMode.SANDBOXED:
            result["sandbox"] = {
                "runtime": self.runtime,
                "image": self.image,
                "cpus": self.policy.cpus,
                "memory": self.policy.memory,
                "pidsLimit": self.policy.pids_limit,
                "tmpfsSize": self.policy.tmpfs_size,
            }
        return result
