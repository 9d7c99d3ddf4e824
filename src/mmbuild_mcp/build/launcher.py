"""Validator launch strategies.

Both strategies start the validator with the same CLI contract:
    --schema <path> --descriptor <path> --out <dir> --extra-pass <true|false>

SandboxedLauncher is the production strategy: artifacts and validator are
both untrusted, so the validator only ever sees the workspace through a
hardened container. DirectLauncher runs on the host and exists for tests
and trusted local setups.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from .config import BuilderConfig, LaunchMode
from .policy import CONTAINER_WORKDIR
from .state import LaunchError
from .workspace import DESCRIPTOR_FILENAME, SCHEMA_FILENAME, JobWorkspace

logger = logging.getLogger(__name__)

# Bound for `<runtime> kill <name>` after a timeout
CONTAINER_KILL_TIMEOUT: float = 10.0


def validator_args(schema: str, descriptor: str, out_dir: str, run_extra_pass: bool) -> list[str]:
    """Validator CLI arguments."""
    return [
        "--schema",
        schema,
        "--descriptor",
        descriptor,
        "--out",
        out_dir,
        "--extra-pass",
        "true" if run_extra_pass else "false",
    ]


@dataclass
class ProcessHandle:
    """A started validator process.

    stdout and stderr are merged into ``process.stdout``.
    """

    process: asyncio.subprocess.Process
    command: list[str]
    container_name: str | None = None
    runtime: str | None = None
    own_process_group: bool = False
    killed: bool = field(default=False, init=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    async def kill(self) -> None:
        """Force-terminate the process (tree) and its container, if any.

        Safe to call on a process that already exited.
        """
        self.killed = True
        self._kill_process()
        if self.container_name and self.runtime:
            await _kill_container(self.runtime, self.container_name)

    def kill_process_group(self) -> bool:
        """SIGKILL every process left in the validator's process group.

        Used after a normal exit, when only background children remain.

        Returns:
            True if the group was signalled
        """
        pid = self.pid
        if not self.own_process_group or pid is None or os.name == "nt":
            return False
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Failed to kill process group {pid}: {e}")
            return False
        return True

    def _kill_process(self) -> None:
        if self.kill_process_group():
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass


async def _kill_container(runtime: str, name: str) -> None:
    """Stop a container by name; --rm takes care of removal."""
    try:
        proc = await asyncio.create_subprocess_exec(
            runtime,
            "kill",
            name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=CONTAINER_KILL_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            logger.warning(f"Timed out killing container {name}")
            return
        logger.info(f"Killed container {name}")
    except Exception as e:
        logger.warning(f"Failed to kill container {name}: {e}")


class ValidatorLauncher(ABC):
    """Starts the validator for a staged workspace."""

    def __init__(self, config: BuilderConfig):
        self._config = config

    @property
    def config(self) -> BuilderConfig:
        return self._config

    def resolve_validator(self) -> str:
        """Absolute host path of the validator.

        Raises:
            LaunchError: If no validator is configured or it does not exist
        """
        if not self._config.validator_path:
            raise LaunchError("No validator configured (set MMBUILD_VALIDATOR)")
        path = os.path.abspath(self._config.validator_path)
        if not os.path.isfile(path):
            raise LaunchError(f"Validator not found: {path}")
        return path

    @abstractmethod
    def build_command(
        self, workspace: JobWorkspace, validator: str, run_extra_pass: bool
    ) -> list[str]:
        """Complete command line for one build."""

    def container_name(self, workspace: JobWorkspace) -> str | None:
        """Container to kill on timeout, if the strategy uses one."""
        return None

    async def launch(self, workspace: JobWorkspace, run_extra_pass: bool = False) -> ProcessHandle:
        """Start the validator on a staged workspace.

        Args:
            workspace: Workspace with both inputs written
            run_extra_pass: Passed through as --extra-pass

        Returns:
            Handle of the running process

        Raises:
            LaunchError: If the validator or the runtime cannot be started
        """
        validator = self.resolve_validator()
        command = self.build_command(workspace, validator, run_extra_pass)
        new_session = os.name != "nt"
        logger.info(f"Launching validator: {' '.join(command)}")

        try:
            # Never use shell=True (security)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(workspace.root),
                start_new_session=new_session,
            )
        except OSError as e:
            raise LaunchError(f"Cannot start {command[0]}: {e}") from e

        container = self.container_name(workspace)
        return ProcessHandle(
            process=process,
            command=command,
            container_name=container,
            runtime=self._config.runtime if container else None,
            own_process_group=new_session,
        )


class DirectLauncher(ValidatorLauncher):
    """Runs the validator on the host with host paths. Not for untrusted input."""

    def build_command(
        self, workspace: JobWorkspace, validator: str, run_extra_pass: bool
    ) -> list[str]:
        return [
            *self._config.interpreter,
            validator,
            *validator_args(
                str(workspace.input_dir / SCHEMA_FILENAME),
                str(workspace.input_dir / DESCRIPTOR_FILENAME),
                str(workspace.output_dir),
                run_extra_pass,
            ),
        ]


class SandboxedLauncher(ValidatorLauncher):
    """Runs the validator inside a hardened, network-less container."""

    def container_name(self, workspace: JobWorkspace) -> str | None:
        return f"mmbuild-{workspace.name}"

    def _user(self) -> str | None:
        # Keep output files owned by the host user so cleanup can remove them
        if hasattr(os, "getuid") and hasattr(os, "getgid"):
            return f"{os.getuid()}:{os.getgid()}"
        return None

    def build_command(
        self, workspace: JobWorkspace, validator: str, run_extra_pass: bool
    ) -> list[str]:
        policy = self._config.policy
        work = PurePosixPath(CONTAINER_WORKDIR)
        validator_in_container = policy.container_validator_path(os.path.basename(validator))

        return [
            self._config.runtime,
            "run",
            *policy.run_options(
                workspace_root=str(workspace.root.resolve()),
                validator_path=validator,
                container_name=self.container_name(workspace),
                user=self._user(),
            ),
            self._config.image,
            *self._config.interpreter,
            validator_in_container,
            *validator_args(
                str(work / "input" / SCHEMA_FILENAME),
                str(work / "input" / DESCRIPTOR_FILENAME),
                str(work / "output"),
                run_extra_pass,
            ),
        ]


def create_launcher(config: BuilderConfig) -> ValidatorLauncher:
    """Select the launch strategy from configuration."""
    if config.mode == LaunchMode.DIRECT:
        logger.warning(
            "Direct launch mode runs the validator unsandboxed on the host; "
            "use it only with trusted input"
        )
        return DirectLauncher(config)
    return SandboxedLauncher(config)
