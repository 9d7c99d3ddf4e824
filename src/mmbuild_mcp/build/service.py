"""Build service - one ephemeral, sandboxed validation per call.

Phases:
INIT → STAGED → EXECUTED → FINALIZED
  |________________________↑  (staging failure, no process launched)

The workspace is a scoped resource: it is removed on every path out of
``build_and_validate``, including cancellation. Every failure is turned
into a BuildResult; nothing but cancellation escapes.
"""

from __future__ import annotations

import asyncio
import logging
import time

from .config import BuilderConfig
from .launcher import ValidatorLauncher, create_launcher
from .parser import ResultParser
from .state import BuildInput, BuildPhase, BuildResult, LaunchError, StagingError
from .supervisor import wait_with_timeout
from .workspace import DESCRIPTOR_FILENAME, SCHEMA_FILENAME, JobWorkspace

logger = logging.getLogger(__name__)


def timeout_report(timeout: float) -> str:
    """Report text for a build that ran out of time."""
    return f"Timeout after {timeout:g}s"


class BuildService:
    """Stages inputs, runs the validator and interprets its output.

    Usage:
        service = BuildService(BuilderConfig.from_env())
        result = await service.build_and_validate(build_input)
    """

    def __init__(
        self,
        config: BuilderConfig | None = None,
        launcher: ValidatorLauncher | None = None,
        parser: ResultParser | None = None,
    ):
        """Initialize build service.

        Args:
            config: Builder configuration (read from environment if not provided)
            launcher: Launch strategy (selected from config if not provided)
            parser: Output parser
        """
        self._config = config or BuilderConfig.from_env()
        self._launcher = launcher or create_launcher(self._config)
        self._parser = parser or ResultParser()

    @property
    def config(self) -> BuilderConfig:
        return self._config

    async def build_and_validate(self, build_input: BuildInput) -> BuildResult:
        """Validate one pair of artifacts.

        Args:
            build_input: Artifacts, job id and flags

        Returns:
            Build result; failures are reported through the result

        Raises:
            asyncio.CancelledError: Only if the calling task is cancelled
        """
        job = build_input.job_id
        start_time = time.perf_counter()
        _log_phase(job, BuildPhase.INIT)

        try:
            with JobWorkspace.create(job, self._config.work_root) as workspace:
                result = await self._run(workspace, build_input)
        except StagingError as e:
            logger.error(f"Build {job}: staging failed: {e}")
            result = BuildResult.failure(f"Staging failed: {e}")
        except LaunchError as e:
            logger.error(f"Build {job}: launch failed: {e}")
            result = BuildResult.failure(f"Launch failed: {e}")
        except Exception as e:
            logger.exception(f"Build {job} crashed")
            result = BuildResult.failure(f"Crash: {e}")
        finally:
            _log_phase(job, BuildPhase.FINALIZED)

        duration = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Build {job} finished in {duration:.0f}ms: success={result.success}, "
            f"errors={result.error_count}, warnings={result.warning_count}"
        )
        return result

    async def _run(self, workspace: JobWorkspace, build_input: BuildInput) -> BuildResult:
        workspace.write_input(SCHEMA_FILENAME, build_input.schema_bytes)
        workspace.write_input(DESCRIPTOR_FILENAME, build_input.descriptor_bytes)
        _log_phase(build_input.job_id, BuildPhase.STAGED)

        handle = await self._launcher.launch(workspace, build_input.run_extra_pass)
        outcome = await wait_with_timeout(handle, self._config.timeout)
        _log_phase(build_input.job_id, BuildPhase.EXECUTED)

        if outcome.timed_out:
            return BuildResult.failure(timeout_report(self._config.timeout))
        return self._parser.parse(workspace.output_dir, outcome.console, outcome.exit_code)


def _log_phase(job: str | int, phase: BuildPhase) -> None:
    logger.debug(f"Build {job}: {phase.value}")


def run_build(build_input: BuildInput, config: BuilderConfig | None = None) -> BuildResult:
    """Blocking variant of BuildService.build_and_validate.

    Must not be called from a running event loop.
    """
    return asyncio.run(BuildService(config).build_and_validate(build_input))
