"""Build coordinator - single-flight execution and result history.

Provides:
- Identical concurrent requests share one build
- Bounded history of recent results by job id
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Any

from .service import BuildService
from .state import BuildInput, BuildResult

logger = logging.getLogger(__name__)

MAX_RESULT_HISTORY: int = 64


def fingerprint_inputs(build_input: BuildInput) -> str:
    """Deterministic SHA-256 fingerprint of the build inputs.

    The job id is not part of the fingerprint: two jobs submitting the same
    artifacts with the same flags get the same key.
    """
    payload = (
        f"SCHEMA={hashlib.sha256(build_input.schema_bytes).hexdigest()}"
        f"|DESCRIPTOR={hashlib.sha256(build_input.descriptor_bytes).hexdigest()}"
        f"|EXTRA_PASS={str(build_input.run_extra_pass).lower()}"
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class BuildCoordinator:
    """Runs builds through a BuildService, at most once per input fingerprint.

    Usage:
        coordinator = BuildCoordinator(BuildService(config))
        result = await coordinator.run_once(build_input)
    """

    def __init__(self, service: BuildService, history_size: int = MAX_RESULT_HISTORY):
        self._service = service
        self._history_size = history_size
        self._in_flight: dict[str, asyncio.Task[BuildResult]] = {}
        self._results: OrderedDict[str, BuildResult] = OrderedDict()

    @property
    def service(self) -> BuildService:
        return self._service

    def is_in_flight(self, key: str) -> bool:
        """Whether a build with this fingerprint is currently running."""
        return key in self._in_flight

    async def run_once(self, build_input: BuildInput) -> BuildResult:
        """Start a build, or join the running build for identical inputs.

        Cancelling one waiter does not cancel the shared build.

        Args:
            build_input: Artifacts, job id and flags

        Returns:
            Build result
        """
        key = fingerprint_inputs(build_input)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._service.build_and_validate(build_input))
            self._in_flight[key] = task
            task.add_done_callback(lambda _t, k=key: self._in_flight.pop(k, None))
        else:
            logger.info(f"Job {build_input.job_id} joins in-flight build {key[:12]}")

        result = await asyncio.shield(task)
        self._remember(str(build_input.job_id), result)
        return result

    def _remember(self, job_id: str, result: BuildResult) -> None:
        self._results[job_id] = result
        self._results.move_to_end(job_id)
        while len(self._results) > self._history_size:
            self._results.popitem(last=False)

    def get_last_result(self, job_id: str | int) -> BuildResult | None:
        """Most recent result for a job id, if still in history."""
        return self._results.get(str(job_id))

    def to_dict(self) -> dict[str, Any]:
        """Get coordinator status as dictionary."""
        return {
            "inFlight": len(self._in_flight),
            "results": {job: result.to_dict() for job, result in self._results.items()},
        }
