"""MCP Server for ephemeral metamodel validation."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import uuid

from mcp.server.fastmcp import FastMCP

from .build import BuildCoordinator, BuilderConfig, BuildInput, BuildService

logger = logging.getLogger(__name__)

# Largest artifact accepted through the tools
MAX_ARTIFACT_BYTES = 50_000_000

# Global coordinator (one per server process)
_coordinator: BuildCoordinator | None = None
_config: BuilderConfig | None = None
_project_root: str | None = None


def get_coordinator() -> BuildCoordinator:
    """Get or create the build coordinator."""
    global _coordinator
    if _coordinator is None:
        _coordinator = BuildCoordinator(BuildService(_config or BuilderConfig.from_env()))
    return _coordinator


def resolve_artifact_path(path: str, project_root: str | None) -> str:
    """Resolve an artifact path, constrained to the project root.

    Args:
        path: Absolute path or path relative to the project root
        project_root: Root directory all artifacts must live in (unconstrained if None)

    Returns:
        Absolute, normalized path of an existing file

    Raises:
        ValueError: If the path escapes the project root, is too large or is not a file
    """
    if not path:
        raise ValueError("Empty artifact path")

    base = os.path.abspath(project_root) if project_root else os.getcwd()
    resolved = os.path.realpath(os.path.join(base, path))

    if project_root:
        root = os.path.realpath(base)
        try:
            if os.path.commonpath([resolved, root]) != root:
                raise ValueError(f"Artifact path outside project: {path}")
        except ValueError as e:
            raise ValueError(f"Artifact path outside project: {path}") from e

    if not os.path.isfile(resolved):
        raise ValueError(f"Artifact not found: {path}")
    if os.path.getsize(resolved) > MAX_ARTIFACT_BYTES:
        raise ValueError(f"Artifact too large: {path}")
    return resolved


def decode_artifact(data: str, label: str) -> bytes:
    """Decode a base64 artifact payload.

    Raises:
        ValueError: If the payload is not valid base64 or too large
    """
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 in {label}: {e}") from e
    if len(raw) > MAX_ARTIFACT_BYTES:
        raise ValueError(f"{label} too large")
    return raw


def create_server(
    project_path: str | None = None,
    config: BuilderConfig | None = None,
) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        project_path: Root directory artifact paths are constrained to.
        config: Builder configuration (read from environment if not provided)
    """
    global _config, _project_root, _coordinator
    _config = config
    _project_root = project_path
    _coordinator = None
    mcp = FastMCP("mmbuild-mcp")
    coordinator = get_coordinator()

    async def run(build_input: BuildInput) -> dict:
        result = await coordinator.run_once(build_input)
        return {"success": True, "data": result.to_dict(), "summary": result.to_summary()}

    # ============== Validation Tools ==============

    @mcp.tool()
    async def validate_metamodel(
        schema_path: str,
        descriptor_path: str,
        job_id: str | None = None,
        run_extra_pass: bool = False,
    ) -> dict:
        """
        Validate a metamodel (schema + generator descriptor) in an ephemeral sandbox.

        Both files are copied into a fresh workspace, checked by the validator
        inside a network-less, resource-capped container, and the workspace is
        deleted afterwards. The returned data always has success, errorCount,
        warningCount and report; discoveredIdentifiers is present when the
        validator reported any.

        Args:
            schema_path: Path to the schema file (e.g. model.ecore)
            descriptor_path: Path to the generator descriptor (e.g. model.genmodel)
            job_id: Identifier for this run (generated if omitted)
            run_extra_pass: Ask the validator to run its extra generation pass
        """
        try:
            schema = resolve_artifact_path(schema_path, _project_root)
            descriptor = resolve_artifact_path(descriptor_path, _project_root)
            with open(schema, "rb") as f:
                schema_bytes = f.read()
            with open(descriptor, "rb") as f:
                descriptor_bytes = f.read()
        except (OSError, ValueError) as e:
            return {"success": False, "error": str(e)}

        return await run(
            BuildInput(
                job_id=job_id or uuid.uuid4().hex,
                schema_bytes=schema_bytes,
                descriptor_bytes=descriptor_bytes,
                run_extra_pass=run_extra_pass,
            )
        )

    @mcp.tool()
    async def validate_metamodel_content(
        schema_b64: str,
        descriptor_b64: str,
        job_id: str | None = None,
        run_extra_pass: bool = False,
    ) -> dict:
        """
        Validate a metamodel passed inline as base64 content.

        Same as validate_metamodel, for artifacts that are not on disk.

        Args:
            schema_b64: Base64-encoded schema file
            descriptor_b64: Base64-encoded generator descriptor
            job_id: Identifier for this run (generated if omitted)
            run_extra_pass: Ask the validator to run its extra generation pass
        """
        try:
            schema_bytes = decode_artifact(schema_b64, "schema")
            descriptor_bytes = decode_artifact(descriptor_b64, "descriptor")
        except ValueError as e:
            return {"success": False, "error": str(e)}

        return await run(
            BuildInput(
                job_id=job_id or uuid.uuid4().hex,
                schema_bytes=schema_bytes,
                descriptor_bytes=descriptor_bytes,
                run_extra_pass=run_extra_pass,
            )
        )

    @mcp.tool()
    async def get_build_result(job_id: str) -> dict:
        """Get the result of a recent validation run by job id."""
        result = coordinator.get_last_result(job_id)
        if result is None:
            return {"success": False, "error": f"No result for job {job_id}"}
        return {"success": True, "data": result.to_dict()}

    @mcp.tool()
    async def get_build_config() -> dict:
        """Get the effective validator and sandbox configuration."""
        return {"success": True, "data": coordinator.service.config.to_dict()}

    # ============== Resources ==============

    @mcp.resource("build://results", mime_type="application/json")
    async def build_results_resource() -> str:
        """Recent validation results (JSON), keyed by job id."""
        return json.dumps(coordinator.to_dict(), indent=2)

    logger.info("mmbuild MCP Server initialized")
    return mcp
