"""Entry point for mmbuild-mcp server."""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
import uuid
from pathlib import Path

from .build import BuilderConfig, BuildInput, LaunchMode, run_build
from .server import create_server


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="mmbuild MCP Server - validate metamodels in an ephemeral sandbox"
    )
    parser.add_argument(
        "--project",
        type=str,
        default=None,
        help="Project root path. Artifact paths passed to the tools "
        "are constrained to this path.",
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in LaunchMode],
        default=None,
        help="Launch strategy (default: MMBUILD_MODE or sandboxed). "
        "'direct' runs the validator on the host and is only safe for trusted input.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Validator timeout in seconds (default: MMBUILD_TIMEOUT or 300).",
    )
    parser.add_argument(
        "--validator",
        type=str,
        default=None,
        help="Host path to the validator executable (default: MMBUILD_VALIDATOR).",
    )
    parser.add_argument(
        "--image",
        type=str,
        default=None,
        help="Sandbox base image (default: MMBUILD_IMAGE or eclipse-temurin:21-jre).",
    )
    parser.add_argument(
        "--validate",
        nargs=2,
        metavar=("SCHEMA", "DESCRIPTOR"),
        default=None,
        help="Validate one artifact pair, print the result as JSON and exit "
        "(exit code 0 on success, 1 on failure) instead of serving.",
    )
    parser.add_argument(
        "--extra-pass",
        action="store_true",
        default=False,
        help="With --validate: run the validator's extra generation pass.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> BuilderConfig:
    """Environment configuration with command line overrides applied."""
    config = BuilderConfig.from_env()
    overrides = {
        "mode": args.mode,
        "timeout": args.timeout,
        "validator_path": args.validator,
        "image": args.image,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def validate_once(config: BuilderConfig, schema: str, descriptor: str, extra_pass: bool) -> int:
    """Run a single validation and print the result. Returns the exit code."""
    build_input = BuildInput(
        job_id=f"cli-{uuid.uuid4().hex[:8]}",
        schema_bytes=Path(schema).read_bytes(),
        descriptor_bytes=Path(descriptor).read_bytes(),
        run_extra_pass=extra_pass,
    )
    result = run_build(build_input, config)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


async def main(args: argparse.Namespace, config: BuilderConfig) -> None:
    """Serve over stdio."""
    logger = logging.getLogger(__name__)
    project_path = args.project or os.getcwd()
    logger.info(f"Starting mmbuild MCP Server (project: {project_path}, mode: {config.mode.value})...")

    mcp = create_server(project_path, config)

    try:
        await mcp.run_stdio_async()
    except Exception:
        logger.exception("Server error")
        raise
    finally:
        logger.info("Server stopped")


def run() -> None:
    """Run the server, or a single validation with --validate."""
    configure_logging()
    logger = logging.getLogger(__name__)
    args = parse_args()

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    if args.validate:
        schema, descriptor = args.validate
        try:
            sys.exit(validate_once(config, schema, descriptor, args.extra_pass))
        except OSError as e:
            logger.error(f"Cannot read artifact: {e}")
            sys.exit(2)

    try:
        asyncio.run(main(args, config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
