"""Pytest fixtures for mmbuild-mcp tests."""

import os
import sys
import textwrap

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from mmbuild_mcp.build.config import BuilderConfig, LaunchMode  # noqa: E402

# Every fake validator starts by parsing the real CLI contract
VALIDATOR_PREAMBLE = """\
import argparse
import json
import os
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("--schema", required=True)
parser.add_argument("--descriptor", required=True)
parser.add_argument("--out", required=True)
parser.add_argument("--extra-pass", default="false")
args = parser.parse_args()


def write_result(doc):
    with open(os.path.join(args.out, "result.json"), "w") as f:
        json.dump(doc, f)

"""


@pytest.fixture
def make_validator(tmp_path):
    """Factory writing a fake validator script with the given body."""
    counter = [0]

    def factory(body: str) -> str:
        counter[0] += 1
        script = tmp_path / f"validator_{counter[0]}.py"
        script.write_text(VALIDATOR_PREAMBLE + textwrap.dedent(body))
        return str(script)

    return factory


@pytest.fixture
def work_root(tmp_path):
    """Dedicated parent directory for workspaces, so leaks are visible."""
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def direct_config(work_root):
    """Factory for a direct-mode config running a script with this interpreter."""

    def factory(validator: str, timeout: float = 30.0) -> BuilderConfig:
        return BuilderConfig(
            mode=LaunchMode.DIRECT,
            validator_path=validator,
            interpreter=(sys.executable,),
            timeout=timeout,
            work_root=str(work_root),
        )

    return factory


@pytest.fixture
def sample_result_doc():
    """Well-formed result.json content."""
    return {
        "success": True,
        "errors": 0,
        "warnings": 2,
        "report": "ok",
        "identifiers": ["http://a", "http://b"],
    }
