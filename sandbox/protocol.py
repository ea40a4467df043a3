"""
Child process protocol for sandbox execution.

Each phase runs a generated, self-contained script that imports an entry point
from ``sandbox.child`` and hands it an embedded JSON payload. The child answers
with exactly one ``<SENTINEL>: <json>`` line on stdout.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from execution_core.errors import ParseError
from sandbox.child import CREDENTIAL_SENTINEL, GLOBAL_SENTINEL, LEGACY_SENTINEL

__all__ = [
    "CREDENTIAL_SENTINEL",
    "GLOBAL_SENTINEL",
    "LEGACY_SENTINEL",
    "build_command_script",
    "build_fetch_script",
    "build_wrapped_script",
    "parse_sentinel",
]

FETCH_TEMPLATE = """
import json
from sandbox.child import fetch_main
fetch_main(json.loads({payload}))
""".strip()

WRAPPED_TEMPLATE = """
import json
from sandbox.child import wrapped_main
wrapped_main(json.loads({payload}))
""".strip()

COMMAND_TEMPLATE = """
import subprocess
import sys
sys.exit(subprocess.call({command}, shell=True))
""".strip()


def _embed(payload: Mapping[str, Any]) -> str:
    # repr() of the JSON text is a valid Python string literal.
    return repr(json.dumps(payload))


def build_fetch_script(config: Mapping[str, Any], timeout_seconds: float) -> str:
    """Script for one credential-phase fetch.

    ``config`` is the data variable's wire form with placeholders unresolved;
    the child resolves them from its own environment, so no credential value is
    ever written to disk.
    """
    return FETCH_TEMPLATE.format(payload=_embed({"config": dict(config), "timeout": timeout_seconds}))


def build_wrapped_script(
    code: str,
    variables: Mapping[str, Mapping[str, Any]] | None = None,
    sentinel: str = GLOBAL_SENTINEL,
    credential_prefix: str | None = None,
) -> str:
    """Script that runs ``code`` as a function body and reports under ``sentinel``."""
    payload = {
        "code": code,
        "variables": dict(variables or {}),
        "sentinel": sentinel,
        "credential_prefix": credential_prefix,
    }
    return WRAPPED_TEMPLATE.format(payload=_embed(payload))


def build_command_script(command: str) -> str:
    return COMMAND_TEMPLATE.format(command=repr(command))


def parse_sentinel(stdout: str, sentinel: str) -> dict[str, Any]:
    """Parse the JSON after the last ``<sentinel>:`` marker in ``stdout``.

    Raises:
        ParseError: If the marker is absent or the remainder is not a JSON object.
    """
    marker = f"{sentinel}:"
    position = stdout.rfind(marker)
    if position < 0:
        raise ParseError(f"No {sentinel} line in process output")
    line = stdout[position + len(marker):].split("\n", 1)[0].strip()
    try:
        loaded = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed {sentinel} payload: {exc.msg}") from exc
    if not isinstance(loaded, dict):
        raise ParseError(f"Malformed {sentinel} payload: expected an object")
    return loaded
