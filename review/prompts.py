"""Prompt templates for secondary output review."""

from __future__ import annotations

import textwrap

MAX_SECTION_CHARS = 8000


def _clip(text: str, limit: int = MAX_SECTION_CHARS) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} characters]"


def _base_context() -> str:
    return textwrap.dedent(
        """
        You review the output of a sandboxed program before it is returned to a caller.

        Context:
        - The output has already been filtered for known secrets.
        - Look for anything that still resembles a credential: API keys, bearer
          tokens, passwords, private keys, session cookies or signed URLs.
        - Do not repeat any suspected secret in your answer.

        Reply with ONLY a JSON object:
        {"leak_suspected": true|false, "summary": "<one sentence>"}
        """
    ).strip()


def build_review_prompt(stdout: str, stderr: str = "") -> str:
    sections = [
        _base_context(),
        "-----Output to eval-----\n" + _clip(stdout) + "\n-----Output to eval-----",
    ]
    if stderr:
        sections.append("-----Errors to eval-----\n" + _clip(stderr) + "\n-----Errors to eval-----")
    return "\n\n".join(sections)
