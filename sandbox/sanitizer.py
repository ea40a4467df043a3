"""
Sanitization of fetch results and captured process output.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from execution_core.errors import ErrorKind
from execution_core.schemas import RawResult, SanitizedResult

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
MIN_SECRET_LENGTH = 4

FAILURE_MESSAGES = {
    ErrorKind.EXECUTION: "Data variable execution failed",
    ErrorKind.PARSE: "Data variable returned an unreadable result",
    ErrorKind.RATE_LIMIT: "Rate limit exceeded for data variable",
    ErrorKind.SANITIZATION: "Data variable result could not be sanitized",
}


def _text_patterns(prefix: str) -> list[tuple[re.Pattern[str], str]]:
    escaped = re.escape(prefix)
    return [
        (re.compile(r"(['\"]?headers['\"]?\s*[:=]\s*)\{[^{}]*\}", re.IGNORECASE), r"\1{***REMOVED***}"),
        (re.compile(rf"\b{escaped}[A-Za-z0-9_]+\s*[:=]\s*['\"]?[^'\"\s,}}]+['\"]?"), f"{prefix}***_VAR={REDACTED}"),
        (re.compile(r"(https?://)[^\s:/@]+:[^\s/@]+@"), r"\1***:***@"),
        (re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), f"Bearer {REDACTED}"),
        (re.compile(r"\b(?:ghp_|gho_|ghu_|ghs_|ghr_)[A-Za-z0-9]{36}"), "***GITHUB_TOKEN***"),
        (re.compile(r"\bAKIA[0-9A-Z]{16}"), "***AWS_ACCESS_KEY***"),
        (re.compile(r"\bya29\.[A-Za-z0-9_\-.]{50,}"), "***GOOGLE_TOKEN***"),
        (re.compile(r"\beyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+"), "***JWT_TOKEN***"),
        (
            re.compile(r"\b([A-Z_]+_(?:TOKEN|SECRET|KEY))=['\"]?[^'\"\s]{20,}['\"]?"),
            rf"\1={REDACTED}",
        ),
        (re.compile(r"(['\"\s])([A-Za-z0-9_-]{40,})(?=['\"\s])"), rf"\1{REDACTED}"),
    ]


class Sanitizer:
    """Strip credential material from results and output text.

    Known secret values are replaced exactly; well-known token shapes are
    replaced by pattern as a second line of defence.
    """

    def __init__(self, credential_prefix: str = "KEYBOARD_") -> None:
        self.credential_prefix = credential_prefix
        self._patterns = _text_patterns(credential_prefix)

    @staticmethod
    def _usable(secrets: Iterable[str]) -> list[str]:
        # Longest first so a secret containing another is replaced whole.
        return sorted(
            {secret for secret in secrets if secret and len(secret) >= MIN_SECRET_LENGTH},
            key=len,
            reverse=True,
        )

    def scrub_secrets(self, value: Any, secrets: Iterable[str]) -> Any:
        """Recursively replace known secret substrings in strings, keys included.

        Secrets shorter than MIN_SECRET_LENGTH are only replaced where they make
        up a whole string; as substrings they would match ordinary text.
        """
        secrets = {secret for secret in secrets if secret}
        if not secrets:
            return value
        short = frozenset(secret for secret in secrets if len(secret) < MIN_SECRET_LENGTH)
        return self._scrub(value, self._usable(secrets), short)

    def _scrub(self, value: Any, secrets: list[str], short: frozenset[str] = frozenset()) -> Any:
        if isinstance(value, str):
            if value in short:
                return REDACTED
            for secret in secrets:
                if secret in value:
                    value = value.replace(secret, REDACTED)
            return value
        if isinstance(value, dict):
            return {
                self._scrub(str(key), secrets, short): self._scrub(item, secrets, short)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self._scrub(item, secrets, short) for item in value]
        return value

    def scrub_text(self, text: str | None, secrets: Iterable[str] = ()) -> str:
        """Sanitize free text such as captured stdout or an error message."""
        if not text:
            return text or ""
        scrubbed = self.scrub_secrets(text, secrets)
        for pattern, replacement in self._patterns:
            scrubbed = pattern.sub(replacement, scrubbed)
        return scrubbed

    def sanitize_result(self, raw: RawResult, secrets: Iterable[str] = ()) -> SanitizedResult:
        """Reduce a raw fetch outcome to what may cross into the global phase.

        Success keeps only the response body; failures keep only a generic
        message and a failure type.
        """
        if raw.error is not None:
            kind = ErrorKind.PARSE if raw.error.get("type") == ErrorKind.PARSE.value else ErrorKind.EXECUTION
            return SanitizedResult.failure(kind.value, FAILURE_MESSAGES[kind])
        try:
            body = self.scrub_secrets(raw.body, secrets)
        except (TypeError, ValueError, RecursionError) as exc:
            logger.warning("Sanitization failed: %s", exc.__class__.__name__)
            return SanitizedResult.failure(
                ErrorKind.SANITIZATION.value, FAILURE_MESSAGES[ErrorKind.SANITIZATION]
            )
        return SanitizedResult.from_body(body, success=raw.ok)

    @staticmethod
    def rate_limited() -> SanitizedResult:
        return SanitizedResult.failure(ErrorKind.RATE_LIMIT.value, FAILURE_MESSAGES[ErrorKind.RATE_LIMIT])
