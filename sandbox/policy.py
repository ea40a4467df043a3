"""
Sandbox policy definitions: environment construction and code checks.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path

from execution_core.errors import SecurityViolation

DEFAULT_CREDENTIAL_PREFIX = "KEYBOARD_"

BASE_ENV_ALLOWLIST = [
    "PATH",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TZ",
    "PWD",
]

BROAD_ENV_ALLOWLIST = BASE_ENV_ALLOWLIST + [
    "HOME",
    "USER",
    "TMPDIR",
    "TEMP",
    "TMP",
]

# Credential-class names considered harmless in the reduced legacy environment.
SAFE_CREDENTIAL_SUFFIXES = ["PROVIDER_API_ENDPOINT"]
SENSITIVE_NAME_MARKERS = ["TOKEN", "SECRET", "KEY", "PASSWORD"]
# Service switches that share the credential prefix but hold no secret.
SWITCH_SUFFIXES = ["FULL_CODE_EXECUTION"]

HEADER_TOKEN_PREFIX = "x-keyboard-provider-user-token-for-"

CREDENTIAL_REFERENCE_MESSAGE = (
    "Do not try to access credential variables in the global code. "
    "Please interact with external APIs in the secure_data_variables section."
)

ENVIRONMENT_PATTERNS = [
    r"\bos\.environ\b",
    r"\bos\.environb\b",
    r"\bgetenv[b]?\s*\(",
    r"\bprocess\.env\b",
]

NETWORK_PATTERNS = [
    r"\burllib\b",
    r"\brequests\b",
    r"\bhttpx\b",
    r"\baiohttp\b",
    r"\bhttp\.client\b",
    r"\bsocket\b",
    r"\bfetch\s*\(",
]

MODULE_PATTERNS = [
    r"^\s*(?:import|from)\s+(?:os|sys|subprocess|ctypes|importlib|shutil|pathlib)\b",
    r"\b__import__\s*\(",
    r"\bimportlib\.import_module\s*\(",
]


@dataclass
class CodeAnalysis:
    has_environment_access: bool = False
    has_external_api_calls: bool = False
    has_module_usage: bool = False
    risk_level: str = "low"
    matched_patterns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _matches(code: str, patterns: Iterable[str]) -> list[str]:
    return [pattern for pattern in patterns if re.search(pattern, code, re.MULTILINE)]


def analyze_code_risk(code: str) -> CodeAnalysis:
    """Classify flat code by what it appears to touch.

    High when it reads the environment and talks to the network, medium when
    it does either, low otherwise. Module usage is reported but does not
    change the level.
    """
    environment = _matches(code, ENVIRONMENT_PATTERNS)
    network = _matches(code, NETWORK_PATTERNS)
    modules = _matches(code, MODULE_PATTERNS)

    if environment and network:
        risk_level = "high"
    elif environment or network:
        risk_level = "medium"
    else:
        risk_level = "low"

    return CodeAnalysis(
        has_environment_access=bool(environment),
        has_external_api_calls=bool(network),
        has_module_usage=bool(modules),
        risk_level=risk_level,
        matched_patterns=environment + network + modules,
    )


def credential_reference_pattern(prefix: str = DEFAULT_CREDENTIAL_PREFIX) -> re.Pattern[str]:
    return re.compile(rf"{re.escape(prefix)}[A-Za-z0-9_]*")


def find_credential_references(code: str, prefix: str = DEFAULT_CREDENTIAL_PREFIX) -> list[str]:
    """Every literal occurrence of a credential-class name in ``code``."""
    return sorted(set(credential_reference_pattern(prefix).findall(code)))


def check_global_code(code: str, prefix: str = DEFAULT_CREDENTIAL_PREFIX) -> None:
    """Reject global code that names credential-class variables.

    Raises:
        SecurityViolation: If any reference is found.
    """
    if find_credential_references(code, prefix):
        raise SecurityViolation(CREDENTIAL_REFERENCE_MESSAGE)


def header_env_vars(headers: Mapping[str, str]) -> dict[str, str]:
    """Map ``X-KEYBOARD-PROVIDER-USER-TOKEN-FOR-<NAME>`` headers to env vars.

    ``x-keyboard-provider-user-token-for-github`` becomes
    ``KEYBOARD_PROVIDER_USER_TOKEN_FOR_GITHUB``.
    """
    env_vars: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered.startswith(HEADER_TOKEN_PREFIX) and value:
            env_vars[lowered[2:].replace("-", "_").upper()] = str(value)
    return env_vars


def project_pythonpath() -> str:
    """Project root, so children can import ``sandbox.child`` without installation."""
    return str(Path(__file__).resolve().parents[1])


class EnvironmentPolicy:
    """Builds the environment handed to each kind of child process.

    ``source_env`` defaults to the live ``os.environ`` read at call time.
    """

    def __init__(
        self,
        credential_prefix: str = DEFAULT_CREDENTIAL_PREFIX,
        source_env: Mapping[str, str] | None = None,
    ) -> None:
        self.credential_prefix = credential_prefix
        self._source_env = source_env

    @property
    def source_env(self) -> Mapping[str, str]:
        return self._source_env if self._source_env is not None else os.environ

    def is_credential(self, name: str) -> bool:
        return name.upper().startswith(self.credential_prefix.upper())

    def credential_variables(self) -> dict[str, str]:
        return {name: value for name, value in self.source_env.items() if self.is_credential(name)}

    def _allowlisted(self, names: Iterable[str]) -> dict[str, str]:
        source = self.source_env
        env = {name: source[name] for name in names if name in source}
        env["PYTHONPATH"] = project_pythonpath()
        env["PYTHONIOENCODING"] = "utf-8"
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONDONTWRITEBYTECODE"] = "1"
        return env

    def base_environment(self) -> dict[str, str]:
        return self._allowlisted(BASE_ENV_ALLOWLIST)

    def credential_environment(self, header_env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Base allow-list plus every credential-class and header-derived variable."""
        env = self.base_environment()
        env.update(self.credential_variables())
        env.update(header_env or {})
        return env

    def global_environment(self) -> dict[str, str]:
        """Base allow-list only; never any credential-class variable.

        Raises:
            SecurityViolation: If a credential-class name survived the filter.
        """
        env = self.base_environment()
        leaked = [name for name in env if self.is_credential(name)]
        if leaked:
            raise SecurityViolation("Credential variables leaked into the global environment")
        return env

    def broad_environment(self, header_env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Historical flat-mode environment: broad allow-list plus credentials."""
        env = self._allowlisted(BROAD_ENV_ALLOWLIST)
        env.update(self.credential_variables())
        env.update(header_env or {})
        return env

    def reduced_environment(self, header_env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Broad allow-list plus only the credential-class names that carry no secret."""
        env = self._allowlisted(BROAD_ENV_ALLOWLIST)
        for name, value in self.credential_variables().items():
            if any(name.upper().endswith(suffix) for suffix in SAFE_CREDENTIAL_SUFFIXES):
                env[name] = value
        for name, value in (header_env or {}).items():
            if not any(marker in name.upper() for marker in SENSITIVE_NAME_MARKERS):
                env[name] = value
        return env

    def secret_values(self, header_env: Mapping[str, str] | None = None) -> set[str]:
        """Values that must never appear in anything leaving the credential phase."""
        values = {
            value
            for name, value in self.credential_variables().items()
            if not any(name.upper().endswith(suffix) for suffix in SWITCH_SUFFIXES)
        }
        values.update((header_env or {}).values())
        return {value for value in values if value}
