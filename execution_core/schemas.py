from __future__ import annotations

import keyword
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


TBaseSchema = TypeVar("TBaseSchema", bound="BaseSchema")


class BaseSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, object]:
        return self.model_dump()

    @classmethod
    def from_json(cls: type[TBaseSchema], data: str) -> TBaseSchema:
        return cls.model_validate_json(data)

    @classmethod
    def from_dict(cls: type[TBaseSchema], data: Mapping[str, object]) -> TBaseSchema:
        return cls.model_validate(data)


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
Priority = Literal["low", "normal", "high"]

PRIORITY_RANK: dict[str, int] = {"high": 0, "normal": 1, "low": 2}

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ENV_REFERENCE_PATTERN = re.compile(r"^process\.env\.[A-Z_][A-Z0-9_]*$")
MAX_VARIABLE_NAME_LENGTH = 50
MAX_GLOBAL_CODE_LENGTH = 50_000

# Names the generated global-phase script binds or relies on.
RESERVED_NAMES = frozenset(keyword.kwlist) | frozenset(keyword.softkwlist) | {
    "__builtins__",
    "__import__",
    "__name__",
    "__main__",
    "asyncio",
    "compile",
    "eval",
    "exec",
    "json",
    "os",
    "print",
    "sys",
}


def check_variable_name(name: str) -> str:
    """Return ``name`` if it can be bound as a callable in global code, else raise ValueError."""
    if not IDENTIFIER_PATTERN.match(name):
        raise ValueError(f"Invalid data variable name: {name}")
    if len(name) > MAX_VARIABLE_NAME_LENGTH:
        raise ValueError(f"Data variable name too long: {name}")
    if name in RESERVED_NAMES:
        raise ValueError(f"Reserved data variable name not allowed: {name}")
    return name


class FetchOptions(BaseSchema):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    url: str
    method: HttpMethod = "GET"
    body: str | dict[str, Any] | list[Any] | None = None

    @field_validator("method", mode="before")
    @classmethod
    def method_upper(cls, value: object) -> object:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("url")
    @classmethod
    def url_is_http(cls, value: str) -> str:
        # Interpolated URLs are checked again after rewriting.
        if "${" in value:
            return value
        if not (value.startswith("http://") or value.startswith("https://")):
            raise ValueError("url must be a valid HTTP/HTTPS URL")
        return value


class PassedVariable(BaseSchema):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    passed_from: str
    value: str
    field_name: str | None = None


class DataSpec(BaseSchema):
    """One named, independently fetchable unit of the credential phase."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    fetch_options: FetchOptions = Field(alias="fetchOptions")
    headers: dict[str, str] = Field(default_factory=dict)
    credential: str | None = None
    timeout: float | None = Field(default=None, ge=1, le=30)
    passed_variables: dict[str, PassedVariable] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def lift_flat_fetch_options(cls, data: object) -> object:
        # Accept {"url": ..., "method": ..., "body": ...} without a fetchOptions wrapper.
        if isinstance(data, Mapping) and "fetchOptions" not in data and "fetch_options" not in data:
            typed = dict(data)
            lifted = {key: typed.pop(key) for key in ("url", "method", "body") if key in typed}
            if lifted:
                typed["fetchOptions"] = lifted
            return typed
        return data

    @field_validator("credential")
    @classmethod
    def credential_reference(cls, value: str | None) -> str | None:
        if value is not None and not ENV_REFERENCE_PATTERN.match(value):
            raise ValueError(
                "credential must be an environment variable reference like process.env.API_KEY"
            )
        return value

    def dependencies(self) -> list[str]:
        seen: list[str] = []
        for passed in self.passed_variables.values():
            if passed.passed_from not in seen:
                seen.append(passed.passed_from)
        return seen

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutionRequest(BaseSchema):
    """Flat code/command request or structured two-phase payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str | None = None
    command: str | None = None
    secure_data_variables: dict[str, DataSpec] | None = None
    global_code: str | None = Field(default=None, alias="Global_code")
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int = Field(default=0, ge=0, alias="maxRetries")
    priority: Priority = "normal"
    ai_eval: bool = False

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: object) -> object:
        if isinstance(data, Mapping):
            typed = dict(data)
            if "Secure_data_methods" in typed and "secure_data_variables" not in typed:
                typed["secure_data_variables"] = typed.pop("Secure_data_methods")
            return typed
        return data

    @field_validator("secure_data_variables")
    @classmethod
    def variable_names(cls, value: dict[str, DataSpec] | None) -> dict[str, DataSpec] | None:
        if value is not None:
            for name in value:
                check_variable_name(name)
        return value

    @model_validator(mode="after")
    def exactly_one_mode(self) -> "ExecutionRequest":
        if self.secure_data_variables is not None or self.global_code is not None:
            if self.secure_data_variables is None or self.global_code is None:
                raise ValueError("secure_data_variables and Global_code must be supplied together")
            if not self.global_code.strip():
                raise ValueError("Global code cannot be empty")
            if len(self.global_code) > MAX_GLOBAL_CODE_LENGTH:
                raise ValueError("Global code too long (max 50000 characters)")
        elif not self.code and not self.command:
            raise ValueError("Request must contain code, command, or secure_data_variables")
        return self

    @property
    def is_two_phase(self) -> bool:
        return self.secure_data_variables is not None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RawResult(BaseSchema):
    """Unsanitized outcome of one data variable. Never persisted or logged."""

    status: int | None = None
    headers: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    error: dict[str, str] | None = None

    @classmethod
    def failed(cls, message: str, error_type: str) -> "RawResult":
        return cls(error={"message": message, "type": error_type})

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300


class SanitizedResult(BaseSchema):
    """The only form of a fetch outcome allowed across the phase boundary."""

    success: bool | None = None
    data: Any = None
    error: bool = False
    message: str | None = None
    type: str | None = None

    @classmethod
    def from_body(cls, data: Any, success: bool = True) -> "SanitizedResult":
        return cls(success=success, data=data)

    @classmethod
    def failure(cls, error_type: str, message: str) -> "SanitizedResult":
        return cls(error=True, message=message, type=error_type)

    def to_payload(self) -> dict[str, Any]:
        if self.error:
            return {"error": True, "message": self.message, "type": self.type}
        return {"success": bool(self.success), "data": self.data}


class ExecutionOutcome(BaseSchema):
    success: bool
    execution_mode: str
    stdout: str = ""
    stderr: str = ""
    return_value: Any = None
    errors: list[dict[str, Any]] = Field(default_factory=list)
    exit_code: int | None = None
    duration_ms: float = 0.0
    variables_used: list[str] = Field(default_factory=list)
    variable_status: dict[str, str] = Field(default_factory=dict)
    code_analysis: dict[str, Any] | None = None
    failure_type: str | None = None
    security_filtered: bool = True
    review: dict[str, Any] | None = None
    review_error: str | None = None


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobOptions(BaseSchema):
    priority: Priority = "normal"
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int = Field(default=0, ge=0)


class JobError(BaseSchema):
    message: str
    type: str
    code: int | None = None
    details: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    execution_mode: str | None = None


class Job(BaseSchema):
    id: str
    status: JobStatus = JobStatus.PENDING
    request: ExecutionRequest
    options: JobOptions = Field(default_factory=JobOptions)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    progress: int = Field(default=0, ge=0, le=100)
    progress_message: str | None = None
    result: dict[str, Any] | None = None
    error: JobError | None = None

    @field_validator("created_at", "updated_at", "started_at", "completed_at")
    @classmethod
    def timestamps_utc(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_response(self) -> dict[str, Any]:
        """Caller-facing view of the job."""
        response: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "progressMessage": self.progress_message,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.result is not None:
            response["result"] = self.result
        if self.error is not None:
            response["error"] = self.error.model_dump(exclude_none=True)
        return response


class JobPage(BaseSchema):
    jobs: list[Job]
    total: int
    has_more: bool = Field(alias="hasMore")

    def to_response(self) -> dict[str, Any]:
        return {
            "jobs": [job.to_response() for job in self.jobs],
            "total": self.total,
            "hasMore": self.has_more,
        }


class JobStats(BaseSchema):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    active_workers: int = Field(default=0, alias="activeWorkers")
    max_concurrent_jobs: int = Field(default=0, alias="maxConcurrentJobs")

    def to_response(self) -> dict[str, int]:
        return self.model_dump(by_alias=True)


class ExecutorSettings(BaseSchema):
    credential_prefix: str = "KEYBOARD_"
    max_data_variables: int = Field(default=10, ge=1)
    data_variable_timeout_s: float = Field(default=15.0, gt=0)
    global_timeout_s: float = Field(default=30.0, gt=0)
    flat_timeout_s: float = Field(default=30.0, gt=0)
    max_executions_per_window: int = Field(default=100, ge=1)
    rate_limit_window_s: float = Field(default=3600.0, gt=0)
    kill_grace_s: float = Field(default=2.0, ge=0)
    memory_limit_mb: int | None = None
    temp_dir: str | None = None
    legacy_execution_enabled: bool = False
    raw_command_enabled: bool = False
    full_code_execution: bool = False


class SchedulerSettings(BaseSchema):
    max_concurrent_jobs: int = Field(default=5, ge=1)
    job_ttl_s: float = Field(default=24 * 60 * 60, gt=0)
    sweep_interval_s: float = Field(default=60.0, gt=0)
    enable_persistence: bool = True
    persistence_path: str = "data/jobs.db"
    honor_priority: bool = False


class ReviewerSettings(BaseSchema):
    enabled: bool = False
    provider_type: Literal["openai", "fake"] = "openai"
    model_name: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str | None = None
    temperature: float = 0.0
    max_tokens: int = 400
    timeout_seconds: float = 30.0
    max_retries: int = 2
