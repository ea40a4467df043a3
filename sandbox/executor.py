"""
Two-phase secure executor.

The credential phase runs one isolated fetch per data variable with
credentials in the environment; the global phase runs caller code with no
credentials, given only the sanitized results of the first phase.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from execution_core.errors import (
    ExecutionCoreError,
    ExecutionError,
    InterpolationError,
    ParseError,
    ProcessTimeout,
    ValidationError,
)
from execution_core.graph import resolve_order
from execution_core.interpolation import interpolate
from execution_core.schemas import (
    DataSpec,
    ExecutionOutcome,
    ExecutionRequest,
    ExecutorSettings,
    RawResult,
    SanitizedResult,
)
from review.base import BaseReviewer
from sandbox import policy, protocol
from sandbox.child import resolve_placeholders
from sandbox.ratelimit import SlidingWindowRateLimiter
from sandbox.runner import LineCallback, ProcessOutcome, SpawnCallback, SubprocessRunner
from sandbox.sanitizer import Sanitizer

logger = logging.getLogger(__name__)

MODE_TWO_PHASE = "secure-two-phase"
MODE_FULL = "full"
MODE_NORMAL = "normal"
MODE_SECURE = "secure"
MODE_COMMAND = "command"

# Extra wall-clock allowance for interpreter start-up around a fetch.
FETCH_STARTUP_ALLOWANCE_S = 5.0


def parse_request(payload: ExecutionRequest | Mapping[str, Any]) -> ExecutionRequest:
    """Validate a submission body.

    Raises:
        ValidationError: If the body does not describe exactly one mode.
    """
    if isinstance(payload, ExecutionRequest):
        return payload
    try:
        return ExecutionRequest.model_validate(payload)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"Invalid request: {details}") from exc


class SecureExecutor:
    """Run execution requests in subprocesses under the credential policy."""

    def __init__(
        self,
        settings: ExecutorSettings | None = None,
        runner: SubprocessRunner | None = None,
        reviewer: BaseReviewer | None = None,
        source_env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or ExecutorSettings()
        self.runner = runner or SubprocessRunner(
            kill_grace_seconds=self.settings.kill_grace_s,
            memory_limit_mb=self.settings.memory_limit_mb,
            temp_dir=self.settings.temp_dir,
        )
        self.reviewer = reviewer
        self.env_policy = policy.EnvironmentPolicy(self.settings.credential_prefix, source_env)
        self.sanitizer = Sanitizer(self.settings.credential_prefix)
        self.rate_limiter = SlidingWindowRateLimiter(
            max_events=self.settings.max_executions_per_window,
            window_seconds=self.settings.rate_limit_window_s,
        )

    def validate(self, request: ExecutionRequest) -> list[str]:
        """Check a request before anything is spawned.

        Returns the credential-phase order for two-phase requests, else ``[]``.

        Raises:
            ValidationError: Too many variables, undeclared sources, or a
                disabled flat mode.
            DependencyCycleError: If data variables depend on each other in a cycle.
            SecurityViolation: If global code names a credential-class variable.
        """
        if request.is_two_phase:
            specs = request.secure_data_variables or {}
            if len(specs) > self.settings.max_data_variables:
                raise ValidationError(
                    f"Too many data variables. Maximum allowed: {self.settings.max_data_variables}"
                )
            order = resolve_order(specs)
            policy.check_global_code(request.global_code or "", self.settings.credential_prefix)
            return order
        if request.code:
            if not self.settings.legacy_execution_enabled:
                raise ValidationError(
                    "Flat code execution is disabled; use secure_data_variables with Global_code"
                )
        elif not self.settings.raw_command_enabled:
            raise ValidationError("Raw command execution is disabled")
        return []

    async def execute(
        self,
        request: ExecutionRequest | Mapping[str, Any],
        header_env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
        on_spawn: SpawnCallback | None = None,
        on_stdout_line: LineCallback | None = None,
    ) -> ExecutionOutcome:
        """Validate and run ``request`` in whichever mode it describes.

        ``header_env`` holds caller-supplied credential variables derived from
        request headers; they are visible to credential-phase children only.
        """
        request = parse_request(request)
        order = self.validate(request)
        effective_timeout = timeout or request.timeout

        if request.is_two_phase:
            outcome = await self._execute_two_phase(
                request, order, header_env or {}, effective_timeout, on_spawn, on_stdout_line
            )
        elif request.code:
            outcome = await self._execute_flat(
                request.code, header_env or {}, effective_timeout, on_spawn, on_stdout_line
            )
        else:
            outcome = await self._execute_command(
                request.command or "", header_env or {}, effective_timeout, on_spawn, on_stdout_line
            )

        if request.ai_eval:
            await self._attach_review(outcome)
        return outcome

    # -- credential phase -------------------------------------------------

    async def run_credential_phase(
        self,
        specs: Mapping[str, DataSpec],
        order: list[str],
        header_env: Mapping[str, str],
        on_spawn: SpawnCallback | None = None,
    ) -> dict[str, SanitizedResult]:
        """Fetch every data variable in ``order``; failures stay per-variable."""
        results: dict[str, SanitizedResult] = {}
        for name in order:
            results[name] = await self.fetch_variable(name, specs[name], results, header_env, on_spawn)
            status = "error" if results[name].error else "ok"
            logger.info("Data variable %s finished: %s", name, status)
        return results

    async def fetch_variable(
        self,
        name: str,
        spec: DataSpec,
        results: Mapping[str, SanitizedResult],
        header_env: Mapping[str, str],
        on_spawn: SpawnCallback | None = None,
    ) -> SanitizedResult:
        if not self.rate_limiter.allow(name):
            logger.warning("Rate limit exceeded for data variable %s", name)
            return Sanitizer.rate_limited()

        try:
            effective = interpolate(spec, results)
        except (InterpolationError, ValidationError) as exc:
            logger.warning("Data variable %s could not be prepared: %s", name, exc.message)
            return SanitizedResult.failure(exc.kind.value, exc.message)

        env = self.env_policy.credential_environment(header_env)
        secrets = self.env_policy.secret_values(header_env)
        secrets.update(
            str(value) for value in resolve_placeholders(effective.headers, env).values() if value
        )

        try:
            raw = await self._fetch_raw(name, effective, env, on_spawn)
        except ExecutionCoreError as exc:
            logger.warning("Data variable %s failed: %s", name, exc.kind.value)
            raw = RawResult.failed("Data variable execution failed", exc.kind.value)
        self.rate_limiter.record(name)
        return self.sanitizer.sanitize_result(raw, secrets)

    async def _fetch_raw(
        self,
        name: str,
        spec: DataSpec,
        env: Mapping[str, str],
        on_spawn: SpawnCallback | None,
    ) -> RawResult:
        fetch_timeout = spec.timeout or self.settings.data_variable_timeout_s
        script = protocol.build_fetch_script(spec.to_wire(), fetch_timeout)
        outcome = await self.runner.run(
            script,
            env,
            fetch_timeout + FETCH_STARTUP_ALLOWANCE_S,
            on_spawn=on_spawn,
            label=f"fetch_{name}",
        )
        try:
            payload = protocol.parse_sentinel(outcome.stdout, protocol.CREDENTIAL_SENTINEL)
        except ParseError as exc:
            return RawResult.failed(exc.message, exc.kind.value)
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return RawResult.failed(str(message or "Fetch failed"), "execution_error")
        data = payload.get("data") or {}
        return RawResult(
            status=data.get("status"),
            headers=data.get("headers") or {},
            body=data.get("body"),
        )

    # -- global phase -----------------------------------------------------

    async def _execute_two_phase(
        self,
        request: ExecutionRequest,
        order: list[str],
        header_env: Mapping[str, str],
        timeout: float | None,
        on_spawn: SpawnCallback | None,
        on_stdout_line: LineCallback | None,
    ) -> ExecutionOutcome:
        specs = request.secure_data_variables or {}
        results = await self.run_credential_phase(specs, order, header_env, on_spawn)
        outcome = await self.run_global_phase(
            request.global_code or "",
            results,
            timeout or self.settings.global_timeout_s,
            on_spawn=on_spawn,
            on_stdout_line=on_stdout_line,
        )
        outcome.variables_used = list(order)
        outcome.variable_status = {
            name: (result.type or "error") if result.error else "ok" for name, result in results.items()
        }
        return outcome

    async def run_global_phase(
        self,
        code: str,
        results: Mapping[str, SanitizedResult],
        timeout: float,
        *,
        on_spawn: SpawnCallback | None = None,
        on_stdout_line: LineCallback | None = None,
    ) -> ExecutionOutcome:
        """Run global code with no credentials and only sanitized inputs.

        Raises:
            SecurityViolation: On a credential reference or a leaking environment.
            ProcessTimeout: If the process outlives ``timeout``.
            ExecutionError: On a nonzero exit.
        """
        prefix = self.settings.credential_prefix
        policy.check_global_code(code, prefix)
        env = self.env_policy.global_environment()
        script = protocol.build_wrapped_script(
            code,
            {name: result.to_payload() for name, result in results.items()},
            sentinel=protocol.GLOBAL_SENTINEL,
            credential_prefix=prefix,
        )
        process = await self._run_checked(
            script, env, timeout, on_spawn, on_stdout_line, "global", self.env_policy.secret_values()
        )
        return self._wrapped_outcome(process, protocol.GLOBAL_SENTINEL, MODE_TWO_PHASE)

    # -- flat modes -------------------------------------------------------

    async def _execute_flat(
        self,
        code: str,
        header_env: Mapping[str, str],
        timeout: float | None,
        on_spawn: SpawnCallback | None,
        on_stdout_line: LineCallback | None,
    ) -> ExecutionOutcome:
        analysis = policy.analyze_code_risk(code)
        secrets = self.env_policy.secret_values(header_env)
        timeout = timeout or self.settings.flat_timeout_s
        logger.info("Flat code risk level: %s", analysis.risk_level)

        if self.settings.full_code_execution or analysis.risk_level == "low":
            mode = MODE_FULL if self.settings.full_code_execution else MODE_NORMAL
            env = self.env_policy.broad_environment(header_env)
            process = await self._run_checked(code, env, timeout, on_spawn, on_stdout_line, "flat", secrets)
            outcome = self._plain_outcome(process, mode, secrets)
        else:
            env = self.env_policy.reduced_environment(header_env)
            script = protocol.build_wrapped_script(code, sentinel=protocol.LEGACY_SENTINEL)
            process = await self._run_checked(script, env, timeout, on_spawn, on_stdout_line, "flat", secrets)
            outcome = self._wrapped_outcome(process, protocol.LEGACY_SENTINEL, MODE_SECURE, secrets)
        outcome.code_analysis = analysis.to_dict()
        return outcome

    async def _execute_command(
        self,
        command: str,
        header_env: Mapping[str, str],
        timeout: float | None,
        on_spawn: SpawnCallback | None,
        on_stdout_line: LineCallback | None,
    ) -> ExecutionOutcome:
        secrets = self.env_policy.secret_values(header_env)
        env = self.env_policy.broad_environment(header_env)
        script = protocol.build_command_script(command)
        process = await self._run_checked(
            script, env, timeout or self.settings.flat_timeout_s, on_spawn, on_stdout_line, "command", secrets
        )
        return self._plain_outcome(process, MODE_COMMAND, secrets)

    # -- shared -----------------------------------------------------------

    async def _run_checked(
        self,
        script: str,
        env: Mapping[str, str],
        timeout: float,
        on_spawn: SpawnCallback | None,
        on_stdout_line: LineCallback | None,
        label: str,
        secrets: set[str],
    ) -> ProcessOutcome:
        """Run a script; timeouts and nonzero exits raise with sanitized output."""

        def _forward(line: str) -> None:
            if on_stdout_line is not None:
                on_stdout_line(self.sanitizer.scrub_text(line, secrets))

        try:
            process = await self.runner.run(
                script, env, timeout, on_spawn=on_spawn, on_stdout_line=_forward, label=label
            )
        except ProcessTimeout as exc:
            raise ProcessTimeout(
                exc.timeout_seconds,
                stdout=self.sanitizer.scrub_text(exc.stdout, secrets),
                stderr=self.sanitizer.scrub_text(exc.stderr, secrets),
            ) from None
        except ExecutionError as exc:
            raise ExecutionError(
                exc.message,
                exit_code=exc.exit_code,
                stdout=self.sanitizer.scrub_text(exc.stdout, secrets),
                stderr=self.sanitizer.scrub_text(exc.stderr, secrets),
            ) from None
        if process.exit_code != 0:
            raise ExecutionError(
                f"Process exited with code {process.exit_code}",
                exit_code=process.exit_code,
                stdout=self.sanitizer.scrub_text(process.stdout, secrets),
                stderr=self.sanitizer.scrub_text(process.stderr, secrets),
            )
        return process

    def _plain_outcome(self, process: ProcessOutcome, mode: str, secrets: set[str]) -> ExecutionOutcome:
        return ExecutionOutcome(
            success=True,
            execution_mode=mode,
            stdout=self.sanitizer.scrub_text(process.stdout, secrets),
            stderr=self.sanitizer.scrub_text(process.stderr, secrets),
            exit_code=process.exit_code,
            duration_ms=process.duration_ms,
        )

    def _wrapped_outcome(
        self,
        process: ProcessOutcome,
        sentinel: str,
        mode: str,
        secrets: set[str] | None = None,
    ) -> ExecutionOutcome:
        secrets = secrets if secrets is not None else self.env_policy.secret_values()
        try:
            captured = protocol.parse_sentinel(process.stdout, sentinel)
        except ParseError as exc:
            logger.warning("%s output could not be parsed: %s", mode, exc.message)
            return ExecutionOutcome(
                success=False,
                execution_mode=mode,
                stdout=self.sanitizer.scrub_text(process.stdout, secrets),
                stderr=self.sanitizer.scrub_text(process.stderr, secrets),
                exit_code=process.exit_code,
                duration_ms=process.duration_ms,
                failure_type=exc.kind.value,
                errors=[{"message": exc.message, "type": exc.kind.value}],
            )

        errors = [
            {
                "message": self.sanitizer.scrub_text(str(error.get("message", "")), secrets),
                "type": str(error.get("type", "Error")),
            }
            for error in captured.get("errors") or []
            if isinstance(error, dict)
        ]
        return ExecutionOutcome(
            success=not errors,
            execution_mode=mode,
            stdout=self.sanitizer.scrub_text(str(captured.get("stdout", "")), secrets),
            stderr=self.sanitizer.scrub_text(str(captured.get("stderr", "")), secrets),
            return_value=self.sanitizer.scrub_secrets(captured.get("returnValue"), secrets),
            errors=errors,
            exit_code=process.exit_code,
            duration_ms=process.duration_ms,
            failure_type=None if not errors else "execution_error",
        )

    async def _attach_review(self, outcome: ExecutionOutcome) -> None:
        if self.reviewer is None:
            outcome.review_error = "AI review requested but no reviewer is configured"
            return
        try:
            response = await asyncio.to_thread(self.reviewer.review, outcome.stdout, outcome.stderr)
        except Exception as exc:  # noqa: BLE001 - review never fails an execution
            logger.warning("Review failed: %s", exc.__class__.__name__)
            outcome.review_error = "AI analysis failed"
            return
        outcome.review = response.to_dict()

    def info(self) -> dict[str, Any]:
        """Describe the active security configuration."""
        return {
            "credential_prefix": self.settings.credential_prefix,
            "max_data_variables": self.settings.max_data_variables,
            "rate_limit": {
                "max_executions": self.settings.max_executions_per_window,
                "window_seconds": self.settings.rate_limit_window_s,
            },
            "timeouts": {
                "data_variable_s": self.settings.data_variable_timeout_s,
                "global_s": self.settings.global_timeout_s,
                "flat_s": self.settings.flat_timeout_s,
            },
            "modes": {
                MODE_TWO_PHASE: True,
                "legacy_code": self.settings.legacy_execution_enabled,
                "raw_command": self.settings.raw_command_enabled,
                "full_code_execution": self.settings.full_code_execution,
            },
            "credential_variables": sorted(self.env_policy.credential_variables()),
            "base_environment": list(policy.BASE_ENV_ALLOWLIST),
            "reviewer": self.reviewer.get_reviewer_info() if self.reviewer else None,
        }
