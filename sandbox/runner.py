"""
Asynchronous subprocess runner for generated scripts.
"""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import shutil
import sys
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from execution_core.errors import ExecutionError, ProcessTimeout, SpawnError

logger = logging.getLogger(__name__)

SpawnCallback = Callable[[asyncio.subprocess.Process], None]
LineCallback = Callable[[str], None]


@dataclass
class ProcessOutcome:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SubprocessRunner:
    """
    Run a script with the current interpreter in its own temporary directory.

    On Unix platforms, CPU and (optionally) memory limits are applied via
    resource.setrlimit. The wall-clock timeout is enforced everywhere: SIGTERM
    first, SIGKILL after ``kill_grace_seconds``.
    """

    DEFAULT_KILL_GRACE_SECONDS: float = 2.0
    STREAM_LIMIT_BYTES: int = 16 * 1024 * 1024

    def __init__(
        self,
        interpreter: str | None = None,
        kill_grace_seconds: float | None = None,
        memory_limit_mb: int | None = None,
        temp_dir: str | Path | None = None,
    ) -> None:
        self.interpreter = interpreter or sys.executable
        self.kill_grace_seconds = (
            self.DEFAULT_KILL_GRACE_SECONDS if kill_grace_seconds is None else kill_grace_seconds
        )
        self.memory_limit_mb = memory_limit_mb
        self.temp_dir = str(temp_dir) if temp_dir is not None else None

    async def run(
        self,
        script: str,
        env: Mapping[str, str],
        timeout_seconds: float,
        *,
        on_spawn: SpawnCallback | None = None,
        on_stdout_line: LineCallback | None = None,
        label: str = "script",
    ) -> ProcessOutcome:
        """Execute ``script`` and capture its output.

        Raises:
            SpawnError: If the script cannot be written or the interpreter
                cannot be started.
            ProcessTimeout: If the process outlives ``timeout_seconds``; the
                exception carries the output captured so far.
        """
        workdir = Path(tempfile.mkdtemp(prefix="secure-exec-", dir=self.temp_dir))
        try:
            script_path = workdir / f"{label}_{secrets.token_hex(8)}.py"
            try:
                script_path.write_text(script, encoding="utf-8")
                os.chmod(script_path, 0o600)
            except OSError as exc:
                raise SpawnError(f"Failed to write script: {exc}") from exc

            start = time.perf_counter()
            try:
                process = await asyncio.create_subprocess_exec(
                    self.interpreter,
                    str(script_path),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=dict(env),
                    cwd=str(workdir),
                    limit=self.STREAM_LIMIT_BYTES,
                    preexec_fn=self._limit_resources(timeout_seconds) if os.name != "nt" else None,
                )
            except OSError as exc:
                raise SpawnError(f"Failed to start interpreter: {exc}") from exc

            logger.debug("Spawned %s (pid %s)", label, process.pid)
            if on_spawn is not None:
                on_spawn(process)

            stdout_chunks: list[str] = []
            stderr_chunks: list[str] = []
            try:
                exit_code = await asyncio.wait_for(
                    self._communicate(process, stdout_chunks, stderr_chunks, on_stdout_line),
                    timeout=timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("%s timed out after %ss", label, timeout_seconds)
                await self.terminate(process)
                raise ProcessTimeout(
                    timeout_seconds,
                    stdout="".join(stdout_chunks),
                    stderr="".join(stderr_chunks),
                ) from None
            except asyncio.CancelledError:
                await self.terminate(process)
                raise
            except (ValueError, asyncio.LimitOverrunError) as exc:
                # readline() refuses lines longer than the stream limit.
                logger.warning("%s wrote an output line over %d bytes", label, self.STREAM_LIMIT_BYTES)
                await self.terminate(process)
                raise ExecutionError(
                    "Output line exceeds limit",
                    exit_code=process.returncode,
                    stdout="".join(stdout_chunks),
                    stderr="".join(stderr_chunks),
                ) from exc

            duration_ms = (time.perf_counter() - start) * 1000
            return ProcessOutcome(
                exit_code=exit_code,
                stdout="".join(stdout_chunks),
                stderr="".join(stderr_chunks),
                duration_ms=duration_ms,
            )
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        stdout_chunks: list[str],
        stderr_chunks: list[str],
        on_stdout_line: LineCallback | None,
    ) -> int:
        assert process.stdout is not None and process.stderr is not None
        await asyncio.gather(
            self._pump(process.stdout, stdout_chunks, on_stdout_line),
            self._pump(process.stderr, stderr_chunks, None),
        )
        return await process.wait()

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader,
        chunks: list[str],
        on_line: LineCallback | None,
    ) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            chunks.append(text)
            if on_line is not None:
                on_line(text.rstrip("\r\n"))

    def _limit_resources(self, timeout_seconds: float):
        """Return a preexec_fn to enforce resource limits on Unix."""
        def _apply_limits():
            try:
                import resource
            except ImportError:
                return
            cpu_seconds = max(1, int(timeout_seconds) + 1)
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
            if self.memory_limit_mb is None:
                return
            memory_bytes = int(self.memory_limit_mb * 1024 * 1024)
            if hasattr(resource, "RLIMIT_AS"):
                resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
            elif hasattr(resource, "RLIMIT_DATA"):
                resource.setrlimit(resource.RLIMIT_DATA, (memory_bytes, memory_bytes))

        return _apply_limits
