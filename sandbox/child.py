"""
Entry points executed inside sandbox child processes.

Only the standard library is imported here: the generated scripts import this
module under a stripped-down environment.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import copy
import io
import json
import os
import re
import sys
import urllib.error
import urllib.request
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import redirect_stderr, redirect_stdout
from typing import Any, Callable

CREDENTIAL_SENTINEL = "ISOLATED_DATA_METHOD_RESULT"
GLOBAL_SENTINEL = "SECURE_GLOBAL_EXECUTION_RESULT"
LEGACY_SENTINEL = "SECURE_EXECUTION_RESULT"

PLACEHOLDER_PATTERN = re.compile(r"process\.env\.([A-Za-z_][A-Za-z0-9_]*)")

CREDENTIAL_ACCESS_MESSAGE = (
    "Access to credential variables is not allowed in global code. "
    "Interact with external APIs in the secure_data_variables section."
)

MAIN_FUNCTION_NAME = "__global_code_main__"


def emit(sentinel: str, payload: Mapping[str, Any], stream: Any = None) -> None:
    """Write the single sentinel result line."""
    target = stream if stream is not None else sys.stdout
    target.write(f"{sentinel}: {json.dumps(payload, default=str)}\n")
    target.flush()


def resolve_placeholders(value: Any, environ: Mapping[str, str]) -> Any:
    """Replace ``process.env.NAME`` references in every string of ``value``."""
    if isinstance(value, str):
        return PLACEHOLDER_PATTERN.sub(lambda match: environ.get(match.group(1), ""), value)
    if isinstance(value, dict):
        return {key: resolve_placeholders(item, environ) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_placeholders(item, environ) for item in value]
    return value


def _decode_body(raw: bytes, content_type: str) -> Any:
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type.lower():
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


def fetch_main(payload: Mapping[str, Any]) -> None:
    """Perform exactly one HTTP call for a data variable and report it."""
    captured: dict[str, Any] = {"data": None, "error": None}
    try:
        config = resolve_placeholders(copy.deepcopy(payload["config"]), os.environ)
        fetch = config.get("fetchOptions") or {}
        headers = {str(key): str(value) for key, value in (config.get("headers") or {}).items()}
        method = str(fetch.get("method", "GET")).upper()
        body = fetch.get("body")
        data: bytes | None = None
        if body is not None and method != "GET":
            if isinstance(body, (dict, list)):
                data = json.dumps(body).encode("utf-8")
                if not any(key.lower() == "content-type" for key in headers):
                    headers["Content-Type"] = "application/json"
            else:
                data = str(body).encode("utf-8")

        request = urllib.request.Request(fetch["url"], data=data, headers=headers, method=method)
        timeout = float(payload.get("timeout", 15))
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                status = response.status
                response_headers = dict(response.headers.items())
                raw = response.read()
        except urllib.error.HTTPError as exc:
            status = exc.code
            response_headers = dict(exc.headers.items()) if exc.headers else {}
            raw = exc.read()

        content_type = next(
            (value for key, value in response_headers.items() if key.lower() == "content-type"),
            "",
        )
        captured["data"] = {
            "status": status,
            "headers": response_headers,
            "body": _decode_body(raw, content_type),
            "success": True,
        }
    except Exception as exc:  # noqa: BLE001 - every failure is reported through the sentinel
        captured["error"] = {"message": str(exc), "type": exc.__class__.__name__}
    emit(CREDENTIAL_SENTINEL, captured)


class RestrictedEnviron(MutableMapping):
    """Environment mapping that refuses credential-class names.

    Reads and writes of prefixed names raise ``PermissionError``; membership
    tests report them absent and iteration skips them.
    """

    def __init__(self, environ: MutableMapping, prefix: str) -> None:
        self._environ = environ
        self._prefix = prefix.upper()

    def _blocked(self, key: object) -> bool:
        if isinstance(key, bytes):
            return key.upper().startswith(self._prefix.encode())
        if isinstance(key, str):
            return key.upper().startswith(self._prefix)
        return False

    def __getitem__(self, key: Any) -> Any:
        if self._blocked(key):
            raise PermissionError(CREDENTIAL_ACCESS_MESSAGE)
        return self._environ[key]

    def __setitem__(self, key: Any, value: Any) -> None:
        if self._blocked(key):
            raise PermissionError(CREDENTIAL_ACCESS_MESSAGE)
        self._environ[key] = value

    def __delitem__(self, key: Any) -> None:
        if self._blocked(key):
            raise PermissionError(CREDENTIAL_ACCESS_MESSAGE)
        del self._environ[key]

    def __contains__(self, key: object) -> bool:
        return not self._blocked(key) and key in self._environ

    def __iter__(self) -> Iterator[Any]:
        return (key for key in list(self._environ) if not self._blocked(key))

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def copy(self) -> dict[Any, Any]:
        return dict(self)

    def __repr__(self) -> str:
        return f"RestrictedEnviron({dict(self)!r})"


def install_environ_guard(prefix: str) -> RestrictedEnviron:
    """Replace ``os.environ`` (and ``os.environb``) with restricted views."""
    guard = RestrictedEnviron(os.environ, prefix)
    os.environ = guard  # type: ignore[assignment]
    if hasattr(os, "environb"):
        os.environb = RestrictedEnviron(os.environb, prefix)  # type: ignore[assignment]
    return guard


class _Tee(io.TextIOBase):
    def __init__(self, buffer: io.StringIO, passthrough: Any) -> None:
        self._buffer = buffer
        self._passthrough = passthrough

    def write(self, text: str) -> int:
        self._buffer.write(text)
        self._passthrough.write(text)
        return len(text)

    def flush(self) -> None:
        self._passthrough.flush()


def _awaits_at_top_level(tree: ast.AST) -> bool:
    scopes = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)
    pending = list(ast.iter_child_nodes(tree))
    while pending:
        node = pending.pop()
        if isinstance(node, (ast.Await, ast.AsyncFor, ast.AsyncWith)):
            return True
        if isinstance(node, scopes):
            continue
        pending.extend(ast.iter_child_nodes(node))
    return False


def compile_body(code: str, namespace: dict[str, Any]) -> tuple[Callable[[], Any], bool]:
    """Compile caller code as the body of a function bound in ``namespace``.

    Returns the function and whether it is a coroutine function.
    """
    tree = compile(
        code,
        "<global_code>",
        "exec",
        flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
    )
    is_async = _awaits_at_top_level(tree)
    header = ("async " if is_async else "") + f"def {MAIN_FUNCTION_NAME}():\n    pass\n"
    wrapper = ast.parse(header)
    wrapper.body[0].body = tree.body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)
    exec(compile(wrapper, "<global_code>", "exec"), namespace)
    return namespace[MAIN_FUNCTION_NAME], is_async


def build_accessors(variables: Mapping[str, Mapping[str, Any]], is_async: bool) -> dict[str, Any]:
    """One callable per sanitized result; calling a failed one raises."""
    accessors: dict[str, Any] = {}
    for name, result in variables.items():

        def _value(result: Mapping[str, Any] = result, name: str = name) -> Any:
            if result.get("error"):
                message = result.get("message") or "Data variable failed"
                raise RuntimeError(f"{name}: {message} ({result.get('type')})")
            return copy.deepcopy(result.get("data"))

        if is_async:

            async def _async_value(_value: Callable[[], Any] = _value) -> Any:
                return _value()

            _async_value.__name__ = name
            accessors[name] = _async_value
        else:
            _value.__name__ = name
            accessors[name] = _value
    return accessors


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def wrapped_main(payload: Mapping[str, Any]) -> None:
    """Run caller code as a function body and report a structured result."""
    code = str(payload.get("code", ""))
    variables = payload.get("variables") or {}
    sentinel = str(payload.get("sentinel", GLOBAL_SENTINEL))
    prefix = payload.get("credential_prefix")

    real_stdout = sys.stdout
    out_buffer, err_buffer = io.StringIO(), io.StringIO()
    captured: dict[str, Any] = {"stdout": "", "stderr": "", "returnValue": None, "errors": []}

    if prefix:
        install_environ_guard(str(prefix))

    try:
        with redirect_stdout(_Tee(out_buffer, real_stdout)), redirect_stderr(
            _Tee(err_buffer, sys.stderr)
        ):
            namespace: dict[str, Any] = {"__name__": "__global_code__", "__builtins__": builtins}
            main, is_async = compile_body(code, namespace)
            namespace.update(build_accessors(variables, is_async))
            result = asyncio.run(main()) if is_async else main()
        captured["returnValue"] = _jsonable(result)
    except BaseException as exc:  # noqa: BLE001 - caller errors are reported, not raised
        captured["errors"].append(
            {"message": str(exc) or exc.__class__.__name__, "type": exc.__class__.__name__}
        )

    captured["stdout"] = out_buffer.getvalue()
    captured["stderr"] = err_buffer.getvalue()
    emit(sentinel, captured, stream=real_stdout)
