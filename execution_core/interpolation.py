"""Rewrite a data variable's configuration with values from earlier results."""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError as PydanticValidationError

from .errors import InterpolationError, ValidationError
from .schemas import DataSpec, SanitizedResult

MARKER_PATTERN = re.compile(r"\$\{\s*(result(?:[.\[][^}]*?)?)\s*\}")
_PATH_TOKEN = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]|\[['\"]([^'\"]+)['\"]\]")

_MISSING = object()

# DataSpec fields a bare passed-variable key may name directly.
TOP_LEVEL_FIELDS = frozenset({"credential", "timeout"})


def parse_path(path: str) -> list[str | int]:
    """Split ``result.items[0].id`` into ``["items", 0, "id"]``."""
    if not path.startswith("result"):
        raise InterpolationError(f"Template path must start with 'result': {path}")
    rest = path[len("result"):]
    segments: list[str | int] = []
    position = 0
    while position < len(rest):
        match = _PATH_TOKEN.match(rest, position)
        if match is None:
            raise InterpolationError(f"Malformed template path: {path}")
        key, index, quoted = match.groups()
        if index is not None:
            segments.append(int(index))
        else:
            segments.append(key if key is not None else quoted)
        position = match.end()
    return segments


def lookup(data: Any, path: str) -> Any:
    """Return the value at ``path`` inside ``data``; raise if it is missing or null."""
    current: Any = data
    for segment in parse_path(path):
        if isinstance(segment, int):
            if isinstance(current, list) and -len(current) <= segment < len(current):
                current = current[segment]
                continue
            current = _MISSING
        elif isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            current = _MISSING
        if current is _MISSING:
            break
    if current is _MISSING or current is None:
        raise InterpolationError(f"Unresolved template value: {path}")
    return current


def render_template(template: str, data: Any) -> Any:
    """Substitute every ``${result.<path>}`` marker in ``template``.

    A template consisting of exactly one marker yields the raw value, keeping
    its JSON type; otherwise values are stringified into the surrounding text.
    """
    whole = MARKER_PATTERN.fullmatch(template.strip())
    if whole is not None:
        return lookup(data, whole.group(1))

    def _replace(match: re.Match[str]) -> str:
        value = lookup(data, match.group(1))
        return value if isinstance(value, str) else _stringify(value)

    return MARKER_PATTERN.sub(_replace, template)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _assign(target: dict[str, Any], field_path: str, value: Any) -> None:
    parts = [part for part in field_path.split(".") if part]
    if not parts:
        raise InterpolationError(f"Empty target field path: {field_path!r}")
    current: dict[str, Any] = target
    for part in parts[:-1]:
        nested = current.get(part)
        if nested is None:
            nested = {}
            current[part] = nested
        if not isinstance(nested, dict):
            raise InterpolationError(f"Target field path '{field_path}' crosses a non-object value")
        current = nested
    current[parts[-1]] = value


def resolve_target(field_path: str, method: str) -> str | None:
    """Where a passed variable lands in the wire form.

    Dotted paths are used as given. A bare key that is not a DataSpec field
    becomes ``fetchOptions.body.<key>`` for methods with a body, or ``None``
    for GET, meaning a query parameter named ``key``.
    """
    if "." in field_path or field_path in TOP_LEVEL_FIELDS:
        return field_path
    if method.upper() == "GET":
        return None
    return f"fetchOptions.body.{field_path}"


def _is_text_target(field_path: str) -> bool:
    return field_path.startswith("headers.") or field_path == "fetchOptions.url"


def _add_query(url: str, params: list[tuple[str, str]]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + params
    return urlunsplit(parts._replace(query=urlencode(query)))


def interpolate(
    spec: DataSpec,
    results: Mapping[str, SanitizedResult],
) -> DataSpec:
    """Return a copy of ``spec`` with every passed variable rendered in place.

    ``results`` holds the sanitized results of variables that already ran.
    Values written to headers, the url or the query string are stringified;
    body values keep their JSON type. The input spec is left untouched.

    Raises:
        InterpolationError: If a source failed or a template path is missing.
        ValidationError: If the rewritten configuration is no longer valid.
    """
    if not spec.passed_variables:
        return spec

    wire = copy.deepcopy(spec.to_wire())
    wire.pop("passed_variables", None)
    method = spec.fetch_options.method
    query: list[tuple[str, str]] = []
    for field_key, passed in spec.passed_variables.items():
        source = results.get(passed.passed_from)
        if source is None:
            raise InterpolationError(
                f"Dependency '{passed.passed_from}' has not produced a result"
            )
        if source.error:
            raise InterpolationError(
                f"Dependency '{passed.passed_from}' failed; cannot resolve '{passed.value}'"
            )
        value = render_template(passed.value, source.data)
        field_path = passed.field_name or field_key
        target = resolve_target(field_path, method)
        if target is None:
            query.append((field_path, value if isinstance(value, str) else _stringify(value)))
            continue
        if _is_text_target(target) and not isinstance(value, str):
            value = _stringify(value)
        _assign(wire, target, value)

    if query:
        wire["fetchOptions"]["url"] = _add_query(wire["fetchOptions"]["url"], query)

    try:
        return DataSpec.model_validate(wire)
    except PydanticValidationError as exc:
        raise ValidationError(f"Interpolated configuration is invalid: {exc}") from exc
