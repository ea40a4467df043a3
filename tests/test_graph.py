import pytest

from execution_core.errors import DependencyCycleError, ValidationError
from execution_core.graph import find_cycle, resolve_order
from execution_core.schemas import DataSpec


def _spec(*sources: str) -> DataSpec:
    return DataSpec.model_validate(
        {
            "url": "https://api.example.com",
            "passed_variables": {
                f"headers.X-{source}": {"passed_from": source, "value": "${result.id}"}
                for source in sources
            },
        }
    )


def test_dependencies_come_first() -> None:
    specs = {"orders": _spec("user"), "user": _spec(), "items": _spec("orders", "user")}
    order = resolve_order(specs)
    assert order.index("user") < order.index("orders") < order.index("items")


def test_independent_variables_keep_declaration_order() -> None:
    specs = {"c": _spec(), "a": _spec(), "b": _spec()}
    assert resolve_order(specs) == ["c", "a", "b"]


def test_cycle_reports_full_chain() -> None:
    specs = {"a": _spec("b"), "b": _spec("a")}
    with pytest.raises(DependencyCycleError) as excinfo:
        resolve_order(specs)
    assert excinfo.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    assert find_cycle({"a": ["a"]}) == ["a", "a"]


def test_undeclared_source_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        resolve_order({"a": _spec("ghost")})
