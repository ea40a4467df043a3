"""
Execution Core Module

Request model, dependency ordering and value interpolation for secure execution.

This module provides:
- Pydantic schemas for execution requests, data variables, results and jobs
- The failure taxonomy shared by every layer
- Dependency graph resolution (cycle detection, stable topological order)
- Interpolation of one data variable's result into another's configuration
"""

__version__ = "0.1.0"

from .errors import ErrorKind, ExecutionCoreError
from .graph import resolve_order

__all__ = [
    "ErrorKind",
    "ExecutionCoreError",
    "resolve_order",
]
