"""
Store Module

Durable job storage for the scheduler.

This module provides:
- SQLite-backed storage holding one JSON document per job
- Write-through save and delete on every job mutation
- Reload of all jobs at start-up, oldest first
- Status counts for diagnostics
"""

__version__ = "0.1.0"

from .repository import JobStore

__all__ = ["JobStore"]
