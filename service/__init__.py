"""
Service Module

Configuration, job scheduling and CLI for the secure execution engine.

This module provides:
- YAML-based service configuration
- Bounded-concurrency job scheduler with durable job state
- CLI for one-shot execution and job management
"""

__version__ = "0.1.0"
