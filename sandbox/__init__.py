"""
Sandbox Module

Subprocess isolation for the two execution phases.

This module provides:
- Asynchronous subprocess running with timeout escalation and temp-file cleanup
- Generated child scripts and the sentinel result-line protocol
- Environment policies that keep credential-class variables out of global code
- Sanitization of fetch results and captured output
- The orchestrator tying the credential and global phases together

Child processes import ``sandbox.child`` only, so this package must stay cheap
to import and free of third-party imports at the top level.
"""

__version__ = "0.1.0"
