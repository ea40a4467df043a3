"""
Review Module

Optional secondary review of already-sanitized execution output.

This module provides:
- Unified BaseReviewer interface
- OpenAI-compatible reviewer (hosted APIs or a local endpoint via base_url)
- Deterministic fake reviewer for offline tests
- Retry logic with exponential backoff
- Review prompt construction
"""

__version__ = "0.1.0"
