# utils/__init__.py
"""Shared utilities for the TaleTrail orchestrator."""

from .logging import request_log_context, setup_logging

__all__ = ["request_log_context", "setup_logging"]
