"""
errors.py

Exception types raised across the core, and the error taxonomy used by EVALUATE
to decide whether tool failures are worth retrying, recovering from, or ending on.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, List

from .state import ErrorClassName, ToolCallSummary


class VigilantError(Exception):
    """Base class for core errors."""


class CaptureError(VigilantError):
    """Screen capture collaborator could not produce an image."""


class ModelError(VigilantError):
    """Language-model collaborator failed (network, malformed response...)."""


class RunCancelled(VigilantError):
    """Raised at a node boundary once the run's cancellation token has fired."""


  
# Error classification
  

TRANSIENT_PATTERNS: List[str] = [
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
    "service unavailable",
    "503",
    "502",
    "retry",
    "screenshot capture failed",
    "screenshot failed",
    "econnreset",
    "econnrefused",
]

PERMANENT_PATTERNS: List[str] = [
    "not found",
    "permission denied",
    "invalid tool",
    "unknown tool",
    "invalid parameter",
    "crashed",
    "app not running",
    "accessibility not available",
    "403",
    "401",
    "unauthorized",
    "forbidden",
    "unsupported",
    "malformed",
]

STUCK_PATTERNS: List[str] = [
    "stuck",
    "identical",
    "no progress",
    "repeating",
    "same state",
    "loop detected",
    "repeated action",
]

RESOURCE_PATTERNS: List[str] = [
    "token limit",
    "token budget",
    "max iterations",
    "max tokens",
    "context length",
    "budget exceeded",
    "time limit",
    "quota",
    "payload too large",
    "413",
]

SEVERITY = {
    "none": 0,
    "transient": 1,
    "stuck": 2,
    "resource": 3,
    "permanent": 4,
}


class ErrorClassifier:
    """
    Pattern-based classifier. Order matters: transient is checked first so that
    e.g. "connection timed out (403 proxy)" is still treated as retryable.
    Anything unrecognised defaults to transient.
    """

    @staticmethod
    def classify_message(message: str) -> ErrorClassName:
        msg = message.lower()
        if _matches_any(msg, TRANSIENT_PATTERNS):
            return "transient"
        if _matches_any(msg, PERMANENT_PATTERNS):
            return "permanent"
        if _matches_any(msg, STUCK_PATTERNS):
            return "stuck"
        if _matches_any(msg, RESOURCE_PATTERNS):
            return "resource"
        return "transient"

    @classmethod
    def classify_exception(cls, error: BaseException) -> ErrorClassName:
        """Exception type first (timeouts and dropped connections retry), then its message."""
        if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return "transient"
        if isinstance(error, (PermissionError, FileNotFoundError, NotImplementedError)):
            return "permanent"
        if isinstance(error, MemoryError):
            return "resource"
        return cls.classify_message(str(error))

    @classmethod
    def classify_summaries(cls, summaries: Iterable[ToolCallSummary]) -> ErrorClassName:
        worst: ErrorClassName = "none"
        for summary in summaries:
            if not summary.is_error:
                continue
            cls_ = cls.classify_message(summary.result_text)
            if SEVERITY[cls_] > SEVERITY[worst]:
                worst = cls_
        return worst


def _matches_any(message: str, patterns: List[str]) -> bool:
    return any(p in message for p in patterns)
