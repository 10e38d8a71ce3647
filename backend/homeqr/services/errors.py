"""Exceptions raised by the attribution and analytics services.

Expected unique-constraint conflicts never surface as exceptions: the upsert
engine recovers from them. What remains here are operational failures that
callers either log and drop (tracking handlers) or report (repair job).
"""

from typing import Any, Dict, Optional


class AnalyticsError(Exception):
    """Base class for attribution/analytics failures."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class UpsertError(AnalyticsError):
    """A write still failed after the conflict fallback; the event is dropped."""


class ReconciliationError(AnalyticsError):
    """The repair job could not read the raw rows it rebuilds from."""
