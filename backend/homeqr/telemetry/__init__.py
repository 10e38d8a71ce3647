"""
Telemetry Module
================

Observability for the attribution backend.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from homeqr.telemetry import init_observability, capture_exception

    # Initialize on app creation
    init_observability()
"""

from homeqr.telemetry.sentry import capture_exception, init_sentry


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
]
