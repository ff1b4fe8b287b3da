"""
Telemetry Module
================

Error tracking for the billing API.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from stackcore.telemetry import init_observability

    # Initialize on app creation
    init_observability()
"""

from stackcore.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
    capture_message,
)


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
    "set_user_context",
    "capture_exception",
    "capture_message",
]
