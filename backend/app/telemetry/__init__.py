"""
Telemetry Module
================

Observability stack for the CAPI delivery service.

Components:
- sentry.py: Error tracking for the API and the outbox worker

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from app.telemetry import init_observability, capture_exception

    # Initialize on app / worker startup
    init_observability()

Related modules:
- app/main.py: Initializes observability on startup
- app/workers/arq_worker.py: Initializes observability on worker startup
- app/services/capi_outbox_processor.py: Reports handled tenant errors
- app/services/capi_health.py: Reports tenants that reach failing
"""

from app.telemetry.sentry import (
    init_sentry,
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
    "capture_exception",
    "capture_message",
]
