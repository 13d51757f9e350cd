"""
Health-check helpers for liveness and readiness probes.

Liveness:  is the process alive and not deadlocked?  (cheap, no I/O)
Readiness: can it serve traffic?  (database answers SELECT 1)
"""

import logging

from app.core.db import get_connection_manager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Individual dependency checks
# ---------------------------------------------------------------------------

async def check_database() -> bool:
    """Probe the database through the connection manager (no recovery). Returns True if ok."""
    return await get_connection_manager().health_check(recover=False)


# ---------------------------------------------------------------------------
# Composite probes
# ---------------------------------------------------------------------------

def liveness_check() -> tuple[bool, list[str]]:
    """
    Lightweight liveness probe: just confirms the Python process is responsive.
    No I/O, no DB calls.  Return format matches readiness_check for consistency.
    """
    return (True, [])


async def readiness_check() -> tuple[bool, list[str]]:
    """
    Run the database check.
    Returns (ok, list of failure messages). ok is False if any required check fails.
    """
    failures: list[str] = []

    if get_connection_manager().shutting_down:
        failures.append("shutting_down")
    elif not await check_database():
        failures.append("database")

    if failures:
        logger.warning("Readiness check failed: %s", ", ".join(failures))
    return (len(failures) == 0, failures)
