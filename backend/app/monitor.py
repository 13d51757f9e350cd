"""
Standalone database keepalive.

Runs the connection manager (initial connect, periodic probe, recovery) until
SIGINT/SIGTERM, then closes the pool and exits with the shutdown's exit code.
Useful for worker hosts that talk to the database without serving HTTP.
"""

import asyncio
import logging
import sys

from app.core.config import settings
from app.core.db import get_connection_manager, run_until_shutdown

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL)
    logger.info(
        "Starting database keepalive (probe every %gs)",
        settings.DB_HEALTH_CHECK_INTERVAL,
    )
    code = asyncio.run(run_until_shutdown(get_connection_manager()))
    sys.exit(code)


if __name__ == "__main__":
    main()
