"""
Storefront database: pooled engine, connection lifecycle, shutdown wiring.

psycopg is driven through SQLAlchemy's asyncio extension; settings decide pool
size, timeouts and TLS.
"""

from .backoff import BackoffPolicy
from .engine import create_db_engine
from .manager import (
    ConnectionManager,
    ConnectionState,
    get_connection_manager,
    reset_connection_manager,
)
from .shutdown import ShutdownCoordinator, run_until_shutdown

__all__ = [
    "BackoffPolicy",
    "create_db_engine",
    "ConnectionManager",
    "ConnectionState",
    "get_connection_manager",
    "reset_connection_manager",
    "ShutdownCoordinator",
    "run_until_shutdown",
]
