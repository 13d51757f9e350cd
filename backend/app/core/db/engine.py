"""
Pooled async engine for the storefront database.

The psycopg (v3) driver is used through SQLAlchemy's asyncio extension. Pool
size, pool timeout, connect timeout, socket timeout and TLS mode all come from
settings and are fixed for the lifetime of the engine.
"""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import ExceptionContext
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.core.config import settings

_log = logging.getLogger(__name__)


def connect_args() -> dict[str, Any]:
    """libpq connection parameters passed through to ``psycopg.AsyncConnection.connect``."""
    return {
        "connect_timeout": settings.DB_CONNECT_TIMEOUT,
        "sslmode": settings.DB_SSL_MODE,
        # libpq takes milliseconds here
        "tcp_user_timeout": settings.DB_SOCKET_TIMEOUT * 1000,
        "application_name": settings.PROJECT_NAME,
    }


def create_db_engine(
    url: str | None = None,
    *,
    on_disconnect: Callable[[BaseException], None] | None = None,
) -> AsyncEngine:
    """
    Build the pooled engine. Nothing is opened until the first checkout.

    - url: override ``settings.SQLALCHEMY_DATABASE_URI``.
    - on_disconnect: called with the original driver error whenever SQLAlchemy
      classifies a failure on a pooled connection as a disconnect.
    """
    engine = create_async_engine(
        url or settings.SQLALCHEMY_DATABASE_URI,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=0,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args=connect_args(),
    )
    if on_disconnect is not None:
        watch_disconnects(engine, on_disconnect)
    return engine


def watch_disconnects(
    engine: AsyncEngine, callback: Callable[[BaseException], None]
) -> None:
    """Register *callback* for disconnect-class errors raised on *engine*."""

    def _handle_error(context: ExceptionContext) -> None:
        if not context.is_disconnect:
            return
        _log.error("Database driver reported a disconnect: %s", context.original_exception)
        try:
            callback(context.original_exception)
        except Exception:
            _log.exception("Disconnect callback failed")

    event.listen(engine.sync_engine, "handle_error", _handle_error)
