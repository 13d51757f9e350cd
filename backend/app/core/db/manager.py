"""
Connection lifecycle for the storefront database.

One ``ConnectionManager`` owns the pooled engine and the ``ConnectionState``.
It connects with exponential backoff, probes liveness on a fixed interval,
launches recovery when the probe fails, and disposes the pool exactly once on
shutdown. Connection failures never escape as exceptions: they become state
transitions and log lines.

Retry budgets
-------------
* Per sequence: ``connect_with_retry`` makes at most ``policy.max_attempts``
  tries, sleeping ``policy.delay_ms(attempt)`` between them.
* Across probes: ``reconnect_attempts`` counts consecutive probe-triggered
  sequences that have been launched since the last time the link was up. Once
  it reaches ``policy.max_attempts`` the probe stops launching sequences and
  only watches for the link to come back on its own.
"""

import asyncio
import contextlib
import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel.ext.asyncio.session import AsyncSession
from tenacity import AsyncRetrying, RetryCallState

from app.core.config import settings

from .backoff import BackoffPolicy
from .engine import create_db_engine

_log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

EngineFactory = Callable[[], AsyncEngine]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ConnectionState:
    connected: bool = False
    reconnect_attempts: int = 0


class ConnectionManager:
    """Owns the pooled engine, its liveness state, and the probe/retry tasks."""

    def __init__(
        self,
        *,
        engine_factory: EngineFactory | None = None,
        policy: BackoffPolicy | None = None,
        probe_interval: float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._engine_factory = engine_factory or self._default_engine
        self._policy = policy or BackoffPolicy.from_settings()
        self._probe_interval = (
            probe_interval
            if probe_interval is not None
            else settings.DB_HEALTH_CHECK_INTERVAL
        )
        self._sleep = sleep
        self._state = ConnectionState()
        self._engine: AsyncEngine | None = None
        self._reconnect_task: asyncio.Task[bool] | None = None
        self._initial_task: asyncio.Task[None] | None = None
        self._probe_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[int] | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._state.connected

    @property
    def state(self) -> ConnectionState:
        """Snapshot of the current state; mutating it has no effect on the manager."""
        return replace(self._state)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def engine(self) -> AsyncEngine:
        """The pooled engine used to issue application queries."""
        if self.shutting_down:
            raise RuntimeError("Connection manager is shut down")
        return self._ensure_engine()

    @property
    def reconnect_in_progress(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_task is not None

    def session(self) -> AsyncSession:
        return AsyncSession(self.engine, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Kick off the initial connection and the periodic probe. Never blocks."""
        if self.shutting_down:
            raise RuntimeError("Connection manager is shut down")
        if self._initial_task is None:
            self._initial_task = asyncio.create_task(self._initial_connect())
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def connect_with_retry(self, attempt: int = 1) -> bool:
        """
        Open the pooled connection, retrying with backoff from *attempt*.

        Returns True once connected, False when the attempt ceiling is reached.
        If a sequence is already running, the caller joins it instead of
        starting a second one; *attempt* is then ignored and the running
        sequence keeps its own attempt numbering.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        if self.shutting_down:
            return False
        task = self._reconnect_task
        if task is None or task.done():
            task = asyncio.create_task(self._retry_sequence(attempt))
            self._reconnect_task = task
        else:
            _log.debug(
                "Reconnection already in progress, joining it (requested attempt %d ignored)",
                attempt,
            )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # sequence cancelled by shutdown, not the caller
            if task.cancelled() and self.shutting_down:
                return False
            raise

    async def health_check(self, *, recover: bool = True) -> bool:
        """
        Round-trip ``SELECT 1``; on failure, launch recovery within the probe budget.

        With ``recover=False`` a failure only updates the state. HTTP probes use
        that so a request never waits out a backoff sequence; the periodic probe
        owns recovery.
        """
        if self.shutting_down:
            return False
        try:
            await self._probe()
        except Exception as e:
            _log.error("Health check failed: %s", e)
            self._state.connected = False
            if recover:
                await self._recover()
            return False

        if not self._state.connected:
            _log.info("Database connection restored")
            self._mark_connected()
        return True

    async def stop_probe(self) -> None:
        await _cancel(self._probe_task)
        self._probe_task = None

    async def graceful_shutdown(self, signal_name: str) -> int:
        """
        Stop background work and close the pool. Returns the process exit code.

        Safe to call repeatedly: every call after the first waits for the same
        shutdown and gets the same exit code.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown(signal_name))
        else:
            _log.info("%s received while shutdown is already in progress", signal_name)
        return await asyncio.shield(self._shutdown_task)

    def mark_disconnected(self, exc: BaseException | None = None) -> None:
        """Driver-level notification that a pooled connection broke."""
        if self._state.connected:
            _log.warning("Database marked disconnected: %s", exc)
        self._state.connected = False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _default_engine(self) -> AsyncEngine:
        return create_db_engine(on_disconnect=self.mark_disconnected)

    def _ensure_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._engine_factory()
        return self._engine

    def _mark_connected(self) -> None:
        self._state.connected = True
        self._state.reconnect_attempts = 0

    async def _open(self) -> None:
        engine = self._ensure_engine()
        async with engine.connect():
            pass

    async def _probe(self) -> None:
        engine = self._ensure_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def _recover(self) -> None:
        if self.reconnect_in_progress:
            _log.info("Reconnection already in progress, not starting another")
            return
        if self._state.reconnect_attempts >= self._policy.max_attempts:
            _log.warning(
                "Reconnection budget exhausted (%d/%d); waiting for the database to come back",
                self._state.reconnect_attempts,
                self._policy.max_attempts,
            )
            return
        self._state.reconnect_attempts += 1
        _log.info(
            "Attempting reconnection (%d/%d)...",
            self._state.reconnect_attempts,
            self._policy.max_attempts,
        )
        await self.connect_with_retry(1)

    async def _retry_sequence(self, first_attempt: int) -> bool:
        offset = first_attempt - 1

        def _stop(retry_state: RetryCallState) -> bool:
            return not self._policy.should_retry(retry_state.attempt_number + offset)

        def _after_failure(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            _log.error(
                "Database connection attempt %d failed: %s",
                retry_state.attempt_number + offset,
                exc,
            )
            self._state.connected = False

        def _before_sleep(retry_state: RetryCallState) -> None:
            if retry_state.next_action is not None:
                _log.info(
                    "Retrying connection in %gs...", retry_state.next_action.sleep
                )

        retrying = AsyncRetrying(
            stop=_stop,
            wait=self._policy.wait(first_attempt),
            after=_after_failure,
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._open()
        except Exception:
            _log.error("Max reconnection attempts reached. Database unavailable.")
            self._state.connected = False
            return False

        self._mark_connected()
        _log.info("Database connected successfully")
        return True

    async def _initial_connect(self) -> None:
        connected = await self.connect_with_retry()
        if not connected:
            _log.warning(
                "Starting with database unavailable - will retry in background"
            )

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self._probe_interval)
            await self.health_check()

    async def _shutdown(self, signal_name: str) -> int:
        _log.info("%s received. Closing database connections...", signal_name)
        await self.stop_probe()
        await _cancel(self._initial_task)
        await _cancel(self._reconnect_task)
        self._state.connected = False

        engine, self._engine = self._engine, None
        if engine is None:
            _log.info("No database pool was opened; nothing to close")
            return EXIT_OK
        try:
            await engine.dispose()
        except Exception:
            _log.exception("Error during database shutdown")
            return EXIT_FAILURE
        _log.info("Database disconnected cleanly")
        return EXIT_OK


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


_connection_manager: ConnectionManager | None = None
_manager_lock = threading.Lock()


def get_connection_manager() -> ConnectionManager:
    """Return the process-wide ConnectionManager (thread-safe double-checked locking)."""
    global _connection_manager
    if _connection_manager is None:
        with _manager_lock:
            if _connection_manager is None:
                _connection_manager = ConnectionManager()
    return _connection_manager


def reset_connection_manager(manager: ConnectionManager | None = None) -> None:
    """Replace (or clear) the process-wide manager. Intended for tests."""
    global _connection_manager
    with _manager_lock:
        _connection_manager = manager
