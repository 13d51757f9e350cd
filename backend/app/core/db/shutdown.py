"""
Process-level shutdown for the connection manager.

SIGINT / SIGTERM start ``ConnectionManager.graceful_shutdown``. A second signal
while that is running, or the shutdown outliving ``SHUTDOWN_TIMEOUT``, forces
the process out with exit code 1. Under uvicorn the server owns the signals and
the FastAPI lifespan drives shutdown instead (see ``app.main``).
"""

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Awaitable, Callable

from app.core.config import settings

from .manager import EXIT_FAILURE, ConnectionManager

_log = logging.getLogger(__name__)

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Turns termination signals into exactly one graceful shutdown."""

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        timeout: float | None = None,
        force_exit: Callable[[int], object] = os._exit,
    ) -> None:
        self._manager = manager
        self._timeout = timeout if timeout is not None else settings.SHUTDOWN_TIMEOUT
        self._force_exit = force_exit
        self._requested = asyncio.Event()
        self._task: asyncio.Task[int] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def in_progress(self) -> bool:
        return self._task is not None

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        for sig in _SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.handle_signal, sig.name)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, self._threadsafe_handler)
            self._installed.append(sig)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            try:
                self._loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)
        self._installed.clear()

    def handle_signal(self, signal_name: str) -> None:
        if self.in_progress:
            _log.error("%s received during shutdown; forcing exit", signal_name)
            self._force_exit(EXIT_FAILURE)
            return
        self.request(signal_name)

    def request(self, reason: str) -> asyncio.Task[int]:
        """Start the graceful shutdown (once) and arm the forced-exit timer."""
        if self._task is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._timeout, self._on_timeout)
            self._task = loop.create_task(self._manager.graceful_shutdown(reason))
            self._task.add_done_callback(self._on_done)
            self._requested.set()
        return self._task

    async def wait(self) -> int:
        """Block until shutdown has been requested and has finished; return the exit code."""
        await self._requested.wait()
        if self._task is None:
            raise RuntimeError("Shutdown requested but never started")
        return await asyncio.shield(self._task)

    def _threadsafe_handler(self, signum: int, frame: object) -> None:
        if self._loop is None:
            raise RuntimeError("Signal handlers are not installed")
        self._loop.call_soon_threadsafe(self.handle_signal, signal.Signals(signum).name)

    def _on_timeout(self) -> None:
        _log.error("Forced shutdown after %gs timeout", self._timeout)
        self._force_exit(EXIT_FAILURE)

    def _on_done(self, task: asyncio.Task[int]) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


async def run_until_shutdown(
    manager: ConnectionManager,
    main: Callable[[], Awaitable[object]] | None = None,
    *,
    coordinator: ShutdownCoordinator | None = None,
) -> int:
    """
    Start *manager*, then run until a termination signal or until *main* returns.

    *main* returning counts as a normal exit and is reported to the manager as
    ``"exit"``. Returns the process exit code.
    """
    coordinator = coordinator or ShutdownCoordinator(manager)
    coordinator.install()
    manager.start()
    try:
        if main is None:
            return await coordinator.wait()

        main_task = asyncio.ensure_future(main())
        waiter = asyncio.ensure_future(coordinator.wait())
        done, _ = await asyncio.wait(
            {main_task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter in done:
            main_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await main_task
            return waiter.result()

        waiter.cancel()
        main_failed = main_task.exception() is not None
        if main_failed:
            _log.error("Main task failed", exc_info=main_task.exception())
        coordinator.request("exit")
        code = await coordinator.wait()
        return EXIT_FAILURE if main_failed else code
    finally:
        coordinator.uninstall()
