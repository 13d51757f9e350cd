"""Unit tests for signal-driven shutdown (ShutdownCoordinator, run_until_shutdown)."""

import asyncio
import os
import signal
import sys
from collections.abc import Coroutine
from typing import Any
from unittest.mock import MagicMock

import pytest

from app.core.db import (
    BackoffPolicy,
    ConnectionManager,
    ShutdownCoordinator,
    run_until_shutdown,
)
from tests.utils.engine import FakeEngine, RecordingSleep


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    return asyncio.run(coro)


def _manager(engine: FakeEngine) -> ConnectionManager:
    return ConnectionManager(
        engine_factory=lambda: engine,  # type: ignore[arg-type,return-value]
        policy=BackoffPolicy(),
        probe_interval=3600,
        sleep=RecordingSleep(),
    )


def test_install_registers_sigint_and_sigterm() -> None:
    loop = MagicMock()
    coordinator = ShutdownCoordinator(_manager(FakeEngine()), force_exit=MagicMock())

    coordinator.install(loop)
    registered = {c.args[0] for c in loop.add_signal_handler.call_args_list}
    assert registered == {signal.SIGINT, signal.SIGTERM}

    coordinator.uninstall()
    removed = {c.args[0] for c in loop.remove_signal_handler.call_args_list}
    assert removed == {signal.SIGINT, signal.SIGTERM}


def test_threadsafe_handler_requires_install() -> None:
    coordinator = ShutdownCoordinator(_manager(FakeEngine()), force_exit=MagicMock())
    with pytest.raises(RuntimeError, match="not installed"):
        coordinator._threadsafe_handler(signal.SIGTERM, None)


def test_signal_runs_graceful_shutdown() -> None:
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()

    async def run() -> int:
        await manager.connect_with_retry()
        coordinator = ShutdownCoordinator(manager, timeout=5, force_exit=force_exit)
        coordinator.handle_signal("SIGTERM")
        return await coordinator.wait()

    assert _run(run()) == 0
    assert engine.dispose_calls == 1
    force_exit.assert_not_called()


def test_shutdown_failure_exit_code() -> None:
    engine = FakeEngine()
    engine.dispose_error = RuntimeError("close failed")
    manager = _manager(engine)

    async def run() -> int:
        await manager.connect_with_retry()
        coordinator = ShutdownCoordinator(manager, timeout=5, force_exit=MagicMock())
        coordinator.handle_signal("SIGINT")
        return await coordinator.wait()

    assert _run(run()) == 1


def test_second_signal_forces_exit() -> None:
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()

    async def run() -> int:
        await manager.connect_with_retry()
        engine.dispose_gate = asyncio.Event()
        coordinator = ShutdownCoordinator(manager, timeout=5, force_exit=force_exit)
        coordinator.handle_signal("SIGTERM")
        coordinator.handle_signal("SIGINT")
        force_exit.assert_called_once_with(1)
        engine.dispose_gate.set()
        return await coordinator.wait()

    assert _run(run()) == 0
    assert engine.dispose_calls == 1


def test_shutdown_timeout_forces_exit() -> None:
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()

    async def run() -> None:
        await manager.connect_with_retry()
        engine.dispose_gate = asyncio.Event()
        coordinator = ShutdownCoordinator(manager, timeout=0.01, force_exit=force_exit)
        coordinator.handle_signal("SIGTERM")
        await asyncio.sleep(0.05)
        force_exit.assert_called_once_with(1)
        engine.dispose_gate.set()
        await coordinator.wait()

    _run(run())


def test_timer_disarmed_after_clean_shutdown() -> None:
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()

    async def run() -> None:
        await manager.connect_with_retry()
        coordinator = ShutdownCoordinator(manager, timeout=0.02, force_exit=force_exit)
        coordinator.handle_signal("SIGTERM")
        await coordinator.wait()
        await asyncio.sleep(0.05)

    _run(run())
    force_exit.assert_not_called()


def test_run_until_shutdown_normal_exit() -> None:
    """main() returning is a normal exit: the pool is closed and the code is 0."""
    engine = FakeEngine()
    manager = _manager(engine)

    async def main() -> None:
        while not manager.is_connected():
            await asyncio.sleep(0)

    code = _run(run_until_shutdown(manager, main))
    assert code == 0
    assert engine.dispose_calls == 1


def test_run_until_shutdown_main_failure() -> None:
    engine = FakeEngine()
    manager = _manager(engine)

    async def main() -> None:
        raise RuntimeError("worker crashed")

    assert _run(run_until_shutdown(manager, main)) == 1
    assert manager.shutting_down is True


def test_run_until_shutdown_on_signal() -> None:
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()
    main_cancelled = []

    async def main() -> None:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            main_cancelled.append(True)
            raise

    async def run() -> int:
        coordinator = ShutdownCoordinator(manager, timeout=5, force_exit=force_exit)
        asyncio.get_running_loop().call_later(0.01, coordinator.handle_signal, "SIGTERM")
        return await run_until_shutdown(manager, main, coordinator=coordinator)

    assert _run(run()) == 0
    assert main_cancelled == [True]
    force_exit.assert_not_called()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_run_until_shutdown_real_sigterm() -> None:
    """SIGTERM delivered to the process closes the pool once and exits 0."""
    engine = FakeEngine()
    manager = _manager(engine)
    force_exit = MagicMock()

    async def send_sigterm_once_connected() -> None:
        while not manager.is_connected():
            await asyncio.sleep(0)
        os.kill(os.getpid(), signal.SIGTERM)

    async def run() -> int:
        coordinator = ShutdownCoordinator(manager, timeout=5, force_exit=force_exit)
        sender = asyncio.ensure_future(send_sigterm_once_connected())
        code = await run_until_shutdown(manager, coordinator=coordinator)
        await sender
        return code

    assert _run(run()) == 0
    assert engine.dispose_calls == 1
    force_exit.assert_not_called()
