import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from app.backend_pre_start import init, logger, run


def test_init_successful_connection() -> None:
    engine_mock = MagicMock()

    session_mock = MagicMock()
    session_mock.exec = AsyncMock(return_value=True)
    # async with AsyncSession(engine) as session: binds session to __aenter__()
    session_mock.__aenter__.return_value = session_mock
    session_mock.__aexit__.return_value = None

    with (
        patch("app.backend_pre_start.AsyncSession", return_value=session_mock),
        patch.object(logger, "info"),
        patch.object(logger, "error"),
        patch.object(logger, "warn"),
    ):
        try:
            asyncio.run(init(engine_mock))
            connection_successful = True
        except Exception:
            connection_successful = False

        assert (
            connection_successful
        ), "The database connection should be successful and not raise an exception."

        session_mock.exec.assert_awaited_once()


def test_run_disposes_engine() -> None:
    engine_mock = MagicMock()
    engine_mock.dispose = AsyncMock()

    with (
        patch("app.backend_pre_start.create_db_engine", return_value=engine_mock),
        patch("app.backend_pre_start.init", AsyncMock()) as init_mock,
    ):
        asyncio.run(run())

    init_mock.assert_awaited_once_with(engine_mock)
    engine_mock.dispose.assert_awaited_once()
