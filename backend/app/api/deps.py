from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.db import ConnectionManager, get_connection_manager


def get_manager() -> ConnectionManager:
    return get_connection_manager()


ManagerDep = Annotated[ConnectionManager, Depends(get_manager)]


def require_database(manager: ManagerDep) -> ConnectionManager:
    """Fail fast with 503 instead of waiting on a pool the manager knows is down."""
    if manager.shutting_down or not manager.is_connected():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )
    return manager


DatabaseDep = Annotated[ConnectionManager, Depends(require_database)]


async def get_db(manager: DatabaseDep) -> AsyncGenerator[AsyncSession, None]:
    async with manager.session() as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db)]
