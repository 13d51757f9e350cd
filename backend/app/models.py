"""
Response schemas shared by the API routes.
"""

from sqlmodel import Field, SQLModel


class ConnectionStatus(SQLModel):
    """Body for GET /utils/db-status/."""

    connected: bool
    reconnect_attempts: int = Field(ge=0)
    max_reconnect_attempts: int = Field(ge=1)
    reconnect_in_progress: bool = False
    shutting_down: bool = False
