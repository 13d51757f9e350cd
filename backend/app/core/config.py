import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    Field,
    HttpUrl,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

_ASYNC_DRIVER = "postgresql+psycopg"


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


def normalize_database_url(url: str) -> str:
    """Rewrite ``postgres://`` / ``postgresql://`` URLs to the async psycopg dialect."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return f"{_ASYNC_DRIVER}://" + url[len(prefix) :]
    return url


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "storefront-db"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: HttpUrl | None = None

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []
    FRONTEND_HOST: str = "http://localhost:3000"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    # Full URL wins over the POSTGRES_* parts when set.
    DATABASE_URL: str | None = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "app"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return normalize_database_url(self.DATABASE_URL)
        return str(
            AnyUrl.build(
                scheme=_ASYNC_DRIVER,
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD or None,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # Pooled client
    DB_POOL_SIZE: int = Field(default=10, gt=0)
    DB_POOL_TIMEOUT: float = Field(default=20, gt=0)  # seconds waiting for a free slot
    DB_CONNECT_TIMEOUT: int = Field(default=60, gt=0)  # seconds
    DB_SOCKET_TIMEOUT: int = Field(default=60, gt=0)  # seconds, libpq tcp_user_timeout
    DB_SSL_MODE: Literal[
        "disable", "allow", "prefer", "require", "verify-ca", "verify-full"
    ] = "require"

    # Connection lifecycle
    DB_MAX_RECONNECT_ATTEMPTS: int = Field(default=5, gt=0)
    DB_RETRY_BASE_MS: int = Field(default=1000, gt=0)
    DB_RETRY_MAX_DELAY_MS: int = Field(default=30000, gt=0)
    DB_HEALTH_CHECK_INTERVAL: float = Field(default=30, gt=0)  # seconds
    SHUTDOWN_TIMEOUT: float = Field(default=10, gt=0)  # seconds before forced exit

    @model_validator(mode="after")
    def _check_retry_window(self) -> Self:
        if self.DB_RETRY_MAX_DELAY_MS < self.DB_RETRY_BASE_MS:
            raise ValueError(
                "DB_RETRY_MAX_DELAY_MS must be >= DB_RETRY_BASE_MS"
            )
        return self

    @model_validator(mode="after")
    def _warn_insecure_transport(self) -> Self:
        if self.DB_SSL_MODE in ("disable", "allow") and self.ENVIRONMENT != "local":
            message = (
                f'DB_SSL_MODE is "{self.DB_SSL_MODE}" in {self.ENVIRONMENT}; '
                "database traffic may travel unencrypted."
            )
            warnings.warn(message, stacklevel=1)
        return self


settings = Settings()  # type: ignore
