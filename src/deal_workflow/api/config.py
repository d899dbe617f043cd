"""Configuration for the deal workflow FastAPI service."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # Postgres
    DATABASE_URL: str | None = None

    # Serve from the in-memory store instead of Postgres (local runs, demos)
    USE_MEMORY_STORE: bool = False

    # Auth
    API_KEY: str

    # uvicorn bind address
    HOST: str = "0.0.0.0"
    PORT: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
