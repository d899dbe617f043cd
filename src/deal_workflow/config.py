"""
Configuration management for the deal workflow core.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


class Config:
    """Configuration settings loaded from environment."""

    # Postgres
    DATABASE_URL: str = os.getenv('DATABASE_URL', '')
    DB_POOL_SIZE: int = int(os.getenv('DB_POOL_SIZE', '5'))
    DB_RETRY_ATTEMPTS: int = int(os.getenv('DB_RETRY_ATTEMPTS', '3'))

    # Postgres NOTIFY channel fired by the deal_participants trigger
    ROSTER_CHANNEL: str = os.getenv('ROSTER_CHANNEL', 'deal_participants_changed')

    # Logging
    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')
    LOG_JSON: bool = os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes')

    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate that required configuration is present.

        Returns:
            List of missing required configuration keys
        """
        missing = []
        if not cls.DATABASE_URL:
            missing.append('DATABASE_URL')
        return missing


# Singleton config instance
config = Config()
