"""Database configuration for docharvest.

Builds the SQLAlchemy-backed store for either SQLite (development) or
PostgreSQL (production).
"""

import os
import logging
from enum import Enum
from pydantic import BaseModel, Field

from services.shared.store import SQLStore

logger = logging.getLogger(__name__)


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    url: str = Field(default="sqlite:///docharvest.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log every SQL statement")

    @property
    def type(self) -> DatabaseType:
        if self.url.startswith("postgresql"):
            return DatabaseType.POSTGRESQL
        return DatabaseType.SQLITE

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        return cls(
            url=os.getenv('DOCHARVEST_DATABASE_URL', 'sqlite:///docharvest.db'),
            echo=os.getenv('DOCHARVEST_DB_ECHO', 'false').lower() in ('1', 'true', 'yes'),
        )


async def create_store(config: DatabaseConfig = None) -> SQLStore:
    """Create and initialize a store for ``config`` (environment when omitted)."""
    if config is None:
        config = DatabaseConfig.from_env()
    logger.info(f"Initializing {config.type.value} store")
    store = SQLStore(config.url, echo=config.echo)
    await store.initialize()
    return store
