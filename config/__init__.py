"""Configuration module for docharvest.

Provides configuration management for crawler settings and the database.
"""

from .settings import Settings, DEFAULT_CONFIG, load_settings
from .database import DatabaseConfig, DatabaseType, create_store

__all__ = [
    'Settings',
    'DEFAULT_CONFIG',
    'load_settings',
    'DatabaseConfig',
    'DatabaseType',
    'create_store'
]
