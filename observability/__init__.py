"""Observability package for docharvest."""

from .logging import (
    JSONFormatter,
    ColoredFormatter,
    setup_logging,
    setup_logging_from_settings,
    get_logger
)

__all__ = [
    'JSONFormatter',
    'ColoredFormatter',
    'setup_logging',
    'setup_logging_from_settings',
    'get_logger'
]
