"""Configuration loader for crawler and job settings."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DOCHARVEST_CONFIG"
CONFIG_FILENAME = "docharvest.yaml"

# Default configuration
DEFAULT_CONFIG: Dict[str, Any] = {
    "crawler": {
        "max_depth": 3,
        "rate_limit": 1.0,
        "random_delay": True,
        "min_delay": 1.5,
        "max_delay": 5.0,
        "respect_robots_txt": True,
        "respect_crawl_delay": True,
        "user_agent": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
        "robots_agent": "Googlebot",
        "request_timeout": 15.0,
        "max_redirects": 5,
        "robots_timeout": 5.0,
        "reuse_recent_documents": True,
        "exclude_patterns": [],
    },
    "jobs": {
        "failure_threshold": 0.75,
        "freshness_days": 28,
        "cleanup_days": 30,
    },
    "logging": {
        "level": "INFO",
        "use_json": False,
        "use_colors": True,
        "log_file": None,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class Settings:
    """Settings read from YAML and layered over ``DEFAULT_CONFIG``."""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path or self._get_default_config_path()
        self._overrides = overrides or {}
        self._config = self._load_config()

    def _get_default_config_path(self) -> Optional[str]:
        """First existing config file among the known locations."""
        possible_paths = [
            os.environ.get(CONFIG_ENV_VAR),
            os.path.join(os.getcwd(), "config", CONFIG_FILENAME),
            str(Path(__file__).parent / CONFIG_FILENAME),
        ]
        for path in possible_paths:
            if path and os.path.exists(path):
                return path
        return None

    def _load_config(self) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path and os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                try:
                    file_config = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValueError(f"Invalid settings file {self.config_path}: {e}") from e
            if not isinstance(file_config, dict):
                raise ValueError(f"Settings file {self.config_path} must contain a mapping")
            config = _deep_merge(config, file_config)
            logger.debug(f"Loaded settings from {self.config_path}")
        elif self.config_path:
            logger.warning(f"Settings file not found at {self.config_path}, using defaults")

        return _deep_merge(config, self._overrides)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``get("crawler.max_depth")``."""
        value: Any = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    @property
    def failure_threshold(self) -> float:
        return float(self.get("jobs.failure_threshold", 0.75))

    @property
    def freshness_days(self) -> int:
        return int(self.get("jobs.freshness_days", 28))

    @property
    def cleanup_days(self) -> int:
        return int(self.get("jobs.cleanup_days", 30))

    def reload(self):
        """Reload configuration from file."""
        self._config = self._load_config()


def load_settings(config_path: Optional[str] = None, **overrides: Any) -> Settings:
    """Convenience function to build ``Settings``."""
    return Settings(config_path=config_path, overrides=overrides)
