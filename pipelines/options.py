"""Crawl options with defaults, merged once at the start of a crawl."""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
DEFAULT_ROBOTS_AGENT = "Googlebot"


@dataclass(frozen=True)
class CrawlOptions:
    """Per-crawl tuning knobs.

    ``rate_limit`` is the fixed delay in seconds, used only when ``random_delay``
    is off. ``robots_agent`` is the token matched against robots.txt groups,
    which is shorter than the full ``user_agent`` header.
    """
    max_depth: int = 3
    base_url: Optional[str] = None
    rate_limit: float = 1.0
    random_delay: bool = True
    min_delay: float = 1.5
    max_delay: float = 5.0
    respect_robots_txt: bool = True
    respect_crawl_delay: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    robots_agent: str = DEFAULT_ROBOTS_AGENT
    request_timeout: float = 15.0
    max_redirects: int = 5
    robots_timeout: float = 5.0
    reuse_recent_documents: bool = True
    freshness_days: int = 28
    exclude_patterns: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {self.max_depth}")
        for name in ("rate_limit", "min_delay", "max_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.min_delay > self.max_delay:
            raise ValueError(f"min_delay ({self.min_delay}) exceeds max_delay ({self.max_delay})")
        if self.request_timeout <= 0 or self.robots_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must be >= 0, got {self.max_redirects}")
        if self.freshness_days < 0:
            raise ValueError(f"freshness_days must be >= 0, got {self.freshness_days}")
        # Lists coming from YAML become tuples so the options stay hashable
        object.__setattr__(self, "exclude_patterns", tuple(self.exclude_patterns or ()))

    def resolve(self, start_url: str) -> "CrawlOptions":
        """Fill in values derived from the start URL."""
        if self.base_url:
            return self
        return replace(self, base_url=origin_of(start_url))

    def merged(self, **overrides: Any) -> "CrawlOptions":
        known = {f.name for f in fields(self)}
        return replace(self, **{k: v for k, v in overrides.items() if k in known and v is not None})

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "CrawlOptions":
        """Build options from the ``crawler`` section of the settings file."""
        section: Dict[str, Any] = dict(settings.get("crawler", {}) or {})
        freshness_days = settings.get("jobs.freshness_days")
        if freshness_days is not None:
            section.setdefault("freshness_days", freshness_days)
        return cls().merged(**section).merged(**overrides)


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"
