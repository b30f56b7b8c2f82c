"""Admission policy for crawled URLs: robots.txt rules and URL exclusion patterns."""

import logging
import re
import urllib.robotparser
from typing import Iterable, List, Optional, Pattern
from urllib.parse import urljoin

from .errors import CrawlError

logger = logging.getLogger(__name__)


class RuleSet:
    """Parsed robots.txt rules for one site."""

    def __init__(self, robots_url: str, text: str):
        self.robots_url = robots_url
        self._parser = urllib.robotparser.RobotFileParser()
        self._parser.set_url(robots_url)
        self._parser.parse(text.splitlines())

    def is_allowed(self, url: str, agent: str) -> bool:
        return self._parser.can_fetch(agent, url)

    def crawl_delay(self, agent: str) -> Optional[float]:
        """Crawl-delay directive for ``agent``, or None if not specified."""
        delay = self._parser.crawl_delay(agent)
        return float(delay) if delay is not None else None


class AdmissionPolicy:
    """Decides whether a URL may be fetched.

    Without robots rules every URL passes the robots check (fail open).
    Exclusion patterns are regular expressions searched in the full URL.
    """

    def __init__(self, rules: Optional[RuleSet] = None,
                 exclude_patterns: Iterable[str] = ()):
        self.rules = rules
        self.exclude_patterns: List[Pattern] = [
            re.compile(pattern, re.IGNORECASE) for pattern in exclude_patterns
        ]

    @classmethod
    async def load(cls, fetcher, base_url: str, *, user_agent: Optional[str] = None,
                   timeout: float = 5.0, exclude_patterns: Iterable[str] = ()) -> "AdmissionPolicy":
        """Fetch ``<base_url>/robots.txt`` and build the policy.

        Any failure to obtain or parse the file yields a policy without robots rules.
        """
        robots_url = urljoin(base_url.rstrip("/") + "/", "robots.txt")
        rules = None
        try:
            logger.info(f"Fetching robots.txt from {robots_url}")
            response = await fetcher.get(robots_url, user_agent=user_agent, timeout=timeout)
            rules = RuleSet(robots_url, response.body)
            logger.info(f"Loaded robots.txt rules for {base_url}")
        except CrawlError as e:
            logger.info(f"No usable robots.txt at {robots_url} ({e.describe()}), allowing all URLs")
        except ValueError as e:
            logger.warning(f"Could not parse robots.txt at {robots_url}: {e}")
        return cls(rules=rules, exclude_patterns=exclude_patterns)

    def is_excluded(self, url: str) -> bool:
        for pattern in self.exclude_patterns:
            if pattern.search(url):
                logger.debug(f"URL {url} matches exclusion pattern: {pattern.pattern}")
                return True
        return False

    def is_allowed(self, url: str, agent: str) -> bool:
        if self.is_excluded(url):
            return False
        if self.rules is None:
            return True
        return self.rules.is_allowed(url, agent)

    def crawl_delay(self, agent: str) -> Optional[float]:
        if self.rules is None:
            return None
        return self.rules.crawl_delay(agent)
