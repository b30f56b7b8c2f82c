"""Same-origin link extraction from documentation pages."""

import logging
from typing import List
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

SKIPPED_PREFIXES = ("mailto:", "javascript:", "tel:", "#")

PAGINATION_SELECTORS = [
    ".pagination a",
    ".pager a",
    "nav.pagination a",
    "ul.pager a",
    ".next-page",
    ".prev-page",
    "[aria-label=Next]",
    "[aria-label=Previous]",
    ".page-navigation a",
    ".doc-navigation a",
    "link[rel=next]",
    "link[rel=prev]",
]

API_REFERENCE_SELECTORS = [
    ".api-reference a",
    ".api-docs a",
    ".reference a",
    "code a",
    "pre a",
    "[data-kind=class] a",
    "[data-kind=function] a",
    "[data-kind=method] a",
    "[data-kind=property] a",
    ".method-list a",
    ".class-list a",
    ".function-list a",
]


def strip_fragment(url: str) -> str:
    return urlunparse(urlparse(url)._replace(fragment=""))


def same_origin(url: str, base_url: str) -> bool:
    a, b = urlparse(url), urlparse(base_url)
    return a.scheme == b.scheme and a.netloc.lower() == b.netloc.lower()


class LinkExtractor:
    """Collects crawlable links: anchors, pagination and API reference links."""

    def __init__(self, parser: str = "html.parser"):
        self.parser = parser

    def extract_links(self, content: str, base_url: str, current_url: str) -> List[str]:
        """Absolute, fragment-free links on the same origin as ``base_url``.

        Relative links resolve against ``current_url``. Order of first appearance
        is kept and duplicates are dropped. Returns an empty list when the markup
        cannot be parsed.
        """
        try:
            soup = BeautifulSoup(content, self.parser)
            candidates = list(soup.find_all("a", href=True))
            for selector in PAGINATION_SELECTORS + API_REFERENCE_SELECTORS:
                candidates.extend(soup.select(selector))
        except Exception as e:
            logger.warning(f"Failed to extract links from {current_url}: {e}")
            return []

        links: List[str] = []
        seen = set()
        for element in candidates:
            href = (element.get("href") or "").strip()
            if not href or href.lower().startswith(SKIPPED_PREFIXES):
                continue
            try:
                absolute = strip_fragment(urljoin(current_url, href))
            except ValueError:
                logger.debug(f"Ignoring malformed link {href!r} on {current_url}")
                continue
            if not same_origin(absolute, base_url) or absolute in seen:
                continue
            seen.add(absolute)
            links.append(absolute)
        return links


def extract_links(content: str, base_url: str, current_url: str) -> List[str]:
    """Convenience wrapper around a default ``LinkExtractor``."""
    return LinkExtractor().extract_links(content, base_url, current_url)
