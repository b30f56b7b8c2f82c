"""Title, content and metadata extraction from fetched HTML."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from bs4 import BeautifulSoup, Comment

from .errors import ParseError

logger = logging.getLogger(__name__)

CONTENT_SELECTORS = ["main", "article", ".content", ".documentation", "#content"]


@dataclass
class ExtractedPage:
    """Extracted page fields ready to be stored as a Document."""
    title: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def default_metadata() -> Dict[str, Any]:
    return {"type": "documentation", "tags": ["auto-generated"]}


def extract_page(html: str, url: str, parser: str = "html.parser") -> ExtractedPage:
    """Pull the title, main content and package metadata out of ``html``.

    Args:
        html: Raw page body
        url: Page URL, used as the title of last resort

    Returns:
        ExtractedPage with ``content`` holding the inner HTML of the main region

    Raises:
        ParseError: if the markup cannot be parsed
    """
    try:
        soup = BeautifulSoup(html, parser)
        for element in soup(["script", "style"]):
            element.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()
        if not title:
            heading = soup.find("h1")
            if heading:
                title = heading.get_text(strip=True)
        title = title or url

        region = None
        for selector in CONTENT_SELECTORS:
            region = soup.select_one(selector)
            if region is not None:
                break
        if region is None:
            region = soup.body or soup
        content = region.decode_contents().strip()

        metadata = default_metadata()
        for name in ("package", "version"):
            tag = soup.find("meta", attrs={"name": name})
            if tag and tag.get("content"):
                metadata[name] = tag["content"]
    except Exception as e:
        raise ParseError(f"could not parse page: {e}", url=url) from e

    return ExtractedPage(title=title, content=content, metadata=metadata)


def fallback_page(html: str, url: str) -> ExtractedPage:
    """Page used when parsing fails: raw body, URL as title."""
    return ExtractedPage(title=url, content=html, metadata=default_metadata())
