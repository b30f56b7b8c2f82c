"""Error taxonomy for the crawl pipeline and job control.

Per-page errors (``NetworkError``, ``HTTPError``, ``ParseError``,
``PersistenceError``) are recovered inside the crawl loop. ``InvalidState`` is
raised synchronously by job control operations.
"""

from typing import Optional


class CrawlError(Exception):
    """Base class for errors raised while processing a single URL."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url

    def describe(self) -> str:
        """Short reason used in the job error summary."""
        return str(self)


class NetworkError(CrawlError):
    """Request was sent but no response arrived (DNS, connection, timeout)."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Network error for {url}: {reason}", url=url)
        self.reason = reason

    def describe(self) -> str:
        return "Network error"


class HTTPError(CrawlError):
    """A response arrived with a non-2xx status code."""

    def __init__(self, url: str, status_code: int):
        super().__init__(f"HTTP {status_code} for {url}", url=url)
        self.status_code = status_code

    def describe(self) -> str:
        return f"HTTP {self.status_code}"


class ParseError(CrawlError):
    """Content or link extraction failed on malformed markup."""

    def describe(self) -> str:
        return f"Parse error: {self.args[0]}"


class PersistenceError(CrawlError):
    """A Document or Job write (or read) against the store failed."""

    def describe(self) -> str:
        return f"Processing error: {self.args[0]}"


class CrawlInterrupted(Exception):
    """An in-flight fetch or delay was interrupted by a stop signal."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "interrupted")
        self.reason = reason


class InvalidState(Exception):
    """A job control operation was requested from a state that does not allow it."""
