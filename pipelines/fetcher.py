"""HTTP fetching for the crawler, built on aiohttp."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp

from .errors import HTTPError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


@dataclass
class FetchResponse:
    """A successful (2xx) response."""
    status_code: int
    body: str
    url: str


class HttpFetcher:
    """Asynchronous page fetcher.

    Use as an async context manager so the underlying session is closed::

        async with HttpFetcher() as fetcher:
            response = await fetcher.get(url, user_agent=ua)
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def get(self, url: str, *, user_agent: Optional[str] = None,
                  headers: Optional[Dict[str, str]] = None,
                  timeout: float = 15.0, max_redirects: int = 5) -> FetchResponse:
        """Fetch ``url`` and return its body.

        Raises:
            NetworkError: DNS, connection, redirect-limit or timeout failures
            HTTPError: the server answered with a non-2xx status
        """
        if self.session is None:
            await self.__aenter__()

        request_headers = dict(DEFAULT_HEADERS)
        if headers:
            request_headers.update(headers)
        if user_agent:
            request_headers["User-Agent"] = user_agent

        try:
            async with self.session.get(
                url,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
                allow_redirects=True,
                max_redirects=max_redirects,
            ) as response:
                if not 200 <= response.status < 300:
                    raise HTTPError(url, response.status)
                body = await response.text(errors="replace")
                return FetchResponse(status_code=response.status, body=body, url=str(response.url))
        except asyncio.TimeoutError as e:
            raise NetworkError(url, f"timed out after {timeout}s") from e
        except aiohttp.TooManyRedirects as e:
            raise NetworkError(url, f"more than {max_redirects} redirects") from e
        except aiohttp.ClientError as e:
            raise NetworkError(url, str(e) or e.__class__.__name__) from e
