from typing import Awaitable, Callable, Dict, List, Optional, Union

import pytest

from pipelines.crawler import CrawlEngine
from pipelines.errors import HTTPError
from pipelines.fetcher import FetchResponse
from pipelines.options import CrawlOptions
from server.jobs import JobController
from services.shared.store import SQLStore

SITE = "http://docs.test"

Page = Union[str, tuple, Exception]


def page(title: str, *links: str, body: str = "") -> str:
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><h1>{title}</h1>{body}{anchors}</main></body></html>"
    )


class FakeFetcher:
    """Serves pages from a dict: url -> html, (status, html) or an exception.

    Unknown URLs answer 404. ``hooks`` maps a url to a coroutine function run
    while that url is being fetched.
    """

    def __init__(self, pages: Optional[Dict[str, Page]] = None):
        self.pages: Dict[str, Page] = dict(pages or {})
        self.calls: List[str] = []
        self.hooks: Dict[str, Callable[[], Awaitable[None]]] = {}

    async def get(self, url, *, user_agent=None, headers=None, timeout=15.0, max_redirects=5):
        self.calls.append(url)
        hook = self.hooks.get(url)
        if hook is not None:
            await hook()
        entry = self.pages.get(url)
        if entry is None:
            raise HTTPError(url, 404)
        if isinstance(entry, Exception):
            raise entry
        status, body = entry if isinstance(entry, tuple) else (200, entry)
        if not 200 <= status < 300:
            raise HTTPError(url, status)
        return FetchResponse(status_code=status, body=body, url=url)

    def fetch_count(self, url: str) -> int:
        return self.calls.count(url)

    @property
    def page_calls(self) -> List[str]:
        return [url for url in self.calls if not url.endswith("/robots.txt")]


@pytest.fixture
async def store():
    store = SQLStore("sqlite://")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def controller(store):
    return JobController(store, store)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def fast_options():
    return CrawlOptions(random_delay=False, rate_limit=0.0, min_delay=0.0, max_delay=0.0)


@pytest.fixture
def engine(controller, store, fetcher):
    return CrawlEngine(controller, store, fetcher)

