"""Pipelines package for docharvest.

Provides the crawl engine and its collaborators: admission policy, rate
limiting, freshness reuse, link and page extraction, and HTTP fetching.
"""

from .errors import (
    CrawlError,
    NetworkError,
    HTTPError,
    ParseError,
    PersistenceError,
    CrawlInterrupted,
    InvalidState
)
from .options import CrawlOptions
from .signals import CancellationToken
from .frontier import Frontier, FrontierEntry
from .policy import AdmissionPolicy, RuleSet
from .rate_limit import RateLimiter
from .links import LinkExtractor, extract_links
from .html_extract import ExtractedPage, extract_page
from .fetcher import HttpFetcher, FetchResponse
from .freshness import FreshnessCache
from .crawler import CrawlEngine, CrawlOutcome, crawl_site

__all__ = [
    # Errors
    'CrawlError',
    'NetworkError',
    'HTTPError',
    'ParseError',
    'PersistenceError',
    'CrawlInterrupted',
    'InvalidState',

    # Crawl engine
    'CrawlOptions',
    'CancellationToken',
    'Frontier',
    'FrontierEntry',
    'CrawlEngine',
    'CrawlOutcome',
    'crawl_site',

    # Collaborators
    'AdmissionPolicy',
    'RuleSet',
    'RateLimiter',
    'LinkExtractor',
    'extract_links',
    'ExtractedPage',
    'extract_page',
    'HttpFetcher',
    'FetchResponse',
    'FreshnessCache'
]
