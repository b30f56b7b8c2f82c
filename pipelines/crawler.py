"""Web crawler pipeline for docharvest.

Walks a documentation site breadth-first from a seed URL, stores each page as a
Document and reports progress to the job controller. One crawl invocation runs
one sequential loop; several crawls can run side by side as separate tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from services.shared.models import CrawlTally, JobStatus, utcnow
from .errors import CrawlError, CrawlInterrupted, HTTPError, NetworkError, ParseError, PersistenceError
from .fetcher import HttpFetcher
from .freshness import FreshnessCache
from .frontier import Frontier, FrontierEntry
from .html_extract import extract_page, fallback_page
from .links import LinkExtractor
from .options import CrawlOptions
from .policy import AdmissionPolicy
from .rate_limit import RateLimiter
from .signals import CANCEL, CancellationToken

logger = logging.getLogger(__name__)


class CrawlOutcome(str, Enum):
    """How a crawl loop ended."""
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    CRASHED = "crashed"


@dataclass
class _CrawlRun:
    """State owned by a single crawl invocation."""
    job_id: str
    start_url: str
    options: CrawlOptions
    token: CancellationToken
    frontier: Frontier
    tally: CrawlTally = field(default_factory=CrawlTally)
    policy: Optional[AdmissionPolicy] = None
    delay_floor: Optional[float] = None
    package_info: Optional[Dict[str, Any]] = None
    started: datetime = field(default_factory=utcnow)

    def sync_tally(self):
        self.tally.visited = len(self.frontier.visited)
        self.tally.queued = len(self.frontier)


def package_info_from_job(job) -> Optional[Dict[str, Any]]:
    """Package details carried in the job metadata, if any."""
    meta = job.meta or {}
    name = meta.get("packageName")
    if not name:
        return None
    return {
        "packageName": name,
        "packageVersion": meta.get("packageVersion") or "latest",
        "language": meta.get("language") or "javascript",
        "sourceName": meta.get("sourceName") or job.name,
        "sourceIsOfficial": bool(meta.get("sourceIsOfficial", False)),
        "relevanceScore": 0.9,
    }


class CrawlEngine:
    """Breadth-first, same-origin, depth-bounded crawler driven by a job.

    Collaborators are injected: ``controller`` is the job controller,
    ``documents`` the document store and ``fetcher`` anything with an
    ``HttpFetcher``-compatible ``get``.
    """

    def __init__(self, controller, documents, fetcher: HttpFetcher, *,
                 link_extractor: Optional[LinkExtractor] = None,
                 freshness: Optional[FreshnessCache] = None,
                 rate_limiter: Optional[RateLimiter] = None):
        self.controller = controller
        self.documents = documents
        self.fetcher = fetcher
        self.link_extractor = link_extractor or LinkExtractor()
        self.freshness = freshness or FreshnessCache(documents)
        self.rate_limiter = rate_limiter or RateLimiter()

    async def crawl(self, job_id: str, start_url: str,
                    options: Optional[CrawlOptions] = None) -> Optional[JobStatus]:
        """Crawl from ``start_url`` on behalf of ``job_id``.

        Returns:
            The final status written to the job, or None when the job does not
            exist, was already finished, or vanished mid-crawl.
        """
        options = (options or CrawlOptions()).resolve(start_url)
        job = await self.controller.start_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} is missing or already finished, not crawling {start_url}")
            return None

        run = _CrawlRun(
            job_id=job_id,
            start_url=start_url,
            options=options,
            token=self.controller.open_signal(job_id),
            frontier=Frontier(options.max_depth),
            package_info=package_info_from_job(job),
        )
        logger.info(f"Starting crawl of {start_url} for job {job_id} (max_depth={options.max_depth})")

        outcome: Optional[CrawlOutcome] = CrawlOutcome.CRASHED
        status = None
        try:
            outcome = await self._run(run)
        except asyncio.CancelledError:
            outcome = CrawlOutcome.CANCELLED
            raise
        except Exception:
            logger.exception(f"Crawl of {start_url} for job {job_id} crashed")
            outcome = CrawlOutcome.CRASHED
        finally:
            self.controller.close_signal(job_id)
            run.sync_tally()
            if outcome is None:
                logger.warning(f"Job {job_id} disappeared during crawl, stopping without updates")
            else:
                status = await self.controller.finalize_crawl(job_id, outcome, run.tally)
                tally = run.tally
                logger.info(
                    f"Crawl for job {job_id} ended ({outcome.value}): {tally.processed} processed, "
                    f"{tally.skipped} skipped ({tally.policy_skipped} by policy), {tally.errors} errors, "
                    f"final status {status}"
                )
        return status

    async def _run(self, run: _CrawlRun) -> Optional[CrawlOutcome]:
        options = run.options
        if options.respect_robots_txt:
            run.policy = await AdmissionPolicy.load(
                self.fetcher,
                options.base_url,
                user_agent=options.user_agent,
                timeout=options.robots_timeout,
                exclude_patterns=options.exclude_patterns,
            )
            run.delay_floor = run.policy.crawl_delay(options.robots_agent)
        else:
            run.policy = AdmissionPolicy(exclude_patterns=options.exclude_patterns)

        run.frontier.push(run.start_url, 0)

        while run.frontier:
            try:
                signals = await self.controller.poll_signals(run.job_id, run.token)
            except PersistenceError as e:
                logger.warning(f"Could not read control flags for job {run.job_id}: {e}")
                if run.token.fired:
                    return CrawlOutcome.CANCELLED if run.token.reason == CANCEL else CrawlOutcome.PAUSED
            else:
                if signals is None:
                    return None
                if signals.should_cancel:
                    logger.info(f"Job {run.job_id} cancelled, stopping crawl")
                    return CrawlOutcome.CANCELLED
                if signals.should_pause:
                    logger.info(f"Job {run.job_id} paused, stopping crawl")
                    return CrawlOutcome.PAUSED

            entry = run.frontier.pop()
            if run.frontier.should_skip(entry):
                continue

            try:
                await self._visit(run, entry)
            except CrawlInterrupted as e:
                logger.info(f"Crawl for job {run.job_id} interrupted at {entry.url} ({e.reason})")
                if not run.frontier:
                    return CrawlOutcome.CANCELLED if e.reason == CANCEL else CrawlOutcome.PAUSED

        return CrawlOutcome.EXHAUSTED

    async def _visit(self, run: _CrawlRun, entry: FrontierEntry):
        url, depth = entry.url, entry.depth
        options = run.options
        tally = run.tally

        if options.reuse_recent_documents:
            reused = await self.freshness.reuse(url, depth, run.job_id, window_days=options.freshness_days)
            if reused is not None:
                run.frontier.mark_visited(url)
                tally.processed += 1
                logger.debug(f"Reused recent document for {url}")
                self._enqueue_links(run, reused.content, url, depth)
                await self._report_progress(run)
                await self._delay(run)
                return

        if not run.policy.is_allowed(url, options.robots_agent):
            run.frontier.mark_visited(url)
            tally.skipped += 1
            tally.policy_skipped += 1
            logger.info(f"Skipping {url}: not allowed by crawl policy")
            await self._report_progress(run)
            return

        try:
            response = await run.token.run(self.fetcher.get(
                url,
                user_agent=options.user_agent,
                timeout=options.request_timeout,
                max_redirects=options.max_redirects,
            ))
            run.frontier.mark_visited(url)
            page, parsed = self._extract(response.body, url)
            metadata = dict(page.metadata)
            if run.package_info:
                metadata["package_info"] = dict(run.package_info)
            await self.documents.create_document(
                url=url,
                title=page.title,
                content=page.content,
                metadata=metadata,
                level=depth,
                job_id=run.job_id,
            )
            tally.processed += 1
            logger.debug(f"Stored {url} (depth {depth})")
            if parsed:
                self._enqueue_links(run, response.body, url, depth)
        except CrawlError as e:
            run.frontier.mark_visited(url)
            tally.errors += 1
            tally.skipped += 1
            tally.last_error_summary = (
                f"{tally.errors} errors during crawling. Latest: {e.describe()} at {url}"
            )
            self._log_failure(url, e)
            run.sync_tally()
            await self.controller.record_page_error(run.job_id, tally)

        await self._report_progress(run)
        await self._delay(run)

    def _extract(self, body: str, url: str):
        try:
            return extract_page(body, url), True
        except ParseError as e:
            logger.warning(f"Falling back to raw content for {url}: {e}")
            return fallback_page(body, url), False

    def _enqueue_links(self, run: _CrawlRun, content: str, url: str, depth: int):
        next_depth = depth + 1
        if next_depth > run.options.max_depth:
            return
        links = self.link_extractor.extract_links(content, run.options.base_url, url)
        added = run.frontier.extend(links, next_depth)
        if added:
            logger.debug(f"Queued {added} of {len(links)} links from {url} at depth {next_depth}")

    async def _report_progress(self, run: _CrawlRun):
        run.sync_tally()
        await self.controller.record_crawl_progress(run.job_id, run.tally, run.started)

    async def _delay(self, run: _CrawlRun):
        if await self.rate_limiter.wait(run.options, run.token, run.delay_floor):
            raise CrawlInterrupted(run.token.reason)

    def _log_failure(self, url: str, error: CrawlError):
        if isinstance(error, HTTPError):
            code = error.status_code
            if code == 404:
                logger.warning(f"Page not found (404): {url}")
            elif code in (401, 403):
                logger.warning(f"Access denied ({code}): {url}")
            elif code >= 500:
                logger.warning(f"Server error ({code}): {url}")
            else:
                logger.warning(f"HTTP {code} for {url}")
        elif isinstance(error, NetworkError):
            logger.warning(f"Network error for {url}: {error.reason}")
        else:
            logger.error(f"Failed to process {url}: {error}")


async def crawl_site(controller, documents, job_id: str, start_url: str,
                     options: Optional[CrawlOptions] = None) -> Optional[JobStatus]:
    """Convenience function: crawl with a fresh HTTP session.

    Args:
        controller: Job controller owning the job
        documents: Document store receiving the pages
        job_id: Job to run the crawl for
        start_url: Seed URL
        options: Crawl options, defaults when omitted

    Returns:
        Final job status, or None if the crawl did not run
    """
    async with HttpFetcher() as fetcher:
        engine = CrawlEngine(controller, documents, fetcher)
        return await engine.crawl(job_id, start_url, options)
