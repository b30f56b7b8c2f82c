"""Job handlers that run crawls for jobs managed by the ``JobController``."""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from observability.logging import get_logger
from pipelines.crawler import CrawlEngine
from pipelines.errors import CrawlError
from pipelines.fetcher import HttpFetcher
from pipelines.options import CrawlOptions
from services.shared.models import Job
from .jobs import JobController

logger = logging.getLogger(__name__)


def _validate_seed(url: Optional[str]) -> Optional[str]:
    """Problem with the seed URL, or None when it can be crawled."""
    if not url:
        return "No URL to crawl"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return f"Invalid seed URL: {url}"
    return None


async def crawl_source_job(job_id: str, params: Dict[str, Any], *,
                           controller: JobController, documents,
                           fetcher: Optional[HttpFetcher] = None,
                           options: Optional[CrawlOptions] = None) -> Dict[str, Any]:
    """
    Crawl the site for an existing job.

    Args:
        job_id: Job to run
        params: Job parameters, optionally containing:
            - url: Seed URL (defaults to the job's url)
            - options: Dict of crawl option overrides
        controller: Job controller owning the job
        documents: Document store receiving the pages
        fetcher: HTTP fetcher; a new session is opened when omitted
        options: Base crawl options

    Returns:
        Dict with crawl results
    """
    job_logger = get_logger(__name__, job_id=job_id)
    job = await controller.get_job(job_id)
    url = params.get("url") or job.url

    problem = _validate_seed(url)
    if problem:
        job_logger.warning(problem)
        await controller.update_job_error(job_id, problem)
        return {"job_id": job_id, "url": url, "status": "failed", "success": False, "errors": [problem]}

    overrides = {"max_depth": job.max_depth}
    overrides.update(params.get("options") or {})
    crawl_options = (options or CrawlOptions()).merged(**overrides)

    job_logger.info(f"Starting crawl for {url}")
    try:
        if fetcher is None:
            async with HttpFetcher() as session_fetcher:
                status = await CrawlEngine(controller, documents, session_fetcher).crawl(
                    job_id, url, crawl_options
                )
        else:
            status = await CrawlEngine(controller, documents, fetcher).crawl(job_id, url, crawl_options)
    except (CrawlError, ValueError) as e:
        job_logger.error(f"Crawl could not start: {e}")
        await controller.update_job_error(job_id, str(e))
        return {"job_id": job_id, "url": url, "status": "failed", "success": False, "errors": [str(e)]}

    finished = await controller.store.get_job(job_id)
    stats = (finished.stats if finished else None) or {}
    result = {
        "job_id": job_id,
        "url": url,
        "status": status.value if status else None,
        "pages_processed": stats.get("pagesProcessed", 0),
        "pages_skipped": stats.get("pagesSkipped", 0),
        "errors": stats.get("errorCount", 0),
        "success": status is not None and status.value == "completed",
    }
    job_logger.info(f"Crawl finished: {result}")
    return result


def _schedule(job_id: str, params: Dict[str, Any], **kwargs) -> asyncio.Task:
    task = asyncio.create_task(crawl_source_job(job_id, params, **kwargs), name=f"crawl-{job_id}")

    def _done(finished: asyncio.Task):
        if finished.cancelled():
            logger.info(f"Crawl task for job {job_id} was cancelled")
        elif finished.exception() is not None:
            logger.error(f"Crawl task for job {job_id} failed: {finished.exception()}")

    task.add_done_callback(_done)
    return task


async def start_crawl_job(controller: JobController, documents, url: str, *,
                          fetcher: Optional[HttpFetcher] = None,
                          options: Optional[CrawlOptions] = None,
                          **job_fields) -> Tuple[Job, asyncio.Task]:
    """Create a job for ``url`` and crawl it in a background task."""
    job = await controller.create_job(url, **job_fields)
    task = _schedule(job.id, {"url": url}, controller=controller, documents=documents,
                     fetcher=fetcher, options=options)
    return job, task


async def resume_crawl_job(controller: JobController, documents, job_id: str, *,
                           fetcher: Optional[HttpFetcher] = None,
                           options: Optional[CrawlOptions] = None) -> asyncio.Task:
    """Resume a paused job and restart its crawl from the seed.

    Pages stored by the earlier run are picked up by the freshness cache rather
    than refetched.
    """
    await controller.resume_job(job_id)
    return _schedule(job_id, {}, controller=controller, documents=documents,
                     fetcher=fetcher, options=options)
