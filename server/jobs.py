"""Job control for docharvest.

Owns the job state machine (pending, running, paused, cancelled, completed,
failed), progress telemetry, operator actions (cancel, pause, resume, retry) and
the final status decision for a crawl.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pipelines.errors import InvalidState, PersistenceError
from pipelines.signals import CANCEL, PAUSE, CancellationToken
from services.shared.models import (
    ACTIVE_STATUSES,
    CrawlTally,
    Job,
    JobSignals,
    JobStage,
    JobStatus,
    JobType,
    empty_stats,
    utcnow,
)
from services.shared.store import DocumentStore, JobStore

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 0.75


def _finalize_guard(status: JobStatus) -> List[JobStatus]:
    """Statuses a job may be in for a final write of ``status`` to land.

    Only a cancelled job takes a second write, the progress snapshot of the
    interrupted crawl.
    """
    allowed = list(ACTIVE_STATUSES)
    if status == JobStatus.CANCELLED:
        allowed.append(status)
    return allowed


def _append_error(existing: Optional[str], message: Optional[str]) -> Optional[str]:
    if not message:
        return existing
    if not existing:
        return message
    return f"{existing}\n{message}"


def _unique_tags(tags: Optional[Iterable[str]]) -> List[str]:
    seen = []
    for tag in tags or []:
        if tag not in seen:
            seen.append(tag)
    return seen


def format_duration(seconds: Optional[int]) -> Optional[str]:
    """Human readable duration, e.g. ``"2 minutes, 5 seconds"``."""
    if seconds is None:
        return None
    seconds = int(seconds)

    def plural(n: int, unit: str) -> str:
        return f"{n} {unit}{'' if n == 1 else 's'}"

    if seconds < 60:
        return plural(seconds, "second")
    if seconds < 3600:
        return f"{plural(seconds // 60, 'minute')}, {plural(seconds % 60, 'second')}"
    return f"{plural(seconds // 3600, 'hour')}, {plural((seconds % 3600) // 60, 'minute')}"


def status_message(view: Dict[str, Any]) -> str:
    status = view["status"]
    percent = view["progress_percentage"]
    elapsed = view.get("formatted_time_elapsed") or "unknown time"
    error = view.get("error")

    if status == JobStatus.PENDING.value:
        return "Job is queued and waiting to start."
    if status == JobStatus.RUNNING.value:
        message = "Job is running"
        if view.get("stage"):
            message += f" ({view['stage']} stage)"
        message += f" at {percent}% completion"
        if view.get("formatted_time_elapsed"):
            message += f". Running for {view['formatted_time_elapsed']}"
        if view.get("formatted_time_remaining"):
            message += f". Estimated time remaining: {view['formatted_time_remaining']}"
        return message
    if status == JobStatus.COMPLETED.value:
        return f"Job completed successfully ({percent}%) in {elapsed}."
    if status == JobStatus.FAILED.value:
        detail = f": {error}" if error else ""
        return f"Job failed{detail}. Ran for {elapsed} before failure."
    if status == JobStatus.CANCELLED.value:
        detail = f": {error}" if error else ""
        return f"Job was cancelled{detail}. Ran for {elapsed} before cancellation."
    if status == JobStatus.PAUSED.value:
        return f"Job is paused at {percent}% completion. Total run time so far: {elapsed}."
    return f"Job is in {status} state."


class JobController:
    """Manages crawl jobs stored in a ``JobStore``.

    The controller is the only place that decides a job's final status. Live
    cancellation tokens for crawls running in this process are kept here so that
    cancel and pause can interrupt an in-flight fetch or delay.
    """

    def __init__(self, store: JobStore, documents: Optional[DocumentStore] = None,
                 failure_threshold: float = DEFAULT_FAILURE_THRESHOLD):
        self.store = store
        self.documents = documents
        self.failure_threshold = failure_threshold
        self._signals: Dict[str, CancellationToken] = {}

    # Creation and lookup

    async def create_job(self, url: str, *, name: Optional[str] = None,
                         tags: Optional[Iterable[str]] = None, max_depth: int = 3,
                         type: JobType = JobType.CRAWL,
                         metadata: Optional[Dict[str, Any]] = None,
                         priority: int = 1) -> Job:
        """Create a pending job.

        Args:
            url: Seed URL for the crawl
            name: Display name
            tags: Labels; duplicates are dropped
            max_depth: Maximum link depth from the seed
            type: Kind of work
            metadata: Free-form metadata (may carry package details)
            priority: Scheduling priority

        Returns:
            The stored Job
        """
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        now = utcnow()
        job = await self.store.create_job({
            "url": url,
            "name": name,
            "tags": _unique_tags(tags),
            "max_depth": max_depth,
            "type": JobType(type).value,
            "stage": JobStage.INITIALIZING.value,
            "priority": priority,
            "meta": dict(metadata or {}),
            "status": JobStatus.PENDING.value,
            "progress": 0.0,
            "stats": empty_stats(),
            "start_date": now,
            "last_activity": now,
        })
        logger.info(f"Created job {job.id} for {url}")
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise InvalidState(f"Job {job_id} not found")
        return job

    async def find_jobs_by_status(self, status: JobStatus) -> List[Job]:
        return await self.store.list_jobs(statuses=[JobStatus(status)])

    async def delete_job(self, job_id: str) -> bool:
        token = self._signals.get(job_id)
        if token is not None:
            token.fire(CANCEL)
        deleted = await self.store.delete_job(job_id)
        if not deleted:
            raise InvalidState(f"Job {job_id} not found")
        logger.info(f"Deleted job {job_id}")
        return True

    # Lifecycle

    async def start_job(self, job_id: str) -> Optional[Job]:
        """Move a pending or paused job to running. None if missing or finished."""
        job = await self.store.get_job(job_id)
        if job is None or job.job_status.is_terminal:
            return None
        fields: Dict[str, Any] = {
            "status": JobStatus.RUNNING,
            "stage": JobStage.CRAWLING.value,
            "should_pause": False,
        }
        if job.job_status == JobStatus.PENDING:
            fields["start_date"] = utcnow()
        if not await self.store.write_job_fields(job_id, fields, only_if_status=ACTIVE_STATUSES):
            return None
        logger.info(f"Job {job_id} is running")
        return await self.store.get_job(job_id)

    async def update_job_progress(self, job_id: str, status: JobStatus, progress: float) -> bool:
        status = JobStatus(status)
        fields: Dict[str, Any] = {"status": status, "progress": min(max(progress, 0.0), 1.0)}
        if status.is_terminal:
            fields["end_date"] = utcnow()
        return await self.store.write_job_fields(
            job_id, fields, only_if_status=ACTIVE_STATUSES
        )

    async def update_job_error(self, job_id: str, message: str) -> bool:
        """Mark the job failed and record ``message``."""
        job = await self.get_job(job_id)
        now = utcnow()
        written = await self.store.write_job_fields(
            job_id,
            {
                "status": JobStatus.FAILED,
                "error": _append_error(job.error, message),
                "error_count": (job.error_count or 0) + 1,
                "last_error": now,
                "end_date": now,
            },
            only_if_status=ACTIVE_STATUSES,
        )
        if written:
            logger.error(f"Job {job_id} failed: {message}")
        return written

    async def update_job_stats(self, job_id: str, stats: Dict[str, Any]) -> bool:
        job = await self.get_job(job_id)
        merged = dict(job.stats or empty_stats())
        merged.update(stats)
        return await self.store.write_job_fields(
            job_id, {"stats": merged}, only_if_status=ACTIVE_STATUSES
        )

    async def update_job_stage(self, job_id: str, stage: JobStage) -> bool:
        return await self.store.write_job_fields(
            job_id, {"stage": JobStage(stage).value}, only_if_status=ACTIVE_STATUSES
        )

    async def update_job_items(self, job_id: str, *, total: Optional[int] = None,
                               processed: Optional[int] = None, skipped: Optional[int] = None,
                               failed: Optional[int] = None) -> bool:
        fields = {
            key: value for key, value in (
                ("items_total", total),
                ("items_processed", processed),
                ("items_skipped", skipped),
                ("items_failed", failed),
            ) if value is not None
        }
        if not fields:
            return False
        return await self.store.write_job_fields(job_id, fields, only_if_status=ACTIVE_STATUSES)

    async def update_job_time_estimates(self, job_id: str, *, time_elapsed: Optional[int] = None,
                                        time_remaining: Optional[int] = None,
                                        estimated_completion: Optional[datetime] = None) -> bool:
        fields = {
            key: value for key, value in (
                ("time_elapsed", time_elapsed),
                ("time_remaining", time_remaining),
                ("estimated_completion", estimated_completion),
            ) if value is not None
        }
        if not fields:
            return False
        return await self.store.write_job_fields(job_id, fields, only_if_status=ACTIVE_STATUSES)

    # Operator actions

    async def cancel_job(self, job_id: str, reason: Optional[str] = None) -> Job:
        job = await self.get_job(job_id)
        if job.job_status.is_terminal:
            raise InvalidState(f"Job {job_id} is already {job.status}")
        written = await self.store.write_job_fields(
            job_id,
            {
                "should_cancel": True,
                "status": JobStatus.CANCELLED,
                "end_date": utcnow(),
                "error": _append_error(job.error, reason),
            },
            only_if_status=ACTIVE_STATUSES,
        )
        if not written:
            raise InvalidState(f"Job {job_id} finished before it could be cancelled")
        token = self._signals.get(job_id)
        if token is not None:
            token.fire(CANCEL)
        logger.info(f"Cancelled job {job_id}" + (f": {reason}" if reason else ""))
        return await self.get_job(job_id)

    async def pause_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job.job_status not in (JobStatus.RUNNING, JobStatus.PENDING):
            raise InvalidState(f"Cannot pause job {job_id} in status {job.status}")
        written = await self.store.write_job_fields(
            job_id,
            {"status": JobStatus.PAUSED, "should_pause": True},
            only_if_status=[JobStatus.RUNNING, JobStatus.PENDING],
        )
        if not written:
            raise InvalidState(f"Job {job_id} changed status before it could be paused")
        token = self._signals.get(job_id)
        if token is not None:
            token.fire(PAUSE)
        logger.info(f"Paused job {job_id}")
        return await self.get_job(job_id)

    async def resume_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job.job_status != JobStatus.PAUSED:
            raise InvalidState(f"Cannot resume job {job_id} in status {job.status}")
        written = await self.store.write_job_fields(
            job_id,
            {"status": JobStatus.RUNNING, "should_pause": False},
            only_if_status=[JobStatus.PAUSED],
        )
        if not written:
            raise InvalidState(f"Job {job_id} changed status before it could be resumed")
        token = self._signals.get(job_id)
        if token is not None and token.reason == PAUSE:
            token.clear()
        logger.info(f"Resumed job {job_id}")
        return await self.get_job(job_id)

    async def retry_failed_job(self, job_id: str) -> Dict[str, Any]:
        """Create a fresh pending job cloned from a failed one."""
        job = await self.get_job(job_id)
        if job.job_status != JobStatus.FAILED:
            raise InvalidState(f"Only failed jobs can be retried; job {job_id} is {job.status}")
        new_job = await self.create_job(
            job.url,
            name=job.name,
            tags=job.tags,
            max_depth=job.max_depth if job.max_depth is not None else 3,
            type=JobType(job.type),
            metadata=job.meta,
            priority=job.priority,
        )
        logger.info(f"Retrying failed job {job_id} as {new_job.id}")
        return {
            "original_job_id": job_id,
            "new_job_id": new_job.id,
            "status": new_job.status,
        }

    async def cleanup_old_jobs(self, threshold_days: int,
                               statuses: Optional[Iterable[JobStatus]] = None) -> int:
        """Delete jobs idle for longer than ``threshold_days``, optionally only those in ``statuses``."""
        cutoff = utcnow() - timedelta(days=threshold_days)
        removed = await self.store.delete_jobs_before(
            cutoff, statuses=list(statuses) if statuses is not None else None
        )
        logger.info(f"Removed {removed} jobs inactive since {cutoff.isoformat()}")
        return removed

    # Reporting

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Read-only status view with derived timing and capability flags."""
        job = await self.get_job(job_id)
        status = job.job_status
        now = utcnow()
        progress = job.progress or 0.0

        time_elapsed = job.time_elapsed
        if status == JobStatus.RUNNING and job.start_date:
            time_elapsed = int((now - job.start_date).total_seconds())

        time_remaining = job.time_remaining
        estimated_completion = job.estimated_completion
        if status == JobStatus.RUNNING and time_elapsed and 0 < progress < 1:
            time_remaining = int(time_elapsed * (1 - progress) / progress)
            estimated_completion = now + timedelta(seconds=time_remaining)
        elif status != JobStatus.RUNNING:
            time_remaining = None
            estimated_completion = None

        duration = None
        if job.end_date and job.start_date:
            duration = int((job.end_date - job.start_date).total_seconds())
        if status.is_terminal and time_elapsed is None:
            time_elapsed = duration

        document_count = None
        if self.documents is not None:
            document_count = await self.documents.count_documents(job_id)

        view = job.to_dict()
        view.update({
            "time_elapsed": time_elapsed,
            "time_remaining": time_remaining,
            "estimated_completion": estimated_completion.isoformat() if estimated_completion else None,
            "duration": duration,
            "progress_percentage": int(round(progress * 100)),
            "can_cancel": status in ACTIVE_STATUSES,
            "can_pause": status in (JobStatus.RUNNING, JobStatus.PENDING),
            "can_resume": status == JobStatus.PAUSED,
            "document_count": document_count,
            "formatted_duration": format_duration(duration),
            "formatted_time_elapsed": format_duration(time_elapsed),
            "formatted_time_remaining": format_duration(time_remaining),
        })
        view["status_message"] = status_message(view)
        return view

    async def get_job_statistics(self, statuses: Optional[Iterable[JobStatus]] = None,
                                 types: Optional[Iterable[JobType]] = None,
                                 since: Optional[datetime] = None,
                                 until: Optional[datetime] = None) -> Dict[str, Any]:
        jobs = await self.store.list_jobs(statuses=statuses, types=types, since=since, until=until)
        by_status = Counter(job.status for job in jobs)
        by_type = Counter(job.type for job in jobs)
        totals = empty_stats()
        for job in jobs:
            for key in totals:
                totals[key] += int((job.stats or {}).get(key, 0) or 0)
        total = len(jobs)
        return {
            "total": total,
            "by_status": dict(by_status),
            "by_type": dict(by_type),
            "success_rate": by_status.get(JobStatus.COMPLETED.value, 0) / total if total else 0.0,
            "stats": totals,
        }

    # Crawl engine hooks

    def open_signal(self, job_id: str) -> CancellationToken:
        token = CancellationToken()
        self._signals[job_id] = token
        return token

    def close_signal(self, job_id: str):
        self._signals.pop(job_id, None)

    async def poll_signals(self, job_id: str,
                           token: Optional[CancellationToken] = None) -> Optional[JobSignals]:
        """Current control flags for a running crawl; None if the job is gone."""
        flags = await self.store.read_job_flags(job_id)
        if flags is None:
            return None
        should_cancel = flags.should_cancel or flags.status.is_terminal
        should_pause = flags.should_pause or flags.status == JobStatus.PAUSED
        if token is not None and token.fired:
            should_cancel = should_cancel or token.reason == CANCEL
            should_pause = should_pause or token.reason == PAUSE
        return JobSignals(
            should_cancel=should_cancel,
            should_pause=should_pause,
            status=flags.status,
            start_date=flags.start_date,
        )

    def _progress_fields(self, tally: CrawlTally, started: Optional[datetime] = None) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"progress": tally.progress, "stats": tally.stats()}
        fields.update(tally.items())
        if started is not None:
            elapsed = int((utcnow() - started).total_seconds())
            fields["time_elapsed"] = elapsed
            if 0 < tally.progress < 1:
                remaining = int(elapsed * (1 - tally.progress) / tally.progress)
                fields["time_remaining"] = remaining
                fields["estimated_completion"] = utcnow() + timedelta(seconds=remaining)
        return fields

    async def record_crawl_progress(self, job_id: str, tally: CrawlTally,
                                    started: Optional[datetime] = None) -> bool:
        try:
            return await self.store.write_job_fields(
                job_id, self._progress_fields(tally, started), only_if_status=ACTIVE_STATUSES
            )
        except PersistenceError as e:
            logger.warning(f"Failed to record progress for job {job_id}: {e}")
            return False

    async def record_page_error(self, job_id: str, tally: CrawlTally) -> bool:
        fields = {
            "error": tally.last_error_summary,
            "error_count": tally.errors,
            "last_error": utcnow(),
            "stats": tally.stats(),
        }
        try:
            return await self.store.write_job_fields(job_id, fields, only_if_status=ACTIVE_STATUSES)
        except PersistenceError as e:
            logger.warning(f"Failed to record page error for job {job_id}: {e}")
            return False

    def final_status(self, tally: CrawlTally) -> JobStatus:
        if tally.errors > 0 and tally.error_rate >= self.failure_threshold:
            return JobStatus.FAILED
        return JobStatus.COMPLETED

    async def finalize_crawl(self, job_id: str, outcome, tally: CrawlTally) -> Optional[JobStatus]:
        """Write the end state of a crawl exactly once.

        Args:
            job_id: Job the crawl ran for
            outcome: ``CrawlOutcome`` of the loop
            tally: Counters at the end of the loop

        Returns:
            The job's status after finalization, or None if it could not be read
        """
        outcome = getattr(outcome, "value", outcome)
        now = utcnow()
        stats = dict(tally.stats())
        stats["errorRate"] = round(tally.error_rate, 4)
        fields: Dict[str, Any] = {"stats": stats}
        fields.update(tally.items())

        try:
            if outcome in ("exhausted", "crashed"):
                status = self.final_status(tally)
                fields.update({"status": status, "progress": 1.0, "end_date": now,
                               "stage": JobStage.FINALIZING.value, "time_remaining": 0})
                if status == JobStatus.FAILED:
                    fields["error"] = tally.last_error_summary or "Crawl failed"
                    fields["last_error"] = now
                if tally.errors:
                    fields["error_count"] = tally.errors
            elif outcome == "cancelled":
                status = JobStatus.CANCELLED
                job = await self.store.get_job(job_id)
                if job is None:
                    return None
                fields.update({"status": status, "progress": tally.progress,
                               "should_cancel": True, "end_date": job.end_date or now})
            elif outcome == "paused":
                status = JobStatus.PAUSED
                fields.update({"status": status, "progress": tally.progress})
            else:
                raise ValueError(f"Unknown crawl outcome: {outcome}")

            written = await self.store.write_job_fields(
                job_id, fields, only_if_status=_finalize_guard(status)
            )
            if written:
                logger.info(f"Job {job_id} finalized as {status.value}")
                return status

            job = await self.store.get_job(job_id)
            if job is None:
                return None
            logger.info(f"Job {job_id} already {job.status}, leaving final state unchanged")
            return job.job_status
        except PersistenceError:
            logger.exception(f"Failed to finalize job {job_id}")
            return None
