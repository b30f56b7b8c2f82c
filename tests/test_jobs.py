from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from pipelines.crawler import CrawlOutcome
from pipelines.errors import InvalidState, PersistenceError
from pipelines.signals import CANCEL, PAUSE
from server.jobs import JobController, format_duration
from services.shared.models import CrawlTally, JobStage, JobStatus, JobType, utcnow

URL = "https://docs.example.com/"


class TestJobLifecycle:
    async def test_create_job_defaults(self, controller):
        job = await controller.create_job(URL, name="Example", tags=["py", "py", "docs"])

        assert job.status == "pending"
        assert job.progress == 0.0
        assert job.stage == JobStage.INITIALIZING.value
        assert job.tags == ["py", "docs"]
        assert job.max_depth == 3
        assert job.type == JobType.CRAWL.value
        assert job.priority == 1
        assert job.stats == {"pagesProcessed": 0, "pagesSkipped": 0, "totalChunks": 0, "errorCount": 0}
        assert job.end_date is None
        assert job.should_cancel is False

    async def test_create_job_rejects_negative_depth(self, controller):
        with pytest.raises(ValueError):
            await controller.create_job(URL, max_depth=-1)

    async def test_get_missing_job_raises(self, controller):
        with pytest.raises(InvalidState):
            await controller.get_job("missing")

    async def test_start_job_moves_to_running(self, controller):
        job = await controller.create_job(URL)

        started = await controller.start_job(job.id)

        assert started.status == "running"
        assert started.stage == JobStage.CRAWLING.value

    async def test_start_job_ignores_finished_jobs(self, controller):
        job = await controller.create_job(URL)
        await controller.update_job_progress(job.id, JobStatus.COMPLETED, 1.0)

        assert await controller.start_job(job.id) is None
        assert await controller.start_job("missing") is None

    async def test_find_jobs_by_status(self, controller):
        first = await controller.create_job(URL)
        second = await controller.create_job(URL)
        await controller.start_job(second.id)

        pending = await controller.find_jobs_by_status(JobStatus.PENDING)

        assert [job.id for job in pending] == [first.id]

    async def test_delete_job(self, controller, store):
        job = await controller.create_job(URL)
        await store.create_document(url=URL, title="t", content="c", metadata={}, level=0, job_id=job.id)

        assert await controller.delete_job(job.id) is True
        assert await store.get_job(job.id) is None
        with pytest.raises(InvalidState):
            await controller.delete_job(job.id)


class TestOperatorActions:
    async def test_cancel_running_job(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)

        cancelled = await controller.cancel_job(job.id, reason="no longer needed")

        assert cancelled.status == "cancelled"
        assert cancelled.should_cancel is True
        assert cancelled.end_date is not None
        assert cancelled.error == "no longer needed"

    async def test_cancel_paused_job(self, controller):
        job = await controller.create_job(URL)
        await controller.pause_job(job.id)

        assert (await controller.cancel_job(job.id)).status == "cancelled"

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    async def test_cancel_finished_job_raises(self, controller, status):
        job = await controller.create_job(URL)
        await controller.update_job_progress(job.id, status, 1.0)

        with pytest.raises(InvalidState):
            await controller.cancel_job(job.id)

    async def test_cancel_fires_live_token(self, controller):
        job = await controller.create_job(URL)
        token = controller.open_signal(job.id)

        await controller.cancel_job(job.id)

        assert token.fired
        assert token.reason == CANCEL

    async def test_pause_and_resume(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)
        token = controller.open_signal(job.id)

        paused = await controller.pause_job(job.id)
        assert paused.status == "paused"
        assert paused.should_pause is True
        assert token.reason == PAUSE

        resumed = await controller.resume_job(job.id)
        assert resumed.status == "running"
        assert resumed.should_pause is False
        assert not token.fired

    async def test_pause_completed_job_raises(self, controller):
        job = await controller.create_job(URL)
        await controller.update_job_progress(job.id, JobStatus.COMPLETED, 1.0)

        with pytest.raises(InvalidState):
            await controller.pause_job(job.id)

    async def test_resume_requires_paused(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)

        with pytest.raises(InvalidState):
            await controller.resume_job(job.id)

    async def test_retry_failed_job(self, controller):
        job = await controller.create_job(
            URL, name="Example", tags=["a"], max_depth=2, metadata={"packageName": "demo"}
        )
        await controller.update_job_error(job.id, "boom")

        result = await controller.retry_failed_job(job.id)

        assert result["original_job_id"] == job.id
        assert result["status"] == "pending"
        assert result["new_job_id"] != job.id
        clone = await controller.get_job(result["new_job_id"])
        assert clone.url == URL
        assert clone.name == "Example"
        assert clone.tags == ["a"]
        assert clone.max_depth == 2
        assert clone.meta == {"packageName": "demo"}
        assert clone.progress == 0.0
        assert clone.stage == JobStage.INITIALIZING.value
        assert (await controller.get_job(job.id)).status == "failed"

    @pytest.mark.parametrize("status", [JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.CANCELLED])
    async def test_retry_requires_failed(self, controller, status):
        job = await controller.create_job(URL)
        if status != JobStatus.PENDING:
            await controller.update_job_progress(job.id, status, 1.0)

        with pytest.raises(InvalidState):
            await controller.retry_failed_job(job.id)


class TestTelemetry:
    async def test_update_job_error_marks_failed(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)

        assert await controller.update_job_error(job.id, "first") is True
        job = await controller.get_job(job.id)

        assert job.status == "failed"
        assert job.error == "first"
        assert job.error_count == 1
        assert job.last_error is not None
        assert job.end_date is not None

    async def test_update_job_progress_stamps_end_date(self, controller):
        job = await controller.create_job(URL)

        await controller.update_job_progress(job.id, JobStatus.RUNNING, 0.5)
        assert (await controller.get_job(job.id)).end_date is None

        await controller.update_job_progress(job.id, JobStatus.COMPLETED, 1.0)
        assert (await controller.get_job(job.id)).end_date is not None

    async def test_finished_job_is_frozen(self, controller):
        job = await controller.create_job(URL)
        await controller.update_job_progress(job.id, JobStatus.COMPLETED, 1.0)

        assert await controller.update_job_progress(job.id, JobStatus.RUNNING, 0.2) is False
        assert await controller.update_job_stats(job.id, {"pagesProcessed": 99}) is False
        assert await controller.update_job_stage(job.id, JobStage.CLEANUP) is False
        assert await controller.update_job_items(job.id, processed=5) is False
        assert await controller.update_job_time_estimates(job.id, time_elapsed=10) is False
        end_date = (await controller.get_job(job.id)).end_date
        assert await controller.update_job_progress(job.id, JobStatus.COMPLETED, 0.1) is False
        assert await controller.update_job_error(job.id, "late failure") is False

        job = await controller.get_job(job.id)
        assert job.status == "completed"
        assert job.progress == 1.0
        assert job.stats["pagesProcessed"] == 0
        assert job.end_date == end_date
        assert job.error is None
        assert job.error_count == 0

    async def test_telemetry_on_running_job(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)

        await controller.update_job_stats(job.id, {"pagesProcessed": 4})
        await controller.update_job_stage(job.id, JobStage.PROCESSING)
        await controller.update_job_items(job.id, total=10, processed=4, skipped=1, failed=1)
        await controller.update_job_time_estimates(job.id, time_elapsed=30, time_remaining=45)

        job = await controller.get_job(job.id)
        assert job.status == "running"
        assert job.stats["pagesProcessed"] == 4
        assert job.stats["errorCount"] == 0
        assert job.stage == "processing"
        assert (job.items_total, job.items_processed, job.items_skipped, job.items_failed) == (10, 4, 1, 1)
        assert (job.time_elapsed, job.time_remaining) == (30, 45)


class TestCrawlHooks:
    async def test_poll_signals_reflects_flags_and_token(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)
        token = controller.open_signal(job.id)

        signals = await controller.poll_signals(job.id, token)
        assert not signals.should_cancel and not signals.should_pause

        token.fire(PAUSE)
        signals = await controller.poll_signals(job.id, token)
        assert signals.should_pause and not signals.should_cancel

        assert await controller.poll_signals("missing", token) is None

    async def test_poll_signals_sees_cancel_from_store(self, controller):
        job = await controller.create_job(URL)
        await controller.cancel_job(job.id)

        signals = await controller.poll_signals(job.id)

        assert signals.should_cancel
        assert signals.status == JobStatus.CANCELLED

    async def test_finalize_threshold(self, controller):
        ok = await controller.create_job(URL)
        bad = await controller.create_job(URL)

        status_ok = await controller.finalize_crawl(
            ok.id, CrawlOutcome.EXHAUSTED, CrawlTally(processed=3, skipped=1, errors=1)
        )
        status_bad = await controller.finalize_crawl(
            bad.id, CrawlOutcome.EXHAUSTED,
            CrawlTally(processed=1, skipped=3, errors=3, last_error_summary="3 errors"),
        )

        assert status_ok == JobStatus.COMPLETED
        assert status_bad == JobStatus.FAILED
        bad = await controller.get_job(bad.id)
        assert bad.error == "3 errors"
        assert bad.progress == 1.0

    async def test_finalize_does_not_override_cancel(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)
        await controller.cancel_job(job.id)

        status = await controller.finalize_crawl(job.id, CrawlOutcome.EXHAUSTED, CrawlTally(processed=2))

        assert status == JobStatus.CANCELLED
        assert (await controller.get_job(job.id)).status == "cancelled"

    async def test_finalize_is_idempotent(self, controller):
        job = await controller.create_job(URL)
        tally = CrawlTally(processed=2)

        assert await controller.finalize_crawl(job.id, CrawlOutcome.EXHAUSTED, tally) == JobStatus.COMPLETED
        assert await controller.finalize_crawl(job.id, CrawlOutcome.EXHAUSTED, tally) == JobStatus.COMPLETED

    async def test_finalize_paused_keeps_progress_snapshot(self, controller):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)

        status = await controller.finalize_crawl(
            job.id, CrawlOutcome.PAUSED, CrawlTally(processed=1, visited=1, queued=3)
        )

        job = await controller.get_job(job.id)
        assert status == JobStatus.PAUSED
        assert job.progress == pytest.approx(0.25)
        assert job.end_date is None

    async def test_record_page_error_is_best_effort(self, controller):
        tally = CrawlTally(errors=1, skipped=1, last_error_summary="1 errors during crawling.")

        assert await controller.record_page_error("missing", tally) is False


class TestReporting:
    async def test_job_status_view_for_running_job(self, controller, store):
        job = await controller.create_job(URL)
        await controller.start_job(job.id)
        await store.write_job_fields(job.id, {
            "start_date": utcnow() - timedelta(seconds=100),
            "progress": 0.5,
        })
        await store.create_document(url=URL, title="t", content="c", metadata={}, level=0, job_id=job.id)

        view = await controller.get_job_status(job.id)

        assert view["status"] == "running"
        assert view["progress_percentage"] == 50
        assert 99 <= view["time_elapsed"] <= 102
        assert 99 <= view["time_remaining"] <= 102
        assert view["estimated_completion"] is not None
        assert view["duration"] is None
        assert view["can_cancel"] and view["can_pause"] and not view["can_resume"]
        assert view["document_count"] == 1
        assert view["formatted_time_elapsed"].startswith("1 minute, ")
        assert view["status_message"].startswith("Job is running (crawling stage) at 50% completion")

    async def test_job_status_view_for_finished_job(self, controller, store):
        job = await controller.create_job(URL)
        start = utcnow() - timedelta(seconds=3700)
        await store.write_job_fields(job.id, {"start_date": start})
        await controller.update_job_progress(job.id, JobStatus.COMPLETED, 1.0)

        view = await controller.get_job_status(job.id)

        assert view["time_remaining"] is None
        assert view["duration"] >= 3700
        assert view["formatted_duration"].startswith("1 hour, 1 minute")
        assert not view["can_cancel"] and not view["can_pause"] and not view["can_resume"]
        assert view["status_message"].startswith("Job completed successfully (100%)")

    async def test_job_status_view_paused(self, controller):
        job = await controller.create_job(URL)
        await controller.pause_job(job.id)

        view = await controller.get_job_status(job.id)

        assert view["can_resume"] and view["can_cancel"] and not view["can_pause"]
        assert view["status_message"].startswith("Job is paused at 0% completion")

    async def test_statistics(self, controller):
        done = await controller.create_job(URL)
        await controller.finalize_crawl(done.id, CrawlOutcome.EXHAUSTED, CrawlTally(processed=4, skipped=1, errors=1))
        failed = await controller.create_job(URL)
        await controller.update_job_error(failed.id, "boom")
        await controller.create_job(URL, type=JobType.PROCESS)

        stats = await controller.get_job_statistics()

        assert stats["total"] == 3
        assert stats["by_status"] == {"completed": 1, "failed": 1, "pending": 1}
        assert stats["by_type"] == {"crawl": 2, "process": 1}
        assert stats["success_rate"] == pytest.approx(1 / 3)
        assert stats["stats"]["pagesProcessed"] == 4
        assert stats["stats"]["errorCount"] == 1

        only_crawls = await controller.get_job_statistics(types=[JobType.CRAWL], statuses=[JobStatus.FAILED])
        assert only_crawls["total"] == 1

    async def test_statistics_empty(self, controller):
        stats = await controller.get_job_statistics()
        assert stats["total"] == 0
        assert stats["success_rate"] == 0.0

    async def test_cleanup_old_jobs(self, controller, store):
        old = await controller.create_job(URL)
        await controller.update_job_progress(old.id, JobStatus.COMPLETED, 1.0)
        await store.write_job_fields(old.id, {"last_activity": utcnow() - timedelta(days=40)})
        await store.create_document(url=URL, title="t", content="c", metadata={}, level=0, job_id=old.id)
        recent = await controller.create_job(URL)
        await controller.update_job_progress(recent.id, JobStatus.COMPLETED, 1.0)
        idle = await controller.create_job(URL)
        await store.write_job_fields(idle.id, {"last_activity": utcnow() - timedelta(days=40)})

        removed = await controller.cleanup_old_jobs(30)

        assert removed == 2
        assert await store.get_job(old.id) is None
        assert await store.get_job(idle.id) is None
        assert await store.get_job(recent.id) is not None

    async def test_cleanup_restricted_to_statuses(self, controller, store):
        stale = utcnow() - timedelta(days=40)
        finished = await controller.create_job(URL)
        await controller.update_job_progress(finished.id, JobStatus.COMPLETED, 1.0)
        await store.write_job_fields(finished.id, {"last_activity": stale})
        waiting = await controller.create_job(URL)
        await store.write_job_fields(waiting.id, {"last_activity": stale})

        removed = await controller.cleanup_old_jobs(30, statuses=[JobStatus.COMPLETED, JobStatus.FAILED])

        assert removed == 1
        assert await store.get_job(finished.id) is None
        assert await store.get_job(waiting.id) is not None


@pytest.mark.parametrize("seconds,expected", [
    (1, "1 second"),
    (45, "45 seconds"),
    (61, "1 minute, 1 second"),
    (125, "2 minutes, 5 seconds"),
    (7260, "2 hours, 1 minute"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_failure_threshold_is_configurable():
    controller = JobController(store=None, failure_threshold=0.5)
    assert controller.final_status(CrawlTally(processed=1, skipped=1, errors=1)) == JobStatus.FAILED
    assert controller.final_status(CrawlTally(processed=3, skipped=1, errors=1)) == JobStatus.COMPLETED


async def test_store_failures_during_crawl_are_contained():
    store = AsyncMock()
    store.write_job_fields.side_effect = PersistenceError("database is locked")
    controller = JobController(store)
    tally = CrawlTally(processed=2, visited=2)

    assert await controller.record_crawl_progress("job-1", tally) is False
    assert await controller.record_page_error("job-1", tally) is False
    assert await controller.finalize_crawl("job-1", CrawlOutcome.EXHAUSTED, tally) is None
    assert store.write_job_fields.await_count == 3
