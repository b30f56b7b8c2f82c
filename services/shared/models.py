"""Shared database models for crawl jobs and crawled documents."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import Column, Integer, Float, Boolean, String, Text, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class JobStatus(str, Enum):
    """Job status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED})


class JobType(str, Enum):
    """Kind of work a job represents."""
    CRAWL = "crawl"
    PROCESS = "process"
    DELETE = "delete"


class JobStage(str, Enum):
    """Free-form phase label shown to operators."""
    INITIALIZING = "initializing"
    CRAWLING = "crawling"
    PROCESSING = "processing"
    EMBEDDING = "embedding"
    FINALIZING = "finalizing"
    CLEANUP = "cleanup"


def empty_stats() -> Dict[str, Any]:
    return {"pagesProcessed": 0, "pagesSkipped": 0, "totalChunks": 0, "errorCount": 0}


class Job(Base):
    """A persisted unit of crawl work."""
    __tablename__ = 'jobs'

    id = Column(String(36), primary_key=True, default=new_id)
    url = Column(String(2048), nullable=False)
    name = Column(String(500), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    max_depth = Column(Integer, nullable=True)
    type = Column(String(20), nullable=False, default=JobType.CRAWL.value)
    stage = Column(String(20), nullable=True)
    priority = Column(Integer, nullable=False, default=1)
    meta = Column('metadata', JSON, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Progress
    progress = Column(Float, nullable=False, default=0.0)
    items_total = Column(Integer, nullable=False, default=0)
    items_processed = Column(Integer, nullable=False, default=0)
    items_skipped = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    stats = Column(JSON, nullable=False, default=empty_stats)

    # Control signals
    should_cancel = Column(Boolean, nullable=False, default=False)
    should_pause = Column(Boolean, nullable=False, default=False)

    # Diagnostics
    error = Column(Text, nullable=True)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(DateTime, nullable=True)
    time_elapsed = Column(Integer, nullable=True)
    time_remaining = Column(Integer, nullable=True)
    estimated_completion = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_jobs_status', 'status'),
        Index('idx_jobs_type', 'type'),
        Index('idx_jobs_last_activity', 'last_activity'),
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {column.name: getattr(self, column.key) for column in self.__table__.columns}
        for key, value in list(data.items()):
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


class Document(Base):
    """One crawled (or reused) page."""
    __tablename__ = 'documents'

    id = Column(String(36), primary_key=True, default=new_id)
    url = Column(String(2048), nullable=False)
    title = Column(String(1000), nullable=False)
    content = Column(Text, nullable=False)
    meta = Column('metadata', JSON, nullable=False, default=dict)
    crawl_date = Column(DateTime, nullable=False, default=utcnow)
    level = Column(Integer, nullable=False, default=0)
    job_id = Column(String(36), ForeignKey('jobs.id', ondelete='SET NULL'), nullable=True)
    parent_document_id = Column(String(36), ForeignKey('documents.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_documents_url', 'url'),
        Index('idx_documents_crawl_date', 'crawl_date'),
        Index('idx_documents_job_id', 'job_id'),
    )


@dataclass
class JobSignals:
    """Control flags read by the crawl loop on every iteration."""
    should_cancel: bool
    should_pause: bool
    status: JobStatus
    start_date: Optional[datetime] = None


@dataclass
class CrawlTally:
    """Per-invocation crawl counters, never persisted directly."""
    processed: int = 0
    skipped: int = 0
    policy_skipped: int = 0
    errors: int = 0
    visited: int = 0
    queued: int = 0
    last_error_summary: Optional[str] = None

    @property
    def progress(self) -> float:
        total = self.visited + self.queued
        return self.visited / total if total > 0 else 0.0

    @property
    def error_rate(self) -> float:
        attempted = self.processed + self.skipped
        return self.errors / attempted if attempted > 0 else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "pagesProcessed": self.processed,
            "pagesSkipped": self.skipped,
            "totalChunks": self.processed,
            "errorCount": self.errors,
        }

    def items(self) -> Dict[str, int]:
        return {
            "items_processed": self.processed,
            "items_skipped": self.skipped,
            "items_failed": self.errors,
            "items_total": self.processed + self.skipped + self.queued,
        }
