"""Persistence contracts for jobs and documents, with a SQLAlchemy implementation.

The crawl engine and the job controller only talk to ``JobStore`` and
``DocumentStore``. ``SQLStore`` implements both on top of SQLAlchemy; tests run it
against an in-memory SQLite database.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipelines.errors import PersistenceError
from .models import Base, Document, Job, JobSignals, JobStatus, utcnow

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Storage contract for Job rows."""

    @abstractmethod
    async def create_job(self, fields: Dict[str, Any]) -> Job:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def read_job_flags(self, job_id: str) -> Optional[JobSignals]:
        ...

    @abstractmethod
    async def write_job_fields(self, job_id: str, fields: Dict[str, Any],
                               only_if_status: Optional[Iterable[JobStatus]] = None) -> bool:
        """Apply ``fields`` to the job; returns False when nothing was written.

        When ``only_if_status`` is given the write only lands if the job's current
        status is one of them.
        """

    @abstractmethod
    async def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None,
                        types: Optional[Iterable[str]] = None,
                        since: Optional[datetime] = None,
                        until: Optional[datetime] = None) -> List[Job]:
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_jobs_before(self, cutoff: datetime,
                                 statuses: Optional[Iterable[JobStatus]] = None) -> int:
        ...


class DocumentStore(ABC):
    """Storage contract for Document rows."""

    @abstractmethod
    async def create_document(self, url: str, title: str, content: str,
                              metadata: Dict[str, Any], level: int, job_id: str,
                              parent_document_id: Optional[str] = None,
                              crawl_date: Optional[datetime] = None) -> Document:
        ...

    @abstractmethod
    async def find_recent_document_by_url(self, url: str, since: datetime) -> Optional[Document]:
        ...

    @abstractmethod
    async def count_documents(self, job_id: str) -> int:
        ...

    @abstractmethod
    async def list_documents(self, job_id: str) -> List[Document]:
        ...


def _status_values(statuses: Optional[Iterable[JobStatus]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [JobStatus(s).value for s in statuses]


class SQLStore(JobStore, DocumentStore):
    """SQLAlchemy-backed store for jobs and documents."""

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        self.database_url = database_url
        engine_kwargs: Dict[str, Any] = {"echo": echo, "future": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    async def initialize(self):
        """Create tables when they do not exist yet."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to initialize schema: {e}") from e
        logger.info(f"Store initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        self.engine.dispose()
        logger.info("Store connections closed")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            session.close()

    # Jobs

    async def create_job(self, fields: Dict[str, Any]) -> Job:
        with self._session() as session:
            job = Job(**fields)
            session.add(job)
            session.flush()
            return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        with self._session() as session:
            return session.get(Job, job_id)

    async def read_job_flags(self, job_id: str) -> Optional[JobSignals]:
        with self._session() as session:
            row = (
                session.query(Job.should_cancel, Job.should_pause, Job.status, Job.start_date)
                .filter(Job.id == job_id)
                .first()
            )
            if row is None:
                return None
            return JobSignals(
                should_cancel=bool(row.should_cancel),
                should_pause=bool(row.should_pause),
                status=JobStatus(row.status),
                start_date=row.start_date,
            )

    async def write_job_fields(self, job_id: str, fields: Dict[str, Any],
                               only_if_status: Optional[Iterable[JobStatus]] = None) -> bool:
        values = dict(fields)
        values.setdefault("last_activity", utcnow())
        values["updated_at"] = utcnow()
        for key, value in list(values.items()):
            if isinstance(value, JobStatus):
                values[key] = value.value
        with self._session() as session:
            query = session.query(Job).filter(Job.id == job_id)
            allowed = _status_values(only_if_status)
            if allowed is not None:
                query = query.filter(Job.status.in_(allowed))
            updated = query.update(
                {getattr(Job, key): value for key, value in values.items()},
                synchronize_session=False,
            )
            return updated > 0

    async def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None,
                        types: Optional[Iterable[str]] = None,
                        since: Optional[datetime] = None,
                        until: Optional[datetime] = None) -> List[Job]:
        with self._session() as session:
            query = session.query(Job)
            allowed = _status_values(statuses)
            if allowed is not None:
                query = query.filter(Job.status.in_(allowed))
            if types is not None:
                query = query.filter(Job.type.in_([getattr(t, "value", t) for t in types]))
            if since is not None:
                query = query.filter(Job.created_at >= since)
            if until is not None:
                query = query.filter(Job.created_at <= until)
            return query.order_by(Job.created_at.desc()).all()

    async def delete_job(self, job_id: str) -> bool:
        with self._session() as session:
            session.query(Document).filter(Document.job_id == job_id).update(
                {Document.job_id: None}, synchronize_session=False
            )
            deleted = session.query(Job).filter(Job.id == job_id).delete(synchronize_session=False)
            return deleted > 0

    async def delete_jobs_before(self, cutoff: datetime,
                                 statuses: Optional[Iterable[JobStatus]] = None) -> int:
        with self._session() as session:
            query = session.query(Job.id).filter(Job.last_activity < cutoff)
            allowed = _status_values(statuses)
            if allowed is not None:
                query = query.filter(Job.status.in_(allowed))
            job_ids = [row.id for row in query.all()]
            if not job_ids:
                return 0
            session.query(Document).filter(Document.job_id.in_(job_ids)).update(
                {Document.job_id: None}, synchronize_session=False
            )
            return session.query(Job).filter(Job.id.in_(job_ids)).delete(synchronize_session=False)

    # Documents

    async def create_document(self, url: str, title: str, content: str,
                              metadata: Dict[str, Any], level: int, job_id: str,
                              parent_document_id: Optional[str] = None,
                              crawl_date: Optional[datetime] = None) -> Document:
        with self._session() as session:
            document = Document(
                url=url,
                title=title,
                content=content,
                meta=metadata or {},
                level=level,
                job_id=job_id,
                parent_document_id=parent_document_id,
                crawl_date=crawl_date or utcnow(),
            )
            session.add(document)
            session.flush()
            return document

    async def find_recent_document_by_url(self, url: str, since: datetime) -> Optional[Document]:
        with self._session() as session:
            return (
                session.query(Document)
                .filter(Document.url == url, Document.crawl_date >= since)
                .order_by(Document.crawl_date.desc())
                .first()
            )

    async def count_documents(self, job_id: str) -> int:
        with self._session() as session:
            return session.query(Document).filter(Document.job_id == job_id).count()

    async def list_documents(self, job_id: str) -> List[Document]:
        with self._session() as session:
            return (
                session.query(Document)
                .filter(Document.job_id == job_id)
                .order_by(Document.level, Document.created_at)
                .all()
            )
