"""Reuse of recently crawled documents instead of refetching them."""

import logging
from datetime import timedelta
from typing import Optional

from services.shared.models import Document, utcnow
from .errors import PersistenceError

logger = logging.getLogger(__name__)


class FreshnessCache:
    """Copies a Document crawled within the window into the current job."""

    def __init__(self, documents, window_days: int = 28):
        self.documents = documents
        self.window_days = window_days

    async def reuse(self, url: str, depth: int, job_id: str,
                    window_days: Optional[int] = None) -> Optional[Document]:
        """Return a new Document for ``url`` copied from a recent one, or None.

        The match is on the exact URL string. Store failures count as a miss.
        """
        days = self.window_days if window_days is None else window_days
        since = utcnow() - timedelta(days=days)
        try:
            recent = await self.documents.find_recent_document_by_url(url, since)
            if recent is None:
                return None
            if recent.job_id == job_id:
                return recent
            copy = await self.documents.create_document(
                url=url,
                title=recent.title,
                content=recent.content,
                metadata=dict(recent.meta or {}),
                level=depth,
                job_id=job_id,
            )
        except PersistenceError as e:
            logger.warning(f"Freshness lookup failed for {url}, fetching instead: {e}")
            return None
        logger.debug(f"Reused document {recent.id} for {url} (crawled {recent.crawl_date})")
        return copy
