"""Breadth-first frontier for a single crawl invocation."""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Optional, Set


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    depth: int


class Frontier:
    """FIFO of URLs to visit plus the visited set.

    A URL is queued at most once; links deeper than ``max_depth`` are never queued.
    """

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        self._queue: Deque[FrontierEntry] = deque()
        self._queued: Set[str] = set()
        self.visited: Set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def push(self, url: str, depth: int) -> bool:
        if depth > self.max_depth or url in self.visited or url in self._queued:
            return False
        self._queue.append(FrontierEntry(url, depth))
        self._queued.add(url)
        return True

    def extend(self, urls: Iterable[str], depth: int) -> int:
        return sum(1 for url in urls if self.push(url, depth))

    def pop(self) -> Optional[FrontierEntry]:
        if not self._queue:
            return None
        entry = self._queue.popleft()
        self._queued.discard(entry.url)
        return entry

    def should_skip(self, entry: FrontierEntry) -> bool:
        return entry.depth > self.max_depth or entry.url in self.visited

    def mark_visited(self, url: str):
        self.visited.add(url)
