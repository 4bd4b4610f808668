"""Per-repository mutual exclusion for ingestion and wiki jobs."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from codewiki.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)


@dataclass
class RepoLock:
    """Lock handle for one repository."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0
    task: Optional[asyncio.Task] = None


class RepoLockTable:
    """
    Lock handles keyed by repository id.

    Handles are created on demand and dropped when released with nobody
    waiting, so the table only holds repositories with active or queued work.
    Locks for different repositories are independent.
    """

    def __init__(self, max_waiters: int = 1):
        self.max_waiters = max_waiters
        self._locks: Dict[str, RepoLock] = {}

    def _handle(self, repo_id: str) -> RepoLock:
        handle = self._locks.get(repo_id)
        if handle is None:
            handle = RepoLock()
            self._locks[repo_id] = handle
        return handle

    def is_locked(self, repo_id: str) -> bool:
        handle = self._locks.get(repo_id)
        return handle is not None and handle.lock.locked()

    def active_task(self, repo_id: str) -> Optional[asyncio.Task]:
        handle = self._locks.get(repo_id)
        return handle.task if handle is not None else None

    def set_task(self, repo_id: str, task: Optional[asyncio.Task]) -> None:
        self._handle(repo_id).task = task

    def active_tasks(self) -> List[asyncio.Task]:
        return [h.task for h in self._locks.values() if h.task is not None and not h.task.done()]

    def __len__(self) -> int:
        return len(self._locks)

    async def try_acquire(self, repo_id: str) -> None:
        """
        Take the lock if it is free and nobody is queued for it.

        A free asyncio.Lock is acquired without suspending, so the check and
        the acquisition cannot be interleaved with another request.

        Raises:
            ConcurrencyConflictError: if the repository is locked.
        """
        handle = self._handle(repo_id)
        if handle.lock.locked() or handle.waiters:
            raise ConcurrencyConflictError(repo_id)
        await handle.lock.acquire()

    async def acquire_queued(self, repo_id: str) -> None:
        """
        Wait for the lock, allowing at most ``max_waiters`` queued requests.

        Raises:
            ConcurrencyConflictError: if the queue is full.
        """
        handle = self._handle(repo_id)
        if handle.lock.locked() and handle.waiters >= self.max_waiters:
            raise ConcurrencyConflictError(repo_id, f"A request is already queued for repository {repo_id}")
        handle.waiters += 1
        try:
            await handle.lock.acquire()
        finally:
            handle.waiters -= 1

    def release(self, repo_id: str, task: Optional[asyncio.Task] = None) -> None:
        """Release the lock. With ``task``, only if that task still owns it."""
        handle = self._locks.get(repo_id)
        if handle is None or not handle.lock.locked():
            return
        if task is not None and handle.task is not task:
            return
        handle.task = None
        handle.lock.release()
        if handle.waiters == 0:
            del self._locks[repo_id]
