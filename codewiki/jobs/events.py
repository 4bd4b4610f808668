"""In-process push channel for ingestion status updates."""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from codewiki.storage.base import IngestionStatus

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """
    Fan-out of status updates to subscribers, per repository.

    Each subscriber gets its own queue, so a slow reader never blocks the job
    publishing the updates; updates arrive in publish order.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscriber_count(self, repo_id: str) -> int:
        return len(self._subscribers.get(repo_id, ()))

    def publish(self, status: IngestionStatus) -> None:
        for queue in list(self._subscribers.get(status.repo_id, ())):
            queue.put_nowait(status)

    def _add(self, repo_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(repo_id, set()).add(queue)
        return queue

    def _remove(self, repo_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(repo_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[repo_id]

    async def subscribe(
        self,
        repo_id: str,
        initial_loader: Optional[Callable[[], Awaitable[IngestionStatus]]] = None,
        until_terminal: bool = True,
    ) -> AsyncIterator[IngestionStatus]:
        """
        Yield status updates for a repository.

        Args:
            initial_loader: Returns the current status, yielded first. It is
                called after the subscription is registered, so no update is
                lost in between.
            until_terminal: Stop after a ``complete`` or ``error`` update
        """
        queue = self._add(repo_id)
        try:
            initial = None
            if initial_loader is not None:
                initial = await initial_loader()
                yield initial
                if until_terminal and initial.stage.is_terminal and queue.empty():
                    return
            while True:
                status = await queue.get()
                if status is None:
                    return
                if status == initial:
                    # Already reported as the current status
                    continue
                yield status
                if until_terminal and status.stage.is_terminal:
                    return
        finally:
            self._remove(repo_id, queue)

    def close(self) -> None:
        """End every open subscription."""
        for queues in list(self._subscribers.values()):
            for queue in list(queues):
                queue.put_nowait(None)
