"""
Batched, idempotent feeding of index documents.

Documents are upserted by ``(repo_id, chunk_id)``, so replaying a batch after a
transient failure (or re-running a whole job) never duplicates documents.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List

from codewiki.errors import IndexFeedError, TransientStoreError
from codewiki.retry import Sleep, retry_async
from codewiki.storage.documents import DocumentStore, IndexDocument, UpsertResult

logger = logging.getLogger(__name__)


@dataclass
class FeedStats:
    """Outcome of one ``feed`` call."""
    batches: int = 0
    accepted: int = 0
    rejected: int = 0


def batch_documents(
    documents: Iterable[IndexDocument],
    max_bytes: int,
    max_docs: int,
) -> Iterator[List[IndexDocument]]:
    """
    Group documents into batches bounded by serialized size and count.

    A document larger than ``max_bytes`` on its own forms a batch by itself.
    """
    batch: List[IndexDocument] = []
    batch_bytes = 0
    for doc in documents:
        size = doc.serialized_size()
        if batch and (batch_bytes + size > max_bytes or len(batch) >= max_docs):
            yield batch
            batch, batch_bytes = [], 0
        batch.append(doc)
        batch_bytes += size
    if batch:
        yield batch


class IndexFeeder:
    """
    Feeds documents into a document store in bounded batches.

    Usage:
        feeder = IndexFeeder(document_store, max_batch_bytes=4 * 1024 * 1024)
        stats = await feeder.feed(documents)
        await feeder.prune(repo_id, indexed_at)
    """

    def __init__(
        self,
        store: DocumentStore,
        max_batch_bytes: int = 4 * 1024 * 1024,
        max_batch_docs: int = 100,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.max_batch_bytes = max(1, max_batch_bytes)
        self.max_batch_docs = max(1, max_batch_docs)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    async def feed(self, documents: Iterable[IndexDocument]) -> FeedStats:
        """
        Upsert all documents.

        Per-document rejections are logged and skipped.

        Raises:
            IndexFeedError: if a batch keeps failing transiently.
        """
        stats = FeedStats()
        for batch in batch_documents(documents, self.max_batch_bytes, self.max_batch_docs):
            result = await self._upsert_batch(batch, stats.batches + 1)
            stats.batches += 1
            stats.accepted += result.accepted
            stats.rejected += len(result.rejected)
            for doc, reason in result.rejected:
                logger.warning(
                    f"Document rejected: repo={doc.repo_id} chunk={doc.chunk_id} "
                    f"file={doc.file_path}: {reason}"
                )
        logger.info(f"Fed {stats.accepted} documents in {stats.batches} batches ({stats.rejected} rejected)")
        return stats

    async def _upsert_batch(self, batch: List[IndexDocument], number: int) -> UpsertResult:
        try:
            return await retry_async(
                lambda: self.store.upsert(batch),
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
                max_delay=self.backoff_max,
                retry_on=(TransientStoreError,),
                sleep=self._sleep,
                description=f"Feed batch {number} ({len(batch)} documents)",
            )
        except TransientStoreError as e:
            raise IndexFeedError(f"Feed batch {number} failed after {self.max_attempts} attempts: {e}") from e

    async def prune(self, repo_id: str, indexed_at: int) -> int:
        """
        Delete documents of ``repo_id`` not refreshed by the job at ``indexed_at``.

        Raises:
            IndexFeedError: if the store keeps failing.
        """
        try:
            return await retry_async(
                lambda: self.store.delete_stale(repo_id, indexed_at),
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
                max_delay=self.backoff_max,
                retry_on=(TransientStoreError,),
                sleep=self._sleep,
                description=f"Pruning stale documents of {repo_id}",
            )
        except TransientStoreError as e:
            raise IndexFeedError(f"Pruning failed for {repo_id}: {e}") from e
