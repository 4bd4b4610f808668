"""
Embedding generation with a durable, content-addressed cache.

Chunks are embedded by content hash: identical content anywhere in a repository
is sent upstream once and shares one vector. Vectors are cached per repository
and embedding model in the repository store, and every successful batch is
written to the cache before the next step of the job, so an interrupted job
resumes without recomputing finished batches.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from codewiki.errors import EmbeddingProviderError
from codewiki.pipeline.extractor import Chunk
from codewiki.retry import Sleep, retry_async
from codewiki.storage.base import RepoStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[None]]


class EmbeddingProvider(ABC):
    """A service that turns texts into fixed-dimension vectors."""

    @property
    @abstractmethod
    def model(self) -> str:
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts, one vector per input, in input order.

        Raises:
            EmbeddingProviderError: on failure, with ``retryable`` set for
                transient conditions.
        """


@dataclass
class EmbeddingStats:
    """Summary of one ``embed_chunks`` run."""
    total_chunks: int = 0
    unique_hashes: int = 0
    cached: int = 0
    embedded: int = 0
    batches: int = 0


class EmbeddingService:
    """
    Cache-aware, batched, bounded-concurrency embedding of chunks.

    Usage:
        service = EmbeddingService(provider, repo_store, batch_size=32, concurrency=4)
        stats = await service.embed_chunks(repo_id, chunks)
        vectors = await service.vectors_for(repo_id, [c.content_hash for c in chunks])
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: RepoStore,
        batch_size: int = 32,
        concurrency: int = 4,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    async def embed_chunks(
        self,
        repo_id: str,
        chunks: Sequence[Chunk],
        on_progress: Optional[ProgressCallback] = None,
    ) -> EmbeddingStats:
        """
        Make sure every chunk's content hash has a cached vector.

        Args:
            repo_id: Cache namespace
            chunks: Chunks of the current job
            on_progress: Awaited with ``(done_batches, total_batches)`` after
                each batch, in completion order

        Raises:
            EmbeddingProviderError: if a batch fails permanently; batches
                still in flight are cancelled.
        """
        texts_by_hash: Dict[str, str] = {}
        for chunk in chunks:
            texts_by_hash.setdefault(chunk.content_hash, chunk.content)

        stats = EmbeddingStats(total_chunks=len(chunks), unique_hashes=len(texts_by_hash))
        cached = await self.store.get_embeddings(repo_id, self.model, list(texts_by_hash))
        stats.cached = len(cached)

        missing = [h for h in texts_by_hash if h not in cached]
        batches = [missing[i : i + self.batch_size] for i in range(0, len(missing), self.batch_size)]
        stats.batches = len(batches)
        logger.info(
            f"Embedding {repo_id}: {stats.total_chunks} chunks, {stats.unique_hashes} unique, "
            f"{stats.cached} cached, {len(missing)} to embed in {len(batches)} batches"
        )
        if not batches:
            if on_progress is not None:
                await on_progress(0, 0)
            return stats

        semaphore = asyncio.Semaphore(self.concurrency)
        progress_lock = asyncio.Lock()
        done = 0

        async def run_batch(hashes: List[str]) -> None:
            nonlocal done
            async with semaphore:
                vectors = await self._embed_with_retry([texts_by_hash[h] for h in hashes])
                await self.store.put_embeddings(repo_id, self.model, dict(zip(hashes, vectors)))
            async with progress_lock:
                done += 1
                stats.embedded += len(hashes)
                if on_progress is not None:
                    await on_progress(done, len(batches))

        tasks = [asyncio.create_task(run_batch(batch)) for batch in batches]
        try:
            finished, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in finished:
                if task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return stats

    async def vectors_for(self, repo_id: str, hashes: Sequence[str]) -> Dict[str, List[float]]:
        """Cached vectors for the given content hashes."""
        return await self.store.get_embeddings(repo_id, self.model, list(dict.fromkeys(hashes)))

    async def embed_query(self, text: str) -> List[float]:
        """Embed a search query (not cached)."""
        vectors = await self._embed_with_retry([text])
        return vectors[0]

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        async def call() -> List[List[float]]:
            vectors = await self.provider.embed(texts)
            self._check_vectors(texts, vectors)
            return vectors

        return await retry_async(
            call,
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
            retry_on=(EmbeddingProviderError,),
            should_retry=lambda e: getattr(e, "retryable", False),
            sleep=self._sleep,
            description=f"Embedding batch of {len(texts)}",
        )

    def _check_vectors(self, texts: List[str], vectors: List[List[float]]) -> None:
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts", retryable=False
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise EmbeddingProviderError(
                    f"Provider returned a {len(vector)}-dimensional vector, index expects {self.dimension}",
                    retryable=False,
                )
