"""Tests for batched, idempotent document feeding."""

from typing import List, Sequence

import pytest

from codewiki.errors import IndexFeedError, TransientStoreError
from codewiki.pipeline.feeder import IndexFeeder, batch_documents
from codewiki.storage.documents import IndexDocument, UpsertResult
from codewiki.storage.memory import InMemoryDocumentStore

from .conftest import DIMENSION, fake_vector


def make_doc(chunk_id: str, repo_id: str = "repo-1", indexed_at: int = 1000, content: str = None, embedding=None) -> IndexDocument:
    content = content if content is not None else f"def {chunk_id}():\n    return '{chunk_id}'"
    return IndexDocument(
        repo_id=repo_id,
        repo_url="https://github.com/acme/widget",
        repo_owner="acme",
        repo_name="widget",
        commit_sha="a" * 40,
        branch="main",
        chunk_id=chunk_id,
        file_path=f"src/{chunk_id}.py",
        language="python",
        line_start=1,
        line_end=2,
        content=content,
        chunk_hash=f"hash-{chunk_id}",
        content_sha=f"hash-{chunk_id}",
        embedding=embedding if embedding is not None else fake_vector(content),
        last_indexed_at=indexed_at,
    )


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose first ``failures`` upserts are transient errors."""

    def __init__(self, failures: int):
        super().__init__(dimension=DIMENSION)
        self.failures = failures
        self.upsert_calls = 0

    async def upsert(self, documents: Sequence[IndexDocument]) -> UpsertResult:
        self.upsert_calls += 1
        if self.upsert_calls <= self.failures:
            raise TransientStoreError("503 Service Unavailable")
        return await super().upsert(documents)


# =============================================================================
# Batching
# =============================================================================


class TestBatchDocuments:
    """Size- and count-bounded batching."""

    def test_count_bound(self):
        docs = [make_doc(f"c{i}") for i in range(5)]
        batches = list(batch_documents(docs, max_bytes=10_000_000, max_docs=2))
        assert [len(b) for b in batches] == [2, 2, 1]

    def test_byte_bound(self):
        docs = [make_doc(f"c{i}") for i in range(4)]
        size = docs[0].serialized_size()
        batches = list(batch_documents(docs, max_bytes=size * 2 + 1, max_docs=100))
        assert all(len(b) <= 2 for b in batches)
        assert sum(len(b) for b in batches) == 4

    def test_oversized_document_is_its_own_batch(self):
        docs = [make_doc("small"), make_doc("huge", content="x = 1\n" * 5000), make_doc("tail")]
        batches = list(batch_documents(docs, max_bytes=2000, max_docs=100))
        assert [[d.chunk_id for d in b] for b in batches] == [["small"], ["huge"], ["tail"]]


# =============================================================================
# Feeding
# =============================================================================


class TestIndexFeeder:
    """feed() and prune()."""

    @pytest.mark.asyncio
    async def test_feed_is_idempotent(self, sleep_recorder):
        store = InMemoryDocumentStore(dimension=DIMENSION)
        feeder = IndexFeeder(store, max_batch_docs=2, sleep=sleep_recorder)
        docs = [make_doc(f"c{i}") for i in range(5)]

        first = await feeder.feed(docs)
        second = await feeder.feed(docs)

        assert first.accepted == second.accepted == 5
        assert first.batches == 3
        assert await store.count() == 5

    @pytest.mark.asyncio
    async def test_rejected_documents_are_skipped(self, sleep_recorder):
        store = InMemoryDocumentStore(dimension=DIMENSION)
        feeder = IndexFeeder(store, sleep=sleep_recorder)
        docs = [make_doc("good"), make_doc("bad", embedding=[0.1, 0.2])]

        stats = await feeder.feed(docs)

        assert stats.accepted == 1
        assert stats.rejected == 1
        assert store.get("repo-1", "good") is not None
        assert store.get("repo-1", "bad") is None

    @pytest.mark.asyncio
    async def test_transient_failures_are_replayed(self, sleep_recorder):
        store = FlakyStore(failures=2)
        feeder = IndexFeeder(store, max_attempts=4, backoff_base=0.5, sleep=sleep_recorder)

        stats = await feeder.feed([make_doc("c1"), make_doc("c2")])

        assert stats.accepted == 2
        assert store.upsert_calls == 3
        assert sleep_recorder.delays == [0.5, 1.0]
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_index_feed_error(self, sleep_recorder):
        store = FlakyStore(failures=100)
        feeder = IndexFeeder(store, max_attempts=3, sleep=sleep_recorder)

        with pytest.raises(IndexFeedError):
            await feeder.feed([make_doc("c1")])

        assert store.upsert_calls == 3

    @pytest.mark.asyncio
    async def test_prune_removes_only_older_documents_of_the_repo(self, sleep_recorder):
        store = InMemoryDocumentStore(dimension=DIMENSION)
        feeder = IndexFeeder(store, sleep=sleep_recorder)
        await feeder.feed([
            make_doc("old", indexed_at=1000),
            make_doc("fresh", indexed_at=2000),
            make_doc("other", repo_id="repo-2", indexed_at=1000),
        ])

        deleted = await feeder.prune("repo-1", 2000)

        assert deleted == 1
        assert store.get("repo-1", "old") is None
        assert store.get("repo-1", "fresh") is not None
        assert store.get("repo-2", "other") is not None
