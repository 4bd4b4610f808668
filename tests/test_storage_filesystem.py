"""Tests for the filesystem repository store."""

import threading
from pathlib import Path

import pytest

from codewiki.errors import RepoNotFoundError
from codewiki.models import IngestionStage, WikiState
from codewiki.storage.base import IngestionStatus, Manifest, Repository, WikiArtifact, WikiRecord
from codewiki.storage import filesystem
from codewiki.storage.filesystem import FilesystemRepoStore


def make_manifest(repo_id: str, indexed_at: int, commit_sha: str = "a" * 40) -> Manifest:
    return Manifest(
        repo_id=repo_id,
        commit_sha=commit_sha,
        branch="main",
        schema_version=1,
        embedding_model="fake-embed-v1",
        embedding_dims=8,
        chunk_count=10,
        file_count=3,
        indexed_at=indexed_at,
    )


class TestRegistry:
    """Registration and persistence across instances."""

    @pytest.mark.asyncio
    async def test_add_repo_is_idempotent(self, repo_store, registered_repo):
        again = await repo_store.add_repo(
            Repository(
                repo_id=registered_repo.repo_id,
                owner="acme",
                name="widget",
                repo_url="git@github.com:acme/widget.git",
                canonical_url="https://github.com/acme/widget",
            )
        )
        assert again.repo_url == registered_repo.repo_url
        assert len(await repo_store.list_repos()) == 1

    @pytest.mark.asyncio
    async def test_registry_survives_restart(self, tmp_path: Path, repo_store, registered_repo):
        registered_repo.commit_sha = "b" * 40
        await repo_store.update_repo(registered_repo)

        reopened = FilesystemRepoStore(tmp_path / "store")
        await reopened.initialize()

        repo = await reopened.get_repo(registered_repo.repo_id)
        assert repo.full_name == "acme/widget"
        assert repo.commit_sha == "b" * 40

    @pytest.mark.asyncio
    async def test_unknown_repo(self, repo_store):
        assert await repo_store.get_repo("missing") is None
        assert await repo_store.get_status("missing") is None
        assert await repo_store.latest_manifest("missing") is None
        with pytest.raises(RepoNotFoundError):
            await repo_store.save_status(IngestionStatus(repo_id="missing"))


class TestRecords:
    """Status, manifests, chunks, embeddings and wiki records."""

    @pytest.mark.asyncio
    async def test_status_round_trip(self, repo_store, registered_repo):
        status = IngestionStatus(
            repo_id=registered_repo.repo_id,
            stage=IngestionStage.EMBEDDING,
            message="Generating embeddings",
            progress=0.5,
            generation=2,
        )
        await repo_store.save_status(status)

        loaded = await repo_store.get_status(registered_repo.repo_id)
        assert loaded == status
        assert [s.repo_id for s in await repo_store.list_statuses()] == [registered_repo.repo_id]

    @pytest.mark.asyncio
    async def test_latest_manifest_wins(self, repo_store, registered_repo):
        await repo_store.append_manifest(make_manifest(registered_repo.repo_id, 1000))
        await repo_store.append_manifest(make_manifest(registered_repo.repo_id, 2000, "c" * 40))

        latest = await repo_store.latest_manifest(registered_repo.repo_id)
        assert latest.indexed_at == 2000
        assert latest.commit_sha == "c" * 40

    @pytest.mark.asyncio
    async def test_torn_manifest_line_is_ignored(self, tmp_path: Path, repo_store, registered_repo):
        await repo_store.append_manifest(make_manifest(registered_repo.repo_id, 1000))
        path = tmp_path / "store" / "meta" / "acme" / "widget" / "manifests.jsonl"
        with path.open("a", encoding="utf-8") as f:
            f.write('{"repo_id": "acme-wid')

        latest = await repo_store.latest_manifest(registered_repo.repo_id)
        assert latest.indexed_at == 1000

    @pytest.mark.asyncio
    async def test_chunks_per_commit(self, repo_store, registered_repo):
        chunks = [{"chunk_id": "c1", "file_path": "a.py", "line_start": 1, "line_end": 3, "content_hash": "h1"}]
        await repo_store.save_chunks(registered_repo.repo_id, "a" * 40, chunks)

        assert await repo_store.load_chunks(registered_repo.repo_id, "a" * 40) == chunks
        assert await repo_store.load_chunks(registered_repo.repo_id, "b" * 40) == []

    @pytest.mark.asyncio
    async def test_embeddings_persist_per_model(self, tmp_path: Path, repo_store, registered_repo):
        await repo_store.put_embeddings(registered_repo.repo_id, "org/model-a", {"h1": [0.1, 0.2]})
        await repo_store.put_embeddings(registered_repo.repo_id, "org/model-a", {"h1": [9.9, 9.9], "h2": [0.3, 0.4]})

        reopened = FilesystemRepoStore(tmp_path / "store")
        await reopened.initialize()
        vectors = await reopened.get_embeddings(registered_repo.repo_id, "org/model-a", ["h1", "h2", "h3"])

        assert vectors == {"h1": [0.1, 0.2], "h2": [0.3, 0.4]}
        assert await reopened.get_embeddings(registered_repo.repo_id, "org/model-b", ["h1"]) == {}

    @pytest.mark.asyncio
    async def test_embedding_cache_is_bounded(self, tmp_path: Path, registered_repo):
        store = FilesystemRepoStore(tmp_path / "store", max_cached_embedding_sets=1)
        await store.initialize()
        repo_id = registered_repo.repo_id

        await store.put_embeddings(repo_id, "model-a", {"h1": [0.1]})
        await store.put_embeddings(repo_id, "model-b", {"h1": [0.2]})
        assert store.cached_embedding_sets() == [(repo_id, "model-b")]

        # Evicted sets are read back from disk
        assert await store.get_embeddings(repo_id, "model-a", ["h1"]) == {"h1": [0.1]}
        assert store.cached_embedding_sets() == [(repo_id, "model-a")]

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_event_loop(self, monkeypatch, repo_store, registered_repo):
        loop_thread = threading.get_ident()
        io_threads = []
        read_lines = filesystem._read_lines
        atomic_write = filesystem._atomic_write

        def recording_read_lines(path):
            io_threads.append(threading.get_ident())
            return read_lines(path)

        def recording_atomic_write(path, text):
            io_threads.append(threading.get_ident())
            atomic_write(path, text)

        monkeypatch.setattr(filesystem, "_read_lines", recording_read_lines)
        monkeypatch.setattr(filesystem, "_atomic_write", recording_atomic_write)

        repo_id = registered_repo.repo_id
        await repo_store.save_status(IngestionStatus(repo_id=repo_id, stage=IngestionStage.CLONING))
        await repo_store.get_embeddings(repo_id, "model-c", ["h1"])
        await repo_store.latest_manifest(repo_id)

        assert len(io_threads) == 3
        assert loop_thread not in io_threads

    @pytest.mark.asyncio
    async def test_wiki_history_is_append_only(self, repo_store, registered_repo):
        repo_id = registered_repo.repo_id
        await repo_store.append_wiki_artifact(repo_id, WikiArtifact(version=1, summary="s1", long_summary="l1"))
        await repo_store.append_wiki_artifact(repo_id, WikiArtifact(version=2, summary="s2", long_summary="l2"))

        with pytest.raises(ValueError):
            await repo_store.append_wiki_artifact(repo_id, WikiArtifact(version=2, summary="x", long_summary="x"))

        history = await repo_store.wiki_history(repo_id)
        assert [(a.version, a.summary) for a in history] == [(1, "s1"), (2, "s2")]

    @pytest.mark.asyncio
    async def test_wiki_record_round_trip(self, repo_store, registered_repo):
        record = WikiRecord(
            repo_id=registered_repo.repo_id,
            state=WikiState.FAILED,
            attempts=4,
            last_error="model unavailable",
        )
        await repo_store.save_wiki_record(record)

        assert await repo_store.get_wiki_record(registered_repo.repo_id) == record
        assert await repo_store.list_wiki_records() == [record]
