"""
Ingestion Coordinator - runs the ingestion pipeline for repositories.

For one repository at a time (per-repository lock) it drives:
1. Cloning: clone or update the working copy and resolve the commit
2. Chunking: extract chunks and persist their metadata for the commit
3. Embedding: embed uncached chunk contents
4. Wiki: generate the wiki summary (failure is recorded, not fatal)
5. Indexing: feed documents, prune stale ones, publish the manifest

Every stage change is persisted and published to subscribers in order. A
failed job leaves the previously published manifest current.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from codewiki.ai.embeddings import EmbeddingService
from codewiki.ai.wiki import WikiOrchestrator, build_wiki_context
from codewiki.errors import (
    ConcurrencyConflictError,
    IndexFeedError,
    InvalidTransitionError,
    NotIndexedError,
    RepoNotFoundError,
)
from codewiki.jobs.events import StatusBroadcaster
from codewiki.jobs.locks import RepoLockTable
from codewiki.models import IngestionStage, WikiState, can_transition
from codewiki.storage.base import (
    IngestionStatus,
    Manifest,
    RepoStore,
    Repository,
    WikiRecord,
    utcnow,
)
from codewiki.storage.documents import IndexDocument
from .extractor import Chunk, ChunkExtractor
from .feeder import IndexFeeder
from .git import CloneSource
from .repo_url import parse_repo_url

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
INTERRUPTED_MESSAGE = "Ingestion interrupted by a restart; request indexing again"
CANCELLED_MESSAGE = "Ingestion cancelled"

STAGE_MESSAGES = {
    IngestionStage.CLONING: "Cloning repository",
    IngestionStage.CHUNKING: "Extracting code chunks",
    IngestionStage.EMBEDDING: "Generating embeddings",
    IngestionStage.WIKI_PENDING: "Generating wiki summary",
    IngestionStage.INDEXING: "Feeding documents to the index",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class IngestionCoordinator:
    """
    Owns repository registration, ingestion jobs and their status machine.

    Usage:
        coordinator = IngestionCoordinator(
            repo_store, cloner, embeddings, wiki, feeder, repos_dir=Path("data/repos"),
        )
        repo = await coordinator.register("https://github.com/acme/widget")
        await coordinator.start_ingestion(repo.repo_id)
        async for status in coordinator.subscribe(repo.repo_id):
            print(status.stage, status.progress)
    """

    def __init__(
        self,
        repo_store: RepoStore,
        cloner: CloneSource,
        embeddings: EmbeddingService,
        wiki: WikiOrchestrator,
        feeder: IndexFeeder,
        repos_dir: Path,
        extractor_factory: Callable[[], ChunkExtractor] = ChunkExtractor,
        reingest_policy: str = "reject",
        locks: Optional[RepoLockTable] = None,
        events: Optional[StatusBroadcaster] = None,
    ):
        if reingest_policy not in ("reject", "queue", "preempt"):
            raise ValueError(f"Unknown re-ingestion policy: {reingest_policy}")
        self.repo_store = repo_store
        self.cloner = cloner
        self.embeddings = embeddings
        self.wiki = wiki
        self.feeder = feeder
        self.repos_dir = Path(repos_dir)
        self.extractor_factory = extractor_factory
        self.reingest_policy = reingest_policy
        self.locks = locks or RepoLockTable()
        self.events = events or StatusBroadcaster()
        self._preempting: Set[str] = set()
        self._queued: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    async def register(self, repo_url: str) -> Repository:
        """
        Validate and register a repository. Idempotent per owner/name.

        Raises:
            ValidationError: for unsupported or malformed URLs.
        """
        ref = parse_repo_url(repo_url)
        repo = await self.repo_store.add_repo(
            Repository(
                repo_id=ref.repo_id,
                owner=ref.owner,
                name=ref.name,
                repo_url=repo_url.strip(),
                canonical_url=ref.canonical_url,
            )
        )
        if await self.repo_store.get_status(repo.repo_id) is None:
            await self.repo_store.save_status(IngestionStatus(repo_id=repo.repo_id, message="Registered"))
            logger.info(f"Registered {repo.full_name} as {repo.repo_id}")
        return repo

    async def get_repo(self, repo_id: str) -> Repository:
        repo = await self.repo_store.get_repo(repo_id)
        if repo is None:
            raise RepoNotFoundError(repo_id)
        return repo

    async def list_repos(self) -> List[Repository]:
        return await self.repo_store.list_repos()

    async def get_manifest(self, repo_id: str) -> Optional[Manifest]:
        await self.get_repo(repo_id)
        return await self.repo_store.latest_manifest(repo_id)

    def working_dir(self, repo: Repository) -> Path:
        return self.repos_dir / repo.owner / repo.name

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self, repo_id: str) -> IngestionStatus:
        await self.get_repo(repo_id)
        status = await self.repo_store.get_status(repo_id)
        return status or IngestionStatus(repo_id=repo_id)

    async def subscribe(self, repo_id: str) -> AsyncIterator[IngestionStatus]:
        """Current status followed by every update until the job ends."""
        await self.get_repo(repo_id)
        subscription = self.events.subscribe(repo_id, initial_loader=lambda: self.get_status(repo_id))
        async for status in subscription:
            yield status

    def is_active(self, repo_id: str) -> bool:
        return self.locks.is_locked(repo_id) or repo_id in self._queued

    async def _set_status(
        self,
        repo_id: str,
        stage: IngestionStage,
        message: Optional[str] = None,
        error: Optional[str] = None,
        progress: Optional[float] = None,
        generation: Optional[int] = None,
        restart: bool = False,
    ) -> IngestionStatus:
        current = await self.repo_store.get_status(repo_id) or IngestionStatus(repo_id=repo_id)
        if not restart and not can_transition(current.stage, stage):
            raise InvalidTransitionError(
                f"Invalid status transition for {repo_id}: {current.stage.value} -> {stage.value}"
            )
        status = IngestionStatus(
            repo_id=repo_id,
            stage=stage,
            message=message if message is not None else STAGE_MESSAGES.get(stage),
            error=error,
            progress=progress,
            generation=generation if generation is not None else current.generation,
        )
        await self.repo_store.save_status(status)
        self.events.publish(status)
        logger.info(f"[{repo_id}] {current.stage.value} -> {stage.value}: {status.message}")
        return status

    async def _update_progress(self, repo_id: str, progress: float, message: Optional[str] = None) -> None:
        current = await self.repo_store.get_status(repo_id)
        if current is None or current.stage.is_terminal:
            return
        current.progress = progress
        if message is not None:
            current.message = message
        current.updated_at = utcnow()
        await self.repo_store.save_status(current)
        self.events.publish(current)

    async def _fail(self, repo_id: str, message: str) -> None:
        current = await self.repo_store.get_status(repo_id)
        if current is not None and current.stage.is_terminal:
            return
        await self._set_status(repo_id, IngestionStage.ERROR, message=message, error=message)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def start_ingestion(self, repo_id: str) -> IngestionStatus:
        """
        Start (or, per policy, queue or preempt) an ingestion job.

        Raises:
            RepoNotFoundError: for unknown repositories
            ConcurrencyConflictError: if a job is active and the policy rejects
                the request (or a request is already queued)
        """
        repo = await self.get_repo(repo_id)

        if self.reingest_policy == "reject" or not self.locks.is_locked(repo_id):
            if repo_id in self._queued:
                raise ConcurrencyConflictError(repo_id, f"A request is already queued for repository {repo_id}")
            await self.locks.try_acquire(repo_id)
            return await self._begin_job(repo)

        if self.reingest_policy == "queue":
            if repo_id in self._queued:
                raise ConcurrencyConflictError(repo_id, f"A request is already queued for repository {repo_id}")
            self._queued[repo_id] = asyncio.create_task(self._start_when_free(repo))
            current = await self.get_status(repo_id)
            logger.info(f"[{repo_id}] Ingestion queued behind the active job")
            return current

        # preempt
        if repo_id in self._preempting or repo_id in self._queued:
            raise ConcurrencyConflictError(repo_id, f"Repository {repo_id} is already being restarted")
        task = self.locks.active_task(repo_id)
        if task is not None and not task.done():
            logger.info(f"[{repo_id}] Preempting the active job")
            self._preempting.add(repo_id)
            task.cancel()
        try:
            await self.locks.acquire_queued(repo_id)
        except BaseException:
            self._preempting.discard(repo_id)
            raise
        restart = repo_id in self._preempting
        self._preempting.discard(repo_id)
        return await self._begin_job(repo, restart=restart)

    async def _start_when_free(self, repo: Repository) -> None:
        try:
            await self.locks.acquire_queued(repo.repo_id)
        finally:
            self._queued.pop(repo.repo_id, None)
        try:
            await self._begin_job(repo)
        except Exception:
            logger.exception(f"[{repo.repo_id}] Queued ingestion could not start")

    async def _begin_job(self, repo: Repository, restart: bool = False) -> IngestionStatus:
        """Start a job; the caller holds the repository lock."""
        try:
            current = await self.repo_store.get_status(repo.repo_id) or IngestionStatus(repo_id=repo.repo_id)
            generation = current.generation + 1
            status = await self._set_status(
                repo.repo_id,
                IngestionStage.CLONING,
                generation=generation,
                restart=restart,
            )
            task = asyncio.create_task(self._run_job(repo, generation))
        except BaseException:
            self.locks.release(repo.repo_id)
            raise
        self.locks.set_task(repo.repo_id, task)
        # Released from a callback so a job cancelled before its first step still frees the lock
        task.add_done_callback(lambda t: self.locks.release(repo.repo_id, t))
        return status

    async def wait_for_job(self, repo_id: str) -> IngestionStatus:
        """Wait for the active (and any queued) job, then return the final status."""
        while True:
            queued = self._queued.get(repo_id)
            if queued is not None:
                await asyncio.gather(queued, return_exceptions=True)
                continue
            task = self.locks.active_task(repo_id)
            if task is None or task.done():
                break
            await asyncio.gather(task, return_exceptions=True)
        return await self.get_status(repo_id)

    async def _run_job(self, repo: Repository, generation: int) -> None:
        repo_id = repo.repo_id
        try:
            await self._execute(repo, generation)
        except asyncio.CancelledError:
            if repo_id in self._preempting:
                logger.info(f"[{repo_id}] Job preempted")
            else:
                logger.warning(f"[{repo_id}] Job cancelled")
                await self._record_failure(repo_id, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.exception(f"[{repo_id}] Ingestion failed")
            await self._record_failure(repo_id, str(e) or e.__class__.__name__)

    async def _record_failure(self, repo_id: str, message: str) -> None:
        """Write the error status; a store failure here is logged and left to ``reconcile()``."""
        try:
            await self._fail(repo_id, message)
        except Exception:
            logger.exception(f"[{repo_id}] Could not record job failure: {message}")

    async def _execute(self, repo: Repository, generation: int) -> None:
        repo_id = repo.repo_id
        previous = await self.repo_store.latest_manifest(repo_id)
        # Strictly increasing, so pruning never removes the current job's documents
        indexed_at = max(_now_ms(), (previous.indexed_at + 1) if previous else 0)

        # 1. Clone
        dest = self.working_dir(repo)
        clone = await self.cloner.clone(repo.canonical_url, dest)
        repo.commit_sha = clone.commit_sha
        repo.branch = clone.branch
        await self.repo_store.update_repo(repo)
        logger.info(f"[{repo_id}] Checked out {repo.full_name}@{clone.commit_sha[:12]} ({clone.branch})")

        # 2. Chunk
        await self._set_status(repo_id, IngestionStage.CHUNKING)
        extractor = self.extractor_factory()
        chunks: List[Chunk] = await asyncio.to_thread(lambda: list(extractor.extract(dest)))
        metadata = [chunk.metadata() for chunk in chunks]
        await self.repo_store.save_chunks(repo_id, clone.commit_sha, metadata)
        file_count = len({chunk.file_path for chunk in chunks})
        logger.info(
            f"[{repo_id}] {len(chunks)} chunks from {file_count} files "
            f"({len(extractor.errors)} files skipped with errors)"
        )

        # 3. Embed
        await self._set_status(
            repo_id,
            IngestionStage.EMBEDDING,
            message=f"Generating embeddings for {len(chunks)} chunks",
            progress=0.0,
        )

        async def on_progress(done: int, total: int) -> None:
            await self._update_progress(repo_id, done / total if total else 1.0)

        await self.embeddings.embed_chunks(repo_id, chunks, on_progress=on_progress)

        # 4. Wiki
        await self._set_status(repo_id, IngestionStage.WIKI_PENDING)
        context = build_wiki_context(repo_id, repo.full_name, clone.commit_sha, metadata, dest)
        record = await self.wiki.generate(context)
        if record.state != WikiState.READY:
            logger.warning(f"[{repo_id}] Wiki generation failed; continuing: {record.last_error}")

        # 5. Index
        await self._set_status(repo_id, IngestionStage.INDEXING, progress=0.0)
        vectors = await self.embeddings.vectors_for(repo_id, [c.content_hash for c in chunks])
        documents = []
        for chunk in chunks:
            vector = vectors.get(chunk.content_hash)
            if vector is None:
                raise IndexFeedError(f"No cached embedding for chunk {chunk.chunk_id} ({chunk.file_path})")
            documents.append(
                IndexDocument(
                    repo_id=repo_id,
                    repo_url=repo.canonical_url,
                    repo_owner=repo.owner,
                    repo_name=repo.name,
                    commit_sha=clone.commit_sha,
                    branch=clone.branch,
                    chunk_id=chunk.chunk_id,
                    file_path=chunk.file_path,
                    language=chunk.language,
                    line_start=chunk.line_start,
                    line_end=chunk.line_end,
                    content=chunk.content,
                    chunk_hash=chunk.content_hash,
                    content_sha=chunk.content_hash,
                    embedding=vector,
                    last_indexed_at=indexed_at,
                    symbol_names=list(chunk.symbol_names),
                )
            )
        stats = await self.feeder.feed(documents)
        await self.feeder.prune(repo_id, indexed_at)

        manifest = Manifest(
            repo_id=repo_id,
            commit_sha=clone.commit_sha,
            branch=clone.branch,
            schema_version=SCHEMA_VERSION,
            embedding_model=self.embeddings.model,
            embedding_dims=self.embeddings.dimension,
            chunk_count=stats.accepted,
            file_count=file_count,
            indexed_at=indexed_at,
        )
        await self.repo_store.append_manifest(manifest)

        await self._set_status(
            repo_id,
            IngestionStage.COMPLETE,
            message=f"Indexed {stats.accepted} chunks from {file_count} files at {clone.commit_sha[:12]}",
            progress=1.0,
        )

    # =========================================================================
    # Wiki
    # =========================================================================

    async def refresh_wiki(self, repo_id: str) -> WikiRecord:
        """
        Regenerate the wiki for the current manifest, under the repository lock.

        Raises:
            RepoNotFoundError: for unknown repositories
            ConcurrencyConflictError: if a job is active
            NotIndexedError: if no manifest has been published yet
        """
        repo = await self.get_repo(repo_id)
        if repo_id in self._queued:
            raise ConcurrencyConflictError(repo_id)
        await self.locks.try_acquire(repo_id)
        try:
            manifest = await self.repo_store.latest_manifest(repo_id)
            if manifest is None:
                raise NotIndexedError(repo_id)
            metadata = await self.repo_store.load_chunks(repo_id, manifest.commit_sha)
            dest = self.working_dir(repo)
            context = build_wiki_context(
                repo_id,
                repo.full_name,
                manifest.commit_sha,
                metadata,
                dest if dest.is_dir() else None,
            )
            return await self.wiki.update_summary(context)
        finally:
            self.locks.release(repo_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reconcile(self) -> int:
        """
        Repair state left behind by a previous process.

        In-progress statuses with no live job become ``error``; wikis stuck
        ``generating`` become ``failed``.
        """
        fixed = 0
        for status in await self.repo_store.list_statuses():
            if status.stage.in_progress and not self.locks.is_locked(status.repo_id):
                await self._set_status(
                    status.repo_id,
                    IngestionStage.ERROR,
                    message=INTERRUPTED_MESSAGE,
                    error=INTERRUPTED_MESSAGE,
                )
                fixed += 1
        if fixed:
            logger.warning(f"Marked {fixed} interrupted ingestion jobs as failed")
        await self.wiki.reconcile()
        return fixed

    async def shutdown(self) -> None:
        """Cancel queued and active jobs and wait for them to finish."""
        tasks = list(self._queued.values()) + self.locks.active_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Waiting for {len(tasks)} ingestion tasks to stop...")
            await asyncio.gather(*tasks, return_exceptions=True)
        self.events.close()
