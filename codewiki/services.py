"""Construction and lifecycle of the service graph."""

import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

from codewiki.ai.client import AIClient
from codewiki.ai.embeddings import EmbeddingProvider, EmbeddingService
from codewiki.ai.search import QueryEngine
from codewiki.ai.wiki import LLMSummarizer, Summarizer, WikiOrchestrator
from codewiki.config import Settings, get_database_url
from codewiki.pipeline.coordinator import IngestionCoordinator
from codewiki.pipeline.extractor import ChunkExtractor
from codewiki.pipeline.feeder import IndexFeeder
from codewiki.pipeline.git import CloneSource, GitCloner
from codewiki.storage.base import RepoStore
from codewiki.storage.documents import DocumentStore
from codewiki.storage.filesystem import FilesystemRepoStore
from codewiki.storage.memory import InMemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, built once per process."""
    settings: Settings
    repo_store: RepoStore
    documents: DocumentStore
    embeddings: EmbeddingService
    wiki: WikiOrchestrator
    coordinator: IngestionCoordinator
    query_engine: QueryEngine
    ai_client: Optional[AIClient] = None

    async def start(self) -> None:
        """Initialize storage and repair state left by a previous process."""
        await self.repo_store.initialize()
        await self.coordinator.reconcile()
        logger.info("Services started")

    async def close(self) -> None:
        await self.coordinator.shutdown()
        await self.documents.close()
        if self.ai_client is not None:
            await self.ai_client.close()
        await self.repo_store.close()
        logger.info("Services stopped")


def build_repo_store(settings: Settings) -> RepoStore:
    if settings.storage_backend == "postgres":
        from codewiki.storage.postgres import PostgresRepoStore
        return PostgresRepoStore(get_database_url(settings))
    if settings.storage_backend != "filesystem":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    return FilesystemRepoStore(settings.data_dir)


def build_document_store(settings: Settings) -> DocumentStore:
    if settings.document_store == "vespa":
        from codewiki.storage.vespa import VespaDocumentStore
        return VespaDocumentStore(
            endpoint=settings.vespa_endpoint,
            document_endpoint=settings.get_vespa_document_endpoint(),
            namespace=settings.vespa_namespace,
            document_type=settings.vespa_document_type,
            cluster=settings.vespa_cluster,
            feed_concurrency=settings.vespa_feed_concurrency,
            ca_cert_path=settings.vespa_ca_cert_path,
            client_cert_path=settings.vespa_client_cert_path,
            client_key_path=settings.vespa_client_key_path,
        )
    if settings.document_store != "memory":
        raise ValueError(f"Unknown document store: {settings.document_store}")
    return InMemoryDocumentStore(dimension=settings.embedding_dims)


def build_services(
    settings: Settings,
    embedding_provider: Optional[EmbeddingProvider] = None,
    summarizer: Optional[Summarizer] = None,
    document_store: Optional[DocumentStore] = None,
    repo_store: Optional[RepoStore] = None,
    cloner: Optional[CloneSource] = None,
) -> Services:
    """
    Wire the service graph from settings.

    Any collaborator can be passed in to replace the configured one; the AI
    client is only created when an embedding provider or summarizer is missing.
    """
    ai_client = None
    if embedding_provider is None or summarizer is None:
        ai_client = AIClient.from_settings(settings)
    embedding_provider = embedding_provider or ai_client
    summarizer = summarizer or LLMSummarizer(ai_client, model=settings.summary_model)

    repo_store = repo_store or build_repo_store(settings)
    document_store = document_store or build_document_store(settings)

    embeddings = EmbeddingService(
        embedding_provider,
        repo_store,
        batch_size=settings.embedding_batch_size,
        concurrency=settings.embedding_concurrency,
        max_attempts=settings.embedding_max_attempts,
        backoff_base=settings.embedding_backoff_base,
        backoff_max=settings.embedding_backoff_max,
    )
    wiki = WikiOrchestrator(
        repo_store,
        summarizer,
        max_attempts=settings.wiki_max_attempts,
        backoff_base=settings.wiki_backoff_base,
        backoff_max=settings.wiki_backoff_max,
    )
    feeder = IndexFeeder(
        document_store,
        max_batch_bytes=settings.feed_max_batch_bytes,
        max_batch_docs=settings.feed_max_batch_docs,
        max_attempts=settings.feed_max_attempts,
        backoff_base=settings.feed_backoff_base,
        backoff_max=settings.feed_backoff_max,
    )
    coordinator = IngestionCoordinator(
        repo_store,
        cloner or GitCloner(timeout=settings.clone_timeout),
        embeddings,
        wiki,
        feeder,
        repos_dir=settings.repos_dir,
        extractor_factory=partial(
            ChunkExtractor,
            window_lines=settings.window_lines,
            overlap_lines=settings.overlap_lines,
            max_chunk_lines=settings.max_chunk_lines,
            max_file_bytes=settings.max_file_bytes,
        ),
        reingest_policy=settings.reingest_policy,
    )
    query_engine = QueryEngine(
        document_store,
        embeddings,
        repo_store,
        wiki,
        default_top_k=settings.search_top_k,
        max_top_k=settings.search_max_top_k,
        lexical_weight=settings.hybrid_lexical_weight,
        require_wiki_ready=settings.require_wiki_ready,
    )

    return Services(
        settings=settings,
        repo_store=repo_store,
        documents=document_store,
        embeddings=embeddings,
        wiki=wiki,
        coordinator=coordinator,
        query_engine=query_engine,
        ai_client=ai_client,
    )


def describe(services: Services) -> List[str]:
    """One line per configured backend, for the startup log."""
    settings = services.settings
    return [
        f"storage={settings.storage_backend}",
        f"documents={settings.document_store}",
        f"embeddings={services.embeddings.model} ({services.embeddings.dimension} dims)",
        f"reingest_policy={settings.reingest_policy}",
    ]
