"""
Query engine over the document store.

Supports three modes:
- hybrid: vector similarity blended with lexical relevance
- semantic: vector similarity only
- keyword: lexical relevance only (non-matching documents are dropped)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from codewiki.models import SearchMode
from codewiki.storage.base import RepoStore
from codewiki.storage.documents import DocumentStore, SearchHit
from .embeddings import EmbeddingService
from .wiki import WikiOrchestrator

logger = logging.getLogger(__name__)

SNIPPET_MAX_CHARS = 400
CANDIDATE_MULTIPLIER = 4


@dataclass
class SearchResult:
    """A ranked code snippet with provenance."""
    repo_id: str
    file_path: str
    line_start: int
    line_end: int
    snippet: str
    score: float
    language: Optional[str] = None
    symbol_names: List[str] = field(default_factory=list)


def build_snippet(content: str) -> str:
    trimmed = content.strip()
    if len(trimmed) <= SNIPPET_MAX_CHARS:
        return trimmed
    return trimmed[:SNIPPET_MAX_CHARS] + "..."


def combine_scores(hit: SearchHit, mode: SearchMode, lexical_weight: float) -> Optional[float]:
    """Final score of a candidate, or None when the mode excludes it."""
    semantic = hit.semantic_score
    lexical = hit.lexical_score
    if mode == SearchMode.KEYWORD:
        return lexical if lexical is not None and lexical > 0 else None
    if mode == SearchMode.SEMANTIC:
        return semantic
    if semantic is None and lexical is None:
        return None
    return (1.0 - lexical_weight) * (semantic or 0.0) + lexical_weight * (lexical or 0.0)


class QueryEngine:
    """
    Answers search queries against indexed repositories.

    Usage:
        engine = QueryEngine(document_store, embeddings, repo_store, wiki)
        results = await engine.search("where is the retry policy", mode="fast")
    """

    def __init__(
        self,
        documents: DocumentStore,
        embeddings: EmbeddingService,
        repo_store: RepoStore,
        wiki: Optional[WikiOrchestrator] = None,
        default_top_k: int = 10,
        max_top_k: int = 50,
        lexical_weight: float = 0.3,
        require_wiki_ready: bool = True,
    ):
        self.documents = documents
        self.embeddings = embeddings
        self.repo_store = repo_store
        self.wiki = wiki
        self.default_top_k = default_top_k
        self.max_top_k = max_top_k
        self.lexical_weight = min(1.0, max(0.0, lexical_weight))
        self.require_wiki_ready = require_wiki_ready

    async def enabled_repo_ids(self, candidates: Optional[List[str]] = None) -> List[str]:
        """
        Repositories whose query path is enabled.

        A repository is enabled once it has a published manifest and, when
        ``require_wiki_ready`` is set, its wiki is ready for that manifest's
        commit.
        """
        if candidates is None:
            candidates = [repo.repo_id for repo in await self.repo_store.list_repos()]

        enabled = []
        for repo_id in candidates:
            manifest = await self.repo_store.latest_manifest(repo_id)
            if manifest is None:
                continue
            if self.require_wiki_ready and self.wiki is not None:
                if not await self.wiki.is_ready_for(repo_id, manifest.commit_sha):
                    continue
            enabled.append(repo_id)
        return enabled

    async def search(
        self,
        query: str,
        repo_filter: Optional[str] = None,
        mode: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> List[SearchResult]:
        """
        Search indexed code.

        Args:
            query: Natural-language or keyword query
            repo_filter: Restrict to one repository id (blank = all)
            mode: "hybrid"/"fast", "semantic"/"deep" or "keyword"
            top_k: Number of results (defaults and clamps to configured bounds)

        Raises:
            ValueError: for an unknown mode
            EmbeddingProviderError: if the query cannot be embedded
            TransientStoreError: if the document store is unavailable
        """
        query = (query or "").strip()
        if not query:
            return []

        search_mode = SearchMode.parse(mode)
        limit = min(top_k or self.default_top_k, self.max_top_k)
        if limit <= 0:
            return []

        repo_filter = (repo_filter or "").strip() or None
        if repo_filter is not None:
            if await self.repo_store.get_repo(repo_filter) is None:
                return []
            repo_ids = await self.enabled_repo_ids([repo_filter])
        else:
            repo_ids = await self.enabled_repo_ids()
        if not repo_ids:
            return []

        query_vector = None
        if search_mode != SearchMode.KEYWORD:
            query_vector = await self.embeddings.embed_query(query)

        hits = await self.documents.search(
            query_text=query,
            query_vector=query_vector,
            repo_ids=repo_ids,
            mode=search_mode,
            limit=limit * CANDIDATE_MULTIPLIER,
        )

        results = []
        for hit in hits:
            score = combine_scores(hit, search_mode, self.lexical_weight)
            if score is None:
                continue
            results.append(
                SearchResult(
                    repo_id=hit.repo_id,
                    file_path=hit.file_path,
                    line_start=hit.line_start,
                    line_end=hit.line_end,
                    snippet=build_snippet(hit.content),
                    score=round(score, 6),
                    language=hit.language,
                    symbol_names=list(hit.symbol_names),
                )
            )

        results.sort(key=lambda r: (-r.score, r.file_path, r.line_start))
        logger.info(f"Search '{query[:80]}' ({search_mode.value}) -> {min(len(results), limit)} results")
        return results[:limit]
