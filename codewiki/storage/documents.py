"""
Index documents and the document store interface.

A document store holds one document per ``(repo_id, chunk_id)`` and answers
vector, lexical and hybrid candidate queries. Scores returned in a
``SearchHit`` are normalized to [0, 1] per channel; blending and final ordering
are the query engine's job.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from codewiki.models import SearchMode


@dataclass
class IndexDocument:
    """A chunk with its embedding and repository provenance, as fed to the index."""

    repo_id: str
    repo_url: str
    repo_owner: str
    repo_name: str
    commit_sha: str
    branch: str
    chunk_id: str
    file_path: str
    language: str
    line_start: int
    line_end: int
    content: str
    chunk_hash: str
    content_sha: str
    embedding: List[float]
    last_indexed_at: int
    symbol_names: List[str] = field(default_factory=list)

    @property
    def doc_id(self) -> str:
        return f"{self.repo_id}-{self.chunk_id}"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.repo_id, self.chunk_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def serialized_size(self) -> int:
        """Size of the JSON payload, used to bound feed batches."""
        return len(json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8"))

    def validate(self, dimension: Optional[int] = None) -> Optional[str]:
        """Return the reason this document violates the index schema, or None."""
        if not self.repo_id or not self.chunk_id:
            return "missing repo_id or chunk_id"
        if not self.file_path:
            return "missing file_path"
        if self.line_start < 1 or self.line_end < self.line_start:
            return f"invalid line range {self.line_start}-{self.line_end}"
        if not self.content.strip():
            return "empty content"
        if not self.embedding:
            return "missing embedding"
        if dimension is not None and len(self.embedding) != dimension:
            return f"embedding has {len(self.embedding)} dimensions, expected {dimension}"
        if not all(math.isfinite(v) for v in self.embedding):
            return "embedding contains non-finite values"
        return None


@dataclass
class UpsertResult:
    """Outcome of one upsert batch. Rejected documents carry the reason."""

    accepted: int = 0
    rejected: List[Tuple[IndexDocument, str]] = field(default_factory=list)


@dataclass
class SearchHit:
    """A candidate returned by the document store."""

    repo_id: str
    chunk_id: str
    file_path: str
    line_start: int
    line_end: int
    content: str
    language: Optional[str] = None
    symbol_names: List[str] = field(default_factory=list)
    semantic_score: Optional[float] = None
    lexical_score: Optional[float] = None


class DocumentStore(ABC):
    """Storage and retrieval of index documents."""

    @abstractmethod
    async def upsert(self, documents: Sequence[IndexDocument]) -> UpsertResult:
        """
        Insert or replace documents by ``(repo_id, chunk_id)``.

        Raises:
            TransientStoreError: if the store is unavailable; the whole batch
                may be replayed.
        """

    @abstractmethod
    async def delete_stale(self, repo_id: str, indexed_at: int) -> int:
        """Delete the repository's documents with ``last_indexed_at < indexed_at``."""

    @abstractmethod
    async def search(
        self,
        query_text: str,
        query_vector: Optional[List[float]],
        repo_ids: Optional[List[str]],
        mode: SearchMode,
        limit: int,
    ) -> List[SearchHit]:
        """
        Return candidates for a query.

        Args:
            query_text: Raw query, used for lexical matching
            query_vector: Query embedding (None for keyword-only search)
            repo_ids: Restrict to these repositories (None = all)
            mode: Which channels to score
            limit: Candidates per channel
        """

    async def count(self, repo_id: Optional[str] = None) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        """Release resources."""
