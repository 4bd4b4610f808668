"""
In-process document store.

Vectors are scored with numpy cosine similarity and text with BM25 (rank_bm25)
over the repositories in scope. Suitable for single-process deployments and
tests; the Vespa store is the production index.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from rank_bm25 import BM25Plus

from codewiki.models import SearchMode
from .documents import DocumentStore, IndexDocument, SearchHit, UpsertResult

logger = logging.getLogger(__name__)


_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def tokenize(text: str) -> List[str]:
    """Lowercased identifier tokens; snake_case and camelCase parts are added too."""
    tokens: List[str] = []
    for raw in _TOKEN_RE.findall(text or ""):
        lowered = raw.lower()
        tokens.append(lowered)
        parts = [p for p in re.split(r"_+", _CAMEL_RE.sub("_", raw)) if p]
        if len(parts) > 1:
            tokens.extend(p.lower() for p in parts)
    return tokens


class InMemoryDocumentStore(DocumentStore):
    """
    Document store kept in a dict keyed by ``(repo_id, chunk_id)``.

    The embedding dimension is fixed by the first accepted document (or the
    constructor); later documents with another dimension are rejected.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._docs: Dict[Tuple[str, str], IndexDocument] = {}
        self._tokens: Dict[Tuple[str, str], List[str]] = {}

    async def upsert(self, documents: Sequence[IndexDocument]) -> UpsertResult:
        result = UpsertResult()
        for doc in documents:
            reason = doc.validate(self.dimension)
            if reason:
                result.rejected.append((doc, reason))
                continue
            if self.dimension is None:
                self.dimension = len(doc.embedding)
            self._docs[doc.key] = doc
            self._tokens[doc.key] = tokenize(f"{doc.file_path} {' '.join(doc.symbol_names)} {doc.content}")
            result.accepted += 1
        return result

    async def delete_stale(self, repo_id: str, indexed_at: int) -> int:
        stale = [
            key for key, doc in self._docs.items()
            if doc.repo_id == repo_id and doc.last_indexed_at < indexed_at
        ]
        for key in stale:
            del self._docs[key]
            del self._tokens[key]
        if stale:
            logger.info(f"Pruned {len(stale)} stale documents for {repo_id}")
        return len(stale)

    async def count(self, repo_id: Optional[str] = None) -> int:
        if repo_id is None:
            return len(self._docs)
        return sum(1 for doc in self._docs.values() if doc.repo_id == repo_id)

    def get(self, repo_id: str, chunk_id: str) -> Optional[IndexDocument]:
        return self._docs.get((repo_id, chunk_id))

    async def search(
        self,
        query_text: str,
        query_vector: Optional[List[float]],
        repo_ids: Optional[List[str]],
        mode: SearchMode,
        limit: int,
    ) -> List[SearchHit]:
        keys = [
            key for key, doc in self._docs.items()
            if repo_ids is None or doc.repo_id in repo_ids
        ]
        if not keys or limit <= 0:
            return []
        keys.sort()

        semantic: Dict[Tuple[str, str], float] = {}
        lexical: Dict[Tuple[str, str], float] = {}

        if mode in (SearchMode.HYBRID, SearchMode.SEMANTIC) and query_vector is not None:
            semantic = self._semantic_scores(keys, query_vector)
        if mode in (SearchMode.HYBRID, SearchMode.KEYWORD):
            lexical = self._lexical_scores(keys, query_text)

        selected = set(self._top(semantic, limit)) | set(self._top(lexical, limit))
        hits = []
        for key in selected:
            doc = self._docs[key]
            hits.append(
                SearchHit(
                    repo_id=doc.repo_id,
                    chunk_id=doc.chunk_id,
                    file_path=doc.file_path,
                    line_start=doc.line_start,
                    line_end=doc.line_end,
                    content=doc.content,
                    language=doc.language,
                    symbol_names=list(doc.symbol_names),
                    semantic_score=semantic.get(key),
                    lexical_score=lexical.get(key),
                )
            )
        return hits

    def _semantic_scores(self, keys: List[Tuple[str, str]], query_vector: List[float]) -> Dict[Tuple[str, str], float]:
        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.asarray([self._docs[k].embedding for k in keys], dtype=np.float32)
        if matrix.shape[1] != query.shape[0]:
            logger.warning(
                f"Query vector has {query.shape[0]} dimensions, index has {matrix.shape[1]}; skipping vector scoring"
            )
            return {}
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        cosine = matrix @ query / norms
        # Map [-1, 1] to [0, 1]
        scores = (cosine + 1.0) / 2.0
        return {key: float(score) for key, score in zip(keys, scores)}

    def _lexical_scores(self, keys: List[Tuple[str, str]], query_text: str) -> Dict[Tuple[str, str], float]:
        query_tokens = tokenize(query_text)
        if not query_tokens:
            return {}
        corpus = [self._tokens[k] for k in keys]
        if not any(corpus):
            return {}

        bm25 = BM25Plus(corpus)
        raw = bm25.get_scores(query_tokens)
        wanted = set(query_tokens)
        # BM25Plus gives every document a floor score; only token matches count
        matched = [(key, float(score)) for key, score, tokens in zip(keys, raw, corpus) if wanted.intersection(tokens)]
        if not matched:
            return {}
        best = max(score for _, score in matched)
        if best <= 0:
            return {key: 0.0 for key, _ in matched}
        return {key: score / best for key, score in matched}

    def _top(self, scores: Dict[Tuple[str, str], float], limit: int) -> List[Tuple[str, str]]:
        """Best ``limit`` keys; ties go to the earliest ``(file_path, line_start)``."""
        def rank(item):
            key, score = item
            doc = self._docs[key]
            return (-score, doc.file_path, doc.line_start, key)

        return [key for key, _ in sorted(scores.items(), key=rank)[:limit]]
