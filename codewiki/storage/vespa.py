"""
Vespa document store.

Documents are written through the document API
(``/document/v1/{namespace}/{document_type}/docid/{repo_id}-{chunk_id}``) and
queried through the search API with YQL. The application package is expected
to define the ``semantic``, ``hybrid`` and ``keyword`` rank profiles exposing
``closeness(field,embedding)`` and ``nativeRank(content)`` as match-features.
"""

import asyncio
import logging
import ssl
import urllib.parse
from typing import Any, Dict, List, Optional, Sequence

import httpx

from codewiki.errors import TransientStoreError
from codewiki.models import SearchMode
from .documents import DocumentStore, IndexDocument, SearchHit, UpsertResult

logger = logging.getLogger(__name__)


CLOSENESS_FEATURE = "closeness(field,embedding)"
NATIVE_RANK_FEATURE = "nativeRank(content)"

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def escape_yql_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_ssl_context(
    ca_cert_path: Optional[str],
    client_cert_path: Optional[str],
    client_key_path: Optional[str],
) -> Optional[ssl.SSLContext]:
    """SSL context for mTLS, or None when no certificate is configured."""
    if not (ca_cert_path or client_cert_path or client_key_path):
        return None
    if bool(client_cert_path) != bool(client_key_path):
        raise ValueError("Both the Vespa client certificate and key must be set for mTLS")
    context = ssl.create_default_context(cafile=ca_cert_path)
    if client_cert_path:
        context.load_cert_chain(client_cert_path, client_key_path)
    return context


class VespaDocumentStore(DocumentStore):
    """
    Document store backed by a Vespa application.

    Usage:
        store = VespaDocumentStore(
            endpoint="https://search.example.com",
            namespace="codesearch",
            document_type="codesearch",
        )
        await store.upsert(documents)
        hits = await store.search("parse config", vector, None, SearchMode.HYBRID, 40)
    """

    def __init__(
        self,
        endpoint: str,
        document_endpoint: Optional[str] = None,
        namespace: str = "codesearch",
        document_type: str = "codesearch",
        cluster: str = "codesearch",
        feed_concurrency: int = 8,
        ca_cert_path: Optional[str] = None,
        client_cert_path: Optional[str] = None,
        client_key_path: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.document_endpoint = (document_endpoint or endpoint).rstrip("/")
        self.namespace = namespace
        self.document_type = document_type
        self.cluster = cluster
        self.feed_concurrency = max(1, feed_concurrency)

        if client is not None:
            self._client = client
        else:
            context = build_ssl_context(ca_cert_path, client_cert_path, client_key_path)
            self._client = httpx.AsyncClient(
                timeout=timeout,
                verify=context if context is not None else True,
            )

    async def close(self) -> None:
        await self._client.aclose()

    def document_url(self, doc_id: str) -> str:
        return (
            f"{self.document_endpoint}/document/v1/{self.namespace}/{self.document_type}"
            f"/docid/{urllib.parse.quote(doc_id, safe='')}"
        )

    @property
    def search_url(self) -> str:
        return f"{self.endpoint}/search/"

    # Feeding
    def to_fields(self, doc: IndexDocument) -> Dict[str, Any]:
        fields = doc.to_dict()
        fields["embedding"] = {"values": list(doc.embedding)}
        return fields

    async def upsert(self, documents: Sequence[IndexDocument]) -> UpsertResult:
        semaphore = asyncio.Semaphore(self.feed_concurrency)

        async def put(doc: IndexDocument) -> Optional[str]:
            async with semaphore:
                return await self._put_document(doc)

        outcomes = await asyncio.gather(*(put(doc) for doc in documents), return_exceptions=True)

        result = UpsertResult()
        transient: Optional[BaseException] = None
        for doc, outcome in zip(documents, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, TransientStoreError):
                    raise outcome
                transient = transient or outcome
            elif outcome is None:
                result.accepted += 1
            else:
                result.rejected.append((doc, outcome))
        if transient is not None:
            raise transient
        return result

    async def _put_document(self, doc: IndexDocument) -> Optional[str]:
        """Write one document. Returns the rejection reason, if any."""
        try:
            response = await self._client.post(
                self.document_url(doc.doc_id), json={"fields": self.to_fields(doc)}
            )
        except httpx.HTTPError as e:
            raise TransientStoreError(f"Vespa feed request failed: {e}")

        if response.status_code in _RETRYABLE_STATUS:
            raise TransientStoreError(f"Vespa feed returned {response.status_code}: {response.text[:500]}")
        if response.status_code >= 400:
            return _error_message(response)
        return None

    async def delete_stale(self, repo_id: str, indexed_at: int) -> int:
        selection = (
            f'{self.document_type}.repo_id=="{escape_yql_string(repo_id)}" '
            f"and {self.document_type}.last_indexed_at < {int(indexed_at)}"
        )
        url = f"{self.document_endpoint}/document/v1/{self.namespace}/{self.document_type}/docid/"
        params = {"selection": selection, "cluster": self.cluster}

        deleted = 0
        while True:
            try:
                response = await self._client.delete(url, params=params)
            except httpx.HTTPError as e:
                raise TransientStoreError(f"Vespa delete request failed: {e}")
            if response.status_code >= 400:
                raise TransientStoreError(f"Vespa delete returned {response.status_code}: {_error_message(response)}")

            body = response.json()
            deleted += int(body.get("documentCount", 0))
            continuation = body.get("continuation")
            if not continuation:
                break
            params = {**params, "continuation": continuation}

        logger.info(f"Pruned {deleted} stale Vespa documents for {repo_id}")
        return deleted

    # Querying
    def build_yql(self, mode: SearchMode, repo_ids: Optional[List[str]], limit: int, has_vector: bool) -> str:
        nearest = f"({{targetHits:{limit}}}nearestNeighbor(embedding, q))"
        if mode == SearchMode.KEYWORD or not has_vector:
            clause = "userQuery()"
        elif mode == SearchMode.SEMANTIC:
            clause = nearest
        else:
            clause = f"({nearest} or userQuery())"

        if repo_ids is not None:
            quoted = ", ".join(f'"{escape_yql_string(r)}"' for r in repo_ids)
            clause = f"{clause} and repo_id in ({quoted})"
        return f"select * from sources {self.document_type} where {clause}"

    async def search(
        self,
        query_text: str,
        query_vector: Optional[List[float]],
        repo_ids: Optional[List[str]],
        mode: SearchMode,
        limit: int,
    ) -> List[SearchHit]:
        if repo_ids is not None and not repo_ids:
            return []

        has_vector = query_vector is not None
        body: Dict[str, Any] = {
            "yql": self.build_yql(mode, repo_ids, limit, has_vector),
            "query": query_text,
            "hits": limit * (2 if mode == SearchMode.HYBRID else 1),
            "ranking.profile": mode.value if has_vector else SearchMode.KEYWORD.value,
        }
        if has_vector:
            body["input.query(q)"] = list(query_vector)

        try:
            response = await self._client.post(self.search_url, json=body)
        except httpx.HTTPError as e:
            raise TransientStoreError(f"Vespa search request failed: {e}")
        if response.status_code >= 400:
            raise TransientStoreError(f"Vespa search returned {response.status_code}: {_error_message(response)}")

        children = (response.json().get("root") or {}).get("children") or []
        hits = []
        for child in children:
            fields = child.get("fields")
            if not fields:
                continue
            features = fields.get("matchfeatures") or {}
            line_start = max(1, int(fields.get("line_start") or 1))
            line_end = max(line_start, int(fields.get("line_end") or line_start))
            hits.append(
                SearchHit(
                    repo_id=fields.get("repo_id", ""),
                    chunk_id=fields.get("chunk_id", ""),
                    file_path=fields.get("file_path", ""),
                    line_start=line_start,
                    line_end=line_end,
                    content=fields.get("content", ""),
                    language=fields.get("language"),
                    symbol_names=list(fields.get("symbol_names") or []),
                    semantic_score=_feature(features, CLOSENESS_FEATURE),
                    lexical_score=_feature(features, NATIVE_RANK_FEATURE),
                )
            )
        return hits

    async def count(self, repo_id: Optional[str] = None) -> int:
        clause = "true" if repo_id is None else f'repo_id contains "{escape_yql_string(repo_id)}"'
        body = {"yql": f"select * from sources {self.document_type} where {clause} limit 0"}
        try:
            response = await self._client.post(self.search_url, json=body)
        except httpx.HTTPError as e:
            raise TransientStoreError(f"Vespa search request failed: {e}")
        if response.status_code >= 400:
            raise TransientStoreError(f"Vespa search returned {response.status_code}: {_error_message(response)}")
        root = response.json().get("root") or {}
        return int((root.get("fields") or {}).get("totalCount", 0))


def _feature(features: Dict[str, Any], name: str) -> Optional[float]:
    value = features.get(name)
    return float(value) if value is not None else None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = (body.get("root") or {}).get("errors")
        if errors:
            return "; ".join(str(e.get("message", e)) for e in errors)
    return str(body)[:500]
