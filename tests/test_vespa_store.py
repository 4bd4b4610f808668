"""Tests for the Vespa document store against a mocked HTTP transport."""

import json
from typing import Callable, List

import httpx
import pytest

from codewiki.errors import TransientStoreError
from codewiki.models import SearchMode
from codewiki.storage.vespa import VespaDocumentStore, build_ssl_context, escape_yql_string

from .test_feeder import make_doc


def make_store(handler: Callable[[httpx.Request], httpx.Response], requests: List[httpx.Request] = None) -> VespaDocumentStore:
    def record(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return VespaDocumentStore(
        endpoint="http://vespa:8080",
        document_endpoint="http://vespa-feed:8080/",
        namespace="codesearch",
        document_type="codesearch",
        client=client,
    )


# =============================================================================
# Feeding
# =============================================================================


class TestVespaFeed:
    """Document API writes."""

    def test_document_url_encodes_id(self):
        store = make_store(lambda r: httpx.Response(200, json={}))
        assert store.document_url("repo 1-c/1") == (
            "http://vespa-feed:8080/document/v1/codesearch/codesearch/docid/repo%201-c%2F1"
        )

    @pytest.mark.asyncio
    async def test_upsert_posts_fields(self):
        requests = []
        store = make_store(lambda r: httpx.Response(200, json={"id": "ok"}), requests)

        result = await store.upsert([make_doc("c1")])

        assert result.accepted == 1
        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/document/v1/codesearch/codesearch/docid/repo-1-c1"
        fields = json.loads(request.content)["fields"]
        assert fields["repo_id"] == "repo-1"
        assert fields["chunk_id"] == "c1"
        assert fields["last_indexed_at"] == 1000
        assert len(fields["embedding"]["values"]) == 8

    @pytest.mark.asyncio
    async def test_bad_request_is_a_per_document_rejection(self):
        def handler(request):
            if request.url.path.endswith("bad"):
                return httpx.Response(400, json={"message": "Field 'embedding' has wrong dimension"})
            return httpx.Response(200, json={})

        store = make_store(handler)
        result = await store.upsert([make_doc("good"), make_doc("bad")])

        assert result.accepted == 1
        assert len(result.rejected) == 1
        doc, reason = result.rejected[0]
        assert doc.chunk_id == "bad"
        assert "wrong dimension" in reason

    @pytest.mark.asyncio
    async def test_overload_is_transient(self):
        store = make_store(lambda r: httpx.Response(503, text="overloaded"))
        with pytest.raises(TransientStoreError):
            await store.upsert([make_doc("c1")])

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(handler)
        with pytest.raises(TransientStoreError):
            await store.upsert([make_doc("c1")])

    @pytest.mark.asyncio
    async def test_delete_stale_follows_continuation(self):
        requests = []
        responses = [
            httpx.Response(200, json={"documentCount": 3, "continuation": "token-1"}),
            httpx.Response(200, json={"documentCount": 2}),
        ]
        store = make_store(lambda r: responses.pop(0), requests)

        deleted = await store.delete_stale("repo-1", 5000)

        assert deleted == 5
        assert [r.method for r in requests] == ["DELETE", "DELETE"]
        selection = requests[0].url.params["selection"]
        assert 'codesearch.repo_id=="repo-1"' in selection
        assert "codesearch.last_indexed_at < 5000" in selection
        assert requests[0].url.params["cluster"] == "codesearch"
        assert requests[1].url.params["continuation"] == "token-1"


# =============================================================================
# Querying
# =============================================================================


class TestVespaSearch:
    """Search API queries."""

    def test_build_yql(self):
        store = make_store(lambda r: httpx.Response(200, json={}))
        hybrid = store.build_yql(SearchMode.HYBRID, ["r1", "r2"], 40, has_vector=True)
        assert "nearestNeighbor(embedding, q)" in hybrid
        assert "userQuery()" in hybrid
        assert 'repo_id in ("r1", "r2")' in hybrid

        keyword = store.build_yql(SearchMode.KEYWORD, None, 40, has_vector=False)
        assert keyword == "select * from sources codesearch where userQuery()"

        semantic = store.build_yql(SearchMode.SEMANTIC, None, 10, has_vector=True)
        assert "targetHits:10" in semantic
        assert "userQuery()" not in semantic

    def test_escape_yql_string(self):
        assert escape_yql_string('a"b\\c') == 'a\\"b\\\\c'

    @pytest.mark.asyncio
    async def test_search_parses_hits_and_match_features(self):
        requests = []
        body = {
            "root": {
                "children": [
                    {
                        "relevance": 0.9,
                        "fields": {
                            "repo_id": "repo-1",
                            "chunk_id": "c1",
                            "file_path": "src/config.py",
                            "line_start": 5,
                            "line_end": 9,
                            "content": "def parse_config(): ...",
                            "language": "python",
                            "symbol_names": ["parse_config"],
                            "matchfeatures": {
                                "closeness(field,embedding)": 0.8,
                                "nativeRank(content)": 0.25,
                            },
                        },
                    },
                    {"relevance": 0.1},
                ]
            }
        }
        store = make_store(lambda r: httpx.Response(200, json=body), requests)

        hits = await store.search("parse config", [0.1] * 8, ["repo-1"], SearchMode.HYBRID, 10)

        assert len(hits) == 1
        hit = hits[0]
        assert (hit.file_path, hit.line_start, hit.line_end) == ("src/config.py", 5, 9)
        assert hit.semantic_score == pytest.approx(0.8)
        assert hit.lexical_score == pytest.approx(0.25)
        sent = json.loads(requests[0].content)
        assert requests[0].url.path == "/search/"
        assert sent["ranking.profile"] == "hybrid"
        assert sent["input.query(q)"] == [0.1] * 8
        assert sent["query"] == "parse config"

    @pytest.mark.asyncio
    async def test_empty_scope_skips_request(self):
        requests = []
        store = make_store(lambda r: httpx.Response(200, json={}), requests)
        assert await store.search("q", None, [], SearchMode.KEYWORD, 10) == []
        assert requests == []

    @pytest.mark.asyncio
    async def test_search_error_is_transient(self):
        store = make_store(lambda r: httpx.Response(500, json={"root": {"errors": [{"message": "boom"}]}}))
        with pytest.raises(TransientStoreError) as exc_info:
            await store.search("q", None, None, SearchMode.KEYWORD, 10)
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_count(self):
        store = make_store(lambda r: httpx.Response(200, json={"root": {"fields": {"totalCount": 42}}}))
        assert await store.count("repo-1") == 42


class TestSslContext:
    """mTLS configuration."""

    def test_no_certificates(self):
        assert build_ssl_context(None, None, None) is None

    def test_cert_without_key_is_rejected(self):
        with pytest.raises(ValueError):
            build_ssl_context(None, "/certs/client.pem", None)
