import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from .base import (
    IngestionStatus,
    Manifest,
    RepoStore,
    Repository,
    WikiArtifact,
    WikiRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS codewiki_repositories (
    repo_id text PRIMARY KEY,
    data jsonb NOT NULL,
    created_at timestamptz NOT NULL DEFAULT NOW(),
    updated_at timestamptz NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS codewiki_status (
    repo_id text PRIMARY KEY,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS codewiki_manifests (
    id bigserial PRIMARY KEY,
    repo_id text NOT NULL,
    commit_sha text NOT NULL,
    data jsonb NOT NULL,
    published_at timestamptz NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS codewiki_manifests_repo_idx ON codewiki_manifests (repo_id, id);
CREATE TABLE IF NOT EXISTS codewiki_chunks (
    repo_id text NOT NULL,
    commit_sha text NOT NULL,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT NOW(),
    PRIMARY KEY (repo_id, commit_sha)
);
CREATE TABLE IF NOT EXISTS codewiki_embeddings (
    repo_id text NOT NULL,
    model text NOT NULL,
    content_hash text NOT NULL,
    vector jsonb NOT NULL,
    created_at timestamptz NOT NULL DEFAULT NOW(),
    PRIMARY KEY (repo_id, model, content_hash)
);
CREATE TABLE IF NOT EXISTS codewiki_wiki_state (
    repo_id text PRIMARY KEY,
    data jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS codewiki_wiki_history (
    repo_id text NOT NULL,
    version integer NOT NULL,
    data jsonb NOT NULL,
    created_at timestamptz NOT NULL DEFAULT NOW(),
    PRIMARY KEY (repo_id, version)
);
"""


def _load(value: Any) -> Any:
    # asyncpg returns jsonb as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresRepoStore(RepoStore):
    """Repository store backed by Postgres ``codewiki_*`` tables."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self._pool = pool

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self.dsn)
        return self._pool

    async def initialize(self) -> None:
        await self.init_schema()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def init_schema(self) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Postgres schema ready")

    # Registry
    async def get_repo(self, repo_id: str) -> Optional[Repository]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM codewiki_repositories WHERE repo_id = $1", repo_id
            )
        return Repository.from_dict(_load(row["data"])) if row else None

    async def list_repos(self) -> List[Repository]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM codewiki_repositories ORDER BY created_at")
        return [Repository.from_dict(_load(row["data"])) for row in rows]

    async def add_repo(self, repo: Repository) -> Repository:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO codewiki_repositories (repo_id, data, created_at, updated_at)
                VALUES ($1, $2::jsonb, $3, $3)
                ON CONFLICT (repo_id) DO NOTHING
                """,
                repo.repo_id,
                json.dumps(repo.to_dict()),
                repo.created_at,
            )
            row = await conn.fetchrow(
                "SELECT data FROM codewiki_repositories WHERE repo_id = $1", repo.repo_id
            )
        return Repository.from_dict(_load(row["data"]))

    async def update_repo(self, repo: Repository) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE codewiki_repositories
                SET data = $2::jsonb, updated_at = $3
                WHERE repo_id = $1
                """,
                repo.repo_id,
                json.dumps(repo.to_dict()),
                utcnow(),
            )

    # Status
    async def get_status(self, repo_id: str) -> Optional[IngestionStatus]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT data FROM codewiki_status WHERE repo_id = $1", repo_id)
        return IngestionStatus.from_dict(_load(row["data"])) if row else None

    async def save_status(self, status: IngestionStatus) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO codewiki_status (repo_id, data, updated_at)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (repo_id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
                """,
                status.repo_id,
                json.dumps(status.to_dict()),
                status.updated_at,
            )

    async def list_statuses(self) -> List[IngestionStatus]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM codewiki_status")
        return [IngestionStatus.from_dict(_load(row["data"])) for row in rows]

    # Manifests
    async def append_manifest(self, manifest: Manifest) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO codewiki_manifests (repo_id, commit_sha, data, published_at)
                VALUES ($1, $2, $3::jsonb, $4)
                """,
                manifest.repo_id,
                manifest.commit_sha,
                json.dumps(manifest.to_dict()),
                manifest.published_at,
            )

    async def latest_manifest(self, repo_id: str) -> Optional[Manifest]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT data FROM codewiki_manifests
                WHERE repo_id = $1
                ORDER BY id DESC
                LIMIT 1
                """,
                repo_id,
            )
        return Manifest.from_dict(_load(row["data"])) if row else None

    # Chunk metadata
    async def save_chunks(self, repo_id: str, commit_sha: str, chunks: Sequence[Dict[str, Any]]) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO codewiki_chunks (repo_id, commit_sha, data, updated_at)
                VALUES ($1, $2, $3::jsonb, $4)
                ON CONFLICT (repo_id, commit_sha)
                DO UPDATE SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
                """,
                repo_id,
                commit_sha,
                json.dumps(list(chunks)),
                utcnow(),
            )

    async def load_chunks(self, repo_id: str, commit_sha: str) -> List[Dict[str, Any]]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT data FROM codewiki_chunks WHERE repo_id = $1 AND commit_sha = $2",
                repo_id,
                commit_sha,
            )
        return _load(row["data"]) if row else []

    # Embedding cache
    async def get_embeddings(self, repo_id: str, model: str, hashes: Sequence[str]) -> Dict[str, List[float]]:
        if not hashes:
            return {}
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content_hash, vector FROM codewiki_embeddings
                WHERE repo_id = $1 AND model = $2 AND content_hash = ANY($3::text[])
                """,
                repo_id,
                model,
                list(hashes),
            )
        return {row["content_hash"]: _load(row["vector"]) for row in rows}

    async def put_embeddings(self, repo_id: str, model: str, vectors: Dict[str, List[float]]) -> None:
        if not vectors:
            return
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO codewiki_embeddings (repo_id, model, content_hash, vector)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (repo_id, model, content_hash) DO NOTHING
                """,
                [(repo_id, model, h, json.dumps(list(v))) for h, v in vectors.items()],
            )

    # Wiki
    async def get_wiki_record(self, repo_id: str) -> Optional[WikiRecord]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT data FROM codewiki_wiki_state WHERE repo_id = $1", repo_id)
        return WikiRecord.from_dict(_load(row["data"])) if row else None

    async def save_wiki_record(self, record: WikiRecord) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO codewiki_wiki_state (repo_id, data, updated_at)
                VALUES ($1, $2::jsonb, $3)
                ON CONFLICT (repo_id)
                DO UPDATE SET data = EXCLUDED.data, updated_at = EXCLUDED.updated_at
                """,
                record.repo_id,
                json.dumps(record.to_dict()),
                record.updated_at,
            )

    async def list_wiki_records(self) -> List[WikiRecord]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM codewiki_wiki_state")
        return [WikiRecord.from_dict(_load(row["data"])) for row in rows]

    async def append_wiki_artifact(self, repo_id: str, artifact: WikiArtifact) -> None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                head = await conn.fetchval(
                    "SELECT COALESCE(MAX(version), 0) FROM codewiki_wiki_history WHERE repo_id = $1",
                    repo_id,
                )
                if artifact.version <= head:
                    raise ValueError(f"Wiki version {artifact.version} does not follow head {head}")
                await conn.execute(
                    """
                    INSERT INTO codewiki_wiki_history (repo_id, version, data, created_at)
                    VALUES ($1, $2, $3::jsonb, $4)
                    """,
                    repo_id,
                    artifact.version,
                    json.dumps(artifact.to_dict()),
                    artifact.created_at,
                )

    async def wiki_history(self, repo_id: str) -> List[WikiArtifact]:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT data FROM codewiki_wiki_history WHERE repo_id = $1 ORDER BY version",
                repo_id,
            )
        return [WikiArtifact.from_dict(_load(row["data"])) for row in rows]
