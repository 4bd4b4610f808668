"""
Filesystem repository store.

Layout under ``data_dir``:

    registry.json
    meta/{owner}/{name}/status.json
    meta/{owner}/{name}/manifests.jsonl
    meta/{owner}/{name}/chunks/{commit_sha}.jsonl
    meta/{owner}/{name}/embeddings/{model_slug}.jsonl
    meta/{owner}/{name}/wiki/state.json
    meta/{owner}/{name}/wiki/history.jsonl

Whole-file records are replaced atomically (write to a temp file, then rename);
histories are append-only JSON lines.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from codewiki.errors import RepoNotFoundError
from .base import (
    IngestionStatus,
    Manifest,
    RepoStore,
    Repository,
    WikiArtifact,
    WikiRecord,
)

logger = logging.getLogger(__name__)


def _model_slug(model: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", model).strip("_") or "default"


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _append_lines(path: Path, records: Sequence[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, separators=(",", ":")) + "\n")


def _read_lines(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    records = []
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # A torn final line from a crash mid-append
                logger.warning(f"Ignoring malformed line {line_no} in {path}")
    return records


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


class FilesystemRepoStore(RepoStore):
    """
    Repository store backed by JSON files under a data directory.

    File reads and writes run in worker threads so large embedding files never
    stall the event loop. Embedding vectors are cached in memory for the
    ``max_cached_embedding_sets`` most recently used ``(repo_id, model)`` pairs.
    """

    def __init__(self, data_dir: Path, max_cached_embedding_sets: int = 2):
        self.data_dir = Path(data_dir)
        self.max_cached_embedding_sets = max(0, max_cached_embedding_sets)
        self._registry: Dict[str, Repository] = {}
        self._registry_lock = asyncio.Lock()
        self._embedding_cache: "OrderedDict[Tuple[str, str], Dict[str, List[float]]]" = OrderedDict()
        self._embedding_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "registry.json"

    async def initialize(self) -> None:
        await asyncio.to_thread(self.data_dir.mkdir, parents=True, exist_ok=True)
        data = await asyncio.to_thread(_read_json, self.registry_path) or {}
        self._registry = {
            item["repo_id"]: Repository.from_dict(item) for item in data.get("repositories", [])
        }
        logger.info(f"Loaded {len(self._registry)} repositories from {self.registry_path}")

    async def _save_registry(self) -> None:
        async with self._registry_lock:
            payload = {"repositories": [repo.to_dict() for repo in self._registry.values()]}
            await asyncio.to_thread(_atomic_write, self.registry_path, json.dumps(payload, indent=2))

    def _meta_dir(self, repo_id: str) -> Path:
        repo = self._registry.get(repo_id)
        if repo is None:
            raise RepoNotFoundError(repo_id)
        return self.data_dir / "meta" / repo.owner / repo.name

    # Registry
    async def get_repo(self, repo_id: str) -> Optional[Repository]:
        return self._registry.get(repo_id)

    async def list_repos(self) -> List[Repository]:
        return sorted(self._registry.values(), key=lambda r: r.created_at)

    async def add_repo(self, repo: Repository) -> Repository:
        existing = self._registry.get(repo.repo_id)
        if existing is not None:
            return existing
        self._registry[repo.repo_id] = repo
        await self._save_registry()
        return repo

    async def update_repo(self, repo: Repository) -> None:
        if repo.repo_id not in self._registry:
            raise RepoNotFoundError(repo.repo_id)
        self._registry[repo.repo_id] = repo
        await self._save_registry()

    # Status
    async def get_status(self, repo_id: str) -> Optional[IngestionStatus]:
        if repo_id not in self._registry:
            return None
        data = await asyncio.to_thread(_read_json, self._meta_dir(repo_id) / "status.json")
        return IngestionStatus.from_dict(data) if data else None

    async def save_status(self, status: IngestionStatus) -> None:
        path = self._meta_dir(status.repo_id) / "status.json"
        await asyncio.to_thread(_atomic_write, path, json.dumps(status.to_dict(), indent=2))

    async def list_statuses(self) -> List[IngestionStatus]:
        statuses = []
        for repo_id in list(self._registry):
            status = await self.get_status(repo_id)
            if status is not None:
                statuses.append(status)
        return statuses

    # Manifests
    async def append_manifest(self, manifest: Manifest) -> None:
        path = self._meta_dir(manifest.repo_id) / "manifests.jsonl"
        await asyncio.to_thread(_append_lines, path, [manifest.to_dict()])

    async def latest_manifest(self, repo_id: str) -> Optional[Manifest]:
        if repo_id not in self._registry:
            return None
        records = await asyncio.to_thread(_read_lines, self._meta_dir(repo_id) / "manifests.jsonl")
        return Manifest.from_dict(records[-1]) if records else None

    # Chunk metadata
    async def save_chunks(self, repo_id: str, commit_sha: str, chunks: Sequence[Dict[str, Any]]) -> None:
        path = self._meta_dir(repo_id) / "chunks" / f"{commit_sha}.jsonl"

        def write() -> None:
            _atomic_write(path, "".join(json.dumps(c, separators=(",", ":")) + "\n" for c in chunks))

        await asyncio.to_thread(write)

    async def load_chunks(self, repo_id: str, commit_sha: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(_read_lines, self._meta_dir(repo_id) / "chunks" / f"{commit_sha}.jsonl")

    # Embedding cache
    def _embeddings_path(self, repo_id: str, model: str) -> Path:
        return self._meta_dir(repo_id) / "embeddings" / f"{_model_slug(model)}.jsonl"

    def _embedding_lock(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._embedding_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._embedding_locks[key] = lock
        return lock

    async def _load_embeddings(self, repo_id: str, model: str) -> Dict[str, List[float]]:
        """All vectors for a repository and model; the caller holds the key's lock."""
        key = (repo_id, model)
        cached = self._embedding_cache.get(key)
        if cached is not None:
            self._embedding_cache.move_to_end(key)
            return cached

        def read() -> Dict[str, List[float]]:
            return {r["hash"]: r["vector"] for r in _read_lines(self._embeddings_path(repo_id, model))}

        vectors = await asyncio.to_thread(read)
        if self.max_cached_embedding_sets:
            self._embedding_cache[key] = vectors
            while len(self._embedding_cache) > self.max_cached_embedding_sets:
                evicted, _ = self._embedding_cache.popitem(last=False)
                logger.debug(f"Evicted cached embeddings for {evicted[0]} ({evicted[1]})")
        return vectors

    def cached_embedding_sets(self) -> List[Tuple[str, str]]:
        return list(self._embedding_cache)

    async def get_embeddings(self, repo_id: str, model: str, hashes: Sequence[str]) -> Dict[str, List[float]]:
        async with self._embedding_lock((repo_id, model)):
            cached = await self._load_embeddings(repo_id, model)
        return {h: cached[h] for h in hashes if h in cached}

    async def put_embeddings(self, repo_id: str, model: str, vectors: Dict[str, List[float]]) -> None:
        async with self._embedding_lock((repo_id, model)):
            cached = await self._load_embeddings(repo_id, model)
            fresh = {h: v for h, v in vectors.items() if h not in cached}
            if not fresh:
                return
            await asyncio.to_thread(
                _append_lines,
                self._embeddings_path(repo_id, model),
                [{"hash": h, "vector": list(v)} for h, v in fresh.items()],
            )
            cached.update(fresh)

    # Wiki
    async def get_wiki_record(self, repo_id: str) -> Optional[WikiRecord]:
        if repo_id not in self._registry:
            return None
        data = await asyncio.to_thread(_read_json, self._meta_dir(repo_id) / "wiki" / "state.json")
        return WikiRecord.from_dict(data) if data else None

    async def save_wiki_record(self, record: WikiRecord) -> None:
        path = self._meta_dir(record.repo_id) / "wiki" / "state.json"
        await asyncio.to_thread(_atomic_write, path, json.dumps(record.to_dict(), indent=2))

    async def list_wiki_records(self) -> List[WikiRecord]:
        records = []
        for repo_id in list(self._registry):
            record = await self.get_wiki_record(repo_id)
            if record is not None:
                records.append(record)
        return records

    async def append_wiki_artifact(self, repo_id: str, artifact: WikiArtifact) -> None:
        history = await self.wiki_history(repo_id)
        head = history[-1].version if history else 0
        if artifact.version <= head:
            raise ValueError(f"Wiki version {artifact.version} does not follow head {head}")
        path = self._meta_dir(repo_id) / "wiki" / "history.jsonl"
        await asyncio.to_thread(_append_lines, path, [artifact.to_dict()])

    async def wiki_history(self, repo_id: str) -> List[WikiArtifact]:
        if repo_id not in self._registry:
            return []
        records = await asyncio.to_thread(_read_lines, self._meta_dir(repo_id) / "wiki" / "history.jsonl")
        return [WikiArtifact.from_dict(r) for r in records]
