"""
Persisted metadata records and the repository store interface.

The repository store keeps everything the pipeline needs to survive a restart
except the index documents themselves: the registry, one ingestion status per
repository, the manifest history, chunk metadata per commit, the embedding cache
and the wiki state/history.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from codewiki.models import IngestionStage, WikiState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Repository:
    """A registered public GitHub repository."""

    repo_id: str
    owner: str
    name: str
    repo_url: str
    canonical_url: str
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Repository":
        data = dict(data)
        data["created_at"] = _parse_dt(data.get("created_at")) or utcnow()
        return cls(**data)


@dataclass
class IngestionStatus:
    """Where the ingestion state machine of one repository currently stands."""

    repo_id: str
    stage: IngestionStage = IngestionStage.REGISTERED
    message: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[float] = None
    generation: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["stage"] = self.stage.value
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestionStatus":
        data = dict(data)
        data["stage"] = IngestionStage(data["stage"])
        data["updated_at"] = _parse_dt(data.get("updated_at")) or utcnow()
        return cls(**data)


@dataclass
class Manifest:
    """What was indexed for a repository at a given commit."""

    repo_id: str
    commit_sha: str
    branch: str
    schema_version: int
    embedding_model: str
    embedding_dims: int
    chunk_count: int
    file_count: int
    indexed_at: int
    published_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["published_at"] = self.published_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        data = dict(data)
        data["published_at"] = _parse_dt(data.get("published_at")) or utcnow()
        return cls(**data)


@dataclass
class WikiArtifact:
    """One immutable version of a repository's wiki."""

    version: int
    summary: str
    long_summary: str
    commit_sha: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WikiArtifact":
        data = dict(data)
        data["created_at"] = _parse_dt(data.get("created_at")) or utcnow()
        return cls(**data)


@dataclass
class WikiRecord:
    """Wiki generation state of a repository."""

    repo_id: str
    state: WikiState = WikiState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    ready_commit_sha: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WikiRecord":
        data = dict(data)
        data["state"] = WikiState(data["state"])
        data["updated_at"] = _parse_dt(data.get("updated_at")) or utcnow()
        return cls(**data)


class RepoStore(ABC):
    """Durable metadata for registered repositories."""

    async def initialize(self) -> None:
        """Prepare the backend (create directories or tables)."""

    async def close(self) -> None:
        """Release backend resources."""

    # Registry
    @abstractmethod
    async def get_repo(self, repo_id: str) -> Optional[Repository]:
        ...

    @abstractmethod
    async def list_repos(self) -> List[Repository]:
        ...

    @abstractmethod
    async def add_repo(self, repo: Repository) -> Repository:
        """Insert the repository unless its id exists; return the stored record."""

    @abstractmethod
    async def update_repo(self, repo: Repository) -> None:
        ...

    # Status
    @abstractmethod
    async def get_status(self, repo_id: str) -> Optional[IngestionStatus]:
        ...

    @abstractmethod
    async def save_status(self, status: IngestionStatus) -> None:
        ...

    @abstractmethod
    async def list_statuses(self) -> List[IngestionStatus]:
        ...

    # Manifests
    @abstractmethod
    async def append_manifest(self, manifest: Manifest) -> None:
        ...

    @abstractmethod
    async def latest_manifest(self, repo_id: str) -> Optional[Manifest]:
        ...

    # Chunk metadata
    @abstractmethod
    async def save_chunks(self, repo_id: str, commit_sha: str, chunks: Sequence[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def load_chunks(self, repo_id: str, commit_sha: str) -> List[Dict[str, Any]]:
        ...

    # Embedding cache
    @abstractmethod
    async def get_embeddings(self, repo_id: str, model: str, hashes: Sequence[str]) -> Dict[str, List[float]]:
        """Cached vectors for the hashes present in the cache."""

    @abstractmethod
    async def put_embeddings(self, repo_id: str, model: str, vectors: Dict[str, List[float]]) -> None:
        ...

    # Wiki
    @abstractmethod
    async def get_wiki_record(self, repo_id: str) -> Optional[WikiRecord]:
        ...

    @abstractmethod
    async def save_wiki_record(self, record: WikiRecord) -> None:
        ...

    @abstractmethod
    async def list_wiki_records(self) -> List[WikiRecord]:
        ...

    @abstractmethod
    async def append_wiki_artifact(self, repo_id: str, artifact: WikiArtifact) -> None:
        """Append a version. Versions must be strictly increasing."""

    @abstractmethod
    async def wiki_history(self, repo_id: str) -> List[WikiArtifact]:
        """All versions, oldest first."""
