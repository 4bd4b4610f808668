from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# Enums
class IngestionStage(str, Enum):
    REGISTERED = "registered"
    CLONING = "cloning"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    WIKI_PENDING = "wiki_pending"
    INDEXING = "indexing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (IngestionStage.COMPLETE, IngestionStage.ERROR)

    @property
    def in_progress(self) -> bool:
        return self not in (IngestionStage.REGISTERED, IngestionStage.COMPLETE, IngestionStage.ERROR)


# Forward order of the pipeline; ERROR sits outside it.
STAGE_ORDER: List[IngestionStage] = [
    IngestionStage.REGISTERED,
    IngestionStage.CLONING,
    IngestionStage.CHUNKING,
    IngestionStage.EMBEDDING,
    IngestionStage.WIKI_PENDING,
    IngestionStage.INDEXING,
    IngestionStage.COMPLETE,
]


def can_transition(current: IngestionStage, target: IngestionStage) -> bool:
    """Whether the status machine may move from ``current`` to ``target``."""
    if target == IngestionStage.ERROR:
        return not current.is_terminal
    if target == IngestionStage.CLONING:
        # Restart point for an explicit (re-)ingestion request
        return current in (IngestionStage.REGISTERED, IngestionStage.COMPLETE, IngestionStage.ERROR)
    if current == IngestionStage.ERROR:
        return False
    return STAGE_ORDER.index(target) == STAGE_ORDER.index(current) + 1


class WikiState(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    FAILED = "failed"


class SearchMode(str, Enum):
    HYBRID = "hybrid"
    SEMANTIC = "semantic"
    KEYWORD = "keyword"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SearchMode":
        """Accept the UI names ("fast", "deep") as well as the canonical ones."""
        if not value:
            return cls.HYBRID
        normalized = value.strip().lower()
        aliases = {"fast": cls.HYBRID, "deep": cls.SEMANTIC, "lexical": cls.KEYWORD}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


# Request / response models
class RepoRequest(BaseModel):
    repo_url: str = Field(..., description="Public GitHub repository URL")


class RepoResponse(BaseModel):
    id: str
    owner: str
    name: str
    repo_url: str
    canonical_url: str
    commit_sha: Optional[str] = None
    branch: Optional[str] = None


class StatusResponse(BaseModel):
    status: IngestionStage
    message: Optional[str] = None
    error: Optional[str] = None
    progress: Optional[float] = None
    generation: int = 0
    updated_at: Optional[datetime] = None


class ManifestResponse(BaseModel):
    repo_id: str
    commit_sha: str
    branch: str
    schema_version: int
    embedding_model: str
    embedding_dims: int
    chunk_count: int
    file_count: int
    indexed_at: int
    published_at: datetime


class WikiHistoryEntry(BaseModel):
    version: int
    summary: str
    long_summary: str
    commit_sha: Optional[str] = None
    created_at: datetime


class WikiResponse(BaseModel):
    state: WikiState
    summary: Optional[str] = None
    long_summary: Optional[str] = None
    last_error: Optional[str] = None
    history: List[WikiHistoryEntry] = []


class SearchRequest(BaseModel):
    query: str
    repo_filter: Optional[str] = None
    search_mode: Optional[str] = None
    top_k: Optional[int] = Field(None, ge=1)


class SearchResultModel(BaseModel):
    repo_id: str
    file_path: str
    line_start: int
    line_end: int
    snippet: str
    score: Optional[float] = None
    language: Optional[str] = None
    symbol_names: List[str] = []


class SearchResponse(BaseModel):
    results: List[SearchResultModel] = []


class HealthResponse(BaseModel):
    status: str = "ok"
    details: Dict[str, str] = {}
