"""Metadata and document storage backends."""

from .base import (
    IngestionStatus,
    Manifest,
    RepoStore,
    Repository,
    WikiArtifact,
    WikiRecord,
)
from .documents import DocumentStore, IndexDocument, SearchHit, UpsertResult

__all__ = [
    "DocumentStore",
    "IndexDocument",
    "IngestionStatus",
    "Manifest",
    "RepoStore",
    "Repository",
    "SearchHit",
    "UpsertResult",
    "WikiArtifact",
    "WikiRecord",
]
