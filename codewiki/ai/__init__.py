"""Embedding, summarization and retrieval."""

from .embeddings import EmbeddingProvider, EmbeddingService, EmbeddingStats
from .search import QueryEngine, SearchResult
from .wiki import LLMSummarizer, Summarizer, WikiContext, WikiDraft, WikiOrchestrator

__all__ = [
    "EmbeddingProvider",
    "EmbeddingService",
    "EmbeddingStats",
    "LLMSummarizer",
    "QueryEngine",
    "SearchResult",
    "Summarizer",
    "WikiContext",
    "WikiDraft",
    "WikiOrchestrator",
]
