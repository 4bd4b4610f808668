"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    data_dir: Path = Path("data")
    storage_backend: str = "filesystem"  # filesystem | postgres
    database_url: str = "postgresql://localhost:5432/codewiki"

    # Document store
    document_store: str = "memory"  # memory | vespa
    vespa_endpoint: str = "http://localhost:8080"
    vespa_document_endpoint: Optional[str] = None  # Falls back to vespa_endpoint
    vespa_namespace: str = "codesearch"
    vespa_document_type: str = "codesearch"
    vespa_cluster: str = "codesearch"
    vespa_ca_cert_path: Optional[str] = None
    vespa_client_cert_path: Optional[str] = None
    vespa_client_key_path: Optional[str] = None
    vespa_feed_concurrency: int = 8

    # AI providers
    together_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    embedding_provider: str = "together"  # together | openai | auto
    together_api_base: str = "https://api.together.xyz/v1"
    openai_api_base: str = "https://api.openai.com/v1"
    together_embedding_model: str = "BAAI/bge-base-en-v1.5"
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dims: int = 768
    summary_model: str = "meta-llama/Llama-3.3-70B-Instruct-Turbo"

    # Embedding
    embedding_batch_size: int = 32
    embedding_concurrency: int = 4
    embedding_max_attempts: int = 3
    embedding_backoff_base: float = 0.5
    embedding_backoff_max: float = 8.0

    # Wiki
    wiki_max_attempts: int = 4
    wiki_backoff_base: float = 1.0
    wiki_backoff_max: float = 30.0

    # Chunking
    window_lines: int = 60
    overlap_lines: int = 10
    max_chunk_lines: int = 200
    max_file_bytes: int = 200_000
    clone_timeout: float = 600.0

    # Feeding
    feed_max_batch_bytes: int = 4 * 1024 * 1024
    feed_max_batch_docs: int = 100
    feed_max_attempts: int = 4
    feed_backoff_base: float = 0.5
    feed_backoff_max: float = 10.0

    # Search
    search_top_k: int = 10
    search_max_top_k: int = 50
    hybrid_lexical_weight: float = 0.3
    require_wiki_ready: bool = True

    # Jobs
    reingest_policy: str = "reject"  # reject | queue | preempt

    # Server
    cors_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    environment: str = "development"

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, list):
            return ','.join(v)
        return v

    @field_validator('reingest_policy')
    @classmethod
    def check_reingest_policy(cls, v):
        if v not in ("reject", "queue", "preempt"):
            raise ValueError("reingest_policy must be one of: reject, queue, preempt")
        return v

    @field_validator('overlap_lines')
    @classmethod
    def check_overlap(cls, v, info):
        window = info.data.get("window_lines", 60)
        if v < 0 or v >= window:
            raise ValueError("overlap_lines must be >= 0 and smaller than window_lines")
        return v

    def get_cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [o.strip() for o in self.cors_origins.split(',') if o.strip()]

    def get_vespa_document_endpoint(self) -> str:
        return self.vespa_document_endpoint or self.vespa_endpoint

    @property
    def repos_dir(self) -> Path:
        """Where working copies are cloned."""
        return self.data_dir / "repos"

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        env_prefix = ""


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_database_url(settings: Optional[Settings] = None) -> str:
    """Get database URL, preferring the POSTGRES_DSN / DATABASE_URL variables."""
    settings = settings or get_settings()
    return os.environ.get("POSTGRES_DSN") or os.environ.get("DATABASE_URL") or settings.database_url
