"""
Pytest Configuration and Fixtures

Shared fixtures for testing the ingestion pipeline and query engine: a sample
repository tree, deterministic stand-ins for the embedding provider, the
summarizer and git, and a service graph wired from them.
"""

import asyncio
import hashlib
import shutil
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from codewiki.ai.embeddings import EmbeddingProvider
from codewiki.ai.wiki import Summarizer, WikiContext, WikiDraft
from codewiki.config import Settings
from codewiki.errors import EmbeddingProviderError, WikiGenerationError
from codewiki.pipeline.git import CloneResult, CloneSource
from codewiki.services import Services, build_services
from codewiki.storage.base import Repository
from codewiki.storage.filesystem import FilesystemRepoStore
from codewiki.storage.memory import InMemoryDocumentStore

DIMENSION = 8
COMMIT_SHA = "0123456789abcdef0123456789abcdef01234567"


# =============================================================================
# Stand-ins
# =============================================================================


def fake_vector(text: str, dimension: int = DIMENSION) -> List[float]:
    """Deterministic pseudo-embedding derived from the text's SHA256."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(digest[i % len(digest)] / 255.0) - 0.5 for i in range(dimension)]


class FakeEmbeddingProvider(EmbeddingProvider):
    """Embedding provider that records every call and can fail on demand."""

    def __init__(self, dimension: int = DIMENSION, model: str = "fake-embed-v1"):
        self._dimension = dimension
        self._model = model
        self.calls: List[List[str]] = []
        self.failures: List[EmbeddingProviderError] = []
        self.returned_dimension: Optional[int] = None

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def texts_embedded(self) -> int:
        return sum(len(call) for call in self.calls)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        dimension = self.returned_dimension or self._dimension
        return [fake_vector(text, dimension) for text in texts]


class FakeSummarizer(Summarizer):
    """Summarizer failing the first ``failures`` calls (or every call)."""

    def __init__(self, failures: int = 0, always_fail: bool = False):
        self.failures = failures
        self.always_fail = always_fail
        self.calls = 0
        self.contexts: List[WikiContext] = []

    async def summarize(self, context: WikiContext) -> WikiDraft:
        self.calls += 1
        self.contexts.append(context)
        if self.always_fail or self.calls <= self.failures:
            raise WikiGenerationError("model unavailable")
        return WikiDraft(
            summary=f"{context.full_name} is a small widget library.",
            long_summary=f"# {context.full_name}\n\nIndexed {len(context.files)} files.",
        )


class LocalCloner(CloneSource):
    """Clone source copying a local directory, optionally held at a gate."""

    def __init__(self, source: Path, commit_sha: str = COMMIT_SHA, branch: str = "main"):
        self.source = Path(source)
        self.commit_sha = commit_sha
        self.branch = branch
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def clone(self, clone_url: str, dest: Path) -> CloneResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        dest = Path(dest)
        if dest.exists():
            shutil.rmtree(dest)
        shutil.copytree(self.source, dest)
        return CloneResult(commit_sha=self.commit_sha, branch=self.branch)


class SleepRecorder:
    """Replacement for asyncio.sleep that returns immediately and records delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sample_repo(tmp_path: Path) -> Path:
    """
    Create a small repository tree.

    Contains Python, JavaScript and Markdown sources plus content that must
    never be indexed: a vendored dependency, a lock file and a binary image.
    """
    root = tmp_path / "source" / "widget"
    (root / "src" / "widget").mkdir(parents=True)
    (root / "web").mkdir()
    (root / "assets").mkdir()
    (root / "node_modules" / "left-pad").mkdir(parents=True)

    (root / "README.md").write_text("# Widget\n\nA tiny widget library with config parsing.\n")

    (root / "src" / "widget" / "config.py").write_text(
        '''"""Configuration loading."""

import json


def parse_config(path):
    """Parse a JSON config file."""
    with open(path) as f:
        return json.load(f)


class ConfigLoader:
    """Loads named configs from a directory."""

    def __init__(self, root):
        self.root = root

    def load(self, name):
        return parse_config(f"{self.root}/{name}.json")
'''
    )

    (root / "src" / "widget" / "retry.py").write_text(
        '''import time


def retry_with_backoff(func, attempts=3, base_delay=0.5):
    """Call func until it succeeds, sleeping exponentially longer between tries."""
    for attempt in range(attempts):
        try:
            return func()
        except Exception:
            if attempt == attempts - 1:
                raise
            time.sleep(base_delay * 2 ** attempt)
'''
    )

    (root / "web" / "app.js").write_text(
        """import { Widget } from './widget';

export function renderWidget(el) {
  const widget = new Widget(el);
  widget.render();
  return widget;
}
"""
    )

    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = function leftPad() {};\n")
    (root / "package-lock.json").write_text('{"lockfileVersion": 3}\n')
    (root / "assets" / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + bytes(range(256)))

    return root


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def cloner(sample_repo: Path) -> LocalCloner:
    return LocalCloner(sample_repo)


@pytest_asyncio.fixture
async def repo_store(tmp_path: Path) -> FilesystemRepoStore:
    """Initialized filesystem repository store under a temp directory."""
    store = FilesystemRepoStore(tmp_path / "store")
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def registered_repo(repo_store: FilesystemRepoStore) -> Repository:
    """acme/widget, registered directly in the repository store."""
    return await repo_store.add_repo(
        Repository(
            repo_id="acme-widget-id",
            owner="acme",
            name="widget",
            repo_url="https://github.com/acme/widget",
            canonical_url="https://github.com/acme/widget",
        )
    )


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings factory with a temp data directory and no backoff delays."""

    def _make(**overrides) -> Settings:
        values = dict(
            data_dir=tmp_path / "data",
            embedding_dims=DIMENSION,
            embedding_backoff_base=0.0,
            wiki_backoff_base=0.0,
            feed_backoff_base=0.0,
            require_wiki_ready=True,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_services(
    make_settings: Callable[..., Settings],
    embedding_provider: FakeEmbeddingProvider,
    summarizer: FakeSummarizer,
    cloner: LocalCloner,
) -> Callable[..., Services]:
    """
    Service graph factory using the fake provider, summarizer and cloner.

    Keyword arguments are passed to Settings.
    """

    def _make(**overrides) -> Services:
        settings = make_settings(**overrides)
        return build_services(
            settings,
            embedding_provider=embedding_provider,
            summarizer=summarizer,
            document_store=InMemoryDocumentStore(dimension=DIMENSION),
            cloner=cloner,
        )

    return _make
