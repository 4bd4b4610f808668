"""
Wiki generation orchestration.

Each repository has a wiki state machine (pending -> generating -> ready or
failed) and an append-only history of generated versions. Summarization is
retried with exponential backoff; running out of attempts marks the wiki
failed without failing the ingestion job that asked for it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from codewiki.errors import InvalidTransitionError, WikiGenerationError
from codewiki.models import WikiState
from codewiki.retry import Sleep, retry_async
from codewiki.storage.base import RepoStore, WikiArtifact, WikiRecord, utcnow
from .client import AIClient
from .prompts import WIKI_SYSTEM_PROMPT, build_wiki_prompt

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 200
MAX_CONTEXT_SYMBOLS = 100
MAX_README_CHARS = 4000
README_NAMES = ("README.md", "README.rst", "README.txt", "README", "readme.md")


@dataclass
class WikiContext:
    """What the summarizer gets to see of a repository."""
    repo_id: str
    full_name: str
    commit_sha: str
    files: List[str] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)
    language_counts: Dict[str, int] = field(default_factory=dict)
    readme_excerpt: str = ""


@dataclass
class WikiDraft:
    """Summarizer output."""
    summary: str
    long_summary: str


def build_wiki_context(
    repo_id: str,
    full_name: str,
    commit_sha: str,
    chunks: Iterable[Dict[str, Any]],
    working_dir: Optional[Path] = None,
) -> WikiContext:
    """
    Assemble a WikiContext from chunk metadata and the working copy.

    Args:
        chunks: Chunk metadata records (``Chunk.metadata()``) in extraction order
        working_dir: Checkout to read the README from, if available
    """
    files: List[str] = []
    seen_files = set()
    symbol_counts: Counter = Counter()
    language_counts: Counter = Counter()

    for chunk in chunks:
        path = chunk["file_path"]
        if path not in seen_files:
            seen_files.add(path)
            files.append(path)
        language_counts[chunk.get("language") or "unknown"] += 1
        symbol_counts.update(chunk.get("symbol_names") or [])

    symbols = [name for name, _ in sorted(symbol_counts.items(), key=lambda item: (-item[1], item[0]))]

    readme = ""
    if working_dir is not None:
        for name in README_NAMES:
            path = Path(working_dir) / name
            if path.is_file():
                readme = path.read_text(encoding="utf-8", errors="replace")[:MAX_README_CHARS]
                break

    return WikiContext(
        repo_id=repo_id,
        full_name=full_name,
        commit_sha=commit_sha,
        files=files[:MAX_CONTEXT_FILES],
        symbols=symbols[:MAX_CONTEXT_SYMBOLS],
        language_counts=dict(language_counts),
        readme_excerpt=readme,
    )


class Summarizer(ABC):
    """Produces a wiki draft for a repository."""

    @abstractmethod
    async def summarize(self, context: WikiContext) -> WikiDraft:
        """
        Raises:
            WikiGenerationError: if no usable draft could be produced.
        """


def split_summary(text: str) -> WikiDraft:
    """The first paragraph (without heading marks) is the summary; the full text is the long summary."""
    body = text.strip()
    if not body:
        raise WikiGenerationError("Summarizer returned an empty response")
    first_paragraph = body.split("\n\n", 1)[0]
    summary = " ".join(line.strip().lstrip("#").strip() for line in first_paragraph.splitlines()).strip()
    return WikiDraft(summary=summary or body.splitlines()[0], long_summary=body)


class LLMSummarizer(Summarizer):
    """Summarizer backed by a chat-completion model."""

    def __init__(self, client: AIClient, model: Optional[str] = None, max_tokens: int = 2048):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def summarize(self, context: WikiContext) -> WikiDraft:
        prompt = build_wiki_prompt(
            full_name=context.full_name,
            commit_sha=context.commit_sha,
            files=context.files,
            symbols=context.symbols,
            language_counts=context.language_counts,
            readme_excerpt=context.readme_excerpt,
        )
        result = await self.client.generate(
            prompt=prompt,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.2,
            system_prompt=WIKI_SYSTEM_PROMPT,
        )
        return split_summary(result.text)


class WikiOrchestrator:
    """
    Drives wiki generation for repositories and keeps their history.

    Usage:
        wiki = WikiOrchestrator(repo_store, summarizer, max_attempts=4)
        record = await wiki.generate(context)
        if record.state == WikiState.READY:
            ...
    """

    def __init__(
        self,
        store: RepoStore,
        summarizer: Summarizer,
        max_attempts: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.summarizer = summarizer
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    async def get_record(self, repo_id: str) -> WikiRecord:
        record = await self.store.get_wiki_record(repo_id)
        return record or WikiRecord(repo_id=repo_id)

    async def get_view(self, repo_id: str) -> Tuple[WikiRecord, List[WikiArtifact]]:
        """Current state and full history (oldest first)."""
        return await self.get_record(repo_id), await self.store.wiki_history(repo_id)

    async def is_ready_for(self, repo_id: str, commit_sha: str) -> bool:
        record = await self.store.get_wiki_record(repo_id)
        return (
            record is not None
            and record.ready_commit_sha is not None
            and record.ready_commit_sha == commit_sha
        )

    async def generate(self, context: WikiContext) -> WikiRecord:
        """
        Run one generation cycle for the repository in ``context``.

        Never raises for summarizer failures: the returned record is either
        ``ready`` (a new version was appended) or ``failed``.
        """
        record = await self.get_record(context.repo_id)
        return await self._run_cycle(record, context)

    async def update_summary(self, context: WikiContext) -> WikiRecord:
        """
        Regenerate the wiki on demand.

        Raises:
            InvalidTransitionError: unless the wiki is ``ready`` or ``failed``.
        """
        record = await self.get_record(context.repo_id)
        if record.state not in (WikiState.READY, WikiState.FAILED):
            raise InvalidTransitionError(
                f"Wiki for {context.repo_id} is {record.state.value}; it can only be refreshed when ready or failed"
            )
        return await self._run_cycle(record, context)

    async def reconcile(self) -> int:
        """Mark wikis left ``generating`` by a dead process as failed."""
        fixed = 0
        for record in await self.store.list_wiki_records():
            if record.state == WikiState.GENERATING:
                record.state = WikiState.FAILED
                record.last_error = "Wiki generation interrupted by a restart"
                record.updated_at = utcnow()
                await self.store.save_wiki_record(record)
                fixed += 1
        if fixed:
            logger.warning(f"Marked {fixed} interrupted wiki generations as failed")
        return fixed

    async def _run_cycle(self, record: WikiRecord, context: WikiContext) -> WikiRecord:
        record.state = WikiState.GENERATING
        record.attempts = 0
        record.last_error = None
        record.updated_at = utcnow()
        await self.store.save_wiki_record(record)

        async def attempt() -> WikiDraft:
            record.attempts += 1
            return await self.summarizer.summarize(context)

        try:
            draft = await retry_async(
                attempt,
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
                max_delay=self.backoff_max,
                retry_on=(WikiGenerationError,),
                sleep=self._sleep,
                description=f"Wiki generation for {context.full_name}",
            )
        except WikiGenerationError as e:
            record.state = WikiState.FAILED
            record.last_error = str(e)
            record.updated_at = utcnow()
            await self.store.save_wiki_record(record)
            logger.error(f"Wiki generation failed for {context.full_name} after {record.attempts} attempts: {e}")
            return record
        except asyncio.CancelledError:
            record.state = WikiState.FAILED
            record.last_error = "Wiki generation cancelled"
            record.updated_at = utcnow()
            await self.store.save_wiki_record(record)
            raise

        history = await self.store.wiki_history(context.repo_id)
        version = (history[-1].version if history else 0) + 1
        await self.store.append_wiki_artifact(
            context.repo_id,
            WikiArtifact(
                version=version,
                summary=draft.summary,
                long_summary=draft.long_summary,
                commit_sha=context.commit_sha,
            ),
        )

        record.state = WikiState.READY
        record.ready_commit_sha = context.commit_sha
        record.updated_at = utcnow()
        await self.store.save_wiki_record(record)
        logger.info(f"Wiki v{version} ready for {context.full_name} ({record.attempts} attempts)")
        return record
