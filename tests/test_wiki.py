"""Tests for wiki generation, its state machine and history."""

import asyncio

import pytest

from codewiki.ai.wiki import (
    LLMSummarizer,
    WikiContext,
    WikiOrchestrator,
    build_wiki_context,
    split_summary,
)
from codewiki.errors import InvalidTransitionError, WikiGenerationError
from codewiki.models import WikiState
from codewiki.storage.base import WikiRecord

from .conftest import FakeSummarizer


def make_context(repo_id: str, commit_sha: str = "a" * 40) -> WikiContext:
    return WikiContext(
        repo_id=repo_id,
        full_name="acme/widget",
        commit_sha=commit_sha,
        files=["src/widget/config.py"],
        symbols=["parse_config"],
        language_counts={"python": 2},
    )


# =============================================================================
# Orchestration
# =============================================================================


class TestWikiGeneration:
    """generate() and its retry bound."""

    @pytest.mark.asyncio
    async def test_success_appends_first_version(self, repo_store, registered_repo, summarizer, sleep_recorder):
        wiki = WikiOrchestrator(repo_store, summarizer, sleep=sleep_recorder)

        record = await wiki.generate(make_context(registered_repo.repo_id))

        assert record.state == WikiState.READY
        assert record.attempts == 1
        assert record.ready_commit_sha == "a" * 40
        history = await repo_store.wiki_history(registered_repo.repo_id)
        assert [a.version for a in history] == [1]
        assert history[0].summary == "acme/widget is a small widget library."

    @pytest.mark.asyncio
    async def test_retries_until_success(self, repo_store, registered_repo, sleep_recorder):
        summarizer = FakeSummarizer(failures=2)
        wiki = WikiOrchestrator(repo_store, summarizer, max_attempts=4, backoff_base=1.0, sleep=sleep_recorder)

        record = await wiki.generate(make_context(registered_repo.repo_id))

        assert record.state == WikiState.READY
        assert record.attempts == 3
        assert summarizer.calls == 3
        assert sleep_recorder.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_mark_failed(self, repo_store, registered_repo, sleep_recorder):
        summarizer = FakeSummarizer(always_fail=True)
        wiki = WikiOrchestrator(
            repo_store, summarizer, max_attempts=4, backoff_base=1.0, backoff_max=30.0, sleep=sleep_recorder
        )

        record = await wiki.generate(make_context(registered_repo.repo_id))

        assert summarizer.calls == 4
        assert record.state == WikiState.FAILED
        assert record.attempts == 4
        assert record.last_error == "model unavailable"
        assert sleep_recorder.delays == [1.0, 2.0, 4.0]
        assert await repo_store.wiki_history(registered_repo.repo_id) == []
        stored = await repo_store.get_wiki_record(registered_repo.repo_id)
        assert stored.state == WikiState.FAILED

    @pytest.mark.asyncio
    async def test_versions_strictly_increase(self, repo_store, registered_repo, summarizer, sleep_recorder):
        wiki = WikiOrchestrator(repo_store, summarizer, sleep=sleep_recorder)

        await wiki.generate(make_context(registered_repo.repo_id, "a" * 40))
        await wiki.generate(make_context(registered_repo.repo_id, "b" * 40))
        record, history = await wiki.get_view(registered_repo.repo_id)

        assert [a.version for a in history] == [1, 2]
        assert [a.commit_sha for a in history] == ["a" * 40, "b" * 40]
        assert record.ready_commit_sha == "b" * 40

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_ready_commit(self, repo_store, registered_repo, sleep_recorder):
        summarizer = FakeSummarizer()
        wiki = WikiOrchestrator(repo_store, summarizer, max_attempts=2, sleep=sleep_recorder)
        await wiki.generate(make_context(registered_repo.repo_id, "a" * 40))

        summarizer.always_fail = True
        record = await wiki.generate(make_context(registered_repo.repo_id, "b" * 40))

        assert record.state == WikiState.FAILED
        assert await wiki.is_ready_for(registered_repo.repo_id, "a" * 40)
        assert not await wiki.is_ready_for(registered_repo.repo_id, "b" * 40)

    @pytest.mark.asyncio
    async def test_cancellation_marks_failed(self, repo_store, registered_repo):
        class BlockingSummarizer(FakeSummarizer):
            async def summarize(self, context):
                await asyncio.Event().wait()

        wiki = WikiOrchestrator(repo_store, BlockingSummarizer())
        task = asyncio.create_task(wiki.generate(make_context(registered_repo.repo_id)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        record = await wiki.get_record(registered_repo.repo_id)
        assert record.state == WikiState.FAILED
        assert record.last_error == "Wiki generation cancelled"


class TestWikiTransitions:
    """On-demand refresh and restart recovery."""

    @pytest.mark.asyncio
    async def test_update_summary_requires_ready_or_failed(self, repo_store, registered_repo, summarizer, sleep_recorder):
        wiki = WikiOrchestrator(repo_store, summarizer, sleep=sleep_recorder)

        with pytest.raises(InvalidTransitionError):
            await wiki.update_summary(make_context(registered_repo.repo_id))

        await wiki.generate(make_context(registered_repo.repo_id))
        record = await wiki.update_summary(make_context(registered_repo.repo_id))

        assert record.state == WikiState.READY
        assert [a.version for a in await repo_store.wiki_history(registered_repo.repo_id)] == [1, 2]

    @pytest.mark.asyncio
    async def test_reconcile_fails_stuck_generation(self, repo_store, registered_repo, summarizer):
        await repo_store.save_wiki_record(WikiRecord(repo_id=registered_repo.repo_id, state=WikiState.GENERATING))
        wiki = WikiOrchestrator(repo_store, summarizer)

        assert await wiki.reconcile() == 1

        record = await wiki.get_record(registered_repo.repo_id)
        assert record.state == WikiState.FAILED
        assert "interrupted" in record.last_error

    @pytest.mark.asyncio
    async def test_unknown_repo_is_pending(self, repo_store, summarizer):
        wiki = WikiOrchestrator(repo_store, summarizer)
        record, history = await wiki.get_view("missing")
        assert record.state == WikiState.PENDING
        assert history == []


# =============================================================================
# Context and parsing
# =============================================================================


class TestWikiContext:
    """Context assembly and summary parsing."""

    def test_build_context(self, sample_repo):
        chunks = [
            {"file_path": "src/a.py", "language": "python", "symbol_names": ["load", "save"]},
            {"file_path": "src/a.py", "language": "python", "symbol_names": ["load"]},
            {"file_path": "web/app.js", "language": "javascript", "symbol_names": []},
        ]
        context = build_wiki_context("id", "acme/widget", "sha", chunks, sample_repo)

        assert context.files == ["src/a.py", "web/app.js"]
        assert context.symbols == ["load", "save"]
        assert context.language_counts == {"python": 2, "javascript": 1}
        assert context.readme_excerpt.startswith("# Widget")

    def test_split_summary(self):
        draft = split_summary("# Widget\nA widget library.\n\n## Modules\n\nconfig, retry")
        assert draft.summary == "Widget A widget library."
        assert draft.long_summary.startswith("# Widget")

    def test_split_summary_rejects_empty(self):
        with pytest.raises(WikiGenerationError):
            split_summary("   ")

    @pytest.mark.asyncio
    async def test_llm_summarizer_sends_prompt(self):
        class StubClient:
            def __init__(self):
                self.kwargs = None

            async def generate(self, **kwargs):
                self.kwargs = kwargs

                class Result:
                    text = "Widget parses configs.\n\nMore detail here."

                return Result()

        client = StubClient()
        draft = await LLMSummarizer(client, model="test-model").summarize(make_context("id"))

        assert draft.summary == "Widget parses configs."
        assert client.kwargs["model"] == "test-model"
        assert "acme/widget" in client.kwargs["prompt"]
        assert "parse_config" in client.kwargs["prompt"]
