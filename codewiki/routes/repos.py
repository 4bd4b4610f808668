"""Repository registration, ingestion, status and wiki routes."""

import json
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from codewiki.models import (
    ManifestResponse,
    RepoRequest,
    RepoResponse,
    StatusResponse,
    WikiHistoryEntry,
    WikiResponse,
)
from codewiki.services import Services
from codewiki.storage.base import IngestionStatus, Repository
from . import get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repos", tags=["repos"])


def _repo_response(repo: Repository) -> RepoResponse:
    return RepoResponse(
        id=repo.repo_id,
        owner=repo.owner,
        name=repo.name,
        repo_url=repo.repo_url,
        canonical_url=repo.canonical_url,
        commit_sha=repo.commit_sha,
        branch=repo.branch,
    )


def _status_response(status: IngestionStatus) -> StatusResponse:
    return StatusResponse(
        status=status.stage,
        message=status.message,
        error=status.error,
        progress=status.progress,
        generation=status.generation,
        updated_at=status.updated_at,
    )


async def _wiki_response(services: Services, repo_id: str) -> WikiResponse:
    record, history = await services.wiki.get_view(repo_id)
    head = history[-1] if history else None
    return WikiResponse(
        state=record.state,
        summary=head.summary if head else None,
        long_summary=head.long_summary if head else None,
        last_error=record.last_error,
        history=[
            WikiHistoryEntry(
                version=artifact.version,
                summary=artifact.summary,
                long_summary=artifact.long_summary,
                commit_sha=artifact.commit_sha,
                created_at=artifact.created_at,
            )
            for artifact in history
        ],
    )


@router.post("", response_model=RepoResponse)
async def register_repo(payload: RepoRequest, services: Services = Depends(get_services)):
    """Register a public GitHub repository (idempotent)."""
    repo = await services.coordinator.register(payload.repo_url)
    return _repo_response(repo)


@router.get("", response_model=List[RepoResponse])
async def list_repos(services: Services = Depends(get_services)):
    repos = await services.coordinator.list_repos()
    return [_repo_response(repo) for repo in repos]


@router.get("/{repo_id}", response_model=RepoResponse)
async def get_repo(repo_id: str, services: Services = Depends(get_services)):
    repo = await services.coordinator.get_repo(repo_id)
    return _repo_response(repo)


@router.post("/{repo_id}/index", response_model=StatusResponse)
async def index_repo(repo_id: str, services: Services = Depends(get_services)):
    """Start ingestion. Returns immediately; poll /status or stream /events."""
    status = await services.coordinator.start_ingestion(repo_id)
    return _status_response(status)


@router.get("/{repo_id}/status", response_model=StatusResponse)
async def repo_status(repo_id: str, services: Services = Depends(get_services)):
    status = await services.coordinator.get_status(repo_id)
    return _status_response(status)


@router.get("/{repo_id}/events")
async def repo_events(repo_id: str, services: Services = Depends(get_services)):
    """Server-sent events with every status update until the job ends."""
    await services.coordinator.get_repo(repo_id)

    async def stream():
        async for status in services.coordinator.subscribe(repo_id):
            payload = _status_response(status).model_dump(mode="json")
            yield f"event: status\ndata: {json.dumps(payload)}\n\n"

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{repo_id}/manifest", response_model=ManifestResponse)
async def repo_manifest(repo_id: str, services: Services = Depends(get_services)):
    manifest = await services.coordinator.get_manifest(repo_id)
    if manifest is None:
        raise HTTPException(status_code=404, detail=f"Repository {repo_id} has no published manifest")
    return ManifestResponse(**manifest.to_dict())


@router.get("/{repo_id}/wiki", response_model=WikiResponse)
async def repo_wiki(repo_id: str, services: Services = Depends(get_services)):
    await services.coordinator.get_repo(repo_id)
    return await _wiki_response(services, repo_id)


@router.post("/{repo_id}/wiki/summary", response_model=WikiResponse)
async def refresh_wiki(repo_id: str, services: Services = Depends(get_services)):
    """Regenerate the wiki summary for the current manifest."""
    await services.coordinator.refresh_wiki(repo_id)
    return await _wiki_response(services, repo_id)
