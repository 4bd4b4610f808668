"""Code search route."""

import logging

from fastapi import APIRouter, Depends

from codewiki.errors import ValidationError
from codewiki.models import SearchMode, SearchRequest, SearchResponse, SearchResultModel
from codewiki.services import Services
from . import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["search"])


@router.post("/search", response_model=SearchResponse)
async def search(payload: SearchRequest, services: Services = Depends(get_services)):
    """
    Search indexed repositories.

    An unknown or never-indexed ``repo_filter`` yields an empty result list,
    not an error.
    """
    try:
        mode = SearchMode.parse(payload.search_mode)
    except ValueError:
        raise ValidationError(f"Unknown search_mode: {payload.search_mode}")

    results = await services.query_engine.search(
        payload.query,
        repo_filter=payload.repo_filter,
        mode=mode.value,
        top_k=payload.top_k,
    )
    return SearchResponse(
        results=[
            SearchResultModel(
                repo_id=r.repo_id,
                file_path=r.file_path,
                line_start=r.line_start,
                line_end=r.line_end,
                snippet=r.snippet,
                score=r.score,
                language=r.language,
                symbol_names=r.symbol_names,
            )
            for r in results
        ]
    )
