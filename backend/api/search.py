"""Search API - hybrid, semantic and full-text retrieval."""

from typing import Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from db import get_sqlite_client
from .maintenance import raise_store_error

router = APIRouter(prefix="/search", tags=["search"])


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    kinds: Optional[List[str]] = None
    limit: int = Field(default=10, ge=1, le=200)


class HybridSearchRequest(SearchRequest):
    weights: Optional[Dict[str, float]] = None


@router.post("/hybrid")
async def hybrid_search(payload: HybridSearchRequest):
    client = get_sqlite_client()
    try:
        return await client.hybrid_search(
            payload.query,
            kinds=payload.kinds,
            limit=payload.limit,
            weights=payload.weights,
        )
    except Exception as exc:
        raise_store_error(exc)


@router.post("/semantic")
async def semantic_search(payload: SearchRequest):
    client = get_sqlite_client()
    try:
        return await client.semantic_search(
            payload.query, kinds=payload.kinds, limit=payload.limit
        )
    except Exception as exc:
        raise_store_error(exc)


@router.post("/text")
async def text_search(payload: SearchRequest):
    client = get_sqlite_client()
    try:
        return await client.text_search(
            payload.query, kinds=payload.kinds, limit=payload.limit
        )
    except Exception as exc:
        raise_store_error(exc)
