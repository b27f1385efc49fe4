"""
Records API - save, read, update, supersede, correct and delete records.

Plain saves hand the embedding to the runtime index worker when it is enabled,
so the request returns as soon as the row is committed.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from db import get_sqlite_client
from runtime_state import runtime_state
from .maintenance import raise_store_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/records", tags=["records"])


class RecordCreate(BaseModel):
    kind: str = "memory"
    fields: Dict[str, Any]


class RecordPatch(BaseModel):
    patch: Dict[str, Any]
    reason: Optional[str] = None


class SupersedeRequest(BaseModel):
    new_content: str = Field(min_length=1)
    reason: Optional[str] = None
    overrides: Dict[str, Any] = Field(default_factory=dict)


class SmartSaveRequest(BaseModel):
    content: str = Field(min_length=1)
    fields: Dict[str, Any] = Field(default_factory=dict)
    force_add: bool = False
    is_correction: bool = False


class CorrectionRequest(BaseModel):
    correct_content: str = Field(min_length=1)
    wrong_id: Optional[str] = None
    wrong_content: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    reason: Optional[str] = None


class LinkCreate(BaseModel):
    target_kind: str = "memory"
    target_id: str
    relationship: str = Field(min_length=1)
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("", status_code=201)
async def save_record(payload: RecordCreate):
    client = get_sqlite_client()
    await runtime_state.ensure_started(get_sqlite_client)
    deferred = runtime_state.index_worker.enabled
    try:
        result = await client.save(payload.kind, payload.fields, index_now=not deferred)
    except Exception as exc:
        raise_store_error(exc)

    if deferred:
        record = result["record"]
        enqueue = await runtime_state.index_worker.enqueue_embed_record(
            kind=record["kind"], record_id=record["id"], reason="save"
        )
        if enqueue.get("dropped"):
            # The row is committed; batch_embed picks it up later.
            logger.warning(
                "Embed job for %s dropped (%s)", record["id"], enqueue.get("reason")
            )
        result["index_job"] = enqueue
    return result


@router.get("")
async def list_records(
    kind: str = "memory",
    category: Optional[str] = None,
    tags: Optional[List[str]] = Query(default=None),
    status: Optional[str] = "active",
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    client = get_sqlite_client()
    try:
        items = await client.list_records(
            kind,
            category=category,
            tags=tags,
            status=status or None,
            limit=limit,
            offset=offset,
        )
    except Exception as exc:
        raise_store_error(exc)
    return {"items": items, "count": len(items)}


@router.post("/smart-save")
async def smart_save(payload: SmartSaveRequest):
    client = get_sqlite_client()
    try:
        return await client.smart_save(
            payload.content,
            payload.fields,
            force_add=payload.force_add,
            is_correction=payload.is_correction,
        )
    except Exception as exc:
        raise_store_error(exc)


@router.post("/correction")
async def handle_correction(payload: CorrectionRequest):
    client = get_sqlite_client()
    try:
        return await client.handle_correction(
            payload.correct_content,
            wrong_id=payload.wrong_id,
            wrong_content=payload.wrong_content,
            category=payload.category,
            tags=payload.tags,
            reason=payload.reason,
        )
    except Exception as exc:
        raise_store_error(exc)


@router.get("/{kind}/{record_id}")
async def get_record(kind: str, record_id: str):
    client = get_sqlite_client()
    try:
        record = await client.get_record(kind, record_id)
    except Exception as exc:
        raise_store_error(exc)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "not_found", "kind": kind, "id": record_id},
        )
    return record


@router.patch("/{kind}/{record_id}")
async def update_record(kind: str, record_id: str, payload: RecordPatch):
    client = get_sqlite_client()
    try:
        return await client.update(kind, record_id, payload.patch, reason=payload.reason)
    except Exception as exc:
        raise_store_error(exc)


# Registered before the generic delete so "links" is not read as a kind.
@router.delete("/links/{link_id}")
async def delete_link(link_id: str):
    client = get_sqlite_client()
    try:
        return await client.delete_link(link_id)
    except Exception as exc:
        raise_store_error(exc)


@router.delete("/{kind}/{record_id}")
async def delete_record(kind: str, record_id: str, reason: Optional[str] = None):
    client = get_sqlite_client()
    try:
        return await client.delete(kind, record_id, reason=reason)
    except Exception as exc:
        raise_store_error(exc)


@router.post("/memory/{record_id}/supersede")
async def supersede_record(record_id: str, payload: SupersedeRequest):
    client = get_sqlite_client()
    try:
        return await client.supersede(
            record_id,
            payload.new_content,
            reason=payload.reason,
            overrides=payload.overrides,
        )
    except Exception as exc:
        raise_store_error(exc)


@router.get("/{kind}/{record_id}/history")
async def get_history(kind: str, record_id: str):
    client = get_sqlite_client()
    return {"kind": kind, "id": record_id, "history": await client.get_history(record_id)}


@router.get("/{kind}/{record_id}/links")
async def get_links(kind: str, record_id: str, relationship: Optional[str] = None):
    client = get_sqlite_client()
    return {
        "kind": kind,
        "id": record_id,
        "links": await client.get_links(record_id, relationship),
    }


@router.post("/{kind}/{record_id}/links", status_code=201)
async def create_link(kind: str, record_id: str, payload: LinkCreate):
    client = get_sqlite_client()
    try:
        return await client.create_link(
            (kind, record_id),
            (payload.target_kind, payload.target_id),
            payload.relationship,
            strength=payload.strength,
            metadata=payload.metadata,
        )
    except Exception as exc:
        raise_store_error(exc)
