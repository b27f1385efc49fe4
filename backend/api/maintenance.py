"""
Maintenance API - embeddings, retrieval weights, query log, decay and index jobs.

Also hosts the HTTP mapping for store errors shared by every router.
"""

from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from db import get_sqlite_client
from db.errors import (
    EmbeddingUnavailableError,
    ImmutableRecordError,
    IndexInconsistencyError,
    NotFoundError,
    RecordStateError,
    StoreError,
    WriteContentionError,
)
from runtime_state import runtime_state

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


def raise_store_error(exc: Exception) -> NoReturn:
    """Translate a store exception into an HTTPException with a dict detail."""
    detail: Dict[str, Any] = {"reason": str(exc)}
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
        detail.update(error=exc.code, kind=exc.kind, id=exc.record_id)
    elif isinstance(exc, ImmutableRecordError):
        status_code = status.HTTP_409_CONFLICT
        detail.update(error=exc.code, id=exc.record_id, reasons=exc.reasons)
    elif isinstance(exc, RecordStateError):
        status_code = status.HTTP_409_CONFLICT
        detail.update(error=exc.code, id=exc.record_id, status=exc.status)
    elif isinstance(exc, EmbeddingUnavailableError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        detail.update(error=exc.code, hint="run POST /maintenance/embeddings/batch")
    elif isinstance(exc, WriteContentionError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        detail.update(
            error=exc.code,
            operation=exc.operation,
            waited_seconds=exc.waited_seconds,
        )
    elif isinstance(exc, IndexInconsistencyError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        detail.update(error=exc.code, kind=exc.kind, operation=exc.operation)
    elif isinstance(exc, StoreError):
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        detail.update(error=exc.code)
    elif isinstance(exc, ValueError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
        detail.update(error="invalid_argument")
    else:
        raise exc
    raise HTTPException(status_code=status_code, detail=detail) from exc


def _raise_on_enqueue_drop(
    enqueue_result: Dict[str, Any], *, operation: str
) -> None:
    if not isinstance(enqueue_result, dict):
        return
    if not enqueue_result.get("dropped"):
        return

    reason = str(enqueue_result.get("reason") or "queue_full")
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if reason == "queue_full"
        else status.HTTP_409_CONFLICT
    )
    detail: Dict[str, Any] = {
        "error": "index_job_enqueue_failed",
        "reason": reason,
        "operation": operation,
    }
    job_id = enqueue_result.get("job_id")
    if isinstance(job_id, str) and job_id:
        detail["job_id"] = job_id
    raise HTTPException(status_code=status_code, detail=detail)


class BatchEmbedRequest(BaseModel):
    kinds: Optional[List[str]] = None
    limit: int = Field(default=100, ge=1, le=10000)
    background: bool = False


class WeightsUpdate(BaseModel):
    vector: Optional[float] = Field(default=None, ge=0.0)
    fts: Optional[float] = Field(default=None, ge=0.0)
    recency: Optional[float] = Field(default=None, ge=0.0)
    importance: Optional[float] = Field(default=None, ge=0.0)


class ConfigUpdate(BaseModel):
    value: str
    description: Optional[str] = None


class ArchiveStaleRequest(BaseModel):
    max_decay: float = Field(default=0.2, ge=0.0, le=1.0)
    inactive_days: float = Field(default=90.0, ge=0.0)
    limit: int = Field(default=100, ge=1, le=10000)


@router.post("/embeddings/batch")
async def batch_embed(payload: BatchEmbedRequest):
    await runtime_state.ensure_started(get_sqlite_client)
    if payload.background:
        if payload.kinds:
            raise HTTPException(
                status_code=422,
                detail={
                    "error": "invalid_argument",
                    "reason": "background batches always cover every kind",
                },
            )
        if not runtime_state.index_worker.enabled:
            raise HTTPException(
                status_code=409,
                detail={"error": "index_worker_disabled", "reason": "index_worker_disabled"},
            )
        result = await runtime_state.index_worker.enqueue_batch_embed(
            limit=payload.limit, reason="api"
        )
        _raise_on_enqueue_drop(result, operation="batch_embed")
        return {"ok": True, "background": True, **result}

    client = get_sqlite_client()
    try:
        report = await client.batch_embed(kinds=payload.kinds, limit=payload.limit)
    except Exception as exc:
        raise_store_error(exc)
    return {"ok": True, "background": False, "report": report}


@router.get("/config/weights")
async def get_weights():
    client = get_sqlite_client()
    return {"weights": await client.get_retrieval_weights()}


@router.put("/config/weights")
async def put_weights(payload: WeightsUpdate):
    client = get_sqlite_client()
    changes = {
        name: value
        for name, value in payload.model_dump().items()
        if value is not None
    }
    try:
        weights = await client.set_retrieval_weights(changes)
    except Exception as exc:
        raise_store_error(exc)
    return {"weights": weights}


@router.get("/config")
async def list_config(prefix: Optional[str] = None):
    client = get_sqlite_client()
    return {"config": await client.get_config(prefix)}


@router.put("/config/{key}")
async def put_config(key: str, payload: ConfigUpdate):
    client = get_sqlite_client()
    try:
        return await client.set_config(key, payload.value, payload.description)
    except Exception as exc:
        raise_store_error(exc)


@router.get("/query-log/stats")
async def query_log_stats(days: int = 7, group_by: str = "tool", limit: int = 20):
    client = get_sqlite_client()
    try:
        return await client.get_query_stats(days=days, group_by=group_by, limit=limit)
    except Exception as exc:
        raise_store_error(exc)


@router.post("/query-log/cleanup")
async def query_log_cleanup(older_than_days: int = 30):
    client = get_sqlite_client()
    try:
        return await client.cleanup_query_log(older_than_days=older_than_days)
    except Exception as exc:
        raise_store_error(exc)


@router.post("/decay")
async def trigger_decay(force: bool = False, reason: str = "api"):
    await runtime_state.ensure_started(get_sqlite_client)
    result = await runtime_state.decay.run_decay(
        client_factory=get_sqlite_client,
        force=force,
        reason=reason or "api",
    )
    degraded = bool(result.get("degraded"))
    return {
        "ok": not degraded,
        "status": "degraded" if degraded else "ok",
        "result": result,
    }


@router.post("/archive-stale")
async def archive_stale(payload: ArchiveStaleRequest):
    client = get_sqlite_client()
    try:
        return await client.archive_stale(
            max_decay=payload.max_decay,
            inactive_days=payload.inactive_days,
            limit=payload.limit,
        )
    except Exception as exc:
        raise_store_error(exc)


@router.get("/index/status")
async def get_index_status():
    client = get_sqlite_client()
    return await client.get_index_status()


@router.get("/index/worker")
async def get_index_worker_status():
    await runtime_state.ensure_started(get_sqlite_client)
    return await runtime_state.index_worker.status()


@router.get("/index/job/{job_id}")
async def get_index_job(job_id: str, wait_seconds: float = 0.0):
    await runtime_state.ensure_started(get_sqlite_client)
    if wait_seconds > 0:
        result = await runtime_state.index_worker.wait_for_job(
            job_id=job_id, timeout_seconds=min(wait_seconds, 30.0)
        )
    else:
        result = await runtime_state.index_worker.get_job(job_id=job_id)
    if not result.get("ok"):
        raise HTTPException(
            status_code=404,
            detail={"error": "job_not_found", "reason": str(result.get("error") or "job not found")},
        )
    result["runtime_worker"] = await runtime_state.index_worker.status()
    return result
