"""
Runtime state for the memory store service.

This module provides:
1) A background index worker that embeds records saved without a vector and
   runs batch_embed sweeps off the request path.
2) Single-flight, throttled decay of idle memories.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Any]

_BATCH_KEY: Tuple[str, str] = ("*", "batch_embed")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DecayCoordinator:
    """Runs the store's daily decay pass at most once per check interval."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.check_interval_seconds = _env_int(
            "RUNTIME_DECAY_CHECK_INTERVAL_SECONDS", 600, minimum=10
        )
        self._checked_at: Optional[float] = None
        self._result: Dict[str, Any] = {"applied": False, "reason": "not_started"}

    def _throttled(self, now: float) -> bool:
        return (
            self._checked_at is not None
            and now - self._checked_at < self.check_interval_seconds
        )

    async def run_decay(
        self,
        *,
        client_factory: ClientFactory,
        force: bool = False,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        async with self._lock:
            now = time.monotonic()
            if not force and self._throttled(now):
                return dict(self._result)

            try:
                client = client_factory()
                outcome = await _resolve(
                    client.apply_decay(force=bool(force), reason=reason or "runtime")
                )
                result = dict(outcome) if isinstance(outcome, dict) else {
                    "applied": False,
                    "raw": outcome,
                }
                result.setdefault("degraded", False)
            except Exception as exc:
                logger.warning("Decay pass failed: %s", exc)
                result = {"applied": False, "degraded": True, "reason": str(exc)}

            self._result = result
            self._checked_at = now
            return dict(result)

    async def status(self) -> Dict[str, Any]:
        async with self._lock:
            return {**self._result, "check_interval_seconds": self.check_interval_seconds}


@dataclass
class IndexJob:
    """One queued unit of embedding work and its lifecycle."""

    task_type: str
    reason: str
    kind: Optional[str] = None
    record_id: Optional[str] = None
    limit: int = 100
    job_id: str = field(default_factory=lambda: f"idx-{uuid.uuid4().hex[:10]}")
    status: str = "queued"
    requested_at: str = field(default_factory=_utc_iso_now)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    FINAL_STATES = frozenset({"succeeded", "failed", "dropped"})

    @property
    def dedupe_key(self) -> Tuple[str, str]:
        if self.task_type == "batch_embed":
            return _BATCH_KEY
        return (self.kind or "", self.record_id or "")

    @property
    def finished(self) -> bool:
        return self.status in self.FINAL_STATES

    def finish(self, status: str, *, result=None, error: Optional[str] = None) -> None:
        self.status = status
        self.finished_at = _utc_iso_now()
        if result is not None:
            self.result = result
        if error:
            self.error = error
        self.done.set()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "task_type": self.task_type,
            "reason": self.reason,
            "status": self.status,
            "requested_at": self.requested_at,
        }
        if self.record_id is not None:
            payload.update(kind=self.kind, record_id=self.record_id)
        else:
            payload["limit"] = self.limit
        for name in ("started_at", "finished_at", "result", "error"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


class IndexTaskWorker:
    """Single consumer draining a bounded queue of embedding jobs.

    ``embed_record`` jobs are deduplicated per ``(kind, record_id)`` and at
    most one ``batch_embed`` job is pending at a time. A job that does not fit
    in the queue is recorded as ``dropped`` so callers can report it.
    """

    def __init__(self) -> None:
        self._enabled = _env_bool("RUNTIME_INDEX_WORKER_ENABLED", True)
        self._queue_maxsize = _env_int("RUNTIME_INDEX_QUEUE_MAXSIZE", 256, minimum=8)
        self._history_limit = _env_int("RUNTIME_INDEX_RECENT_JOBS", 30, minimum=5)

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._lock = asyncio.Lock()
        self._client_factory: Optional[ClientFactory] = None
        self._runner: Optional[asyncio.Task] = None

        self._jobs: Dict[str, IndexJob] = {}
        self._finished_order: "OrderedDict[str, None]" = OrderedDict()
        self._pending: Dict[Tuple[str, str], str] = {}
        self._totals: Counter = Counter()
        self._active_job_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def ensure_started(self, client_factory: ClientFactory) -> None:
        if not self._enabled:
            return
        async with self._lock:
            self._client_factory = client_factory
            if not self.running:
                self._runner = asyncio.create_task(
                    self._run_loop(), name="runtime-index-worker"
                )

    async def shutdown(self) -> None:
        async with self._lock:
            runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def _submit(self, job: IndexJob) -> Dict[str, Any]:
        if not self._enabled:
            return {"queued": False, "reason": "index_worker_disabled"}

        async with self._lock:
            existing = self._pending.get(job.dedupe_key)
            if existing is not None:
                return {"queued": False, "deduped": True, "job_id": existing}

            self._jobs[job.job_id] = job
            try:
                self._queue.put_nowait(job)
            except asyncio.QueueFull:
                job.finish("dropped", error="queue_full")
                self._totals["dropped"] += 1
                self._remember_finished_locked(job)
                logger.warning(
                    "Index queue full (%d), dropped %s job", self._queue_maxsize, job.task_type
                )
                return {
                    "queued": False,
                    "dropped": True,
                    "job_id": job.job_id,
                    "reason": "queue_full",
                }

            self._pending[job.dedupe_key] = job.job_id
            self._totals["enqueued"] += 1
            return {"queued": True, "job_id": job.job_id}

    async def enqueue_embed_record(
        self,
        *,
        kind: str,
        record_id: str,
        reason: str = "write",
    ) -> Dict[str, Any]:
        if not record_id:
            raise ValueError("record_id is required.")
        job = IndexJob(
            task_type="embed_record",
            reason=reason or "write",
            kind=kind,
            record_id=record_id,
        )
        outcome = await self._submit(job)
        if outcome.get("reason") == "index_worker_disabled":
            return outcome
        return {**outcome, "record_id": record_id}

    async def enqueue_batch_embed(
        self, *, limit: int = 100, reason: str = "manual"
    ) -> Dict[str, Any]:
        job = IndexJob(
            task_type="batch_embed",
            reason=reason or "manual",
            limit=max(1, int(limit)),
        )
        return await self._submit(job)

    async def get_job(self, *, job_id: str) -> Dict[str, Any]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return {"ok": False, "error": f"job '{job_id}' not found."}
            return {"ok": True, "job": job.to_dict()}

    async def wait_for_job(
        self, *, job_id: str, timeout_seconds: float = 10.0
    ) -> Dict[str, Any]:
        if not job_id:
            return {"ok": False, "error": "job_id is required."}
        async with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            return {"ok": False, "error": f"job '{job_id}' not found."}
        if not job.finished:
            try:
                await asyncio.wait_for(
                    job.done.wait(), timeout=max(0.1, float(timeout_seconds))
                )
            except asyncio.TimeoutError:
                logger.debug("Still waiting on index job %s", job_id)
        return await self.get_job(job_id=job_id)

    async def status(self) -> Dict[str, Any]:
        async with self._lock:
            recent = [
                self._jobs[job_id].to_dict()
                for job_id in reversed(self._finished_order)
                if job_id in self._jobs
            ]
            return {
                "enabled": self._enabled,
                "running": self.running,
                "queue_depth": self._queue.qsize(),
                "queue_maxsize": self._queue_maxsize,
                "active_job_id": self._active_job_id,
                "pending_record_jobs": sum(
                    1 for key in self._pending if key != _BATCH_KEY
                ),
                "batch_pending": _BATCH_KEY in self._pending,
                "stats": {
                    name: self._totals[name]
                    for name in ("enqueued", "succeeded", "failed", "dropped")
                },
                "last_error": self._last_error,
                "last_finished_at": self._last_finished_at,
                "recent_jobs": recent,
            }

    async def _run_loop(self) -> None:
        while True:
            job: IndexJob = await self._queue.get()
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: IndexJob) -> None:
        async with self._lock:
            job.status = "running"
            job.started_at = _utc_iso_now()
            self._active_job_id = job.job_id
            factory = self._client_factory

        try:
            if factory is None:
                raise RuntimeError("index worker has no store client factory")
            client = factory()
            if job.task_type == "embed_record":
                outcome = await _resolve(client.embed_record(job.kind, job.record_id))
            else:
                outcome = await _resolve(client.batch_embed(limit=job.limit))
        except asyncio.CancelledError:
            await self._complete(job, "failed", error="worker_cancelled")
            raise
        except Exception as exc:
            logger.warning("Index job %s (%s) failed: %s", job.job_id, job.task_type, exc)
            await self._complete(job, "failed", error=str(exc))
        else:
            result = outcome if isinstance(outcome, dict) else {"result": outcome}
            await self._complete(job, "succeeded", result=result)

    async def _complete(
        self,
        job: IndexJob,
        status: str,
        *,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._lock:
            job.finish(status, result=result, error=error)
            if self._pending.get(job.dedupe_key) == job.job_id:
                del self._pending[job.dedupe_key]
            self._totals[status] += 1
            if status == "failed":
                self._last_error = error
            self._last_finished_at = job.finished_at
            if self._active_job_id == job.job_id:
                self._active_job_id = None
            self._remember_finished_locked(job)

    def _remember_finished_locked(self, job: IndexJob) -> None:
        self._finished_order.pop(job.job_id, None)
        self._finished_order[job.job_id] = None
        while len(self._finished_order) > self._history_limit:
            stale_id, _ = self._finished_order.popitem(last=False)
            self._jobs.pop(stale_id, None)


class RuntimeState:
    def __init__(self) -> None:
        self.decay = DecayCoordinator()
        self.index_worker = IndexTaskWorker()

    async def ensure_started(self, client_factory: ClientFactory) -> None:
        await self.index_worker.ensure_started(client_factory)
        await self.decay.run_decay(
            client_factory=client_factory,
            force=False,
            reason="runtime.ensure_started",
        )

    async def shutdown(self) -> None:
        await self.index_worker.shutdown()


runtime_state = RuntimeState()
