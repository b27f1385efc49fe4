import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router, records_router, search_router
from db import close_sqlite_client, get_sqlite_client
from runtime_state import runtime_state

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Memory store API starting")
    try:
        sqlite_client = get_sqlite_client()
        await sqlite_client.init_db()
        await runtime_state.ensure_started(get_sqlite_client)
        logger.info("SQLite database initialized")
    except Exception as e:
        logger.error("Failed to initialize SQLite: %s", e)
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    yield

    logger.info("Closing database connections")
    await runtime_state.shutdown()
    await close_sqlite_client()


app = FastAPI(
    title="Hybrid Memory API",
    description="Personal memory store with hybrid vector and full-text retrieval",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(records_router)
app.include_router(search_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Hybrid Memory API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        index_payload = await get_sqlite_client().get_index_status()
        degraded_reasons = [
            f"{kind}:{reason}"
            for kind, info in index_payload["kinds"].items()
            for reason, failed in (
                ("fts_unavailable", not info["fts_available"]),
                ("vector_flag_mismatch", not info["consistent"]),
            )
            if failed
        ]
        if not index_payload["embedder"]["available"]:
            degraded_reasons.append("embedder_unavailable")
        index_payload["degraded"] = bool(degraded_reasons)
        index_payload["degrade_reasons"] = degraded_reasons
        payload["index"] = index_payload
        payload["runtime"] = {
            "index_worker": await runtime_state.index_worker.status(),
            "decay": await runtime_state.decay.status(),
        }
        if degraded_reasons:
            payload["status"] = "degraded"

    except Exception as e:
        logger.warning("Health check degraded: %s", e)
        payload["status"] = "degraded"
        payload["index"] = {
            "degraded": True,
            "reason": str(e),
        }

    return payload


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
