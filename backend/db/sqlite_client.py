"""
SQLite client for the memory store.

This module owns the record tables and their per-kind index pairs:
- writes: save, update, supersede, smart_save, handle_correction, delete
- retrieval: hybrid_search (rank fusion), semantic_search, text_search
- maintenance: batch_embed, decay, stale-record archival, index status
- runtime configuration: retrieval weights persisted in the config table

Every mutation that touches more than one structure (record row, vector
entry, FTS entry via triggers, history, links) runs in one transaction behind
the single-writer lane.
"""

import json
import logging
import math
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from dotenv import find_dotenv, load_dotenv
from sqlalchemy import event, func, select, text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from . import query_log
from .embedder import EMBEDDING_DIM, Embedder, EmbeddingOutcome
from .errors import (
    EmbeddingUnavailableError,
    ImmutableRecordError,
    IndexInconsistencyError,
    NotFoundError,
    RecordStateError,
    WriteContentionError,
)
from .guard import derive_immutable_flag, immutability_reasons
from .indexes import TextIndex, VectorIndex
from .migration_runner import apply_pending_migrations, sqlite_file_path
from .models import (
    KINDS,
    Base,
    ConfigEntry,
    HistoryEntry,
    IndexMeta,
    KindSpec,
    Link,
    Memory,
    _utc_now_naive,
)
from .write_lane import WriteLane

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

RRF_K = 60
OVER_FETCH_FACTOR = 3
ACCESS_DECAY_INCREMENT = 0.1
# Query-log writes never queue behind other writers.
QUERY_LOG_LANE_TIMEOUT = 0.0
DEDUP_DISTANCE_THRESHOLD = 0.9
TOKEN_OVERLAP_THRESHOLD = 0.5
DEFAULT_IMPORTANCE = 3
CORRECTION_IMPORTANCE = 5
MAX_SEARCH_LIMIT = 200

DEFAULT_WEIGHTS: Dict[str, float] = {
    "vector": 0.4,
    "fts": 0.3,
    "recency": 0.2,
    "importance": 0.1,
}
WEIGHT_CONFIG_KEYS = {name: f"retrieval.{name}_weight" for name in DEFAULT_WEIGHTS}
_WEIGHT_DESCRIPTIONS = {
    "vector": "Weight of the vector rank in reciprocal rank fusion",
    "fts": "Weight of the full-text rank in reciprocal rank fusion",
    "recency": "Weight of the decay score signal",
    "importance": "Weight of the importance signal",
}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _tokenize(value: str) -> set:
    return set(re.findall(r"[a-z0-9_]+", (value or "").lower()))


def token_overlap(left: str, right: str) -> float:
    """Shared tokens over the union of both token sets."""
    left_tokens = _tokenize(left)
    right_tokens = _tokenize(right)
    union = left_tokens | right_tokens
    if not union:
        return 0.0
    return len(left_tokens & right_tokens) / len(union)


def _loads_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return default
    return value if isinstance(value, type(default)) else default


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _normalize_tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        raise ValueError("tags must be a list of strings")
    tags: List[str] = []
    for item in raw:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _bounded_int(raw: Any, name: str, minimum: int, maximum: Optional[int]) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer") from None
    if value < minimum or (maximum is not None and value > maximum):
        upper = f"..{maximum}" if maximum is not None else "+"
        raise ValueError(f"{name} must be in {minimum}{upper}")
    return value


def _unit_float(raw: Any, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number") from None
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0")
    return value


def _require_text(value: Any, name: str) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise ValueError(f"{name} must not be empty")
    return normalized


def _bounded_limit(limit: Any) -> int:
    return _bounded_int(limit, "limit", 1, MAX_SEARCH_LIMIT)


def _validate_weights(raw: Optional[Dict[str, Any]]) -> Dict[str, float]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("weights must be an object")
    validated: Dict[str, float] = {}
    for name, value in raw.items():
        key = str(name).strip().lower()
        if key.endswith("_weight"):
            key = key[: -len("_weight")]
        if key not in DEFAULT_WEIGHTS:
            raise ValueError(
                f"unknown weight '{name}'; expected one of {', '.join(DEFAULT_WEIGHTS)}"
            )
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"weight '{name}' must be a number") from None
        if not math.isfinite(numeric) or numeric < 0:
            raise ValueError(f"weight '{name}' must be a finite non-negative number")
        validated[key] = numeric
    return validated


class SQLiteClient:
    """Async SQLite memory store with per-kind vector and full-text indexes."""

    def __init__(
        self,
        database_url: str,
        embedder: Optional[Embedder] = None,
        write_timeout_seconds: Optional[float] = None,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                "sqlite+aiosqlite:///memory_store.db"
            embedder: embedding backend; built from the environment when omitted
            write_timeout_seconds: bounded wait for the single-writer lane and
                for SQLite's own busy handler
        """
        self.database_url = database_url
        self._database_file = sqlite_file_path(database_url)
        self._write_timeout = max(
            0.1,
            write_timeout_seconds
            if write_timeout_seconds is not None
            else self._env_float("STORE_WRITE_TIMEOUT_SEC", 5.0),
        )
        self.engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"timeout": self._write_timeout},
        )
        event.listen(self.engine.sync_engine, "connect", self._configure_connection)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.embedder = embedder or Embedder()
        self.write_lane = WriteLane(self._write_timeout)
        self.vector_indexes = {name: VectorIndex(spec) for name, spec in KINDS.items()}
        self.text_indexes = {name: TextIndex(spec) for name, spec in KINDS.items()}

        self._decay_half_life_days = max(
            1.0, self._env_float("STORE_DECAY_HALF_LIFE_DAYS", 30.0)
        )
        self._decay_min_score = min(
            1.0, max(0.0, self._env_float("STORE_DECAY_MIN_SCORE", 0.05))
        )

    @staticmethod
    def _env_float(name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _configure_connection(self, dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(self._write_timeout * 1000)}")
        if self._database_file is not None:
            # Readers keep going while the single writer commits.
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init_db(self) -> None:
        """Create tables, apply SQL migrations, then install the FTS indexes."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await apply_pending_migrations(self.database_url)
        async with self.engine.begin() as conn:
            await conn.run_sync(self._setup_index_infra)

    def _setup_index_infra(self, connection) -> Dict[str, bool]:
        now = _utc_now_naive().isoformat()
        capabilities: Dict[str, bool] = {}
        for name, index in self.text_indexes.items():
            existed = (
                connection.execute(
                    text(
                        "SELECT 1 FROM sqlite_master "
                        "WHERE type = 'table' AND name = :name LIMIT 1"
                    ),
                    {"name": index.kind.fts_table},
                ).first()
                is not None
            )
            try:
                for statement in index.ddl():
                    connection.execute(text(statement))
                if not existed:
                    # Rows written before the index existed.
                    connection.execute(text(index.rebuild_sql()))
                index.available = True
            except Exception as exc:
                # SQLite builds without FTS5 keep working through the LIKE scan.
                logger.warning("FTS5 unavailable for %s: %s", name, exc)
                index.available = False
            capabilities[name] = index.available
            self._sync_set_index_meta(
                connection, f"fts_available.{name}", "1" if index.available else "0", now
            )

        self._sync_set_index_meta(connection, "embedding_backend", self.embedder.backend, now)
        self._sync_set_index_meta(connection, "embedding_model", self.embedder.model_name, now)
        self._sync_set_index_meta(connection, "embedding_dim", str(EMBEDDING_DIM), now)
        return capabilities

    @staticmethod
    def _sync_set_index_meta(connection, key: str, value: str, updated_at: str) -> None:
        connection.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": updated_at},
        )

    async def _set_index_meta(self, session: AsyncSession, key: str, value: str) -> None:
        await session.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_now_naive().isoformat()},
        )

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def _write(self, operation: str, *, lane_timeout: Optional[float] = None):
        """One write transaction behind the single-writer lane."""
        async with self.write_lane.acquire(operation, lane_timeout):
            try:
                async with self.session() as session:
                    yield session
            except OperationalError as exc:
                message = str(exc.orig if exc.orig is not None else exc).lower()
                if "database is locked" in message or "database is busy" in message:
                    raise WriteContentionError(operation, self._write_timeout) from exc
                raise

    # =========================================================================
    # Row helpers
    # =========================================================================

    @staticmethod
    def _kind(kind: str) -> KindSpec:
        spec = KINDS.get(str(kind or "").strip().lower())
        if spec is None:
            raise ValueError(f"unknown kind '{kind}'; expected one of {', '.join(KINDS)}")
        return spec

    def _kinds(self, kinds: Optional[Iterable[str]], default: Sequence[str]) -> List[KindSpec]:
        if kinds is None:
            names: List[str] = list(default)
        elif isinstance(kinds, str):
            names = [kinds]
        else:
            names = list(kinds)
        if not names:
            raise ValueError("at least one kind is required")
        specs: List[KindSpec] = []
        for name in names:
            spec = self._kind(name)
            if spec not in specs:
                specs.append(spec)
        return specs

    @staticmethod
    def _serialize(spec: KindSpec, row: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": spec.name}
        for attr in spec.model.__mapper__.column_attrs:
            name = attr.key
            if name == "key":
                continue
            value = getattr(row, name)
            if name == "metadata_json":
                data["metadata"] = _loads_json(value, {})
            elif name == "tags":
                data["tags"] = _loads_json(value, [])
            elif isinstance(value, datetime):
                data[name] = value.isoformat()
            else:
                data[name] = value
        return data

    @staticmethod
    def _link_to_dict(link: Link) -> Dict[str, Any]:
        return {
            "id": link.id,
            "source_kind": link.source_kind,
            "source_id": link.source_id,
            "target_kind": link.target_kind,
            "target_id": link.target_id,
            "relationship": link.relationship,
            "strength": link.strength,
            "metadata": _loads_json(link.metadata_json, {}),
            "created_at": _iso(link.created_at),
        }

    @staticmethod
    def _embed_values(spec: KindSpec, row: Any) -> Dict[str, Any]:
        return {name: getattr(row, name) for name in spec.embed_fields}

    def _normalize_fields(
        self, spec: KindSpec, fields: Dict[str, Any], *, creating: bool
    ) -> Dict[str, Any]:
        """Validate caller fields and map them onto column values."""
        if not isinstance(fields, dict):
            raise ValueError("fields must be an object")
        unknown = sorted(set(fields) - set(spec.writable_fields))
        if unknown:
            raise ValueError(f"unknown {spec.name} field(s): {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for name, raw in fields.items():
            if name == "tags":
                values["tags"] = json.dumps(_normalize_tags(raw))
            elif name == "metadata":
                if raw is None:
                    raw = {}
                if not isinstance(raw, dict):
                    raise ValueError("metadata must be an object")
                values["metadata_json"] = json.dumps(raw)
            elif name == "importance":
                values[name] = _bounded_int(raw, name, 1, 5)
            elif name == "mention_count":
                values[name] = _bounded_int(raw, name, 0, None)
            elif name == "confidence":
                values[name] = _unit_float(raw, name)
            else:
                normalized = str(raw).strip() if raw is not None else ""
                if not normalized and name in spec.required_fields:
                    raise ValueError(f"{name} must not be empty")
                values[name] = normalized or None

        if creating:
            missing = [name for name in spec.required_fields if not values.get(name)]
            if missing:
                raise ValueError(f"missing required field(s): {', '.join(missing)}")
        return values

    @staticmethod
    def _refresh_immutable(spec: KindSpec, row: Any) -> None:
        if spec.name != "memory":
            return
        row.immutable = derive_immutable_flag(
            {
                "source": row.source,
                "category": row.category,
                "subcategory": row.subcategory,
                "metadata": _loads_json(row.metadata_json, {}),
            }
        )

    def _new_row(self, spec: KindSpec, values: Dict[str, Any], now: datetime) -> Any:
        row = spec.model(
            id=_new_id(spec.id_prefix),
            created_at=now,
            updated_at=now,
            has_embedding=False,
            **values,
        )
        self._refresh_immutable(spec, row)
        return row

    @staticmethod
    def _guard_reasons(spec: KindSpec, row: Any) -> List[str]:
        if spec.name != "memory" or not row.immutable:
            return []
        reasons = immutability_reasons(
            source=row.source,
            category=row.category,
            subcategory=row.subcategory,
            metadata=_loads_json(row.metadata_json, {}),
        )
        return reasons or ["immutable"]

    def _check_mutable(self, spec: KindSpec, row: Any) -> None:
        reasons = self._guard_reasons(spec, row)
        if reasons:
            raise ImmutableRecordError(row.id, reasons)

    @staticmethod
    def _check_active(spec: KindSpec, row: Any) -> None:
        if spec.has_status and row.status != "active":
            raise RecordStateError(row.id, row.status)

    @staticmethod
    async def _get_row(session: AsyncSession, spec: KindSpec, record_id: str) -> Any:
        result = await session.execute(
            select(spec.model).where(spec.model.id == record_id)
        )
        return result.scalar_one_or_none()

    async def _require_row(
        self, session: AsyncSession, spec: KindSpec, record_id: str
    ) -> Any:
        row = await self._get_row(session, spec, record_id)
        if row is None:
            raise NotFoundError(spec.name, record_id)
        return row

    @staticmethod
    async def _rows_by_key(
        session: AsyncSession, spec: KindSpec, keys: Iterable[int]
    ) -> Dict[int, Any]:
        key_list = list(keys)
        if not key_list:
            return {}
        result = await session.execute(
            select(spec.model).where(spec.model.key.in_(key_list))
        )
        return {row.key: row for row in result.scalars().all()}

    @staticmethod
    def _history(
        session: AsyncSession,
        spec: KindSpec,
        record_id: str,
        operation: str,
        *,
        before: Optional[str] = None,
        after: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        session.add(
            HistoryEntry(
                id=_new_id("mhist"),
                record_kind=spec.name,
                record_id=record_id,
                operation=operation,
                content_before=before,
                content_after=after,
                reason=reason,
                changed_at=_utc_now_naive(),
            )
        )

    async def _store_vector(
        self,
        session: AsyncSession,
        spec: KindSpec,
        row: Any,
        outcome: Optional[EmbeddingOutcome],
    ) -> None:
        """Make the vector entry match ``outcome``; no outcome clears it."""
        index = self.vector_indexes[spec.name]
        if outcome is not None and outcome.ok:
            await index.upsert(session, row.key, outcome.vector, outcome.model)
            row.has_embedding = True
            row.embedding_model = outcome.model
        else:
            await index.delete(session, row.key)
            row.has_embedding = False
            row.embedding_model = None

    @staticmethod
    def _embedding_status(
        outcome: Optional[EmbeddingOutcome], *, pending: bool = False
    ) -> Dict[str, Any]:
        if outcome is None:
            return {"embedded": False, "pending": pending, "truncated": False, "error": None}
        return {
            "embedded": outcome.ok,
            "pending": False,
            "truncated": outcome.truncated,
            "error": outcome.error,
            "model": outcome.model,
        }

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_record(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        spec = self._kind(kind)
        async with self.session() as session:
            row = await self._get_row(session, spec, record_id)
            return self._serialize(spec, row) if row is not None else None

    async def list_records(
        self,
        kind: str = "memory",
        *,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        status: Optional[str] = "active",
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        spec = self._kind(kind)
        model = spec.model
        stmt = select(model)
        if status and spec.has_status:
            stmt = stmt.where(model.status == status)
        if category and hasattr(model, "category"):
            stmt = stmt.where(model.category == category)
        for tag in _normalize_tags(tags):
            stmt = stmt.where(model.tags.like(f'%"{tag}"%'))
        stmt = (
            stmt.order_by(model.updated_at.desc(), model.key.desc())
            .limit(_bounded_int(limit, "limit", 1, 500))
            .offset(max(0, int(offset)))
        )
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [self._serialize(spec, row) for row in rows]

    async def get_history(self, record_id: str) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(HistoryEntry)
                .where(HistoryEntry.record_id == record_id)
                .order_by(HistoryEntry.changed_at.asc())
            )
            return [
                {
                    "id": entry.id,
                    "record_kind": entry.record_kind,
                    "record_id": entry.record_id,
                    "operation": entry.operation,
                    "content_before": entry.content_before,
                    "content_after": entry.content_after,
                    "reason": entry.reason,
                    "changed_at": _iso(entry.changed_at),
                }
                for entry in result.scalars().all()
            ]

    async def get_links(
        self, record_id: str, relationship: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        stmt = select(Link).where(
            (Link.source_id == record_id) | (Link.target_id == record_id)
        )
        if relationship:
            stmt = stmt.where(Link.relationship == relationship)
        async with self.session() as session:
            result = await session.execute(stmt.order_by(Link.created_at.asc()))
            return [self._link_to_dict(link) for link in result.scalars().all()]

    async def create_link(
        self,
        source: Tuple[str, str],
        target: Tuple[str, str],
        relationship: str,
        *,
        strength: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Link two existing records; ``source``/``target`` are ``(kind, id)``."""
        relationship = _require_text(relationship, "relationship")
        source_spec, target_spec = self._kind(source[0]), self._kind(target[0])
        async with self._write("create_link") as session:
            await self._require_row(session, source_spec, source[1])
            await self._require_row(session, target_spec, target[1])
            existing = await session.execute(
                select(Link.id).where(
                    Link.source_id == source[1],
                    Link.target_id == target[1],
                    Link.relationship == relationship,
                )
            )
            if existing.first() is not None:
                raise ValueError(
                    f"link {source[1]} -[{relationship}]-> {target[1]} already exists"
                )
            link = Link(
                id=_new_id("lnk"),
                source_kind=source_spec.name,
                source_id=source[1],
                target_kind=target_spec.name,
                target_id=target[1],
                relationship=relationship,
                strength=_unit_float(strength, "strength"),
                metadata_json=json.dumps(metadata or {}),
                created_at=_utc_now_naive(),
            )
            session.add(link)
            await session.flush()
            return self._link_to_dict(link)

    async def delete_link(self, link_id: str) -> Dict[str, Any]:
        async with self._write("delete_link") as session:
            link = await session.get(Link, link_id)
            if link is None:
                raise NotFoundError("link", link_id)
            removed = self._link_to_dict(link)
            await session.delete(link)
            return {"deleted": True, "link": removed}

    # =========================================================================
    # Writes
    # =========================================================================

    async def save(
        self, kind: str, fields: Dict[str, Any], *, index_now: bool = True
    ) -> Dict[str, Any]:
        """Insert a record, then embed it best-effort.

        With ``index_now=False`` the caller owns scheduling ``embed_record``;
        the record is stored with ``has_embedding = False`` until then.
        """
        spec = self._kind(kind)
        values = self._normalize_fields(spec, fields, creating=True)
        async with self._write("save") as session:
            row = self._new_row(spec, values, _utc_now_naive())
            session.add(row)
            await session.flush()
            record = self._serialize(spec, row)

        if not index_now:
            return {"record": record, "embedding": self._embedding_status(None, pending=True)}

        embedding = await self.embed_record(spec.name, record["id"])
        if embedding.get("embedded"):
            record["has_embedding"] = True
            record["embedding_model"] = embedding.get("model")
        return {"record": record, "embedding": embedding}

    async def embed_record(self, kind: str, record_id: str) -> Dict[str, Any]:
        """Compute and store one record's vector. Never raises on model failure."""
        spec = self._kind(kind)
        async with self.session() as session:
            row = await self._require_row(session, spec, record_id)
            source_text = spec.embed_text(self._embed_values(spec, row))

        outcome = await self.embedder.try_embed(source_text)
        if not outcome.ok:
            return self._embedding_status(outcome)

        async with self._write("embed_record") as session:
            row = await self._get_row(session, spec, record_id)
            if row is None:
                return {**self._embedding_status(outcome), "embedded": False, "error": "record_deleted"}
            if spec.embed_text(self._embed_values(spec, row)) != source_text:
                # A later update already re-embedded the new text.
                return {**self._embedding_status(outcome), "embedded": False, "error": "record_changed"}
            await self._store_vector(session, spec, row, outcome)
        return self._embedding_status(outcome)

    async def update(
        self,
        kind: str,
        record_id: str,
        patch: Dict[str, Any],
        *,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        spec = self._kind(kind)
        if not patch:
            raise ValueError("patch must change at least one field")
        values = self._normalize_fields(spec, patch, creating=False)

        async with self.session() as session:
            row = await self._require_row(session, spec, record_id)
            self._check_mutable(spec, row)
            self._check_active(spec, row)
            current = self._embed_values(spec, row)
            merged = {
                name: values[name] if name in values else current[name]
                for name in spec.embed_fields
            }
            new_text = spec.embed_text(merged)
            text_changed = new_text != spec.embed_text(current)

        # Embed before taking the write lane so the vector lands in the same
        # transaction as the row change.
        outcome = await self.embedder.try_embed(new_text) if text_changed else None

        async with self._write("update") as session:
            row = await self._require_row(session, spec, record_id)
            self._check_mutable(spec, row)
            self._check_active(spec, row)
            before = spec.embed_text(self._embed_values(spec, row))
            for name, value in values.items():
                setattr(row, name, value)
            self._refresh_immutable(spec, row)
            row.updated_at = _utc_now_naive()
            after = spec.embed_text(self._embed_values(spec, row))
            if after != before:
                matching = outcome if after == new_text else None
                await self._store_vector(session, spec, row, matching)
            self._history(
                session, spec, row.id, "updated", before=before, after=after, reason=reason
            )
            await session.flush()
            record = self._serialize(spec, row)

        return {
            "record": record,
            "embedding": self._embedding_status(outcome) if text_changed else None,
        }

    async def supersede(
        self,
        old_id: str,
        new_content: str,
        *,
        reason: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Replace an active memory with a new one that inherits its classification."""
        spec = KINDS["memory"]
        new_content = _require_text(new_content, "new_content")
        override_values = self._normalize_fields(spec, dict(overrides or {}), creating=False)
        if "content" in override_values:
            raise ValueError("pass the replacement text as new_content, not in overrides")

        async with self.session() as session:
            old = await self._require_row(session, spec, old_id)
            self._check_mutable(spec, old)
            self._check_active(spec, old)

        outcome = await self.embedder.try_embed(new_content)

        async with self._write("supersede") as session:
            old = await self._require_row(session, spec, old_id)
            self._check_mutable(spec, old)
            self._check_active(spec, old)
            now = _utc_now_naive()
            inherited = {
                "category": old.category,
                "subcategory": old.subcategory,
                "tags": old.tags,
                "importance": old.importance,
                "confidence": old.confidence,
                "project_id": old.project_id,
                "metadata_json": old.metadata_json,
            }
            new = self._new_row(
                spec, {**inherited, **override_values, "content": new_content}, now
            )
            session.add(new)
            await session.flush()

            old.status = "superseded"
            old.superseded_by = new.id
            old.updated_at = now

            link = Link(
                id=_new_id("lnk"),
                source_kind=spec.name,
                source_id=new.id,
                target_kind=spec.name,
                target_id=old.id,
                relationship="supersedes",
                strength=1.0,
                metadata_json=json.dumps({"reason": reason} if reason else {}),
                created_at=now,
            )
            session.add(link)
            self._history(
                session,
                spec,
                old.id,
                "superseded",
                before=old.content,
                after=new_content,
                reason=reason,
            )
            self._history(
                session,
                spec,
                new.id,
                "created",
                after=new_content,
                reason=f"Supersedes {old.id}",
            )
            await self._store_vector(session, spec, new, outcome)
            await session.flush()
            payload = {
                "old": self._serialize(spec, old),
                "new": self._serialize(spec, new),
                "link": self._link_to_dict(link),
            }

        payload["embedding"] = self._embedding_status(outcome)
        return payload

    async def _find_similar(
        self, spec: KindSpec, content: str, outcome: EmbeddingOutcome
    ) -> Tuple[List[Dict[str, Any]], str]:
        if outcome.ok:
            async with self.session() as session:
                hits = await self.vector_indexes[spec.name].search(
                    session, outcome.vector, 5, active_only=True
                )
                close = [(key, dist) for key, dist in hits if dist < DEDUP_DISTANCE_THRESHOLD]
                rows = await self._rows_by_key(session, spec, [key for key, _ in close])
            similar = []
            for key, distance in close:
                row = rows.get(key)
                if row is None:
                    continue
                similar.append(
                    {
                        "id": row.id,
                        "content": row.content,
                        "category": row.category,
                        "distance": round(distance, 4),
                        # Unit vectors: cosine = 1 - d^2 / 2.
                        "similarity": round(1.0 - (distance * distance) / 2.0, 4),
                    }
                )
            return similar, "vector"

        async with self.session() as session:
            result = await self.text_indexes[spec.name].search(
                session, content, 5, active_only=True, fallback_text=content[:50]
            )
            rows = await self._rows_by_key(session, spec, [key for key, _ in result.hits])
        similar = []
        for key, _ in result.hits:
            row = rows.get(key)
            if row is None:
                continue
            overlap = token_overlap(content, row.content)
            if overlap > TOKEN_OVERLAP_THRESHOLD:
                similar.append(
                    {
                        "id": row.id,
                        "content": row.content,
                        "category": row.category,
                        "overlap": round(overlap, 4),
                    }
                )
        return similar, result.method

    async def smart_save(
        self,
        content: str,
        fields: Optional[Dict[str, Any]] = None,
        *,
        force_add: bool = False,
        is_correction: bool = False,
    ) -> Dict[str, Any]:
        """Save a memory unless something close already exists.

        Duplicate detection reads before it writes and holds no lock across
        the two steps, so two concurrent calls with the same content can both
        add. Callers that need strict uniqueness must serialize themselves.
        """
        spec = KINDS["memory"]
        payload = dict(fields or {})
        payload["content"] = content
        if is_correction or payload.get("category") == "correction":
            payload["importance"] = CORRECTION_IMPORTANCE
        values = self._normalize_fields(spec, payload, creating=True)

        outcome = await self.embedder.try_embed(values["content"])
        if not force_add:
            similar, method = await self._find_similar(spec, values["content"], outcome)
            if similar:
                return {
                    "action": "needs_decision",
                    "similar": similar,
                    "method": method,
                    "suggested_action": "supersede" if is_correction else "review",
                    "message": (
                        f"Found {len(similar)} similar memor"
                        f"{'y' if len(similar) == 1 else 'ies'}. Supersede one of "
                        "them or call again with force_add to keep both."
                    ),
                }

        async with self._write("smart_save") as session:
            row = self._new_row(spec, values, _utc_now_naive())
            session.add(row)
            await session.flush()
            self._history(
                session,
                spec,
                row.id,
                "created",
                after=row.content,
                reason="User correction" if is_correction else "Proactive save",
            )
            await self._store_vector(session, spec, row, outcome)
            await session.flush()
            record = self._serialize(spec, row)

        return {
            "action": "added",
            "record": record,
            "embedding": self._embedding_status(outcome),
        }

    async def handle_correction(
        self,
        correct_content: str,
        *,
        wrong_id: Optional[str] = None,
        wrong_content: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Archive a wrong memory and store its correction at full importance."""
        spec = KINDS["memory"]
        correct_content = _require_text(correct_content, "correct_content")
        if not wrong_id and not str(wrong_content or "").strip():
            raise ValueError("wrong_id or wrong_content is required")

        async with self.session() as session:
            if wrong_id:
                target = await self._require_row(session, spec, wrong_id)
            else:
                needle = str(wrong_content).strip()
                result = await self.text_indexes[spec.name].search(
                    session, needle, 1, active_only=True, fallback_text=needle[:50]
                )
                rows = await self._rows_by_key(session, spec, [k for k, _ in result.hits])
                target = rows.get(result.hits[0][0]) if result.hits else None
            if target is not None:
                self._check_mutable(spec, target)
                self._check_active(spec, target)
            target_id = target.id if target is not None else None

        outcome = await self.embedder.try_embed(correct_content)

        async with self._write("handle_correction") as session:
            wrong = (
                await self._require_row(session, spec, target_id) if target_id else None
            )
            if wrong is not None:
                self._check_mutable(spec, wrong)
                self._check_active(spec, wrong)
            now = _utc_now_naive()
            values = self._normalize_fields(
                spec,
                {
                    "content": correct_content,
                    "category": category
                    or (wrong.category if wrong is not None else "correction"),
                    "subcategory": wrong.subcategory if wrong is not None else None,
                    "tags": tags
                    if tags is not None
                    else (_loads_json(wrong.tags, []) if wrong is not None else []),
                    "project_id": wrong.project_id if wrong is not None else None,
                    "importance": CORRECTION_IMPORTANCE,
                    "confidence": 1.0,
                },
                creating=True,
            )
            new = self._new_row(spec, values, now)
            new.decay_score = 1.0
            session.add(new)
            await session.flush()

            link_payload = None
            if wrong is not None:
                wrong.status = "archived"
                wrong.updated_at = now
                link = Link(
                    id=_new_id("lnk"),
                    source_kind=spec.name,
                    source_id=new.id,
                    target_kind=spec.name,
                    target_id=wrong.id,
                    relationship="corrects",
                    strength=1.0,
                    metadata_json=json.dumps({"reason": reason} if reason else {}),
                    created_at=now,
                )
                session.add(link)
                link_payload = self._link_to_dict(link)
                self._history(
                    session,
                    spec,
                    wrong.id,
                    "corrected",
                    before=wrong.content,
                    after=correct_content,
                    reason=reason or f"Corrected to: {correct_content[:100]}",
                )
            self._history(
                session,
                spec,
                new.id,
                "created",
                before=wrong.content if wrong is not None else None,
                after=correct_content,
                reason="User correction",
            )
            await self._store_vector(session, spec, new, outcome)
            await session.flush()
            new_record = self._serialize(spec, new)

        return {
            "action": "corrected",
            "archived_id": target_id,
            "new_record": new_record,
            "link": link_payload,
            "embedding": self._embedding_status(outcome),
        }

    async def delete(
        self, kind: str, record_id: str, *, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        spec = self._kind(kind)
        async with self._write("delete") as session:
            row = await self._require_row(session, spec, record_id)
            self._check_mutable(spec, row)
            await self.vector_indexes[spec.name].delete(session, row.key)
            self._history(
                session,
                spec,
                row.id,
                "deleted",
                before=spec.embed_text(self._embed_values(spec, row)),
                reason=reason,
            )
            await session.delete(row)
        return {"ok": True, "kind": spec.name, "id": record_id}

    # =========================================================================
    # Retrieval
    # =========================================================================

    def _fuse(
        self,
        spec: KindSpec,
        row: Any,
        vector_rank: Optional[int],
        fts_rank: Optional[int],
        weights: Dict[str, float],
    ) -> Dict[str, Optional[float]]:
        vector_component = (
            weights["vector"] / (RRF_K + vector_rank) if vector_rank else None
        )
        fts_component = weights["fts"] / (RRF_K + fts_rank) if fts_rank else None

        decay = getattr(row, "decay_score", None)
        decay = 1.0 if decay is None else float(decay)
        importance = (
            getattr(row, spec.importance_field, None) if spec.importance_field else None
        )
        importance = DEFAULT_IMPORTANCE if importance is None else float(importance)
        recency_component = weights["recency"] * decay
        importance_component = weights["importance"] * (importance / 5.0)

        total = (
            (vector_component or 0.0)
            + (fts_component or 0.0)
            + recency_component
            + importance_component
        )
        return {
            "vector": vector_component,
            "fts": fts_component,
            "recency": recency_component,
            "importance": importance_component,
            "total": total,
        }

    async def _record_access(self, spec: KindSpec, record_ids: List[str]) -> int:
        """Bump access stats and decay score of records a search returned."""
        if not spec.tracks_access or not record_ids:
            return 0
        model = spec.model
        async with self._write("record_access") as session:
            result = await session.execute(
                update(model)
                .where(model.id.in_(record_ids))
                .values(
                    access_count=model.access_count + 1,
                    last_accessed_at=_utc_now_naive(),
                    decay_score=func.min(
                        1.0, func.coalesce(model.decay_score, 1.0) + ACCESS_DECAY_INCREMENT
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def _record_access_for(self, results: List[Dict[str, Any]]) -> bool:
        """Returns False when contention kept the access bump from landing."""
        by_kind: Dict[str, List[str]] = {}
        for item in results:
            by_kind.setdefault(item["kind"], []).append(item["id"])
        try:
            for kind, ids in by_kind.items():
                await self._record_access(KINDS[kind], ids)
        except WriteContentionError as exc:
            logger.warning("Access stats not recorded: %s", exc)
            return False
        return True

    async def _log_query(
        self,
        query: str,
        source_tool: str,
        results: List[Dict[str, Any]],
        started: float,
    ) -> bool:
        async def _write_entry(entry) -> None:
            async with self._write(
                "query_log", lane_timeout=QUERY_LOG_LANE_TIMEOUT
            ) as session:
                session.add(entry)

        return await query_log.record_query(
            _write_entry,
            query_text=query,
            source_tool=source_tool,
            result_ids=[item["id"] for item in results],
            execution_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    async def _embed_query(self, query: str) -> List[float]:
        try:
            return await self.embedder.embed(query)
        except EmbeddingUnavailableError:
            logger.warning("Search needs an embedding but none could be produced")
            raise

    async def hybrid_search(
        self,
        query: str,
        kinds: Optional[Iterable[str]] = None,
        limit: int = 10,
        weights: Optional[Dict[str, Any]] = None,
        *,
        source_tool: str = "hybrid_search",
    ) -> Dict[str, Any]:
        """Fuse vector and full-text ranks with decay and importance signals.

        Each kind over-fetches ``limit * 3`` candidates from both indexes, the
        ranks are combined with reciprocal rank fusion (k = 60) and the direct
        signals are added on top. Returned memories get their access stats and
        decay score bumped.
        """
        started = time.perf_counter()
        query = _require_text(query, "query")
        limit = _bounded_limit(limit)
        specs = self._kinds(kinds, default=("memory",))
        resolved = await self.resolve_weights(weights)
        query_vector = await self._embed_query(query)
        fetch_k = limit * OVER_FETCH_FACTOR

        candidates: List[Dict[str, Any]] = []
        total_candidates = 0
        degrade_reasons: List[str] = []
        async with self.session() as session:
            for spec in specs:
                vector_hits = await self.vector_indexes[spec.name].search(
                    session, query_vector, fetch_k
                )
                text_result = await self.text_indexes[spec.name].search(
                    session, query, fetch_k
                )
                if text_result.method == "like":
                    degrade_reasons.append(f"{spec.name}:fts_fallback_like")

                vector_ranks = {key: rank for rank, (key, _) in enumerate(vector_hits, 1)}
                distances = dict(vector_hits)
                fts_ranks = {
                    key: rank for rank, (key, _) in enumerate(text_result.hits, 1)
                }
                keys = set(vector_ranks) | set(fts_ranks)
                total_candidates += len(keys)
                rows = await self._rows_by_key(session, spec, keys)

                for key in keys:
                    row = rows.get(key)
                    if row is None:
                        continue
                    if spec.has_status and row.status != "active":
                        continue
                    scores = self._fuse(
                        spec, row, vector_ranks.get(key), fts_ranks.get(key), resolved
                    )
                    candidates.append(
                        {
                            "id": row.id,
                            "kind": spec.name,
                            "score": scores["total"],
                            "scores": scores,
                            "vector_rank": vector_ranks.get(key),
                            "fts_rank": fts_ranks.get(key),
                            "distance": distances.get(key),
                            "record": self._serialize(spec, row),
                            "_updated_at": row.updated_at or datetime.min,
                        }
                    )

        candidates.sort(key=lambda item: (item["score"], item["_updated_at"]), reverse=True)
        results = candidates[:limit]
        for item in results:
            item.pop("_updated_at", None)

        access_recorded = await self._record_access_for(results)
        logged = await self._log_query(query, source_tool, results, started)
        return {
            "results": results,
            "meta": {
                "total_candidates": total_candidates,
                "returned": len(results),
                "execution_time_ms": round((time.perf_counter() - started) * 1000.0, 3),
                "weights": resolved,
                "kinds": [spec.name for spec in specs],
                "degrade_reasons": degrade_reasons,
                "query_logged": logged,
                "access_recorded": access_recorded,
            },
        }

    async def semantic_search(
        self,
        query: str,
        kinds: Optional[Iterable[str]] = None,
        limit: int = 10,
        *,
        source_tool: str = "semantic_search",
    ) -> Dict[str, Any]:
        """Nearest records by embedding distance, ascending."""
        started = time.perf_counter()
        query = _require_text(query, "query")
        limit = _bounded_limit(limit)
        specs = self._kinds(kinds, default=("memory",))
        query_vector = await self._embed_query(query)

        hits: List[Dict[str, Any]] = []
        async with self.session() as session:
            for spec in specs:
                vector_hits = await self.vector_indexes[spec.name].search(
                    session, query_vector, limit * OVER_FETCH_FACTOR
                )
                rows = await self._rows_by_key(session, spec, [key for key, _ in vector_hits])
                for key, distance in vector_hits:
                    row = rows.get(key)
                    if row is None:
                        continue
                    if spec.has_status and row.status != "active":
                        continue
                    hits.append(
                        {
                            "id": row.id,
                            "kind": spec.name,
                            "distance": distance,
                            "record": self._serialize(spec, row),
                        }
                    )

        hits.sort(key=lambda item: item["distance"])
        results = hits[:limit]
        access_recorded = await self._record_access_for(results)
        logged = await self._log_query(query, source_tool, results, started)
        return {
            "results": results,
            "meta": {
                "returned": len(results),
                "execution_time_ms": round((time.perf_counter() - started) * 1000.0, 3),
                "query_logged": logged,
                "access_recorded": access_recorded,
            },
        }

    async def text_search(
        self,
        query: str,
        kinds: Optional[Iterable[str]] = None,
        limit: int = 10,
        *,
        source_tool: str = "text_search",
    ) -> Dict[str, Any]:
        """Full-text search only; works without any embedding backend."""
        started = time.perf_counter()
        query = _require_text(query, "query")
        limit = _bounded_limit(limit)
        specs = self._kinds(kinds, default=("memory",))

        hits: List[Dict[str, Any]] = []
        methods: Dict[str, str] = {}
        fallback_errors: Dict[str, str] = {}
        async with self.session() as session:
            for order, spec in enumerate(specs):
                result = await self.text_indexes[spec.name].search(
                    session, query, limit, active_only=True
                )
                methods[spec.name] = result.method
                if result.error:
                    fallback_errors[spec.name] = result.error
                rows = await self._rows_by_key(session, spec, [key for key, _ in result.hits])
                for position, (key, rank) in enumerate(result.hits, 1):
                    row = rows.get(key)
                    if row is None:
                        continue
                    hits.append(
                        {
                            "id": row.id,
                            "kind": spec.name,
                            "rank": rank,
                            "position": position,
                            "record": self._serialize(spec, row),
                            "_order": order,
                        }
                    )

        hits.sort(key=lambda item: (item["position"], item["_order"]))
        results = hits[:limit]
        for item in results:
            item.pop("_order", None)
        access_recorded = await self._record_access_for(results)
        logged = await self._log_query(query, source_tool, results, started)
        return {
            "results": results,
            "meta": {
                "returned": len(results),
                "methods": methods,
                "fallback_errors": fallback_errors,
                "execution_time_ms": round((time.perf_counter() - started) * 1000.0, 3),
                "query_logged": logged,
                "access_recorded": access_recorded,
            },
        }

    # =========================================================================
    # Configuration
    # =========================================================================

    async def get_config(self, prefix: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        stmt = select(ConfigEntry).order_by(ConfigEntry.key.asc())
        if prefix:
            stmt = stmt.where(ConfigEntry.key.like(f"{prefix}%"))
        async with self.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return {
                row.key: {
                    "value": row.value,
                    "description": row.description,
                    "updated_at": _iso(row.updated_at),
                }
                for row in rows
            }

    async def set_config(
        self, key: str, value: Any, description: Optional[str] = None
    ) -> Dict[str, Any]:
        key = _require_text(key, "key")
        async with self._write("set_config") as session:
            await self._upsert_config(session, key, str(value), description)
        return {"key": key, "value": str(value), "description": description}

    @staticmethod
    async def _upsert_config(
        session: AsyncSession, key: str, value: str, description: Optional[str]
    ) -> None:
        row = await session.get(ConfigEntry, key)
        now = _utc_now_naive()
        if row is None:
            session.add(
                ConfigEntry(key=key, value=value, description=description, updated_at=now)
            )
            return
        row.value = value
        if description is not None:
            row.description = description
        row.updated_at = now

    async def get_retrieval_weights(self) -> Dict[str, float]:
        """Persisted weights over the defaults; unreadable values fall back."""
        weights = dict(DEFAULT_WEIGHTS)
        async with self.session() as session:
            result = await session.execute(
                select(ConfigEntry).where(
                    ConfigEntry.key.in_(list(WEIGHT_CONFIG_KEYS.values()))
                )
            )
            persisted = {row.key: row.value for row in result.scalars().all()}
        for name, config_key in WEIGHT_CONFIG_KEYS.items():
            if config_key not in persisted:
                continue
            try:
                weights.update(_validate_weights({name: persisted[config_key]}))
            except ValueError:
                logger.warning(
                    "Ignoring invalid %s=%r", config_key, persisted[config_key]
                )
        return weights

    async def set_retrieval_weights(self, weights: Dict[str, Any]) -> Dict[str, float]:
        validated = _validate_weights(weights)
        if not validated:
            raise ValueError("at least one weight is required")
        async with self._write("set_retrieval_weights") as session:
            for name, value in validated.items():
                await self._upsert_config(
                    session, WEIGHT_CONFIG_KEYS[name], repr(value), _WEIGHT_DESCRIPTIONS[name]
                )
        return await self.get_retrieval_weights()

    async def resolve_weights(
        self, override: Optional[Dict[str, Any]] = None
    ) -> Dict[str, float]:
        """Per weight: call override, then persisted config, then default."""
        validated = _validate_weights(override)
        weights = await self.get_retrieval_weights()
        weights.update(validated)
        return weights

    # =========================================================================
    # Query log
    # =========================================================================

    async def get_query_stats(
        self, *, days: int = 7, group_by: str = "tool", limit: int = 20
    ) -> Dict[str, Any]:
        async with self.session() as session:
            return await query_log.query_stats(
                session, days=days, group_by=group_by, limit=limit
            )

    async def cleanup_query_log(self, *, older_than_days: int = 30) -> Dict[str, Any]:
        async with self._write("cleanup_query_log") as session:
            deleted = await query_log.cleanup(session, older_than_days=older_than_days)
        return {"deleted": deleted, "older_than_days": older_than_days}

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def batch_embed(
        self, kinds: Optional[Iterable[str]] = None, limit: int = 100
    ) -> Dict[str, Dict[str, Any]]:
        """Embed up to ``limit`` records per kind that have no vector yet."""
        limit = _bounded_int(limit, "limit", 1, 10000)
        report: Dict[str, Dict[str, Any]] = {}
        for spec in self._kinds(kinds, default=tuple(KINDS)):
            model = spec.model
            stmt = select(model).where(model.has_embedding == False)  # noqa: E712
            if spec.has_status:
                stmt = stmt.where(model.status == "active")
            async with self.session() as session:
                rows = (
                    await session.execute(stmt.order_by(model.key.asc()).limit(limit))
                ).scalars().all()
                pending = [
                    (row.id, spec.embed_text(self._embed_values(spec, row))) for row in rows
                ]

            embeddable = [(record_id, body) for record_id, body in pending if body]
            errors = len(pending) - len(embeddable)
            if not embeddable:
                report[spec.name] = {"embedded": 0, "errors": errors}
                continue

            try:
                vectors = await self.embedder.embed_batch([body for _, body in embeddable])
            except EmbeddingUnavailableError as exc:
                report[spec.name] = {
                    "embedded": 0,
                    "errors": len(pending),
                    "error": exc.reason,
                }
                continue

            embedded = 0
            try:
                async with self._write("batch_embed") as session:
                    for (record_id, body), vector in zip(embeddable, vectors):
                        row = await self._get_row(session, spec, record_id)
                        if row is None or row.has_embedding:
                            continue
                        if spec.embed_text(self._embed_values(spec, row)) != body:
                            continue
                        await self._store_vector(
                            session,
                            spec,
                            row,
                            EmbeddingOutcome(vector=vector, model=self.embedder.model_name),
                        )
                        embedded += 1
            except IndexInconsistencyError as exc:
                logger.warning("batch_embed rolled back for %s: %s", spec.name, exc)
                report[spec.name] = {
                    "embedded": 0,
                    "errors": len(pending),
                    "error": str(exc),
                }
                continue
            report[spec.name] = {"embedded": embedded, "errors": errors}
        return report

    async def apply_decay(
        self,
        *,
        force: bool = False,
        reason: str = "runtime",
        reference_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Decay idle memories at most once per UTC day unless forced.

        Immutable memories never decay. Frequently accessed memories resist
        decay; scores never drop below ``STORE_DECAY_MIN_SCORE``.
        """
        now_value = reference_time or _utc_now_naive()
        day_key = now_value.strftime("%Y-%m-%d")
        last_decay_day_key = "decay.last_day"

        async with self._write("apply_decay") as session:
            meta_value = (
                await session.execute(
                    select(IndexMeta.value).where(IndexMeta.key == last_decay_day_key)
                )
            ).scalar_one_or_none()
            if not force and meta_value == day_key:
                return {
                    "applied": False,
                    "reason": "already_applied_today",
                    "day": day_key,
                }

            result = await session.execute(
                select(Memory).where(Memory.status == "active", Memory.immutable == False)  # noqa: E712
            )
            memories = list(result.scalars().all())

            updated_count = 0
            for memory in memories:
                current = max(0.0, float(memory.decay_score if memory.decay_score is not None else 1.0))
                reference_dt = memory.last_accessed_at or memory.created_at or now_value
                age_days = max(0.0, (now_value - reference_dt).total_seconds() / 86400.0)
                resistance = 1.0 + min(2.0, math.log1p(max(0, memory.access_count or 0)) * 0.35)
                ratio = math.exp(-(age_days / resistance) / self._decay_half_life_days)
                next_score = max(self._decay_min_score, current * ratio)
                if next_score < current - 1e-9:
                    memory.decay_score = next_score
                    updated_count += 1

            await self._set_index_meta(session, last_decay_day_key, day_key)
            await self._set_index_meta(
                session, "decay.last_reason", (reason or "runtime").strip() or "runtime"
            )
            return {
                "applied": True,
                "day": day_key,
                "checked_memories": len(memories),
                "updated_memories": updated_count,
                "half_life_days": self._decay_half_life_days,
            }

    async def archive_stale(
        self,
        *,
        max_decay: float = 0.2,
        inactive_days: float = 90.0,
        limit: int = 100,
    ) -> Dict[str, Any]:
        """Maintenance sweep: archive active memories that decayed and went idle."""
        max_decay = _unit_float(max_decay, "max_decay")
        cutoff = _utc_now_naive() - timedelta(days=max(0.0, float(inactive_days)))
        spec = KINDS["memory"]
        async with self._write("archive_stale") as session:
            result = await session.execute(
                select(Memory)
                .where(
                    Memory.status == "active",
                    Memory.immutable == False,  # noqa: E712
                    Memory.decay_score <= max_decay,
                    func.coalesce(Memory.last_accessed_at, Memory.created_at) < cutoff,
                )
                .order_by(Memory.decay_score.asc(), Memory.key.asc())
                .limit(_bounded_int(limit, "limit", 1, 10000))
            )
            archived: List[str] = []
            now = _utc_now_naive()
            for memory in result.scalars().all():
                memory.status = "archived"
                memory.updated_at = now
                self._history(
                    session,
                    spec,
                    memory.id,
                    "updated",
                    before=memory.content,
                    after=memory.content,
                    reason=f"Archived by maintenance sweep (decay={memory.decay_score:.3f})",
                )
                archived.append(memory.id)
        return {"archived": len(archived), "ids": archived}

    async def get_index_status(self) -> Dict[str, Any]:
        """Per-kind record, flag and vector counts plus index capabilities."""
        kinds: Dict[str, Any] = {}
        async with self.session() as session:
            for name, spec in KINDS.items():
                model = spec.model
                records = (
                    await session.execute(select(func.count()).select_from(model))
                ).scalar() or 0
                flagged = (
                    await session.execute(
                        select(func.count()).select_from(model).where(model.has_embedding == True)  # noqa: E712
                    )
                ).scalar() or 0
                vectors = await self.vector_indexes[name].count(session)
                kinds[name] = {
                    "records": int(records),
                    "has_embedding": int(flagged),
                    "vectors": int(vectors),
                    "missing_embeddings": int(records) - int(flagged),
                    "consistent": int(flagged) == int(vectors),
                    "fts_available": self.text_indexes[name].available,
                }
            meta_rows = await session.execute(select(IndexMeta))
            meta = {row.key: row.value for row in meta_rows.scalars().all()}
        return {
            "embedder": self.embedder.status(),
            "write_lane": self.write_lane.status(),
            "kinds": kinds,
            "meta": meta,
        }


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client() -> None:
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
