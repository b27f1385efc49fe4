"""ORM models and the per-kind registry.

Every record table owns an integer surrogate ``key``. The vector tables and the
FTS5 external-content tables reference that key and never mint their own.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Type

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """Register an explicit sqlite adapter for datetime (3.12+ deprecates the default)."""
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime; every timestamp column stores naive UTC."""
    return _utc_now().replace(tzinfo=None)


# =============================================================================
# Record tables
# =============================================================================


class Memory(Base):
    """General memory record.

    ``immutable`` is derived from source/category/subcategory/metadata on every
    write and is the column the guard reads.
    """

    __tablename__ = "memories"
    __table_args__ = (
        Index("idx_memories_status", "status"),
        Index("idx_memories_category", "category"),
        Index("idx_memories_updated_at", "updated_at"),
    )

    key = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String(64), nullable=False)
    subcategory = Column(String(64), nullable=True)
    tags = Column(Text, nullable=False, default="[]")
    source = Column(String(64), nullable=False, default="assistant")
    status = Column(String(16), nullable=False, default="active")
    superseded_by = Column(String(64), nullable=True)
    project_id = Column(String(128), nullable=True)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    immutable = Column(
        Boolean, nullable=False, default=False, server_default=text("0")
    )
    importance = Column(Integer, nullable=False, default=3)
    decay_score = Column(
        Float, nullable=False, default=1.0, server_default=text("1.0")
    )
    confidence = Column(Float, nullable=False, default=1.0)
    access_count = Column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_accessed_at = Column(DateTime, nullable=True)
    has_embedding = Column(Boolean, nullable=False, default=False)
    embedding_model = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive)


class Entity(Base):
    """A person, project, place or concept the memories refer to."""

    __tablename__ = "entities"
    __table_args__ = (Index("idx_entities_status", "status"),)

    key = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    entity_type = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(Text, nullable=False, default="[]")
    status = Column(String(16), nullable=False, default="active")
    mention_count = Column(Integer, nullable=False, default=1)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    has_embedding = Column(Boolean, nullable=False, default=False)
    embedding_model = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive)


class Note(Base):
    """Free-form note. Notes carry no status and never decay."""

    __tablename__ = "notes"

    key = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    tags = Column(Text, nullable=False, default="[]")
    has_embedding = Column(Boolean, nullable=False, default=False)
    embedding_model = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive)


# =============================================================================
# Vector tables (one row per embedded record, keyed by the record key)
# =============================================================================


class MemoryVector(Base):
    __tablename__ = "vec_memories"

    record_key = Column(Integer, ForeignKey("memories.key"), primary_key=True)
    vector = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    dim = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


class EntityVector(Base):
    __tablename__ = "vec_entities"

    record_key = Column(Integer, ForeignKey("entities.key"), primary_key=True)
    vector = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    dim = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


class NoteVector(Base):
    __tablename__ = "vec_notes"

    record_key = Column(Integer, ForeignKey("notes.key"), primary_key=True)
    vector = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    dim = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


# =============================================================================
# Audit, relationships, observability, configuration
# =============================================================================


class HistoryEntry(Base):
    """Append-only audit row. Written in the same transaction as its mutation."""

    __tablename__ = "memory_history"
    __table_args__ = (Index("idx_memory_history_record", "record_id"),)

    id = Column(String(64), primary_key=True)
    record_kind = Column(String(16), nullable=False, default="memory")
    record_id = Column(String(64), nullable=False)
    operation = Column(String(16), nullable=False)
    content_before = Column(Text, nullable=True)
    content_after = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class Link(Base):
    __tablename__ = "links"
    __table_args__ = (
        UniqueConstraint(
            "source_id", "target_id", "relationship", name="uq_links_edge"
        ),
        Index("idx_links_target", "target_id"),
    )

    id = Column(String(64), primary_key=True)
    source_kind = Column(String(16), nullable=False)
    source_id = Column(String(64), nullable=False)
    target_kind = Column(String(16), nullable=False)
    target_id = Column(String(64), nullable=False)
    relationship = Column(String(64), nullable=False)
    strength = Column(Float, nullable=False, default=1.0)
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=_utc_now_naive)


class QueryLogEntry(Base):
    __tablename__ = "query_log"
    __table_args__ = (Index("idx_query_log_created_at", "created_at"),)

    id = Column(String(64), primary_key=True)
    query_text = Column(Text, nullable=False)
    source_tool = Column(String(64), nullable=False)
    result_count = Column(Integer, nullable=False, default=0)
    result_ids = Column(Text, nullable=False, default="[]")
    execution_time_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class ConfigEntry(Base):
    __tablename__ = "config"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_utc_now_naive)


class IndexMeta(Base):
    """Index runtime metadata and capability flags."""

    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version = Column(String(32), primary_key=True)
    applied_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    checksum = Column(String(128), nullable=False)


# =============================================================================
# Kind registry
# =============================================================================


@dataclass(frozen=True)
class KindSpec:
    name: str
    id_prefix: str
    model: Type[Any]
    vector_model: Type[Any]
    fts_table: str
    fts_columns: Tuple[str, ...]
    embed_fields: Tuple[str, ...]
    required_fields: Tuple[str, ...]
    writable_fields: Tuple[str, ...]
    has_status: bool = False
    tracks_access: bool = False
    importance_field: Optional[str] = None

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def embed_text(self, values: Mapping[str, Any]) -> str:
        parts = [str(values.get(name) or "").strip() for name in self.embed_fields]
        return ". ".join(part for part in parts if part)


KINDS: Dict[str, KindSpec] = {
    "memory": KindSpec(
        name="memory",
        id_prefix="mem",
        model=Memory,
        vector_model=MemoryVector,
        fts_table="memories_fts",
        fts_columns=("content", "category", "tags"),
        embed_fields=("content",),
        required_fields=("content", "category"),
        writable_fields=(
            "content",
            "category",
            "subcategory",
            "tags",
            "source",
            "project_id",
            "metadata",
            "importance",
            "confidence",
        ),
        has_status=True,
        tracks_access=True,
        importance_field="importance",
    ),
    "entity": KindSpec(
        name="entity",
        id_prefix="ent",
        model=Entity,
        vector_model=EntityVector,
        fts_table="entities_fts",
        fts_columns=("name", "description", "entity_type", "tags"),
        embed_fields=("name", "description"),
        required_fields=("name", "entity_type"),
        writable_fields=(
            "name",
            "entity_type",
            "description",
            "tags",
            "mention_count",
            "metadata",
        ),
        has_status=True,
        importance_field="mention_count",
    ),
    "note": KindSpec(
        name="note",
        id_prefix="note",
        model=Note,
        vector_model=NoteVector,
        fts_table="notes_fts",
        fts_columns=("title", "content", "summary", "tags"),
        embed_fields=("title", "content"),
        required_fields=("title", "content"),
        writable_fields=("title", "content", "summary", "tags"),
    ),
}
