"""Per-kind vector and full-text index adapters.

Both adapters address rows by the record table's surrogate ``key`` and run on
the caller's session, so index writes share the record's transaction.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .embedder import EMBEDDING_DIM
from .errors import IndexInconsistencyError
from .models import KindSpec

logger = logging.getLogger(__name__)

_FTS_OPERATOR_PATTERN = re.compile(r'["*]|\b(?:AND|OR|NOT|NEAR)\b')


def sanitize_fts_query(query: str) -> str:
    """Quote bare terms so punctuation and stray keywords cannot break MATCH.

    Queries that already use FTS syntax (quotes, prefix stars, upper-case
    boolean operators) pass through untouched; if they are malformed the
    caller falls back to a substring scan.
    """
    normalized = (query or "").strip()
    if not normalized:
        return ""
    if _FTS_OPERATOR_PATTERN.search(normalized):
        return normalized
    terms = [term for term in normalized.split() if term]
    return " ".join('"' + term.replace('"', '""') + '"' for term in terms)


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class VectorIndex:
    """Exact nearest-neighbour index over JSON-encoded unit vectors."""

    def __init__(self, kind: KindSpec):
        self.kind = kind
        self._model = kind.vector_model

    async def upsert(
        self, session: AsyncSession, key: int, vector: Sequence[float], model: str
    ) -> None:
        if len(vector) != EMBEDDING_DIM:
            raise IndexInconsistencyError(self.kind.name, key, "upsert")
        try:
            await session.execute(
                delete(self._model).where(self._model.record_key == key)
            )
            session.add(
                self._model(
                    record_key=key,
                    vector=json.dumps([float(v) for v in vector], separators=(",", ":")),
                    model=model,
                    dim=len(vector),
                )
            )
            await session.flush()
        except SQLAlchemyError as exc:
            raise IndexInconsistencyError(self.kind.name, key, "upsert") from exc

    async def delete(self, session: AsyncSession, key: int) -> None:
        try:
            await session.execute(
                delete(self._model).where(self._model.record_key == key)
            )
        except SQLAlchemyError as exc:
            raise IndexInconsistencyError(self.kind.name, key, "delete") from exc

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count()).select_from(self._model))
        return int(result.scalar() or 0)

    async def search(
        self,
        session: AsyncSession,
        query_vector: Sequence[float],
        k: int,
        *,
        active_only: bool = False,
    ) -> List[Tuple[int, float]]:
        """Return up to ``k`` ``(key, distance)`` pairs, nearest first."""
        if k <= 0:
            return []
        stmt = select(self._model.record_key, self._model.vector)
        if active_only and self.kind.has_status:
            record = self.kind.model
            stmt = stmt.join(record, record.key == self._model.record_key).where(
                record.status == "active"
            )
        rows = (await session.execute(stmt)).all()

        scored: List[Tuple[int, float]] = []
        for key, payload in rows:
            try:
                stored = json.loads(payload)
            except (TypeError, ValueError):
                logger.warning("Unreadable vector for %s key %s", self.kind.name, key)
                continue
            if len(stored) != len(query_vector):
                continue
            scored.append((int(key), math.dist(stored, query_vector)))
        scored.sort(key=lambda item: (item[1], item[0]))
        return scored[:k]


@dataclass
class TextSearchResult:
    hits: List[Tuple[int, float]] = field(default_factory=list)
    method: str = "fts"
    error: Optional[str] = None


class TextIndex:
    """FTS5 external-content index kept in sync by triggers on the record table."""

    def __init__(self, kind: KindSpec):
        self.kind = kind
        self.available = True

    @property
    def columns(self) -> str:
        return ", ".join(self.kind.fts_columns)

    def index_sql(self, row: str) -> str:
        values = ", ".join(f"{row}.{col}" for col in self.kind.fts_columns)
        return (
            f"INSERT INTO {self.kind.fts_table}(rowid, {self.columns}) "
            f"VALUES ({row}.key, {values});"
        )

    def remove_sql(self, row: str) -> str:
        fts = self.kind.fts_table
        values = ", ".join(f"{row}.{col}" for col in self.kind.fts_columns)
        return (
            f"INSERT INTO {fts}({fts}, rowid, {self.columns}) "
            f"VALUES ('delete', {row}.key, {values});"
        )

    def reindex_sql(self) -> str:
        return f"{self.remove_sql('old')} {self.index_sql('new')}"

    def ddl(self) -> List[str]:
        fts = self.kind.fts_table
        table = self.kind.table
        return [
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {fts} USING fts5("
            f"{self.columns}, content='{table}', content_rowid='key')",
            f"CREATE TRIGGER IF NOT EXISTS {fts}_ai AFTER INSERT ON {table} "
            f"BEGIN {self.index_sql('new')} END",
            f"CREATE TRIGGER IF NOT EXISTS {fts}_ad AFTER DELETE ON {table} "
            f"BEGIN {self.remove_sql('old')} END",
            f"CREATE TRIGGER IF NOT EXISTS {fts}_au AFTER UPDATE OF {self.columns} "
            f"ON {table} BEGIN {self.reindex_sql()} END",
        ]

    def rebuild_sql(self) -> str:
        fts = self.kind.fts_table
        return f"INSERT INTO {fts}({fts}) VALUES ('rebuild')"

    async def search(
        self,
        session: AsyncSession,
        query: str,
        k: int,
        *,
        active_only: bool = False,
        fallback_text: Optional[str] = None,
    ) -> TextSearchResult:
        """Ranked FTS search, degrading to a substring scan on parse errors."""
        match_query = sanitize_fts_query(query)
        if not match_query or k <= 0:
            return TextSearchResult(method="none")

        fts = self.kind.fts_table
        table = self.kind.table
        error: Optional[str] = None
        if self.available:
            status_clause = (
                " AND r.status = 'active'" if active_only and self.kind.has_status else ""
            )
            try:
                result = await session.execute(
                    text(
                        f"SELECT fts.rowid AS key, fts.rank AS rank "
                        f"FROM {fts} fts JOIN {table} r ON r.key = fts.rowid "
                        f"WHERE {fts} MATCH :query{status_clause} "
                        f"ORDER BY fts.rank LIMIT :limit"
                    ),
                    {"query": match_query, "limit": k},
                )
                hits = [(int(row.key), float(row.rank)) for row in result]
                return TextSearchResult(hits=hits, method="fts")
            except SQLAlchemyError as exc:
                error = str(getattr(exc, "orig", exc))
                if "no such table" in error or "no such module" in error:
                    self.available = False
                logger.debug("FTS query %r failed, using substring scan: %s", query, error)

        hits = await self._like_search(
            session, fallback_text or query, k, active_only=active_only
        )
        return TextSearchResult(hits=hits, method="like", error=error)

    async def _like_search(
        self, session: AsyncSession, needle: str, k: int, *, active_only: bool
    ) -> List[Tuple[int, float]]:
        cleaned = " ".join(re.sub(r'["*]', " ", needle or "").split())
        if not cleaned:
            return []
        record = self.kind.model
        pattern = f"%{_escape_like_pattern(cleaned)}%"
        stmt = select(record.key).where(
            or_(
                *[
                    getattr(record, col).like(pattern, escape="\\")
                    for col in self.kind.fts_columns
                ]
            )
        )
        if active_only and self.kind.has_status:
            stmt = stmt.where(record.status == "active")
        stmt = stmt.order_by(record.updated_at.desc(), record.key.desc()).limit(k)
        keys = (await session.execute(stmt)).scalars().all()
        return [(int(key), float(position)) for position, key in enumerate(keys, 1)]
