"""Passive recorder of search invocations.

Writes are best-effort: ``record_query`` reports success as a bool and never
raises, so a broken log table cannot change what a search returns.
"""

import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select

from .models import QueryLogEntry, _utc_now_naive

logger = logging.getLogger(__name__)

GROUP_BY_OPTIONS = ("tool", "query", "day")


def new_query_log_entry(
    query_text: str,
    source_tool: str,
    result_ids: Sequence[str],
    execution_time_ms: Optional[float],
) -> QueryLogEntry:
    return QueryLogEntry(
        id=f"qlog_{uuid.uuid4().hex}",
        query_text=query_text,
        source_tool=source_tool,
        result_count=len(result_ids),
        result_ids=json.dumps(list(result_ids)),
        execution_time_ms=(
            round(float(execution_time_ms), 3) if execution_time_ms is not None else None
        ),
        created_at=_utc_now_naive(),
    )


async def record_query(
    write: Callable[[QueryLogEntry], Awaitable[None]],
    *,
    query_text: str,
    source_tool: str,
    result_ids: Sequence[str],
    execution_time_ms: Optional[float] = None,
) -> bool:
    """Persist one entry through ``write``. Returns False instead of raising."""
    try:
        entry = new_query_log_entry(
            query_text, source_tool, result_ids, execution_time_ms
        )
        await write(entry)
        return True
    except Exception as exc:
        # Observability must never fail the search that triggered it.
        logger.debug("Query log write dropped: %s", exc)
        return False


async def query_stats(
    session, *, days: int = 7, group_by: str = "tool", limit: int = 20
) -> Dict[str, Any]:
    if group_by not in GROUP_BY_OPTIONS:
        raise ValueError(f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")
    since = _utc_now_naive() - timedelta(days=max(1, int(days)))

    if group_by == "tool":
        group_col = QueryLogEntry.source_tool
    elif group_by == "query":
        group_col = QueryLogEntry.query_text
    else:
        group_col = func.date(QueryLogEntry.created_at)

    count_col = func.count(QueryLogEntry.id).label("count")
    stmt = (
        select(
            group_col.label("group_key"),
            count_col,
            func.avg(QueryLogEntry.result_count).label("avg_results"),
            func.avg(QueryLogEntry.execution_time_ms).label("avg_time_ms"),
        )
        .where(QueryLogEntry.created_at >= since)
        .group_by(group_col)
        .order_by(count_col.desc())
        .limit(max(1, int(limit)))
    )
    rows = (await session.execute(stmt)).all()

    total = await session.execute(
        select(func.count(QueryLogEntry.id)).where(QueryLogEntry.created_at >= since)
    )
    groups: List[Dict[str, Any]] = [
        {
            group_by: row.group_key,
            "count": int(row.count),
            "avg_results": round(float(row.avg_results or 0.0), 2),
            "avg_time_ms": round(float(row.avg_time_ms or 0.0), 2),
        }
        for row in rows
    ]
    return {
        "days": max(1, int(days)),
        "group_by": group_by,
        "total_queries": int(total.scalar() or 0),
        "groups": groups,
    }


async def cleanup(session, *, older_than_days: int = 30) -> int:
    cutoff = _utc_now_naive() - timedelta(days=max(1, int(older_than_days)))
    result = await session.execute(
        delete(QueryLogEntry).where(QueryLogEntry.created_at < cutoff)
    )
    return int(result.rowcount or 0)
