"""
Numbered SQL migrations for the memory store.

Files live in ``backend/db/migrations`` and are named ``0001_description.sql``.
Each applied version is recorded with a checksum in ``schema_migrations``.
A sidecar ``FileLock`` next to the database keeps two processes from
migrating the same file at once.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional
from urllib.parse import unquote

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_VERSION_PATTERN = re.compile(r"^(?P<version>\d{4,})_[^/]*\.sql$")
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+\S+\s+ADD\s+COLUMN\s", re.IGNORECASE
)


def sqlite_file_path(database_url: str) -> Optional[Path]:
    """Local file behind a sqlite URL, or None for in-memory databases."""
    prefix = next((p for p in _SQLITE_FILE_PREFIXES if database_url.startswith(p)), None)
    if prefix is None:
        raise ValueError(
            "Unsupported DATABASE_URL. Expected sqlite+aiosqlite:///... or sqlite:///..."
        )
    location = unquote(database_url[len(prefix) :].split("?", 1)[0])
    if location in ("", ":memory:"):
        return None
    return Path(location)


def _normalized_checksum(content: bytes) -> str:
    # CRLF and LF checkouts of the same file hash identically.
    try:
        content = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
    except UnicodeDecodeError:
        pass
    return hashlib.sha256(content).hexdigest()


def _without_comments(statement: str) -> str:
    return "\n".join(
        line
        for line in (raw.strip() for raw in statement.splitlines())
        if line and not line.startswith("--")
    )


def _is_comment_only(statement: str) -> bool:
    return not _without_comments(statement)


def _iter_statements(script: str) -> Iterator[str]:
    quote: Optional[str] = None
    start = 0
    for position, char in enumerate(script):
        if char in ("'", '"'):
            if quote is None:
                quote = char
            elif quote == char:
                quote = None
        elif char == ";" and quote is None:
            yield script[start:position]
            start = position + 1
    yield script[start:]


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")


class MigrationRunner:
    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_file = sqlite_file_path(database_url)
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        self.lock_file_path: Optional[Path] = (
            self.database_file.with_name(self.database_file.name + ".migrate.lock")
            if self.database_file is not None
            else None
        )
        if lock_timeout_seconds is None:
            try:
                lock_timeout_seconds = float(
                    os.getenv("STORE_MIGRATION_LOCK_TIMEOUT_SEC", "10")
                )
            except ValueError:
                lock_timeout_seconds = 10.0
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    @staticmethod
    def split_statements(script: str) -> List[str]:
        """Split on semicolons outside quotes, dropping comment-only chunks."""
        return [
            statement
            for statement in (chunk.strip() for chunk in _iter_statements(script))
            if statement and not _is_comment_only(statement)
        ]

    def discover(self) -> List[Migration]:
        if not self.migrations_dir.is_dir():
            return []
        migrations: List[Migration] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _VERSION_PATTERN.match(path.name)
            if match is None:
                logger.debug("Skipping unnumbered migration file %s", path.name)
                continue
            migrations.append(
                Migration(match["version"], path, _normalized_checksum(path.read_bytes()))
            )
        return migrations

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_blocking)

    def _apply_pending_blocking(self) -> List[str]:
        migrations = self.discover()
        # In-memory databases are built from current metadata on every boot.
        if self.database_file is None or not migrations:
            return []

        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds):
                with sqlite3.connect(self.database_file) as conn:
                    return self._apply(conn, migrations)
        except Timeout as exc:
            raise RuntimeError(
                f"Timed out waiting for migration lock {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply(self, conn: sqlite3.Connection, migrations: List[Migration]) -> List[str]:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            "version TEXT PRIMARY KEY, applied_at TEXT NOT NULL, "
            "checksum TEXT NOT NULL)"
        )
        conn.commit()
        recorded: Dict[str, str] = dict(
            conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        )

        applied: List[str] = []
        for migration in migrations:
            known = recorded.get(migration.version)
            if known == migration.checksum:
                continue
            if known is not None:
                raise RuntimeError(
                    f"Checksum mismatch for migration {migration.version}: "
                    f"recorded={known} current={migration.checksum}"
                )

            for statement in self.split_statements(migration.read()):
                self._execute(conn, statement)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at, checksum) VALUES (?, ?, ?)",
                (migration.version, datetime.now(timezone.utc).isoformat(), migration.checksum),
            )
            conn.commit()
            logger.info("Applied migration %s", migration.path.name)
            applied.append(migration.version)
        return applied

    @staticmethod
    def _execute(conn: sqlite3.Connection, statement: str) -> None:
        try:
            conn.execute(statement)
        except sqlite3.OperationalError as exc:
            # Fresh databases already carry columns from current metadata.
            if (
                _ADD_COLUMN_PATTERN.match(_without_comments(statement))
                and "duplicate column name" in str(exc).lower()
            ):
                logger.debug("Column already present, skipping: %s", statement)
                return
            raise


async def apply_pending_migrations(
    database_url: str, migrations_dir: Optional[Path] = None
) -> List[str]:
    runner = MigrationRunner(database_url, migrations_dir=migrations_dir)
    return await runner.apply_pending()
