"""Single-writer lane for the record store.

SQLite allows one writer at a time. Writers from this process queue on an
asyncio lock with a bounded wait instead of piling up on the database lock.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from .errors import WriteContentionError

logger = logging.getLogger(__name__)


class WriteLane:
    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._active_operation: Optional[str] = None
        self._completed = 0
        self._timeouts = 0
        self._skipped = 0
        self._max_wait_ms = 0

    @asynccontextmanager
    async def acquire(
        self, operation: str, timeout_seconds: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Hold the lane for one write.

        ``timeout_seconds=0`` never waits: a busy lane raises at once.
        """
        timeout = (
            self.timeout_seconds
            if timeout_seconds is None
            else max(0.0, float(timeout_seconds))
        )
        started = time.monotonic()
        if timeout == 0:
            if self._lock.locked():
                self._skipped += 1
                raise WriteContentionError(operation, 0.0)
            await self._lock.acquire()
        else:
            self._waiting += 1
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                self._timeouts += 1
                logger.warning(
                    "Write '%s' timed out behind '%s'", operation, self._active_operation
                )
                raise WriteContentionError(operation, timeout) from None
            finally:
                self._waiting -= 1

        waited_ms = int((time.monotonic() - started) * 1000)
        self._max_wait_ms = max(self._max_wait_ms, waited_ms)
        self._active_operation = operation
        try:
            yield
        finally:
            self._active_operation = None
            self._completed += 1
            self._lock.release()

    def status(self) -> Dict[str, Any]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "waiting": self._waiting,
            "active_operation": self._active_operation,
            "completed": self._completed,
            "timeouts": self._timeouts,
            "skipped": self._skipped,
            "max_wait_ms": self._max_wait_ms,
        }
