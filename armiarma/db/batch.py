"""Batched execution of queued SQL statements inside one transaction."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Protocol, Sequence

log = logging.getLogger(__name__)

MAX_RETRIES = 2


class Transaction(Protocol):
    """An open database transaction."""

    def execute(self, query: str, args: Sequence[Any]) -> Any: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class Pool(Protocol):
    """The database connection pool the crawler talks to."""

    def begin(self) -> Transaction: ...

    def execute(self, query: str, *args: Any) -> Any: ...

    def fetch(self, query: str, *args: Any) -> list[tuple]: ...

    def fetchrow(self, query: str, *args: Any) -> Optional[tuple]: ...

    def close(self) -> None: ...


class BatchPersistError(Exception):
    """Raised when a batch could not be persisted after every retry."""


class QueryBatch:
    """Collects queries and writes them in a single transaction."""

    def __init__(self, pool: Pool, size: int) -> None:
        self.pool = pool
        self.size = size
        self._queries: list[tuple[str, tuple[Any, ...]]] = []

    def add_query(self, query: str, *args: Any) -> None:
        self._queries.append((query, args))

    def is_ready_to_persist(self) -> bool:
        return len(self._queries) >= self.size

    def __len__(self) -> int:
        return len(self._queries)

    def persist_batch(self) -> None:
        """Write the queued queries, retrying up to MAX_RETRIES times.

        The batch is emptied whatever the outcome.
        """
        log.debug("persisting batch of queries with len(%d)", len(self))
        last_error: Optional[Exception] = None
        try:
            for attempt in range(MAX_RETRIES + 1):
                started = time.monotonic()
                try:
                    self._persist_once()
                except Exception as exc:
                    last_error = exc
                    log.debug("attempt numb %d failed %s", attempt + 1, exc)
                    continue
                last_error = None
                log.debug(
                    "persisted %d queries in %.3f seconds",
                    len(self),
                    time.monotonic() - started,
                )
                break
        finally:
            self._queries = []
        if last_error is not None:
            raise BatchPersistError("unable to persist batch query") from last_error

    def _persist_once(self) -> None:
        if not self._queries:
            log.debug("skipping batch-query, no queries to persist")
            return
        tx = self.pool.begin()
        try:
            for query, args in self._queries:
                tx.execute(query, args)
        except Exception:
            log.error("unable to persist batch, rolling back")
            tx.rollback()
            raise
        tx.commit()