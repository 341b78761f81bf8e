"""Async wrapper for any synchronous DocumentStore.

Uses ``asyncio.to_thread()`` to offload blocking store calls, and
``asyncio.wait_for()`` to bound each write by the configured write timeout.
Works with InMemoryDocumentStore, SQLiteDocumentStore, or anything else
implementing the DocumentStore protocol.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from auditdrill.errors import PersistenceTimeout
from auditdrill.store import Document, DocumentStore

logger = logging.getLogger(__name__)


class AsyncStoreWrapper:
    """Wraps a synchronous ``DocumentStore`` with async methods.

    Example::

        from auditdrill.store import SQLiteDocumentStore
        from auditdrill.async_store import AsyncStoreWrapper

        store = AsyncStoreWrapper(SQLiteDocumentStore("progress.db"), write_timeout=5.0)
        await store.write("trainee-1:case-7", {"step": "testing"})
        doc = await store.read("trainee-1:case-7")
        await store.close()

    Args:
        store: Any synchronous DocumentStore instance.
        write_timeout: Seconds a write may take before it is reported as a
            ``PersistenceTimeout``. The worker thread is not interrupted.
    """

    def __init__(self, store: DocumentStore, write_timeout: float = 10.0) -> None:
        self._store = store
        self._write_timeout = write_timeout

    @property
    def store(self) -> DocumentStore:
        return self._store

    async def write(
        self,
        session_id: str,
        patch: Mapping[str, Any],
        force_overwrite: bool = False,
    ) -> None:
        """Write through the wrapped store.

        Raises:
            PersistenceTimeout: If the write does not finish within the timeout.
            PersistenceError: Propagated from the wrapped store.
        """
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._store.write, session_id, patch, force_overwrite),
                timeout=self._write_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Write for %s exceeded %.1fs", session_id, self._write_timeout)
            raise PersistenceTimeout(
                f"write exceeded {self._write_timeout}s", session_id
            ) from exc

    async def read(self, session_id: str) -> Document | None:
        return await asyncio.to_thread(self._store.read, session_id)

    async def close(self) -> None:
        """Close the underlying store."""
        await asyncio.to_thread(self._store.close)
