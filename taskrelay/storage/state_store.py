"""
JSON-file persistence with atomic transactions.

Each collection (deployments, tasks, planning threads, ...) is stored as one
JSON file named ``{collection}.json`` under the state directory::

    {
        "collection": "deployments",
        "updated_at": "2025-01-15T11:45:00+00:00",
        "records": {
            "5f0c...": {"id": "5f0c...", "task_id": "...", "status": "working", ...},
            ...
        }
    }

Records keep insertion order, which is the creation order the deployment
store relies on for "most recent deployment" lookups.

Concurrency Model:
    Each collection has its own asyncio lock. Read-modify-write cycles go
    through ``transaction()`` so two coroutines never interleave updates to
    the same collection. Different collections are independent.

Example:
    >>> store = JsonStateStore(".taskrelay/state")
    >>> async with store.transaction("deployments") as records:
    ...     records[deployment.id] = deployment.to_dict()
"""

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

log = structlog.get_logger(__name__)

Records = dict[str, dict[str, Any]]


class JsonStateStore:
    """Persist record collections as JSON files with atomic writes.

    Attributes:
        state_dir: Directory where collection files are stored.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating the state directory if needed.

        Args:
            state_dir: Directory for collection files
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, collection: str) -> asyncio.Lock:
        async with self._locks_lock:
            if collection not in self._locks:
                self._locks[collection] = asyncio.Lock()
            return self._locks[collection]

    def _get_path(self, collection: str) -> Path:
        return self.state_dir / f"{collection}.json"

    async def _load_internal(self, collection: str) -> Records:
        """Load a collection without acquiring its lock.

        Caller MUST hold the collection lock. A missing file is an empty
        collection.
        """
        path = self._get_path(collection)
        if not path.exists():
            return {}

        async with aiofiles.open(path) as f:
            content = await f.read()

        data = json.loads(content)
        records: Records = data.get("records", {})
        return records

    async def _save_internal(self, collection: str, records: Records) -> None:
        """Save a collection without acquiring its lock.

        Caller MUST hold the collection lock.
        """
        document = {
            "collection": collection,
            "updated_at": datetime.now(UTC).isoformat(),
            "records": records,
        }
        await self._write(self._get_path(collection), document)

    async def _write(self, path: Path, document: dict[str, Any]) -> None:
        """Write to a .tmp file in the same directory, then rename over the target."""
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(document, indent=2, ensure_ascii=False))

        tmp_path.replace(path)

    async def load(self, collection: str) -> Records:
        """Load all records of a collection.

        Returns:
            Mapping of record id to record dict, in insertion order.
        """
        lock = await self._get_lock(collection)
        async with lock:
            return await self._load_internal(collection)

    async def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        records = await self.load(collection)
        return records.get(record_id)

    @asynccontextmanager
    async def transaction(self, collection: str) -> AsyncIterator[Records]:
        """Context manager for atomic collection updates.

        The collection is loaded when entering the context and saved when
        the block exits without an exception. On an exception nothing is
        written and the exception propagates.

        Args:
            collection: Collection name

        Yields:
            Mutable mapping of record id to record dict.

        Note:
            The lock is held for the entire duration of the context. Never
            await tracker calls inside a transaction.
        """
        lock = await self._get_lock(collection)
        async with lock:
            records = await self._load_internal(collection)
            try:
                yield records
                await self._save_internal(collection, records)
            except Exception:
                log.error("state_transaction_failed", collection=collection)
                raise
