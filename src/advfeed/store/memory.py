"""In-process record store.

Keeps documents in dicts and fans change events out to subscriber queues.
All mutations run under one asyncio lock, so a batch commit is atomic with
respect to every other operation on the same store. Pass
``transactional=False`` to get a store that only guarantees single-document
atomicity, the way a document database without multi-record transactions
behaves.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import structlog

from advfeed.errors import ConflictError, NotFoundError
from advfeed.store.base import (
    ChangeEvent,
    ChangeKind,
    CreateWrite,
    DeleteWrite,
    FieldOp,
    RecordStore,
    UpdateWrite,
    Write,
    apply_field_ops,
    check_expect,
    matches,
)

logger = structlog.get_logger()


class InMemoryRecordStore(RecordStore):
    """Dict-backed store with asyncio.Queue subscriptions."""

    def __init__(self, transactional: bool = True) -> None:
        self.supports_batch = transactional
        self._collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscribers: dict[str, list[tuple[asyncio.Queue[ChangeEvent], Mapping[str, Any] | None]]] = (
            defaultdict(list)
        )
        self._lock = asyncio.Lock()

    # --- Reads ---

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any]:
        document = self._collections[collection].get(record_id)
        if document is None:
            raise NotFoundError(collection, record_id)
        return copy.deepcopy(document)

    async def list_records(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(document)
            for document in self._collections[collection].values()
            if matches(document, where)
        ]

    # --- Writes ---

    async def update_fields(
        self,
        collection: str,
        record_id: str,
        ops: Sequence[FieldOp],
        expect: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            updated = self._stage_update(collection, record_id, ops, expect)
            self._collections[collection][record_id] = updated
            self._publish(ChangeKind.MODIFIED, collection, record_id, updated)
            return copy.deepcopy(updated)

    async def create_record(
        self,
        collection: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> str:
        record_id = record_id or str(data.get("id") or uuid.uuid4().hex)
        document = {**copy.deepcopy(dict(data)), "id": record_id}
        async with self._lock:
            self._collections[collection][record_id] = document
            self._publish(ChangeKind.ADDED, collection, record_id, document)
        return record_id

    async def delete_record(self, collection: str, record_id: str) -> bool:
        async with self._lock:
            document = self._collections[collection].pop(record_id, None)
            if document is None:
                return False
            self._publish(ChangeKind.REMOVED, collection, record_id, document)
            return True

    async def commit(self, writes: Sequence[Write]) -> None:
        if not self.supports_batch:
            await super().commit(writes)
        async with self._lock:
            # Stage against a scratch copy so a failed guard leaves nothing applied.
            staged: dict[tuple[str, str], dict[str, Any] | None] = {}

            def current(collection: str, record_id: str) -> dict[str, Any] | None:
                key = (collection, record_id)
                if key in staged:
                    return staged[key]
                return self._collections[collection].get(record_id)

            events: list[tuple[ChangeKind, str, str]] = []
            for write in writes:
                key = (write.collection, write.record_id)
                if isinstance(write, UpdateWrite):
                    document = current(*key)
                    if document is None:
                        raise NotFoundError(*key)
                    check_expect(write.collection, write.record_id, document, write.expect)
                    staged[key] = apply_field_ops(document, write.ops)
                    events.append((ChangeKind.MODIFIED, *key))
                elif isinstance(write, CreateWrite):
                    staged[key] = {**copy.deepcopy(write.data), "id": write.record_id}
                    events.append((ChangeKind.ADDED, *key))
                elif isinstance(write, DeleteWrite):
                    if current(*key) is not None:
                        events.append((ChangeKind.REMOVED, *key))
                    elif write.must_exist:
                        raise ConflictError(write.collection, write.record_id, "id")
                    staged[key] = None
                else:
                    raise TypeError(f"Unsupported write: {write!r}")

            removed: dict[tuple[str, str], dict[str, Any]] = {}
            for (collection, record_id), document in staged.items():
                if document is None:
                    previous = self._collections[collection].pop(record_id, None)
                    if previous is not None:
                        removed[(collection, record_id)] = previous
                else:
                    self._collections[collection][record_id] = document

            for kind, collection, record_id in events:
                if kind is ChangeKind.REMOVED:
                    document = removed.get((collection, record_id))
                    if document is None:
                        continue
                else:
                    document = self._collections[collection].get(record_id)
                    if document is None:
                        continue
                self._publish(kind, collection, record_id, document)

    def _stage_update(
        self,
        collection: str,
        record_id: str,
        ops: Sequence[FieldOp],
        expect: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        document = self._collections[collection].get(record_id)
        if document is None:
            raise NotFoundError(collection, record_id)
        check_expect(collection, record_id, document, expect)
        return apply_field_ops(document, ops)

    # --- Subscriptions ---

    async def subscribe(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        async with self._lock:
            snapshot = [
                ChangeEvent(ChangeKind.ADDED, collection, record_id, copy.deepcopy(document))
                for record_id, document in self._collections[collection].items()
                if matches(document, where)
            ]
            entry = (queue, where)
            self._subscribers[collection].append(entry)
        logger.debug("store_subscribed", collection=collection, snapshot=len(snapshot))
        try:
            for event in snapshot:
                yield event
            yield ChangeEvent(ChangeKind.SYNCED, collection, "", {})
            while True:
                yield await queue.get()
        finally:
            self._subscribers[collection].remove(entry)

    def _publish(self, kind: ChangeKind, collection: str, record_id: str, document: dict[str, Any]) -> None:
        for queue, where in self._subscribers[collection]:
            if matches(document, where):
                queue.put_nowait(ChangeEvent(kind, collection, record_id, copy.deepcopy(document)))
