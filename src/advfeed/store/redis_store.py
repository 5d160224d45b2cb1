"""Redis-backed record store.

Layout (all keys under ``prefix``):

- ``{prefix}:{collection}:{id}``: the document as a JSON string
- ``{prefix}:index:{collection}``: set of ids in the collection
- ``{prefix}:changes:{collection}``: stream of change events

Every mutation writes the document, the index and the change event inside a
single MULTI/EXEC. Guarded updates and batch commits WATCH the keys they read
and retry on WatchError, so a commit is all-or-nothing across documents.
The client must be created with ``decode_responses=True``.
"""

from __future__ import annotations

import contextlib
import json
import uuid
from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from advfeed.errors import ConflictError, NotFoundError, UnavailableError
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

MAX_WATCH_RETRIES = 20
STREAM_MAXLEN = 10_000


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map connection and timeout failures to UnavailableError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.warning("store_unavailable", operation=operation, error=str(exc))
        raise UnavailableError(f"Record store unavailable during {operation}") from exc


class RedisRecordStore(RecordStore):
    """Record store on top of redis.asyncio."""

    supports_batch = True

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "advfeed",
        block_ms: int = 1000,
    ) -> None:
        self.client = client
        self.prefix = prefix
        self.block_ms = block_ms

    def _key(self, collection: str, record_id: str) -> str:
        return f"{self.prefix}:{collection}:{record_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.prefix}:index:{collection}"

    def _stream_key(self, collection: str) -> str:
        return f"{self.prefix}:changes:{collection}"

    def _queue_event(
        self,
        pipe: Any,
        kind: ChangeKind,
        collection: str,
        record_id: str,
        document: Mapping[str, Any],
    ) -> None:
        pipe.xadd(
            self._stream_key(collection),
            {"kind": kind.value, "id": record_id, "record": json.dumps(document)},
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )

    # --- Reads ---

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any]:
        with _translate_errors("get_record"):
            raw = await self.client.get(self._key(collection, record_id))
        if raw is None:
            raise NotFoundError(collection, record_id)
        return json.loads(raw)

    async def list_records(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        with _translate_errors("list_records"):
            ids = sorted(await self.client.smembers(self._index_key(collection)))
            if not ids:
                return []
            raws = await self.client.mget([self._key(collection, record_id) for record_id in ids])
        documents = [json.loads(raw) for raw in raws if raw is not None]
        return [document for document in documents if matches(document, where)]

    # --- Writes ---

    async def update_fields(
        self,
        collection: str,
        record_id: str,
        ops: Sequence[FieldOp],
        expect: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        key = self._key(collection, record_id)
        with _translate_errors("update_fields"):
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise NotFoundError(collection, record_id)
                        document = json.loads(raw)
                        check_expect(collection, record_id, document, expect)
                        updated = apply_field_ops(document, ops)
                        pipe.multi()
                        pipe.set(key, json.dumps(updated))
                        self._queue_event(pipe, ChangeKind.MODIFIED, collection, record_id, updated)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("store_watch_retry", collection=collection, record_id=record_id)
                        continue
        raise UnavailableError(f"Gave up updating {collection}/{record_id} after {MAX_WATCH_RETRIES} conflicts")

    async def create_record(
        self,
        collection: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> str:
        record_id = record_id or str(data.get("id") or uuid.uuid4().hex)
        document = {**dict(data), "id": record_id}
        with _translate_errors("create_record"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._key(collection, record_id), json.dumps(document))
                pipe.sadd(self._index_key(collection), record_id)
                self._queue_event(pipe, ChangeKind.ADDED, collection, record_id, document)
                await pipe.execute()
        return record_id

    async def delete_record(self, collection: str, record_id: str) -> bool:
        key = self._key(collection, record_id)
        with _translate_errors("delete_record"):
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            await pipe.unwatch()
                            return False
                        pipe.multi()
                        pipe.delete(key)
                        pipe.srem(self._index_key(collection), record_id)
                        self._queue_event(pipe, ChangeKind.REMOVED, collection, record_id, json.loads(raw))
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        raise UnavailableError(f"Gave up deleting {collection}/{record_id} after {MAX_WATCH_RETRIES} conflicts")

    async def commit(self, writes: Sequence[Write]) -> None:
        if not writes:
            return
        keys = list(dict.fromkeys(self._key(w.collection, w.record_id) for w in writes))
        with _translate_errors("commit"):
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(MAX_WATCH_RETRIES):
                    try:
                        await pipe.watch(*keys)
                        current: dict[tuple[str, str], dict[str, Any] | None] = {}
                        for write in writes:
                            ref = (write.collection, write.record_id)
                            if ref not in current:
                                raw = await pipe.get(self._key(*ref))
                                current[ref] = json.loads(raw) if raw is not None else None

                        staged = self._stage(writes, current)

                        pipe.multi()
                        for (collection, record_id), (kind, document) in staged.items():
                            key = self._key(collection, record_id)
                            if kind is ChangeKind.REMOVED:
                                pipe.delete(key)
                                pipe.srem(self._index_key(collection), record_id)
                            else:
                                pipe.set(key, json.dumps(document))
                                pipe.sadd(self._index_key(collection), record_id)
                            self._queue_event(pipe, kind, collection, record_id, document)
                        await pipe.execute()
                        return
                    except WatchError:
                        logger.debug("store_commit_retry", writes=len(writes))
                        continue
        raise UnavailableError(f"Gave up committing {len(writes)} writes after {MAX_WATCH_RETRIES} conflicts")

    @staticmethod
    def _stage(
        writes: Sequence[Write],
        current: dict[tuple[str, str], dict[str, Any] | None],
    ) -> dict[tuple[str, str], tuple[ChangeKind, dict[str, Any]]]:
        """Compute the final state of every touched document, checking guards."""
        documents = dict(current)
        staged: dict[tuple[str, str], tuple[ChangeKind, dict[str, Any]]] = {}
        for write in writes:
            ref = (write.collection, write.record_id)
            document = documents.get(ref)
            if isinstance(write, UpdateWrite):
                if document is None:
                    raise NotFoundError(*ref)
                check_expect(write.collection, write.record_id, document, write.expect)
                documents[ref] = apply_field_ops(document, write.ops)
                kind = ChangeKind.ADDED if staged.get(ref, (None,))[0] is ChangeKind.ADDED else ChangeKind.MODIFIED
                staged[ref] = (kind, documents[ref])
            elif isinstance(write, CreateWrite):
                documents[ref] = {**write.data, "id": write.record_id}
                staged[ref] = (ChangeKind.ADDED, documents[ref])
            elif isinstance(write, DeleteWrite):
                if document is not None:
                    staged[ref] = (ChangeKind.REMOVED, document)
                elif write.must_exist:
                    raise ConflictError(write.collection, write.record_id, "id")
                documents[ref] = None
            else:
                raise TypeError(f"Unsupported write: {write!r}")
        return staged

    # --- Subscriptions ---

    async def subscribe(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        stream = self._stream_key(collection)
        with _translate_errors("subscribe"):
            latest = await self.client.xrevrange(stream, count=1)
        last_id = latest[0][0] if latest else "0-0"

        # Writes landing between the stream read and the snapshot are delivered
        # twice; consumers apply events as upserts.
        for document in await self.list_records(collection, where):
            yield ChangeEvent(ChangeKind.ADDED, collection, document["id"], document)
        yield ChangeEvent(ChangeKind.SYNCED, collection, "", {})

        logger.info("store_subscribed", collection=collection, stream=stream, last_id=last_id)
        while True:
            with _translate_errors("subscribe"):
                response = await self.client.xread({stream: last_id}, block=self.block_ms, count=100)
            if not response:
                continue
            for _stream, entries in response:
                for entry_id, fields in entries:
                    last_id = entry_id
                    try:
                        document = json.loads(fields["record"])
                        kind = ChangeKind(fields["kind"])
                    except (KeyError, ValueError):
                        logger.warning("store_invalid_change", stream=stream, entry_id=entry_id)
                        continue
                    if matches(document, where):
                        yield ChangeEvent(kind, collection, fields["id"], document)
