"""Record store contract shared by every adapter.

A store holds JSON documents keyed by ``(collection, id)``. Updates are lists
of field operations applied atomically to one document; an optional
``expect`` guard turns an update into a compare-and-set. Stores that can
commit several writes as one transaction advertise ``supports_batch``.
"""

from __future__ import annotations

import abc
import copy
import enum
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from advfeed.errors import ConflictError, EngineError

logger = structlog.get_logger()


class _Missing:
    """Sentinel for an absent field in ``expect`` guards."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class FieldOpKind(str, enum.Enum):
    SET = "set"
    UNSET = "unset"
    ADD_TO_SET = "add_to_set"
    REMOVE_FROM_SET = "remove_from_set"


@dataclass(frozen=True)
class FieldOp:
    """One operation on a document field.

    ``field`` may address one level into a map with a dot, e.g.
    ``activityLog.<adventureId>``.
    """

    field: str
    op: FieldOpKind
    value: Any = None

    @classmethod
    def set(cls, field_: str, value: Any) -> FieldOp:
        return cls(field_, FieldOpKind.SET, value)

    @classmethod
    def unset(cls, field_: str) -> FieldOp:
        return cls(field_, FieldOpKind.UNSET)

    @classmethod
    def add_to_set(cls, field_: str, value: Any) -> FieldOp:
        return cls(field_, FieldOpKind.ADD_TO_SET, value)

    @classmethod
    def remove_from_set(cls, field_: str, value: Any) -> FieldOp:
        return cls(field_, FieldOpKind.REMOVE_FROM_SET, value)


class ChangeKind(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    # Marks the end of a subscription snapshot; carries no record.
    SYNCED = "synced"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    collection: str
    record_id: str
    record: dict[str, Any]


# --- Writes (units of a batch commit) ---


@dataclass(frozen=True)
class UpdateWrite:
    collection: str
    record_id: str
    ops: tuple[FieldOp, ...]
    expect: Mapping[str, Any] | None = None
    undo: Write | None = None


@dataclass(frozen=True)
class CreateWrite:
    collection: str
    record_id: str
    data: dict[str, Any] = field(default_factory=dict)
    undo: Write | None = None


@dataclass(frozen=True)
class DeleteWrite:
    """Remove a document. With ``must_exist`` a missing document is a conflict."""

    collection: str
    record_id: str
    undo: Write | None = None
    must_exist: bool = False


Write = UpdateWrite | CreateWrite | DeleteWrite


# --- Document helpers (shared by adapters) ---


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Read a (possibly dotted) field, returning MISSING when absent."""
    head, _, tail = path.partition(".")
    if not tail:
        return document.get(head, MISSING)
    nested = document.get(head)
    if not isinstance(nested, Mapping):
        return MISSING
    return nested.get(tail, MISSING)


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    head, _, tail = path.partition(".")
    if not tail:
        document[head] = value
        return
    nested = document.get(head)
    if not isinstance(nested, dict):
        nested = {}
        document[head] = nested
    nested[tail] = value


def _unset_path(document: dict[str, Any], path: str) -> None:
    head, _, tail = path.partition(".")
    if not tail:
        document.pop(head, None)
        return
    nested = document.get(head)
    if isinstance(nested, dict):
        nested.pop(tail, None)


def check_expect(
    collection: str,
    record_id: str,
    document: Mapping[str, Any],
    expect: Mapping[str, Any] | None,
) -> None:
    """Raise ConflictError if any guarded field differs from its expected value."""
    if not expect:
        return
    for path, expected in expect.items():
        if get_path(document, path) != expected:
            raise ConflictError(collection, record_id, path)


def apply_field_ops(document: Mapping[str, Any], ops: Sequence[FieldOp]) -> dict[str, Any]:
    """Return a new document with ``ops`` applied in order."""
    result = copy.deepcopy(dict(document))
    for op in ops:
        if op.op is FieldOpKind.SET:
            _set_path(result, op.field, copy.deepcopy(op.value))
        elif op.op is FieldOpKind.UNSET:
            _unset_path(result, op.field)
        elif op.op is FieldOpKind.ADD_TO_SET:
            current = get_path(result, op.field)
            members = list(current) if isinstance(current, list) else []
            if op.value not in members:
                members.append(op.value)
            _set_path(result, op.field, members)
        elif op.op is FieldOpKind.REMOVE_FROM_SET:
            current = get_path(result, op.field)
            members = list(current) if isinstance(current, list) else []
            _set_path(result, op.field, [m for m in members if m != op.value])
        else:
            raise ValueError(f"Unknown field op: {op.op}")
    return result


def matches(document: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    """Equality filter used by list_records and subscribe."""
    if not where:
        return True
    return all(get_path(document, key) == value for key, value in where.items())


class RecordStore(abc.ABC):
    """Key-addressed document store with per-field atomic set operations."""

    supports_batch: bool = False

    @abc.abstractmethod
    async def get_record(self, collection: str, record_id: str) -> dict[str, Any]:
        """Return the document, raising NotFoundError when absent."""

    @abc.abstractmethod
    async def list_records(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return all documents matching an equality filter."""

    @abc.abstractmethod
    async def update_fields(
        self,
        collection: str,
        record_id: str,
        ops: Sequence[FieldOp],
        expect: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply ``ops`` atomically and return the updated document."""

    @abc.abstractmethod
    async def create_record(
        self,
        collection: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> str:
        """Create a document and return its id."""

    @abc.abstractmethod
    async def delete_record(self, collection: str, record_id: str) -> bool:
        """Delete a document. Returns False when it was already gone."""

    @abc.abstractmethod
    def subscribe(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        """Stream change events.

        The initial snapshot arrives as ADDED events followed by one SYNCED
        event, then live deltas follow in commit order.
        """

    async def commit(self, writes: Sequence[Write]) -> None:
        """Apply every write or none of them.

        Only stores with ``supports_batch`` implement this; callers go through
        ``commit_unit``, which checks the flag first.
        """
        raise TypeError(f"{type(self).__name__} does not support batch commits")

    async def apply_write(self, write: Write) -> None:
        """Apply a single write outside of a batch."""
        if isinstance(write, UpdateWrite):
            await self.update_fields(write.collection, write.record_id, write.ops, write.expect)
        elif isinstance(write, CreateWrite):
            await self.create_record(write.collection, write.data, write.record_id)
        elif isinstance(write, DeleteWrite):
            deleted = await self.delete_record(write.collection, write.record_id)
            if write.must_exist and not deleted:
                raise ConflictError(write.collection, write.record_id, "id")
        else:
            raise TypeError(f"Unsupported write: {write!r}")


async def commit_unit(store: RecordStore, writes: Sequence[Write]) -> None:
    """Apply writes as one logical unit.

    Uses the store's batch commit when it has one. Otherwise writes are
    applied in order and, if one fails, the ``undo`` of every write already
    applied runs in reverse before the original error is re-raised.
    """
    if store.supports_batch:
        await store.commit(writes)
        return

    applied: list[Write] = []
    for write in writes:
        try:
            await store.apply_write(write)
        except EngineError:
            await compensate(store, applied)
            raise
        applied.append(write)


async def compensate(store: RecordStore, applied: Sequence[Write]) -> bool:
    """Run the undo of each applied write in reverse. Returns False if any undo failed."""
    clean = True
    for write in reversed(applied):
        if write.undo is None:
            continue
        try:
            await store.apply_write(write.undo)
        except EngineError as exc:
            clean = False
            logger.error(
                "compensation_failed",
                collection=write.collection,
                record_id=write.record_id,
                error=str(exc),
            )
    return clean
