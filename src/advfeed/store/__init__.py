"""Record store adapters."""

from advfeed.store.base import (
    MISSING,
    ChangeEvent,
    ChangeKind,
    CreateWrite,
    DeleteWrite,
    FieldOp,
    FieldOpKind,
    RecordStore,
    UpdateWrite,
    Write,
    commit_unit,
)
from advfeed.store.memory import InMemoryRecordStore
from advfeed.store.redis_store import RedisRecordStore

__all__ = [
    "MISSING",
    "ChangeEvent",
    "ChangeKind",
    "CreateWrite",
    "DeleteWrite",
    "FieldOp",
    "FieldOpKind",
    "InMemoryRecordStore",
    "RecordStore",
    "RedisRecordStore",
    "UpdateWrite",
    "Write",
    "commit_unit",
]
