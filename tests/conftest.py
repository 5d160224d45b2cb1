"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any

import pytest

from advfeed.config import Settings
from advfeed.errors import UnavailableError
from advfeed.models import ADVENTURES, USERS, Adventure, User
from advfeed.store import FieldOp, InMemoryRecordStore, RecordStore

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryRecordStore):
    """Non-transactional in-memory store that fails chosen writes.

    ``fail_updates[(collection, id)] = n`` makes the next ``n`` updates of that
    record raise UnavailableError; ``n < 0`` fails forever.
    """

    def __init__(self) -> None:
        super().__init__(transactional=False)
        self.fail_updates: dict[tuple[str, str], int] = {}
        self.fail_creates: dict[str, int] = {}
        self.update_calls: list[tuple[str, str]] = []

    @staticmethod
    def _take(budget: dict[Any, int], key: Any) -> bool:
        remaining = budget.get(key, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            budget[key] = remaining - 1
        return True

    async def update_fields(
        self,
        collection: str,
        record_id: str,
        ops: Sequence[FieldOp],
        expect: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.update_calls.append((collection, record_id))
        if self._take(self.fail_updates, (collection, record_id)):
            raise UnavailableError(f"injected failure on {collection}/{record_id}")
        return await super().update_fields(collection, record_id, ops, expect)

    async def create_record(
        self,
        collection: str,
        data: Mapping[str, Any],
        record_id: str | None = None,
    ) -> str:
        if self._take(self.fail_creates, collection):
            raise UnavailableError(f"injected failure creating in {collection}")
        return await super().create_record(collection, data, record_id)


class YieldingStore(InMemoryRecordStore):
    """In-memory store whose reads suspend, so concurrent callers interleave."""

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await super().get_record(collection, record_id)

    async def list_records(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return await super().list_records(collection, where)


async def _create_user(store: RecordStore, user_id: str, **fields: Any) -> User:
    user = User(id=user_id, name=fields.pop("name", user_id.title()), username=user_id, **fields)
    await store.create_record(USERS, user.to_record(), user.id)
    return user


async def _create_adventure(store: RecordStore, adventure_id: str, author_id: str, **fields: Any) -> Adventure:
    fields.setdefault("start_date", T0)
    adventure = Adventure(id=adventure_id, author_id=author_id, title=adventure_id, **fields)
    await store.create_record(ADVENTURES, adventure.to_record(), adventure.id)
    return adventure


@pytest.fixture
def settings() -> Settings:
    """Settings with instant retries and no .env lookup."""
    return Settings(
        _env_file=None,
        follow_retry_attempts=3,
        follow_retry_base_delay_seconds=0,
        follow_retry_max_delay_seconds=0,
        rating_conflict_retries=5,
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def flaky_store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture(params=["transactional", "sequential"])
def any_store(request: pytest.FixtureRequest) -> InMemoryRecordStore:
    """Run a test against both a batch-committing and a sequential store."""
    return InMemoryRecordStore(transactional=request.param == "transactional")


@pytest.fixture(params=["transactional", "sequential"])
def yielding_store(request: pytest.FixtureRequest) -> YieldingStore:
    return YieldingStore(transactional=request.param == "transactional")


@pytest.fixture
def create_user() -> Callable[..., Awaitable[User]]:
    return _create_user


@pytest.fixture
def create_adventure() -> Callable[..., Awaitable[Adventure]]:
    return _create_adventure


@pytest.fixture
def birthday() -> date:
    return date(1990, 3, 14)
