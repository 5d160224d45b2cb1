"""Typed record lookups."""

from __future__ import annotations

from advfeed.models import ADVENTURES, USERS, Adventure, User
from advfeed.store.base import RecordStore


async def get_user(store: RecordStore, user_id: str) -> User:
    """Load a user, raising NotFoundError when absent."""
    return User.model_validate(await store.get_record(USERS, user_id))


async def get_adventure(store: RecordStore, adventure_id: str) -> Adventure:
    """Load an adventure, raising NotFoundError when absent."""
    return Adventure.model_validate(await store.get_record(ADVENTURES, adventure_id))
