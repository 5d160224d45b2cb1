"""Materialized feed state fed by store subscriptions.

A FeedView belongs to one session. It keeps the latest copy of every user and
adventure, plus the session owner's notifications, and applies change events
from the record store as they arrive. Rendering reads only this local state;
visibility is evaluated on every render.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from advfeed.errors import UnavailableError
from advfeed.models import ADVENTURES, NOTIFICATIONS, USERS, Adventure, HydratedAdventure, Notification, User
from advfeed.social.follow_service import FollowDivergence, find_follow_divergence
from advfeed.social.visibility import filter_visible
from advfeed.store.base import ChangeEvent, ChangeKind, RecordStore

logger = structlog.get_logger()

_MODELS: dict[str, type[BaseModel]] = {
    USERS: User,
    ADVENTURES: Adventure,
    NOTIFICATIONS: Notification,
}


class FeedView:
    """Local copy of users, adventures and one recipient's notifications."""

    def __init__(self, store: RecordStore, owner_id: str | None = None) -> None:
        self.store = store
        self.owner_id = owner_id
        self.users: dict[str, User] = {}
        self.adventures: dict[str, Adventure] = {}
        self.notifications: dict[str, Notification] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._loaded: set[str] = set()
        self._running = False

    def _table(self, collection: str) -> dict[str, Any]:
        if collection == USERS:
            return self.users
        if collection == ADVENTURES:
            return self.adventures
        if collection == NOTIFICATIONS:
            return self.notifications
        raise ValueError(f"Unknown collection: {collection}")

    def _subscriptions(self) -> list[tuple[str, Mapping[str, Any] | None]]:
        subscriptions: list[tuple[str, Mapping[str, Any] | None]] = [(USERS, None), (ADVENTURES, None)]
        if self.owner_id is not None:
            subscriptions.append((NOTIFICATIONS, {"recipientId": self.owner_id}))
        return subscriptions

    def apply(self, event: ChangeEvent) -> None:
        """Apply one change event. Added and modified records are upserts."""
        if event.kind is ChangeKind.SYNCED:
            return
        if self._upsert(event) and event.collection == USERS:
            self._log_divergence(event.record_id)

    def _upsert(self, event: ChangeEvent) -> bool:
        table = self._table(event.collection)
        if event.kind is ChangeKind.REMOVED:
            table.pop(event.record_id, None)
            return False

        try:
            model = _MODELS[event.collection].model_validate(event.record)
        except ValidationError as exc:
            logger.warning(
                "feed_invalid_record",
                collection=event.collection,
                record_id=event.record_id,
                errors=exc.error_count(),
            )
            return False
        table[event.record_id] = model
        return True

    def _replace(self, collection: str, snapshot: list[ChangeEvent]) -> None:
        """Make ``snapshot`` the whole local copy of ``collection``."""
        self._table(collection).clear()
        for event in snapshot:
            self._upsert(event)
        if collection == USERS:
            self._log_divergence()

    def _log_divergence(self, user_id: str | None = None) -> None:
        for divergence in self.follow_divergence():
            if user_id is None or user_id in (divergence.follower_id, divergence.target_id):
                logger.info(
                    "follow_divergence",
                    follower_id=divergence.follower_id,
                    target_id=divergence.target_id,
                    missing_side=divergence.missing_side,
                )

    def follow_divergence(self) -> list[FollowDivergence]:
        return find_follow_divergence(self.users.values())

    # --- Lifecycle ---

    async def start(self) -> None:
        """Subscribe to every collection and wait until each snapshot is loaded.

        Raises UnavailableError if a subscription ends before its snapshot
        arrives; nothing is left running in that case.
        """
        self._running = True
        self._loaded.clear()
        subscriptions = self._subscriptions()
        ready = {collection: asyncio.Event() for collection, _ in subscriptions}
        for collection, where in subscriptions:
            self._tasks.append(asyncio.create_task(self._consume(collection, where, ready[collection])))
        await asyncio.gather(*(event.wait() for event in ready.values()))

        missing = [collection for collection in ready if collection not in self._loaded]
        if missing:
            await self.stop()
            raise UnavailableError(f"Feed subscriptions ended before loading: {', '.join(missing)}")
        logger.info("feed_view_started", owner_id=self.owner_id, users=len(self.users), adventures=len(self.adventures))

    async def _consume(self, collection: str, where: Mapping[str, Any] | None, ready: asyncio.Event) -> None:
        subscription = self.store.subscribe(collection, where)
        snapshot: list[ChangeEvent] | None = []
        try:
            async for event in subscription:
                if not self._running:
                    break
                if snapshot is None:
                    self.apply(event)
                elif event.kind is ChangeKind.SYNCED:
                    self._replace(collection, snapshot)
                    snapshot = None
                    self._loaded.add(collection)
                    ready.set()
                else:
                    snapshot.append(event)
        except asyncio.CancelledError:
            pass
        except UnavailableError:
            logger.warning("feed_subscription_lost", collection=collection, exc_info=True)
        finally:
            ready.set()
            await subscription.aclose()  # type: ignore[attr-defined]
            logger.debug("feed_subscription_closed", collection=collection)

    async def stop(self) -> None:
        """Cancel the subscription tasks and wait for them to finish."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("feed_view_stopped", owner_id=self.owner_id)

    # --- Rendering ---

    def visible_feed(self, viewer_id: str | None) -> list[HydratedAdventure]:
        """Adventures ``viewer_id`` may see, newest start first.

        ``None`` is a guest; an id with no local user record is treated the
        same way.
        """
        viewer = self.users.get(viewer_id) if viewer_id is not None else None
        feed = filter_visible(viewer, self.adventures.values(), self.users)
        feed.sort(key=lambda item: (item.adventure.start_date, item.adventure.id), reverse=True)
        return feed

    def inbox(self) -> list[Notification]:
        """The owner's notifications, newest first."""
        return sorted(self.notifications.values(), key=lambda n: (n.created_at, n.id), reverse=True)

    def unread_count(self) -> int:
        return sum(1 for notification in self.notifications.values() if not notification.read)
