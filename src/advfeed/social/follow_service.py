"""Follow graph maintenance.

A follow edge is stored twice: ``following`` on the follower and
``followers`` on the target. The two legs live on different records, so:

- stores with a batch commit write both legs in one transaction;
- other stores get leg 1, then leg 2 with bounded exponential-backoff
  retries. If leg 2 never lands, leg 1 is rolled back so the persisted
  state stays symmetric, and UnavailableError is raised. A rollback that
  also fails is logged as a divergence for reconciliation.

Readers may briefly observe one leg without the other; the graph converges
once both writes land.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from advfeed.config import Settings, get_settings
from advfeed.errors import EngineError, SelfActionError, UnauthorizedError, UnavailableError
from advfeed.models import USERS, NotificationType, User
from advfeed.records import get_user
from advfeed.social.notification_service import create_notification
from advfeed.store.base import FieldOp, RecordStore, UpdateWrite

logger = logging.getLogger(__name__)


def _edge_writes(
    follower: User,
    target: User,
    follow: bool,
) -> tuple[UpdateWrite | None, UpdateWrite | None]:
    """Both legs of a follow-edge change, each carrying its own inverse.

    A leg whose record is already in the wanted state is None, so it is
    neither written nor compensated.
    """
    if follow:
        forward, backward = FieldOp.add_to_set, FieldOp.remove_from_set
    else:
        forward, backward = FieldOp.remove_from_set, FieldOp.add_to_set

    following_leg = None
    if (target.id in follower.following) != follow:
        following_leg = UpdateWrite(
            USERS,
            follower.id,
            (forward("following", target.id),),
            undo=UpdateWrite(USERS, follower.id, (backward("following", target.id),)),
        )
    followers_leg = None
    if (follower.id in target.followers) != follow:
        followers_leg = UpdateWrite(
            USERS,
            target.id,
            (forward("followers", follower.id),),
            undo=UpdateWrite(USERS, target.id, (backward("followers", follower.id),)),
        )
    return following_leg, followers_leg


def _retrying(settings: Settings) -> AsyncRetrying:
    return AsyncRetrying(
        stop=stop_after_attempt(settings.follow_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.follow_retry_base_delay_seconds,
            max=settings.follow_retry_max_delay_seconds,
        ),
        retry=retry_if_exception_type(UnavailableError),
        reraise=True,
    )


async def _apply_edge(
    store: RecordStore,
    legs: Sequence[UpdateWrite | None],
    settings: Settings,
) -> None:
    """Apply the needed legs in order so that the persisted result is symmetric."""
    needed = [leg for leg in legs if leg is not None]
    if not needed:
        return
    if store.supports_batch:
        await store.commit(needed)
        return

    first, *rest = needed
    await store.apply_write(first)
    if not rest:
        return
    [second] = rest
    try:
        async for attempt in _retrying(settings):
            with attempt:
                await store.apply_write(second)
    except EngineError as exc:
        logger.warning(
            "Second leg on %s/%s failed after %d attempts, rolling back first leg: %s",
            second.collection,
            second.record_id,
            settings.follow_retry_attempts,
            exc,
        )
        await _rollback(store, first, settings)
        raise


async def _rollback(store: RecordStore, applied: UpdateWrite, settings: Settings) -> None:
    undo = applied.undo or UpdateWrite(applied.collection, applied.record_id, ())
    try:
        async for attempt in _retrying(settings):
            with attempt:
                await store.apply_write(undo)
    except EngineError as exc:
        logger.error(
            "Follow graph divergence on %s/%s: rollback failed (%s); needs reconciliation",
            applied.collection,
            applied.record_id,
            exc,
        )


async def toggle_follow(
    store: RecordStore,
    follower_id: str,
    target_id: str,
    settings: Settings | None = None,
) -> bool:
    """Follow ``target_id`` if not yet following, else unfollow.

    Returns True when ``follower_id`` follows the target afterwards.
    """
    settings = settings or get_settings()
    if follower_id == target_id:
        raise SelfActionError("Cannot follow yourself")

    target = await get_user(store, target_id)
    follower = await get_user(store, follower_id)

    follow = target.id not in follower.following
    await _apply_edge(store, _edge_writes(follower, target, follow), settings)
    logger.info("User %s %s %s", follower.id, "followed" if follow else "unfollowed", target.id)

    if follow and settings.notify_new_follower:
        try:
            await create_notification(store, NotificationType.NEW_FOLLOWER, target.id, follower.id)
        except UnavailableError:
            logger.warning("Failed to notify %s of new follower %s", target.id, follower.id, exc_info=True)

    return follow


async def remove_follower(
    store: RecordStore,
    owner_id: str,
    follower_id: str,
    acting_user_id: str,
    settings: Settings | None = None,
) -> bool:
    """Remove ``follower_id`` from ``owner_id``'s followers, silently.

    Only the owner of the follower list may do this. Returns False when
    there was no edge to remove.
    """
    settings = settings or get_settings()
    if acting_user_id != owner_id:
        raise UnauthorizedError("Only the list owner can remove followers")
    if owner_id == follower_id:
        raise SelfActionError("Cannot remove yourself as a follower")

    owner = await get_user(store, owner_id)
    ex_follower = await get_user(store, follower_id)
    if ex_follower.id not in owner.followers and owner.id not in ex_follower.following:
        return False

    following_leg, followers_leg = _edge_writes(ex_follower, owner, follow=False)
    await _apply_edge(store, (followers_leg, following_leg), settings)
    logger.info("User %s removed follower %s", owner.id, ex_follower.id)
    return True


@dataclass(frozen=True)
class FollowDivergence:
    """One half-written edge: ``follower_id`` -> ``target_id``."""

    follower_id: str
    target_id: str
    missing_side: str  # "followers" on the target, or "following" on the follower


def find_follow_divergence(users: Iterable[User]) -> list[FollowDivergence]:
    """List every edge that is recorded on one side only.

    Edges pointing at users outside ``users`` are not checked.
    """
    by_id = {user.id: user for user in users}
    divergent: list[FollowDivergence] = []
    for user in by_id.values():
        for target_id in sorted(user.following):
            target = by_id.get(target_id)
            if target is not None and user.id not in target.followers:
                divergent.append(FollowDivergence(user.id, target_id, "followers"))
        for follower_id in sorted(user.followers):
            follower = by_id.get(follower_id)
            if follower is not None and user.id not in follower.following:
                divergent.append(FollowDivergence(follower_id, user.id, "following"))
    return divergent
