"""Interest toggling on adventures."""

from __future__ import annotations

import logging

from advfeed.errors import UnauthorizedError
from advfeed.models import ADVENTURES, NotificationType
from advfeed.records import get_adventure
from advfeed.social.notification_service import build_notification, create_write
from advfeed.store.base import FieldOp, RecordStore, UpdateWrite, Write, commit_unit

logger = logging.getLogger(__name__)


async def toggle_interest(store: RecordStore, user_id: str | None, adventure_id: str) -> bool:
    """Add or remove ``user_id`` from the adventure's interested users.

    Becoming interested notifies the author unless the user is the author.
    Returns True when the user is interested afterwards.
    """
    if user_id is None:
        raise UnauthorizedError("Sign in to mark interest")

    adventure = await get_adventure(store, adventure_id)
    interested = user_id not in adventure.interested_users

    if interested:
        op, inverse = FieldOp.add_to_set, FieldOp.remove_from_set
    else:
        op, inverse = FieldOp.remove_from_set, FieldOp.add_to_set

    writes: list[Write] = [
        UpdateWrite(
            ADVENTURES,
            adventure.id,
            (op("interestedUsers", user_id),),
            undo=UpdateWrite(ADVENTURES, adventure.id, (inverse("interestedUsers", user_id),)),
        )
    ]
    if interested and adventure.author_id != user_id:
        notification = build_notification(
            NotificationType.INTEREST,
            recipient_id=adventure.author_id,
            sender_id=user_id,
            adventure_id=adventure.id,
        )
        writes.append(create_write(notification))

    await commit_unit(store, writes)
    logger.info("User %s %s adventure %s", user_id, "interested in" if interested else "uninterested in", adventure.id)
    return interested
