"""Notification creation and queue maintenance.

Notifications are created once as a side effect of a social or workflow
action and are never changed afterwards except for the ``read`` flag.
Suppressing duplicates is the caller's responsibility.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from advfeed.models import NOTIFICATIONS, Notification, NotificationType
from advfeed.store.base import CreateWrite, DeleteWrite, FieldOp, RecordStore, UpdateWrite, commit_unit

logger = logging.getLogger(__name__)


def build_notification(
    type_: NotificationType,
    recipient_id: str,
    sender_id: str,
    adventure_id: str | None = None,
    attendee_id: str | None = None,
) -> Notification:
    """Build a new unread notification with a fresh id."""
    return Notification(
        id=uuid.uuid4().hex,
        type=type_,
        recipient_id=recipient_id,
        sender_id=sender_id,
        adventure_id=adventure_id,
        attendee_id=attendee_id,
        read=False,
        created_at=datetime.now(timezone.utc),
    )


def create_write(notification: Notification) -> CreateWrite:
    """Write that creates ``notification``; its undo deletes it again."""
    return CreateWrite(
        NOTIFICATIONS,
        notification.id,
        notification.to_record(),
        undo=DeleteWrite(NOTIFICATIONS, notification.id),
    )


def delete_write(notification: Notification, must_exist: bool = False) -> DeleteWrite:
    """Write that removes ``notification``; its undo recreates it.

    With ``must_exist`` the write conflicts if someone else removed it first,
    which makes the deletion a claim on the notification.
    """
    return DeleteWrite(
        NOTIFICATIONS,
        notification.id,
        undo=CreateWrite(NOTIFICATIONS, notification.id, notification.to_record()),
        must_exist=must_exist,
    )


async def create_notification(
    store: RecordStore,
    type_: NotificationType,
    recipient_id: str,
    sender_id: str,
    adventure_id: str | None = None,
    attendee_id: str | None = None,
) -> Notification:
    """Create and persist a notification for ``recipient_id``."""
    notification = build_notification(type_, recipient_id, sender_id, adventure_id, attendee_id)
    await store.create_record(NOTIFICATIONS, notification.to_record(), notification.id)
    logger.info("Notification %s created for %s (%s)", notification.id, recipient_id, type_.value)
    return notification


async def get_notification(store: RecordStore, notification_id: str) -> Notification:
    return Notification.model_validate(await store.get_record(NOTIFICATIONS, notification_id))


async def notifications_for(store: RecordStore, recipient_id: str) -> list[Notification]:
    """All notifications for a recipient, newest first."""
    records = await store.list_records(NOTIFICATIONS, {"recipientId": recipient_id})
    notifications = [Notification.model_validate(record) for record in records]
    notifications.sort(key=lambda n: (n.created_at, n.id), reverse=True)
    return notifications


async def find_notifications(
    store: RecordStore,
    recipient_id: str,
    type_: NotificationType,
    adventure_id: str | None = None,
) -> list[Notification]:
    where = {"recipientId": recipient_id, "type": type_.value}
    if adventure_id is not None:
        where["adventureId"] = adventure_id
    return [Notification.model_validate(record) for record in await store.list_records(NOTIFICATIONS, where)]


async def mark_all_read(store: RecordStore, recipient_id: str) -> int:
    """Set ``read`` on every unread notification of the recipient. Returns the count."""
    unread = await store.list_records(NOTIFICATIONS, {"recipientId": recipient_id, "read": False})
    if not unread:
        return 0

    writes = [
        UpdateWrite(NOTIFICATIONS, record["id"], (FieldOp.set("read", True),))
        for record in unread
    ]
    await commit_unit(store, writes)
    logger.info("Marked %d notifications read for %s", len(writes), recipient_id)
    return len(writes)
