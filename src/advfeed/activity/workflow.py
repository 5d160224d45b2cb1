"""Attendance workflow per (user, adventure).

State progression: absent -> Pending -> Confirmed, or Pending -> absent on
denial (the user may mark the adventure done again afterwards).

Each transition is split into precondition checks that raise before
anything is written, and one unit of writes (log entry change plus
notifications) committed through ``commit_unit``. Log entry writes are
guarded on the entry's current value so concurrent transitions on the same
(user, adventure) cannot produce two entries or skip a state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from advfeed.activity.rating import apply_rating, validate_rating
from advfeed.config import Settings, get_settings
from advfeed.errors import (
    AlreadyMarkedError,
    ConflictError,
    EventNotEndedError,
    NotFoundError,
    SelfActionError,
    UnauthorizedError,
    UnavailableError,
)
from advfeed.models import (
    NOTIFICATIONS,
    USERS,
    ActivityStatus,
    Adventure,
    Notification,
    NotificationType,
    User,
)
from advfeed.records import get_adventure, get_user
from advfeed.social.notification_service import (
    build_notification,
    create_write,
    delete_write,
    find_notifications,
    get_notification,
)
from advfeed.store.base import MISSING, FieldOp, RecordStore, UpdateWrite, Write, commit_unit, get_path

logger = logging.getLogger(__name__)

PENDING = ActivityStatus.PENDING.value
CONFIRMED = ActivityStatus.CONFIRMED.value


def log_path(adventure_id: str) -> str:
    """Document path of a user's log entry for one adventure."""
    return f"activityLog.{adventure_id}"


def has_ended(adventure: Adventure, now: datetime) -> bool:
    """True once ``now`` reaches the adventure's end (or start, without an end)."""
    return now >= adventure.effective_end


def _utcnow(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _entry_write(user_id: str, adventure_id: str, new: str | None, old: str | None) -> UpdateWrite:
    """Move one log entry from ``old`` to ``new`` (None meaning absent), with its inverse."""
    path = log_path(adventure_id)
    forward = FieldOp.unset(path) if new is None else FieldOp.set(path, new)
    backward = FieldOp.unset(path) if old is None else FieldOp.set(path, old)
    return UpdateWrite(
        USERS,
        user_id,
        (forward,),
        expect={path: MISSING if old is None else old},
        undo=UpdateWrite(USERS, user_id, (backward,), expect={path: MISSING if new is None else new}),
    )


async def mark_done(
    store: RecordStore,
    user_id: str | None,
    adventure_id: str,
    now: datetime | None = None,
) -> Notification:
    """Record that ``user_id`` attended the adventure, pending the author's confirmation.

    Returns the attendance request sent to the author.
    """
    if user_id is None:
        raise UnauthorizedError("Sign in to mark an adventure as done")

    adventure = await get_adventure(store, adventure_id)
    if adventure.author_id == user_id:
        raise SelfActionError("Authors cannot request attendance on their own adventure")

    user = await get_user(store, user_id)
    if user.log_entry(adventure.id) is not None:
        raise AlreadyMarkedError(f"Adventure {adventure.id} is already in your activity log")

    if not has_ended(adventure, _utcnow(now)):
        raise EventNotEndedError(f"Adventure {adventure.id} has not ended yet")

    request = build_notification(
        NotificationType.ATTENDANCE_REQUEST,
        recipient_id=adventure.author_id,
        sender_id=user.id,
        adventure_id=adventure.id,
        attendee_id=user.id,
    )
    writes: list[Write] = [
        _entry_write(user.id, adventure.id, new=PENDING, old=None),
        create_write(request),
    ]
    try:
        await commit_unit(store, writes)
    except ConflictError as exc:
        raise AlreadyMarkedError(f"Adventure {adventure.id} is already in your activity log") from exc

    logger.info("User %s marked adventure %s done, awaiting %s", user.id, adventure.id, adventure.author_id)
    return request


async def resolve_attendance(
    store: RecordStore,
    author_id: str,
    notification_id: str,
    adventure_id: str,
    attendee_id: str,
    attended: bool,
) -> ActivityStatus | None:
    """Confirm or deny a pending attendance request.

    Returns the attendee's new status (None after a denial). The request
    notification is removed from the author's queue either way.
    """
    notification = await get_notification(store, notification_id)
    adventure = await get_adventure(store, adventure_id)
    if adventure.author_id != author_id or notification.recipient_id != author_id:
        raise UnauthorizedError("Only the adventure's author can resolve attendance")

    if (
        notification.type is not NotificationType.ATTENDANCE_REQUEST
        or notification.adventure_id != adventure.id
        or notification.attendee_id != attendee_id
    ):
        raise NotFoundError(NOTIFICATIONS, notification_id, "No matching attendance request")

    attendee = await get_user(store, attendee_id)
    if attendee.activity_log.get(adventure.id) is not ActivityStatus.PENDING:
        raise NotFoundError(USERS, attendee_id, f"No pending attendance for adventure {adventure.id}")

    writes: list[Write]
    if attended:
        writes = [
            _entry_write(attendee.id, adventure.id, new=CONFIRMED, old=PENDING),
            create_write(
                build_notification(
                    NotificationType.ATTENDANCE_CONFIRMED,
                    recipient_id=attendee.id,
                    sender_id=author_id,
                    adventure_id=adventure.id,
                )
            ),
            create_write(
                build_notification(
                    NotificationType.RATE_EXPERIENCE,
                    recipient_id=attendee.id,
                    sender_id=author_id,
                    adventure_id=adventure.id,
                )
            ),
            delete_write(notification),
        ]
    else:
        writes = [
            _entry_write(attendee.id, adventure.id, new=None, old=PENDING),
            delete_write(notification),
        ]

    try:
        await commit_unit(store, writes)
    except ConflictError as exc:
        raise NotFoundError(USERS, attendee_id, f"No pending attendance for adventure {adventure.id}") from exc

    logger.info(
        "Attendance of %s at %s %s by %s",
        attendee.id,
        adventure.id,
        "confirmed" if attended else "denied",
        author_id,
    )
    return ActivityStatus.CONFIRMED if attended else None


async def submit_rating(
    store: RecordStore,
    attendee_id: str | None,
    adventure_id: str,
    rating: int,
    settings: Settings | None = None,
) -> tuple[float, int]:
    """Rate the host of an attended adventure. Returns the host's new (average, count).

    Only an attendee holding a rate-experience notification for the
    adventure may rate; those notifications are consumed by the rating.
    """
    settings = settings or get_settings()
    validate_rating(rating, settings.rating_min, settings.rating_max)
    if attendee_id is None:
        raise UnauthorizedError("Sign in to rate an adventure")

    adventure: Adventure | None = None
    for _ in range(settings.rating_conflict_retries):
        # Re-read each attempt: a concurrent rating may have consumed the invitation.
        invitations = await find_notifications(store, attendee_id, NotificationType.RATE_EXPERIENCE, adventure_id)
        if not invitations:
            raise UnauthorizedError(f"No rating invitation for adventure {adventure_id}")
        if adventure is None:
            adventure = await get_adventure(store, adventure_id)

        record = await store.get_record(USERS, adventure.author_id)
        author = User.model_validate(record)
        new_average, new_count = apply_rating(author, rating, settings.rating_min, settings.rating_max)

        old_average = get_path(record, "averageRating")
        old_count = get_path(record, "totalRatings")
        restore = tuple(
            FieldOp.unset(field) if old is MISSING else FieldOp.set(field, old)
            for field, old in (("averageRating", old_average), ("totalRatings", old_count))
        )
        update = UpdateWrite(
            USERS,
            author.id,
            (FieldOp.set("averageRating", new_average), FieldOp.set("totalRatings", new_count)),
            expect={"averageRating": old_average, "totalRatings": old_count},
            undo=UpdateWrite(USERS, author.id, restore, expect={"totalRatings": new_count}),
        )
        try:
            await commit_unit(store, [*(delete_write(n, must_exist=True) for n in invitations), update])
        except ConflictError:
            logger.info("Rating for %s raced another update, retrying", author.id)
            continue

        logger.info("Host %s rated %d by %s (avg %.3f over %d)", author.id, rating, attendee_id, new_average, new_count)
        return new_average, new_count

    raise UnavailableError(f"Could not record rating for adventure {adventure_id} under contention")


async def auto_complete_authored(
    store: RecordStore,
    author_id: str,
    adventures: Iterable[Adventure],
    now: datetime | None = None,
    settings: Settings | None = None,
) -> list[str]:
    """Confirm the author's own finished adventures in their activity log.

    An adventure counts as finished one grace period after its effective
    end. Returns the ids that were added.
    """
    settings = settings or get_settings()
    now = _utcnow(now)
    grace = timedelta(days=settings.auto_complete_grace_days)

    author = await get_user(store, author_id)
    due = sorted(
        adventure.id
        for adventure in adventures
        if adventure.author_id == author.id
        and adventure.id not in author.activity_log
        and now > adventure.effective_end + grace
    )
    if not due:
        return []

    ops = tuple(FieldOp.set(log_path(adventure_id), CONFIRMED) for adventure_id in due)
    expect = {log_path(adventure_id): MISSING for adventure_id in due}
    try:
        await store.update_fields(USERS, author.id, ops, expect)
    except ConflictError:
        logger.info("Auto-completion for %s raced another update; leaving it to the next pass", author.id)
        return []

    logger.info("Auto-completed %d adventures for author %s", len(due), author.id)
    return due
