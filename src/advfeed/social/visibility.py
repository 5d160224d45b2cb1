"""Who may see which adventure and which parts of a profile.

Rules for an adventure, first match wins:

1. Authors always see their own adventures.
2. A private account hides everything from guests and non-followers,
   whatever the adventure's own privacy says.
3. Otherwise the adventure's privacy decides: Public is visible to everyone
   including guests, Followers to the author's followers, Twins to viewers
   whose birthday month and day equal the author's.
4. Anything else is hidden.

A guest is passed as ``None``. Every function here is pure and total:
malformed input hides content instead of raising.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date

from advfeed.models import Adventure, AdventurePrivacy, HydratedAdventure, User


def same_month_day(a: date | None, b: date | None) -> bool:
    """True when both dates are set and share month and day."""
    if a is None or b is None:
        return False
    return (a.month, a.day) == (b.month, b.day)


def is_follower(viewer: User | None, author: User) -> bool:
    return viewer is not None and viewer.id in author.followers


def is_visible(viewer: User | None, adventure: Adventure, author: User) -> bool:
    """Decide whether ``viewer`` may see ``adventure`` written by ``author``."""
    if author.id != adventure.author_id:
        return False

    if viewer is not None and viewer.id == author.id:
        return True

    if author.is_private and not is_follower(viewer, author):
        return False

    privacy = adventure.privacy
    if privacy == AdventurePrivacy.PUBLIC:
        return True
    if viewer is None:
        return False
    if privacy == AdventurePrivacy.FOLLOWERS:
        return is_follower(viewer, author)
    if privacy == AdventurePrivacy.TWINS:
        return same_month_day(viewer.birthday, author.birthday)
    return False


def filter_visible(
    viewer: User | None,
    adventures: Iterable[Adventure],
    users_by_id: Mapping[str, User],
) -> list[HydratedAdventure]:
    """Hydrate adventures with their authors and keep what ``viewer`` may see.

    Adventures whose author is unknown are dropped.
    """
    visible = []
    for adventure in adventures:
        author = users_by_id.get(adventure.author_id)
        if author is None:
            continue
        if is_visible(viewer, adventure, author):
            visible.append(HydratedAdventure(adventure=adventure, author=author))
    return visible


@dataclass(frozen=True)
class ProfileVisibility:
    can_view_profile: bool
    show_follow_lists: bool
    show_stats: bool
    show_completed_activities: bool


def profile_visibility(viewer: User | None, user: User) -> ProfileVisibility:
    """Which sections of ``user``'s profile ``viewer`` may see."""
    if viewer is not None and viewer.id == user.id:
        return ProfileVisibility(True, True, True, True)

    can_view = not user.is_private or is_follower(viewer, user)
    settings = user.privacy_settings
    return ProfileVisibility(
        can_view_profile=can_view,
        show_follow_lists=can_view and settings.show_follow_lists,
        show_stats=can_view and settings.show_stats,
        show_completed_activities=can_view and settings.show_completed_activities,
    )
