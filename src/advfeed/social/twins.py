"""Birthday twin search."""

from __future__ import annotations

import enum
from collections.abc import Iterable

from advfeed.errors import MissingBirthdayError
from advfeed.models import User
from advfeed.social.visibility import same_month_day


class TwinMode(str, enum.Enum):
    EXACT = "exact"
    DAY_AND_MONTH = "day_and_month"


def find_twins(viewer: User, all_users: Iterable[User], mode: TwinMode) -> list[User]:
    """Users sharing the viewer's birthday, among those who allow twin search.

    Results are sorted by name, then id.
    """
    if viewer.birthday is None:
        raise MissingBirthdayError("Set a birthday on your profile to find twins")

    twins = []
    for user in all_users:
        if user.id == viewer.id or user.birthday is None:
            continue
        if not user.privacy_settings.allow_twin_search:
            continue
        if mode is TwinMode.EXACT:
            matched = user.birthday == viewer.birthday
        else:
            matched = same_month_day(user.birthday, viewer.birthday)
        if matched:
            twins.append(user)

    twins.sort(key=lambda u: (u.name, u.id))
    return twins
