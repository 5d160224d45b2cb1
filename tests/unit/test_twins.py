"""Unit tests for birthday twin search."""

from __future__ import annotations

from datetime import date

import pytest

from advfeed.errors import MissingBirthdayError
from advfeed.models import PrivacySettings, User
from advfeed.social.twins import TwinMode, find_twins


@pytest.fixture
def population() -> list[User]:
    return [
        User(id="u1", name="Uma", birthday=date(1990, 5, 10)),
        User(id="u2", name="Ari", birthday=date(1995, 5, 10)),
        User(id="u3", name="Ned", birthday=date(1990, 5, 11)),
        User(
            id="u4",
            name="Hid",
            birthday=date(1990, 5, 10),
            privacy_settings=PrivacySettings(allow_twin_search=False),
        ),
        User(id="u5", name="Nob"),
    ]


class TestFindTwins:
    def test_exact_and_day_month(self, population: list[User]) -> None:
        viewer = User(id="me", name="Me", birthday=date(1990, 5, 10))

        assert [u.id for u in find_twins(viewer, population, TwinMode.EXACT)] == ["u1"]
        assert [u.id for u in find_twins(viewer, population, TwinMode.DAY_AND_MONTH)] == ["u2", "u1"]

    def test_opted_out_exact_twin_is_hidden(self) -> None:
        viewer = User(id="me", birthday=date(1990, 3, 15))
        day_twin = User(id="a", birthday=date(1985, 3, 15))
        exact_twin = User(
            id="b",
            birthday=date(1990, 3, 15),
            privacy_settings=PrivacySettings(allow_twin_search=False),
        )

        assert find_twins(viewer, [day_twin, exact_twin], TwinMode.EXACT) == []
        assert [u.id for u in find_twins(viewer, [day_twin, exact_twin], TwinMode.DAY_AND_MONTH)] == ["a"]

    def test_viewer_excluded(self, population: list[User]) -> None:
        viewer = population[0]
        ids = [u.id for u in find_twins(viewer, population, TwinMode.DAY_AND_MONTH)]
        assert ids == ["u2"]

    def test_viewer_without_birthday(self, population: list[User]) -> None:
        with pytest.raises(MissingBirthdayError):
            find_twins(User(id="me"), population, TwinMode.EXACT)

    def test_sorted_by_name_then_id(self) -> None:
        viewer = User(id="me", birthday=date(2000, 1, 1))
        users = [
            User(id="b", name="Same", birthday=date(1999, 1, 1)),
            User(id="a", name="Same", birthday=date(1998, 1, 1)),
            User(id="c", name="Adam", birthday=date(1997, 1, 1)),
        ]
        assert [u.id for u in find_twins(viewer, users, TwinMode.DAY_AND_MONTH)] == ["c", "a", "b"]

    def test_leap_day_matches_only_leap_day(self) -> None:
        viewer = User(id="me", birthday=date(2000, 2, 29))
        users = [
            User(id="leap", birthday=date(1996, 2, 29)),
            User(id="eve", birthday=date(1997, 2, 28)),
            User(id="march", birthday=date(1997, 3, 1)),
        ]
        assert [u.id for u in find_twins(viewer, users, TwinMode.DAY_AND_MONTH)] == ["leap"]
