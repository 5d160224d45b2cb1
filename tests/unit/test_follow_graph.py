"""Unit tests for follow graph maintenance."""

from __future__ import annotations

import pytest

from advfeed.config import Settings
from advfeed.errors import NotFoundError, SelfActionError, UnauthorizedError, UnavailableError
from advfeed.models import NOTIFICATIONS, USERS, NotificationType, User
from advfeed.records import get_user
from advfeed.social.follow_service import find_follow_divergence, remove_follower, toggle_follow
from advfeed.social.notification_service import notifications_for


async def _edge(store, follower_id: str, target_id: str) -> tuple[bool, bool]:
    """(following side present, followers side present)."""
    follower = await get_user(store, follower_id)
    target = await get_user(store, target_id)
    return target_id in follower.following, follower_id in target.followers


class TestToggleFollow:
    @pytest.mark.asyncio
    async def test_follow_then_unfollow_keeps_both_sides(self, any_store, create_user, settings: Settings) -> None:
        await create_user(any_store, "alice")
        await create_user(any_store, "bob")

        assert await toggle_follow(any_store, "alice", "bob", settings) is True
        assert await _edge(any_store, "alice", "bob") == (True, True)

        assert await toggle_follow(any_store, "alice", "bob", settings) is False
        assert await _edge(any_store, "alice", "bob") == (False, False)

    @pytest.mark.asyncio
    async def test_many_toggles_stay_symmetric(self, any_store, create_user, settings: Settings) -> None:
        for user_id in ("a", "b", "c"):
            await create_user(any_store, user_id)

        for follower, target in [("a", "b"), ("b", "a"), ("a", "c"), ("a", "b"), ("c", "a"), ("b", "a")]:
            await toggle_follow(any_store, follower, target, settings)

        users = [User.model_validate(r) for r in await any_store.list_records(USERS)]
        assert find_follow_divergence(users) == []

    @pytest.mark.asyncio
    async def test_self_follow_rejected(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "alice")
        with pytest.raises(SelfActionError):
            await toggle_follow(store, "alice", "alice", settings)

    @pytest.mark.asyncio
    async def test_missing_target_mutates_nothing(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "alice")
        with pytest.raises(NotFoundError):
            await toggle_follow(store, "alice", "ghost", settings)
        assert (await get_user(store, "alice")).following == set()

    @pytest.mark.asyncio
    async def test_missing_follower_mutates_nothing(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "bob")
        with pytest.raises(NotFoundError):
            await toggle_follow(store, "ghost", "bob", settings)
        assert (await get_user(store, "bob")).followers == set()

    @pytest.mark.asyncio
    async def test_follow_notifies_target_once(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "alice")
        await create_user(store, "bob")

        await toggle_follow(store, "alice", "bob", settings)
        await toggle_follow(store, "alice", "bob", settings)

        inbox = await notifications_for(store, "bob")
        assert [n.type for n in inbox] == [NotificationType.NEW_FOLLOWER]
        assert inbox[0].sender_id == "alice"

    @pytest.mark.asyncio
    async def test_follow_notification_can_be_disabled(self, store, create_user) -> None:
        await create_user(store, "alice")
        await create_user(store, "bob")
        quiet = Settings(_env_file=None, notify_new_follower=False)

        await toggle_follow(store, "alice", "bob", quiet)

        assert await notifications_for(store, "bob") == []

    @pytest.mark.asyncio
    async def test_failed_notification_does_not_undo_follow(self, flaky_store, create_user, settings: Settings) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob")
        flaky_store.fail_creates[NOTIFICATIONS] = 1

        assert await toggle_follow(flaky_store, "alice", "bob", settings) is True
        assert await _edge(flaky_store, "alice", "bob") == (True, True)
        assert await notifications_for(flaky_store, "bob") == []


class TestSequentialLegs:
    @pytest.mark.asyncio
    async def test_transient_second_leg_failure_converges(self, flaky_store, create_user, settings: Settings) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob")
        flaky_store.fail_updates[(USERS, "bob")] = 2

        assert await toggle_follow(flaky_store, "alice", "bob", settings) is True
        assert await _edge(flaky_store, "alice", "bob") == (True, True)
        assert flaky_store.update_calls.count((USERS, "bob")) == 3

    @pytest.mark.asyncio
    async def test_permanent_second_leg_failure_rolls_back(self, flaky_store, create_user, settings: Settings) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob")
        flaky_store.fail_updates[(USERS, "bob")] = -1

        with pytest.raises(UnavailableError):
            await toggle_follow(flaky_store, "alice", "bob", settings)

        assert await _edge(flaky_store, "alice", "bob") == (False, False)
        assert flaky_store.update_calls.count((USERS, "bob")) == settings.follow_retry_attempts
        assert await notifications_for(flaky_store, "bob") == []

    @pytest.mark.asyncio
    async def test_failed_rollback_leaves_detectable_divergence(
        self, flaky_store, create_user, settings: Settings
    ) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob")
        flaky_store.fail_updates[(USERS, "bob")] = -1

        # Leg 1 on alice lands, every later update of alice (the rollback) fails.
        original = flaky_store.update_fields
        alice_calls = 0

        async def fail_alice_after_first(collection, record_id, ops, expect=None):
            nonlocal alice_calls
            if (collection, record_id) == (USERS, "alice"):
                alice_calls += 1
                if alice_calls > 1:
                    raise UnavailableError("alice unreachable")
            return await original(collection, record_id, ops, expect)

        flaky_store.update_fields = fail_alice_after_first

        with pytest.raises(UnavailableError):
            await toggle_follow(flaky_store, "alice", "bob", settings)

        users = [User.model_validate(r) for r in await flaky_store.list_records(USERS)]
        divergence = find_follow_divergence(users)
        assert len(divergence) == 1
        assert divergence[0].follower_id == "alice"
        assert divergence[0].target_id == "bob"
        assert divergence[0].missing_side == "followers"

    @pytest.mark.asyncio
    async def test_first_leg_failure_mutates_nothing(self, flaky_store, create_user, settings: Settings) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob")
        flaky_store.fail_updates[(USERS, "alice")] = 1

        with pytest.raises(UnavailableError):
            await toggle_follow(flaky_store, "alice", "bob", settings)

        assert await _edge(flaky_store, "alice", "bob") == (False, False)
        assert (USERS, "bob") not in flaky_store.update_calls

    @pytest.mark.asyncio
    async def test_leg_already_present_is_not_written(self, flaky_store, create_user, settings: Settings) -> None:
        await create_user(flaky_store, "alice")
        await create_user(flaky_store, "bob", followers={"alice"})
        flaky_store.fail_updates[(USERS, "bob")] = -1

        assert await toggle_follow(flaky_store, "alice", "bob", settings) is True

        assert await _edge(flaky_store, "alice", "bob") == (True, True)
        assert (USERS, "bob") not in flaky_store.update_calls


class TestRemoveFollower:
    @pytest.mark.asyncio
    async def test_owner_removes_follower_silently(self, any_store, create_user, settings: Settings) -> None:
        await create_user(any_store, "owner")
        await create_user(any_store, "fan")
        await toggle_follow(any_store, "fan", "owner", settings)
        before = await notifications_for(any_store, "fan")

        assert await remove_follower(any_store, "owner", "fan", "owner", settings) is True

        assert await _edge(any_store, "fan", "owner") == (False, False)
        assert await notifications_for(any_store, "fan") == before

    @pytest.mark.asyncio
    async def test_only_owner_may_remove(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "owner")
        await create_user(store, "fan")
        await toggle_follow(store, "fan", "owner", settings)

        with pytest.raises(UnauthorizedError):
            await remove_follower(store, "owner", "fan", "fan", settings)
        assert await _edge(store, "fan", "owner") == (True, True)

    @pytest.mark.asyncio
    async def test_no_edge_returns_false(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "owner")
        await create_user(store, "fan")
        assert await remove_follower(store, "owner", "fan", "owner", settings) is False

    @pytest.mark.asyncio
    async def test_repairs_one_sided_edge(self, store, create_user, settings: Settings) -> None:
        await create_user(store, "owner", followers={"fan"})
        await create_user(store, "fan")

        assert await remove_follower(store, "owner", "fan", "owner", settings) is True
        assert await _edge(store, "fan", "owner") == (False, False)

    @pytest.mark.asyncio
    async def test_failed_one_sided_removal_does_not_add_missing_side(
        self, flaky_store, create_user, settings: Settings
    ) -> None:
        await create_user(flaky_store, "owner")
        await create_user(flaky_store, "fan", following={"owner"})
        flaky_store.fail_updates[(USERS, "fan")] = -1

        with pytest.raises(UnavailableError):
            await remove_follower(flaky_store, "owner", "fan", "owner", settings)

        assert await _edge(flaky_store, "fan", "owner") == (True, False)
        assert (USERS, "owner") not in flaky_store.update_calls


class TestFindFollowDivergence:
    def test_symmetric_graph_is_clean(self) -> None:
        a = User(id="a", following={"b"})
        b = User(id="b", followers={"a"})
        assert find_follow_divergence([a, b]) == []

    def test_reports_each_missing_side(self) -> None:
        a = User(id="a", following={"b"})
        b = User(id="b")
        c = User(id="c", followers={"a"})
        found = {(d.follower_id, d.target_id, d.missing_side) for d in find_follow_divergence([a, b, c])}
        assert found == {("a", "b", "followers"), ("a", "c", "following")}

    def test_self_membership_is_dropped(self) -> None:
        assert User(id="a", following={"a", "b"}).following == {"b"}
