"""Cross-operation consistency tests: concurrency, failure and full scenarios."""

import asyncio

import pytest

from huddle.collaboration.assets import content_hash
from huddle.core.errors import ErrorKind, StorageError
from huddle.core.locks import team_key, user_key


async def assert_consistent(engine):
    """Check the ownership, membership and active-team invariants over every record."""
    users = await engine.identities.list_users(limit=1000)
    teams = await engine.teams.list_teams(limit=1000)
    teams_by_id = {t.id: t for t in teams}

    for team in teams:
        assert team.has_member(team.owner_id)
        owner = await engine.identities.find(team.owner_id)
        assert owner.owned_team_id == team.id

    for user in users:
        if user.owned_team_id:
            assert teams_by_id[user.owned_team_id].owner_id == user.id
        if user.active_team_id:
            assert teams_by_id[user.active_team_id].has_member(user.id)
        for team_id in await engine.teams.teams_for_user(user.id):
            assert teams_by_id[team_id].has_member(user.id)


class TestScenarios:
    """End-to-end flows."""

    @pytest.mark.asyncio
    async def test_team_lifecycle(self, engine, make_user):
        """Test create, rotate, join, kick and delete in sequence."""
        a = await make_user("a")
        b = await make_user("b")

        foo = (await engine.create_team(a.id, "Foo")).unwrap()
        stored_a = await engine.identities.find(a.id)
        assert foo.member_ids == {a.id}
        assert stored_a.owned_team_id == stored_a.active_team_id == foo.id

        old_token = foo.invite_token
        new_token = (await engine.rotate_invite_token(a.id, foo.id)).unwrap()
        assert new_token != old_token
        assert (await engine.accept_invite(b.id, foo.id, old_token)).error == (
            ErrorKind.INVALID_TOKEN
        )

        assert (await engine.accept_invite(b.id, foo.id, new_token)).ok
        assert (await engine.identities.find(b.id)).active_team_id is None
        await engine.set_active_team(b.id, foo.id)
        await assert_consistent(engine)

        assert (await engine.kick_member(a.id, foo.id, b.id)).ok
        assert not (await engine.teams.find(foo.id)).has_member(b.id)
        assert (await engine.identities.find(b.id)).active_team_id is None

        assert (await engine.delete_team(a.id, foo.id)).ok
        assert await engine.teams.find(foo.id) is None
        stored_a = await engine.identities.find(a.id)
        assert stored_a.owned_team_id is None
        assert stored_a.active_team_id is None
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_second_team_refused(self, engine, make_user):
        """Test an owner cannot create another team and the first is untouched."""
        c = await make_user("c")
        first = (await engine.create_team(c.id, "First")).unwrap()

        result = await engine.create_team(c.id, "Second")

        assert result.error == ErrorKind.ALREADY_OWNS_TEAM
        teams = await engine.teams.list_teams()
        assert [t.id for t in teams] == [first.id]
        assert teams[0].name == "First"
        assert teams[0].member_ids == {c.id}


class TestConcurrency:
    """Tests for operations racing on the same records."""

    @pytest.mark.asyncio
    async def test_concurrent_joins(self, engine, make_user):
        """Test simultaneous joins all land."""
        owner = await make_user("owner")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        joiners = [await make_user(f"user{i}") for i in range(6)]

        results = await asyncio.gather(
            *(engine.accept_invite(u.id, team.id, team.invite_token) for u in joiners)
        )

        assert all(r.ok for r in results)
        stored = await engine.teams.find(team.id)
        assert stored.member_ids == {owner.id} | {u.id for u in joiners}
        assert engine.locks.active_keys == 0
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_concurrent_create_by_one_user(self, engine, make_user):
        """Test racing creates by one user yield exactly one team."""
        owner = await make_user("owner")

        results = await asyncio.gather(
            *(engine.create_team(owner.id, f"Team {i}") for i in range(4))
        )

        assert sum(r.ok for r in results) == 1
        assert all(r.error == ErrorKind.ALREADY_OWNS_TEAM for r in results if not r.ok)
        assert len(await engine.teams.list_teams()) == 1
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_join_races_rotation(self, engine, make_user):
        """Test a join with a rotated-away token never succeeds after rotation."""
        owner = await make_user("owner")
        bob = await make_user("bob")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()

        rotate, accept = await asyncio.gather(
            engine.rotate_invite_token(owner.id, team.id),
            engine.accept_invite(bob.id, team.id, team.invite_token),
        )

        assert rotate.ok
        stored = await engine.teams.find(team.id)
        assert stored.invite_token == rotate.value
        assert stored.has_member(bob.id) == accept.ok
        if not accept.ok:
            assert accept.error == ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_delete_races_join(self, engine, make_user):
        """Test a member joining during deletion is never left pointing at the team."""
        owner = await make_user("owner")
        bob = await make_user("bob")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()

        async def join_and_activate():
            joined = await engine.accept_invite(bob.id, team.id, team.invite_token)
            if joined.ok:
                await engine.set_active_team(bob.id, team.id)

        await asyncio.gather(engine.delete_team(owner.id, team.id), join_and_activate())

        assert await engine.teams.find(team.id) is None
        assert (await engine.identities.find(bob.id)).active_team_id is None
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_busy_when_lock_held(self, engine, make_user):
        """Test a lock wait past the timeout reports BUSY without side effects."""
        owner = await make_user("owner")
        bob = await make_user("bob")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        engine.locks.timeout = 0.05

        async with engine.locks.hold(team_key(team.id)):
            result = await engine.accept_invite(bob.id, team.id, team.invite_token)

        assert result.error == ErrorKind.BUSY
        assert result.error.retryable
        assert not (await engine.teams.find(team.id)).has_member(bob.id)

    @pytest.mark.asyncio
    async def test_busy_on_user_lock(self, engine, make_user):
        owner = await make_user("owner")
        engine.locks.timeout = 0.05

        async with engine.locks.hold(user_key(owner.id)):
            result = await engine.create_team(owner.id, "Foo")

        assert result.error == ErrorKind.BUSY
        assert await engine.teams.list_teams() == []


class TestFailureAtomicity:
    """Tests that failed or cancelled operations leave no partial state."""

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_create(self, engine, make_user, mocker):
        """Test a failed pointer write undoes the team insert."""
        owner = await make_user("owner")
        mocker.patch.object(
            engine.identities, "save", side_effect=StorageError("save_user failed: disk I/O error")
        )

        result = await engine.create_team(owner.id, "Foo")

        assert result.error == ErrorKind.STORAGE_FAILURE
        assert await engine.teams.list_teams() == []
        mocker.stopall()
        assert (await engine.identities.find(owner.id)).owned_team_id is None

    @pytest.mark.asyncio
    async def test_busy_storage_error(self, engine, make_user, mocker):
        """Test a database lock error surfaces as BUSY."""
        owner = await make_user("owner")
        mocker.patch.object(
            engine.teams, "save", side_effect=StorageError("database is locked", busy=True)
        )

        result = await engine.create_team(owner.id, "Foo")

        assert result.error == ErrorKind.BUSY

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_delete(self, engine, make_user, mocker):
        """Test a failed team delete keeps every pointer."""
        owner = await make_user("owner")
        bob = await make_user("bob")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        await engine.accept_invite(bob.id, team.id, team.invite_token)
        await engine.set_active_team(bob.id, team.id)

        mocker.patch.object(engine.teams, "delete", side_effect=StorageError("boom"))
        result = await engine.delete_team(owner.id, team.id)

        assert result.error == ErrorKind.STORAGE_FAILURE
        assert await engine.teams.find(team.id) is not None
        assert (await engine.identities.find(bob.id)).active_team_id == team.id
        assert (await engine.identities.find(owner.id)).owned_team_id == team.id
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, engine, make_user, mocker):
        """Test cancelling mid-transaction leaves no team and no pointers."""
        owner = await make_user("owner")
        reached = asyncio.Event()

        async def stall(*args, **kwargs):
            reached.set()
            await asyncio.sleep(10)

        mocker.patch.object(engine.identities, "save", side_effect=stall)

        task = asyncio.create_task(engine.create_team(owner.id, "Foo"))
        await reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        mocker.stopall()
        assert await engine.teams.list_teams() == []
        assert (await engine.identities.find(owner.id)).owned_team_id is None
        assert engine.locks.active_keys == 0

        assert (await engine.create_team(owner.id, "Foo")).ok


@pytest.fixture
def cancel_on_commit(mocker):
    """Let the nth transaction commit land, then cancel its caller."""
    real_shield = asyncio.shield

    def arm(nth: int):
        calls = 0

        def shield(aw):
            nonlocal calls
            calls += 1
            if calls != nth:
                return real_shield(aw)

            async def commit_then_cancel():
                await aw
                raise asyncio.CancelledError()

            return commit_then_cancel()

        mocker.patch("huddle.persistence.database.asyncio.shield", side_effect=shield)

    return arm


class TestCancelledAfterCommit:
    """Tests that a cancellation arriving with the commit keeps the committed change."""

    @pytest.mark.asyncio
    async def test_create_team_stays_created(self, engine, make_user, cancel_on_commit, mocker):
        owner = await make_user("owner")
        cancel_on_commit(1)

        with pytest.raises(asyncio.CancelledError):
            await engine.create_team(owner.id, "Foo")

        mocker.stopall()
        teams = await engine.teams.list_teams()
        assert [t.name for t in teams] == ["Foo"]
        stored = await engine.identities.find(owner.id)
        assert stored.owned_team_id == stored.active_team_id == teams[0].id
        assert engine.locks.active_keys == 0
        await assert_consistent(engine)

    @pytest.mark.asyncio
    async def test_first_avatar_blob_kept(self, engine, make_user, cancel_on_commit, mocker):
        """Test the committed avatar still has its blob."""
        owner = await make_user("owner")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        digest = content_hash(b"img")
        # put() commits first, the team record second
        cancel_on_commit(2)

        with pytest.raises(asyncio.CancelledError):
            await engine.set_team_avatar(owner.id, team.id, b"img")

        mocker.stopall()
        assert (await engine.teams.find(team.id)).avatar_hash == digest
        assert await engine.assets.get(digest) is not None
        assert await engine.assets.read(digest) == b"img"

    @pytest.mark.asyncio
    async def test_replaced_avatar_releases_old_blob(
        self, engine, make_user, cancel_on_commit, mocker
    ):
        owner = await make_user("owner")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        await engine.set_team_avatar(owner.id, team.id, b"one")
        cancel_on_commit(2)

        with pytest.raises(asyncio.CancelledError):
            await engine.set_team_avatar(owner.id, team.id, b"two")

        mocker.stopall()
        assert (await engine.teams.find(team.id)).avatar_hash == content_hash(b"two")
        assert await engine.assets.get(content_hash(b"two")) is not None
        assert await engine.assets.get(content_hash(b"one")) is None
        assert not engine.assets.path_for(content_hash(b"one")).exists()

    @pytest.mark.asyncio
    async def test_deleted_team_releases_avatar(
        self, engine, make_user, cancel_on_commit, mocker
    ):
        """Test deletion stays complete and the avatar reference is dropped."""
        owner = await make_user("owner")
        bob = await make_user("bob")
        team = (await engine.create_team(owner.id, "Foo")).unwrap()
        await engine.accept_invite(bob.id, team.id, team.invite_token)
        await engine.set_active_team(bob.id, team.id)
        await engine.set_team_avatar(owner.id, team.id, b"logo")
        cancel_on_commit(1)

        with pytest.raises(asyncio.CancelledError):
            await engine.delete_team(owner.id, team.id)

        mocker.stopall()
        assert await engine.teams.find(team.id) is None
        for user_id in (owner.id, bob.id):
            user = await engine.identities.find(user_id)
            assert user.owned_team_id is None
            assert user.active_team_id is None
        assert await engine.assets.get(content_hash(b"logo")) is None
        assert engine.locks.active_keys == 0
        await assert_consistent(engine)
