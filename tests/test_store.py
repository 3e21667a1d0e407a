from datetime import timedelta

import pytest

from geosocial.core.errors import EntityNotFound, PermissionDenied, StoreUnavailable, ValidationError
from geosocial.db.session import create_engine, create_session_factory
from geosocial.models.kinds import EntityKind
from geosocial.services.store import AuthoritativeStore
from geosocial.utils.clock import utcnow
from geosocial.utils.haversine import bounding_box


class Ticker:
    """Clock that moves one second per reading."""

    def __init__(self, offset: timedelta = timedelta(0)):
        self.now = utcnow() + offset

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def past_store(session_factory, test_settings):
    """Writes through this store are four days old."""
    return AuthoritativeStore(session_factory, settings=test_settings, clock=Ticker(timedelta(days=-4)))


async def located_user(store, nickname, lat, lon):
    user = await store.register_user(nickname)
    user, _ = await store.report_location(user.id, lat, lon)
    return user


async def box(store, kind, lat, lon, radius):
    lat_range, lon_range = bounding_box(lat, lon, radius)
    return {e.id for e in await store.bounding_box_query(kind, lat, lon, lat_range, lon_range)}


async def test_register_and_load(store):
    user = await store.register_user("ana", is_temporary=True)
    loaded = await store.load_entity(EntityKind.USER, user.id)
    assert loaded.nickname == "ana"
    assert loaded.is_temporary
    assert not loaded.has_location
    assert await store.load_entity(EntityKind.USER, "nope") is None


async def test_report_location_upserts(store):
    user = await store.register_user("ana")
    moved, previous = await store.report_location(user.id, 40.0, -73.0)
    assert previous is None
    assert moved.discoverable_until > utcnow()

    moved, previous = await store.report_location(user.id, 41.0, -74.0)
    assert previous == (40.0, -73.0)
    loaded = await store.load_entity(EntityKind.USER, user.id)
    assert (loaded.latitude, loaded.longitude) == (41.0, -74.0)


async def test_report_location_for_unknown_user(store):
    with pytest.raises(EntityNotFound):
        await store.report_location("ghost", 1.0, 1.0)


async def test_rename(store):
    user = await located_user(store, "ana", 1.0, 1.0)
    renamed = await store.rename_user(user.id, "bea")
    assert renamed.nickname == "bea"
    assert renamed.latitude == 1.0


async def test_bounding_box_query(store):
    here = await located_user(store, "here", 40.0, -73.0)
    close = await located_user(store, "close", 40.02, -73.0)
    await located_user(store, "far", 41.0, -73.0)
    assert await box(store, EntityKind.USER, 40.0, -73.0, 5000) == {here.id, close.id}


async def test_stale_locations_are_not_discoverable(store, past_store):
    fresh = await located_user(store, "fresh", 40.0, -73.0)
    stale = await located_user(past_store, "stale", 40.0, -73.0)

    assert await box(store, EntityKind.USER, 40.0, -73.0, 1000) == {fresh.id}
    assert [e.id for e in await store.discoverable_entities(EntityKind.USER)] == [fresh.id]
    assert await store.expired_ids(EntityKind.USER) == [stale.id]
    assert await store.expired_ids(EntityKind.GROUP) == []


async def test_old_activities_expire(store, past_store):
    author = await store.register_user("ana")
    old, _, _ = await past_store.create_activity(author.id, "USER_CHECKIN", None, 10.0, 10.0)
    new, _, _ = await store.create_activity(author.id, "USER_CHECKIN", None, 10.0, 10.0)
    assert await box(store, EntityKind.ACTIVITY, 10.0, 10.0, 500) == {new.id}
    assert await store.expired_ids(EntityKind.ACTIVITY) == [old.id]


async def test_bounding_box_across_the_antimeridian(store):
    creator = await store.register_user("ana")
    east = await store.create_group(creator.id, "east", "dateline", 0.0, 179.996)
    await store.create_group(creator.id, "origin", "null island", 0.0, 0.0)
    assert await box(store, EntityKind.GROUP, 0.0, -179.998, 1000) == {east.id}


async def test_bounding_box_near_pole_ignores_longitude(store):
    creator = await store.register_user("ana")
    polar = await store.create_group(creator.id, "camp", "pole", 89.99, -120.0)
    assert await box(store, EntityKind.GROUP, 89.99, 60.0, 5000) == {polar.id}


async def test_membership_counts(store):
    creator = await store.register_user("ana")
    member = await store.register_user("bea")
    group = await store.create_group(creator.id, "chess", "park", 1.0, 1.0)
    assert group.member_count == 1

    group, joined = await store.join_group(group.id, member.id)
    assert (group.member_count, joined) == (2, True)
    group, joined = await store.join_group(group.id, member.id)
    assert (group.member_count, joined) == (2, False)

    group, left = await store.leave_group(group.id, member.id)
    assert (group.member_count, left) == (1, True)
    group, left = await store.leave_group(group.id, member.id)
    assert (group.member_count, left) == (1, False)

    group, _ = await store.leave_group(group.id, creator.id)
    assert group.member_count == 0
    assert await store.load_entity(EntityKind.GROUP, group.id) is not None


async def test_keep_alive_requires_membership(store):
    creator = await store.register_user("ana")
    outsider = await store.register_user("bea")
    group = await store.create_group(creator.id, "chess", "park", 1.0, 1.0)
    assert await store.keep_alive(group.id, creator.id)
    with pytest.raises(EntityNotFound):
        await store.keep_alive(group.id, outsider.id)


async def test_password_protected_join(store):
    creator = await store.register_user("ana")
    member = await store.register_user("bea")
    group = await store.create_group(creator.id, "chess", "park", 1.0, 1.0, password_hash="h-secret")
    assert group.has_password

    with pytest.raises(PermissionDenied):
        await store.join_group(group.id, member.id)
    with pytest.raises(PermissionDenied):
        await store.join_group(group.id, member.id, password_hash="h-wrong")
    assert (await store.load_entity(EntityKind.GROUP, group.id)).member_count == 1

    group, joined = await store.join_group(group.id, member.id, password_hash="h-secret")
    assert (group.member_count, joined) == (2, True)
    # Members are not asked again
    group, joined = await store.join_group(group.id, member.id)
    assert (group.member_count, joined) == (2, False)


async def test_find_groups_by_name(session_factory, test_settings):
    store = AuthoritativeStore(session_factory, settings=test_settings, clock=Ticker())
    creator = await store.register_user("ana")
    chess = await store.create_group(creator.id, "Chess Club", "park", 1.0, 1.0)
    speed = await store.create_group(creator.id, "speed chess", "cafe", 2.0, 2.0)
    await store.create_group(creator.id, "Go", "library", 3.0, 3.0)
    literal = await store.create_group(creator.id, "100% fun_times", "bar", 4.0, 4.0)

    assert [g.id for g in await store.find_groups_by_name("CHESS")] == [speed.id, chess.id]
    assert [g.id for g in await store.find_groups_by_name("chess", limit=1)] == [speed.id]
    assert [g.id for g in await store.find_groups_by_name("0% fun_t")] == [literal.id]
    # Wildcards in the fragment are matched literally
    assert await store.find_groups_by_name("s%c") == []
    assert await store.find_groups_by_name("s_c") == []
    assert await store.find_groups_by_name("poker") == []
    with pytest.raises(ValidationError):
        await store.find_groups_by_name("  ")


async def test_only_creator_edits_moves_or_deletes(store):
    creator = await store.register_user("ana")
    other = await store.register_user("bea")
    group = await store.create_group(creator.id, "chess", "park", 1.0, 1.0, password_hash="x")
    assert group.has_password

    with pytest.raises(PermissionDenied):
        await store.update_group(group.id, other.id, name="go")
    with pytest.raises(PermissionDenied):
        await store.move_group(group.id, other.id, 2.0, 2.0)
    with pytest.raises(PermissionDenied):
        await store.delete_group(group.id, other.id)

    updated = await store.update_group(group.id, creator.id, description="weekly")
    assert (updated.name, updated.description) == ("chess", "weekly")
    moved, previous = await store.move_group(group.id, creator.id, 2.0, 3.0, location_name="library")
    assert previous == (1.0, 1.0)
    assert (moved.latitude, moved.longitude, moved.location_name) == (2.0, 3.0, "library")

    await store.delete_group(group.id, creator.id)
    assert await store.load_entity(EntityKind.GROUP, group.id) is None
    with pytest.raises(EntityNotFound):
        await store.delete_group(group.id, creator.id)


async def test_create_activity_moves_author(store):
    author = await located_user(store, "ana", 1.0, 1.0)
    activity, moved_author, previous = await store.create_activity(author.id, "USER_CHECKIN", "hi", 5.0, 6.0)
    assert activity.nickname == "ana"
    assert activity.discoverable_until == activity.created_at + timedelta(hours=72)
    assert previous == (1.0, 1.0)
    assert (moved_author.latitude, moved_author.longitude) == (5.0, 6.0)


async def test_create_activity_validation(store):
    author = await store.register_user("ana")
    with pytest.raises(ValidationError):
        await store.create_activity(author.id, "", None, 1.0, 1.0)
    with pytest.raises(EntityNotFound):
        await store.create_activity("ghost", "USER_CHECKIN", None, 1.0, 1.0)


async def test_only_author_deletes_activity(store):
    author = await store.register_user("ana")
    other = await store.register_user("bea")
    activity, _, _ = await store.create_activity(author.id, "USER_CHECKIN", None, 1.0, 1.0)
    with pytest.raises(PermissionDenied):
        await store.delete_activity(activity.id, other.id)
    deleted = await store.delete_activity(activity.id, author.id)
    assert deleted.id == activity.id
    assert await store.load_entity(EntityKind.ACTIVITY, activity.id) is None


async def test_user_activities_newest_first(session_factory, test_settings):
    store = AuthoritativeStore(session_factory, settings=test_settings, clock=Ticker())
    author = await store.register_user("ana")
    first, _, _ = await store.create_activity(author.id, "USER_CHECKIN", "1", 1.0, 1.0)
    second, _, _ = await store.create_activity(author.id, "MESSAGE_SENT", "2", 1.0, 1.0)
    activities = await store.list_user_activities(author.id)
    assert [a.id for a in activities] == [second.id, first.id]
    assert len(await store.list_user_activities(author.id, limit=1)) == 1


async def test_delete_user_cleans_up(store):
    ana = await located_user(store, "ana", 1.0, 1.0)
    bea = await store.register_user("bea")
    owned = await store.create_group(ana.id, "mine", "here", 1.0, 1.0)
    joined = await store.create_group(bea.id, "theirs", "there", 2.0, 2.0)
    await store.join_group(joined.id, ana.id)
    activity, _, _ = await store.create_activity(ana.id, "USER_CHECKIN", None, 1.0, 1.0)

    deletion = await store.delete_user(ana.id)
    assert deletion.user.id == ana.id
    assert deletion.activity_ids == [activity.id]
    assert [g.id for g in deletion.deleted_groups] == [owned.id]
    assert [(g.id, g.member_count) for g in deletion.updated_groups] == [(joined.id, 1)]

    assert await store.load_entity(EntityKind.USER, ana.id) is None
    assert await store.load_entity(EntityKind.GROUP, owned.id) is None
    assert await store.load_entity(EntityKind.ACTIVITY, activity.id) is None


async def test_unreachable_database_raises_store_unavailable(test_settings):
    engine = create_engine("sqlite+aiosqlite:////nonexistent-dir/geosocial.db")
    store = AuthoritativeStore(create_session_factory(engine), settings=test_settings)
    try:
        with pytest.raises(StoreUnavailable):
            await store.load_entity(EntityKind.USER, "u1")
        assert await store.ping() is False
    finally:
        await engine.dispose()
