import pytest

from geosocial.core.errors import PermissionDenied, ValidationError
from geosocial.models.kinds import ActivityType, EntityKind
from geosocial.services.store import AuthoritativeStore
from geosocial.utils.clock import utcnow

from tests.helpers import build_services


async def test_report_location_makes_user_findable(search_service, mutations):
    user = await mutations.register_user("ana")
    assert await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 100) == []

    await mutations.report_location(user.id, 40.0, -73.0)
    results = await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 100)
    assert [r.entity_id for r in results] == [user.id]


async def test_moving_a_user_updates_search(search_service, mutations):
    user = await mutations.register_user("ana")
    await mutations.report_location(user.id, 40.0, -73.0)
    assert await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 100)

    await mutations.report_location(user.id, 10.0, 10.0)
    assert await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 100) == []
    assert [r.entity_id for r in await search_service.find_nearby(EntityKind.USER, 10.0, 10.0, 100)] == [user.id]


async def test_invalid_location_is_rejected_before_the_store(mutations):
    with pytest.raises(ValidationError):
        await mutations.report_location("whoever", 95.0, 0.0)


async def test_rename_refreshes_cached_snapshot(search_service, mutations):
    user = await mutations.register_user("ana")
    assert (await search_service.get_entity(EntityKind.USER, user.id)).nickname == "ana"
    await mutations.rename_user(user.id, "bea")
    assert (await search_service.get_entity(EntityKind.USER, user.id)).nickname == "bea"


async def test_group_lifecycle_records_activities(search_service, mutations, store):
    ana = await mutations.register_user("ana")
    bea = await mutations.register_user("bea")
    group = await mutations.create_group(ana.id, "chess", "park", 40.0, -73.0)

    group = await mutations.join_group(group.id, bea.id)
    assert group.member_count == 2
    cached = await search_service.get_entity(EntityKind.GROUP, group.id)
    assert cached.member_count == 2

    group = await mutations.leave_group(group.id, bea.id)
    assert group.member_count == 1

    types = [a.activity_type for a in await store.list_user_activities(bea.id)]
    assert sorted(types) == sorted([ActivityType.GROUP_JOIN.value, ActivityType.GROUP_LEAVE.value])
    assert [a.activity_type for a in await store.list_user_activities(ana.id)] == [ActivityType.GROUP_CREATE.value]

    nearby = await search_service.find_nearby(EntityKind.ACTIVITY, 40.0, -73.0, 50)
    assert len(nearby) == 3
    assert {r.entity.activity_details for r in nearby} == {"chess"}


async def test_rejoining_records_nothing_new(mutations, store):
    ana = await mutations.register_user("ana")
    group = await mutations.create_group(ana.id, "chess", "park", 1.0, 1.0)
    await mutations.join_group(group.id, ana.id)
    assert len(await store.list_user_activities(ana.id)) == 1


async def test_moving_a_group(search_service, mutations):
    ana = await mutations.register_user("ana")
    group = await mutations.create_group(ana.id, "chess", "park", 40.0, -73.0)
    assert await search_service.find_nearby(EntityKind.GROUP, 40.0, -73.0, 100)

    await mutations.move_group(group.id, ana.id, 40.1, -73.0)
    assert await search_service.find_nearby(EntityKind.GROUP, 40.0, -73.0, 100) == []
    assert [r.entity_id for r in await search_service.find_nearby(EntityKind.GROUP, 40.1, -73.0, 100)] == [group.id]


async def test_update_group_by_stranger_changes_nothing(search_service, mutations):
    ana = await mutations.register_user("ana")
    bea = await mutations.register_user("bea")
    group = await mutations.create_group(ana.id, "chess", "park", 1.0, 1.0)
    with pytest.raises(PermissionDenied):
        await mutations.update_group(group.id, bea.id, name="mine now")
    assert (await search_service.get_entity(EntityKind.GROUP, group.id)).name == "chess"

    await mutations.update_group(group.id, ana.id, name="go")
    assert (await search_service.get_entity(EntityKind.GROUP, group.id)).name == "go"


async def test_activity_create_and_delete(search_service, mutations):
    ana = await mutations.register_user("ana")
    activity = await mutations.create_activity(ana.id, "USER_CHECKIN", "hi", 5.0, 5.0)

    users = await search_service.find_nearby(EntityKind.USER, 5.0, 5.0, 10)
    assert [r.entity_id for r in users] == [ana.id]
    found = await search_service.find_nearby(EntityKind.ACTIVITY, 5.0, 5.0, 10)
    assert [r.entity_id for r in found] == [activity.id]

    await mutations.delete_activity(activity.id, ana.id)
    assert await search_service.find_nearby(EntityKind.ACTIVITY, 5.0, 5.0, 10) == []


async def test_delete_user_removes_everything_they_own(search_service, mutations):
    ana = await mutations.register_user("ana")
    bea = await mutations.register_user("bea")
    await mutations.create_group(ana.id, "mine", "here", 40.0, -73.0)
    theirs = await mutations.create_group(bea.id, "theirs", "there", 40.0, -73.0005)
    await mutations.join_group(theirs.id, ana.id)

    await mutations.delete_user(ana.id)

    assert [r.entity_id for r in await search_service.find_nearby(EntityKind.GROUP, 40.0, -73.0, 500)] == [theirs.id]
    assert (await search_service.get_entity(EntityKind.GROUP, theirs.id)).member_count == 1
    assert [r.entity_id for r in await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 500)] == [bea.id]
    activities = await search_service.find_nearby(EntityKind.ACTIVITY, 40.0, -73.0, 500)
    assert {r.entity.user_id for r in activities} == {bea.id}


async def test_sweep_evicts_expired_users(session_factory, test_settings, redis_client, search_service, mutations):
    old_store = AuthoritativeStore(session_factory, settings=test_settings, clock=lambda: utcnow().replace(year=2000))
    _, old_mutations = build_services(redis_client, old_store, test_settings)
    stale = await old_mutations.register_user("stale")
    await old_mutations.report_location(stale.id, 40.0, -73.0)
    fresh = await mutations.register_user("fresh")
    await mutations.report_location(fresh.id, 40.0, -73.0)

    evicted = await mutations.sweep_expired(EntityKind.USER)
    assert evicted == [stale.id]
    assert await search_service.geo_index.position(EntityKind.USER, stale.id) is None
    assert [r.entity_id for r in await search_service.find_nearby(EntityKind.USER, 40.0, -73.0, 100)] == [fresh.id]


async def test_refused_join_records_nothing(search_service, mutations, store):
    ana = await mutations.register_user("ana")
    bea = await mutations.register_user("bea")
    group = await mutations.create_group(ana.id, "vault", "bank", 1.0, 1.0, password_hash="h1")
    with pytest.raises(PermissionDenied):
        await mutations.join_group(group.id, bea.id, password_hash="h2")
    assert await store.list_user_activities(bea.id) == []
    assert (await search_service.get_entity(EntityKind.GROUP, group.id)).member_count == 1

    await mutations.join_group(group.id, bea.id, password_hash="h1")
    assert [a.activity_type for a in await store.list_user_activities(bea.id)] == [ActivityType.GROUP_JOIN.value]
