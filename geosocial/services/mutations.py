# geosocial/services/mutations.py
# Writes to the store, each followed by the matching cache/index upkeep.

from typing import List, Optional

import structlog

from geosocial.models.dto import ActivityEntity, GroupEntity, UserEntity
from geosocial.models.kinds import ActivityType, EntityKind
from geosocial.services.cache_invalidator import CacheInvalidator
from geosocial.services.store import AuthoritativeStore
from geosocial.utils.haversine import validate_coordinates

logger = structlog.get_logger(__name__)


class MutationService:
    def __init__(self, store: AuthoritativeStore, invalidator: CacheInvalidator):
        self.store = store
        self.invalidator = invalidator

    # --- Users ---

    async def register_user(
        self, nickname: str, password_hash: Optional[str] = None, is_temporary: bool = False
    ) -> UserEntity:
        user = await self.store.register_user(nickname, password_hash=password_hash, is_temporary=is_temporary)
        await self.invalidator.on_entity_created(user)
        return user

    async def rename_user(self, user_id: str, nickname: str) -> UserEntity:
        user = await self.store.rename_user(user_id, nickname)
        await self.invalidator.on_entity_updated(user)
        return user

    async def report_location(self, user_id: str, lat: float, lon: float) -> UserEntity:
        validate_coordinates(lat, lon)
        user, previous = await self.store.report_location(user_id, lat, lon)
        await self.invalidator.on_entity_moved(EntityKind.USER, user_id, lat, lon, entity=user, old=previous)
        return user

    async def delete_user(self, user_id: str) -> UserEntity:
        deletion = await self.store.delete_user(user_id)
        user = deletion.user
        coords = (user.latitude, user.longitude) if user.has_location else None
        await self.invalidator.on_entity_deleted(EntityKind.USER, user_id, coords)
        for activity_id in deletion.activity_ids:
            await self.invalidator.on_entity_deleted(EntityKind.ACTIVITY, activity_id)
        for group in deletion.deleted_groups:
            await self.invalidator.on_entity_deleted(EntityKind.GROUP, group.id, (group.latitude, group.longitude))
        for group in deletion.updated_groups:
            await self.invalidator.on_entity_updated(group)
        return user

    # --- Groups ---

    async def create_group(
        self,
        creator_id: str,
        name: str,
        location_name: str,
        lat: float,
        lon: float,
        description: str = "",
        password_hash: Optional[str] = None,
    ) -> GroupEntity:
        validate_coordinates(lat, lon)
        group = await self.store.create_group(
            creator_id, name, location_name, lat, lon, description=description, password_hash=password_hash
        )
        await self.invalidator.on_entity_created(group)
        await self._record(creator_id, ActivityType.GROUP_CREATE, group)
        return group

    async def join_group(self, group_id: str, user_id: str, password_hash: Optional[str] = None) -> GroupEntity:
        group, joined = await self.store.join_group(group_id, user_id, password_hash=password_hash)
        if joined:
            await self.invalidator.on_entity_updated(group)
            await self._record(user_id, ActivityType.GROUP_JOIN, group)
        return group

    async def leave_group(self, group_id: str, user_id: str) -> GroupEntity:
        group, left = await self.store.leave_group(group_id, user_id)
        if left:
            await self.invalidator.on_entity_updated(group)
            await self._record(user_id, ActivityType.GROUP_LEAVE, group)
        return group

    async def keep_alive(self, group_id: str, user_id: str):
        return await self.store.keep_alive(group_id, user_id)

    async def update_group(
        self, group_id: str, actor_id: str, name: Optional[str] = None, description: Optional[str] = None
    ) -> GroupEntity:
        group = await self.store.update_group(group_id, actor_id, name=name, description=description)
        await self.invalidator.on_entity_updated(group)
        return group

    async def move_group(
        self, group_id: str, actor_id: str, lat: float, lon: float, location_name: Optional[str] = None
    ) -> GroupEntity:
        validate_coordinates(lat, lon)
        group, previous = await self.store.move_group(group_id, actor_id, lat, lon, location_name=location_name)
        await self.invalidator.on_entity_moved(EntityKind.GROUP, group_id, lat, lon, entity=group, old=previous)
        return group

    async def delete_group(self, group_id: str, actor_id: str) -> GroupEntity:
        group = await self.store.delete_group(group_id, actor_id)
        await self.invalidator.on_entity_deleted(EntityKind.GROUP, group_id, (group.latitude, group.longitude))
        return group

    # --- Activities ---

    async def create_activity(
        self,
        user_id: str,
        activity_type: str,
        activity_details: Optional[str],
        lat: float,
        lon: float,
    ) -> ActivityEntity:
        validate_coordinates(lat, lon)
        activity, author, previous = await self.store.create_activity(
            user_id, activity_type, activity_details, lat, lon
        )
        await self.invalidator.on_entity_created(activity)
        await self.invalidator.on_entity_moved(EntityKind.USER, user_id, lat, lon, entity=author, old=previous)
        return activity

    async def _record(self, user_id: str, activity_type: ActivityType, group: GroupEntity) -> None:
        # Group activities are pinned to the group's position, not the member's
        await self.create_activity(user_id, activity_type.value, group.name, group.latitude, group.longitude)

    async def delete_activity(self, activity_id: str, actor_id: str) -> ActivityEntity:
        activity = await self.store.delete_activity(activity_id, actor_id)
        await self.invalidator.on_entity_deleted(
            EntityKind.ACTIVITY, activity_id, (activity.latitude, activity.longitude)
        )
        return activity

    async def list_user_activities(self, user_id: str, limit: int = 20) -> List[ActivityEntity]:
        return await self.store.list_user_activities(user_id, limit)

    async def find_groups_by_name(self, name: str, limit: int = 20) -> List[GroupEntity]:
        return await self.store.find_groups_by_name(name, limit)

    # --- Maintenance ---

    async def sweep_expired(self, kind: EntityKind) -> List[str]:
        """Evict users and activities whose discoverability window has passed."""
        kind = EntityKind(kind)
        expired = await self.store.expired_ids(kind)
        evicted = await self.invalidator.sweep_expired(kind, expired)
        logger.info("sweep_finished", kind=kind.value, expired=len(expired), evicted=len(evicted))
        return evicted
