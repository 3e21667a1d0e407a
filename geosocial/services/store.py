# geosocial/services/store.py
"""
Relational store of record for users, groups and activities.

Every write runs in a single transaction. Cache and index upkeep is not done
here; callers run it after the write has committed.
"""
import hmac
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from geosocial.core.config import Settings, settings as default_settings
from geosocial.core.errors import EntityNotFound, PermissionDenied, StoreUnavailable, ValidationError
from geosocial.models.dto import ActivityEntity, EntityBase, GroupEntity, UserEntity
from geosocial.models.kinds import EntityKind
from geosocial.models.tables import Group, GroupMember, User, UserActivity, UserLocation
from geosocial.utils.clock import utcnow

logger = structlog.get_logger(__name__)

Coords = Tuple[float, float]


@dataclass
class UserDeletion:
    user: UserEntity
    activity_ids: List[str] = field(default_factory=list)
    deleted_groups: List[GroupEntity] = field(default_factory=list)
    updated_groups: List[GroupEntity] = field(default_factory=list)


class AuthoritativeStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            logger.error("store_unavailable", error=str(e))
            raise StoreUnavailable("The relational store is unavailable.", cause=str(e))

    async def ping(self) -> bool:
        try:
            async with self._session() as session:
                await session.execute(select(1))
        except StoreUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Discoverability windows
    # ------------------------------------------------------------------

    def _user_cutoff(self) -> datetime:
        return self.clock() - timedelta(hours=self.settings.USER_DISCOVERY_HOURS)

    def _activity_cutoff(self) -> datetime:
        return self.clock() - timedelta(hours=self.settings.ACTIVITY_DISCOVERY_HOURS)

    # ------------------------------------------------------------------
    # Row -> entity
    # ------------------------------------------------------------------

    def _user_entity(self, user: User, location: Optional[UserLocation]) -> UserEntity:
        until = None
        if location is not None:
            until = location.updated_at + timedelta(hours=self.settings.USER_DISCOVERY_HOURS)
        return UserEntity(
            id=user.user_id,
            nickname=user.nickname,
            is_temporary=bool(user.is_temporary),
            status=user.status or "online",
            avatar=user.avatar,
            created_at=user.created_at,
            latitude=location.latitude if location is not None else None,
            longitude=location.longitude if location is not None else None,
            last_active=location.updated_at if location is not None else None,
            discoverable_until=until,
        )

    @staticmethod
    def _group_entity(group: Group) -> GroupEntity:
        return GroupEntity(
            id=group.group_id,
            name=group.name,
            location_name=group.location_name,
            description=group.description or "",
            has_password=group.password_hash is not None,
            creator_id=group.creator_id,
            created_at=group.created_at,
            member_count=group.member_count,
            latitude=group.latitude,
            longitude=group.longitude,
        )

    def _activity_entity(self, activity: UserActivity, nickname: str) -> ActivityEntity:
        return ActivityEntity(
            id=activity.activity_id,
            user_id=activity.user_id,
            nickname=nickname,
            activity_type=activity.activity_type,
            activity_details=activity.activity_details,
            created_at=activity.created_at,
            latitude=activity.latitude,
            longitude=activity.longitude,
            discoverable_until=activity.created_at + timedelta(hours=self.settings.ACTIVITY_DISCOVERY_HOURS),
        )

    # ------------------------------------------------------------------
    # Select builders
    # ------------------------------------------------------------------

    @staticmethod
    def _user_select():
        return select(User, UserLocation).outerjoin(UserLocation, UserLocation.user_id == User.user_id)

    @staticmethod
    def _activity_select():
        return select(UserActivity, User.nickname).join(User, User.user_id == UserActivity.user_id)

    def _rows_to_entities(self, kind: EntityKind, rows) -> List[EntityBase]:
        if kind == EntityKind.USER:
            return [self._user_entity(user, location) for user, location in rows]
        if kind == EntityKind.GROUP:
            return [self._group_entity(group) for (group,) in rows]
        return [self._activity_entity(activity, nickname) for activity, nickname in rows]

    def _base_select(self, kind: EntityKind):
        if kind == EntityKind.USER:
            return self._user_select()
        if kind == EntityKind.GROUP:
            return select(Group)
        return self._activity_select()

    @staticmethod
    def _columns(kind: EntityKind):
        """(id, latitude, longitude) columns of the table holding a kind's position."""
        if kind == EntityKind.USER:
            return UserLocation.user_id, UserLocation.latitude, UserLocation.longitude
        if kind == EntityKind.GROUP:
            return Group.group_id, Group.latitude, Group.longitude
        return UserActivity.activity_id, UserActivity.latitude, UserActivity.longitude

    def _discoverable_clause(self, kind: EntityKind):
        if kind == EntityKind.USER:
            return and_(UserLocation.user_id.is_not(None), UserLocation.updated_at > self._user_cutoff())
        if kind == EntityKind.ACTIVITY:
            return UserActivity.created_at > self._activity_cutoff()
        return None

    @staticmethod
    def _longitude_clause(column, lon: float, lon_range: float):
        if lon_range >= 180.0:
            return None
        low, high = lon - lon_range, lon + lon_range
        # Boxes that cross the antimeridian are split in two
        if low < -180.0:
            return or_(column >= low + 360.0, column <= high)
        if high > 180.0:
            return or_(column >= low, column <= high - 360.0)
        return column.between(low, high)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_entity(self, kind: EntityKind, entity_id: str) -> Optional[EntityBase]:
        found = await self.load_entities(kind, [entity_id])
        return found.get(entity_id)

    async def load_entities(self, kind: EntityKind, entity_ids: Iterable[str]) -> Dict[str, EntityBase]:
        kind = EntityKind(kind)
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}
        if kind == EntityKind.USER:
            id_column = User.user_id
        elif kind == EntityKind.GROUP:
            id_column = Group.group_id
        else:
            id_column = UserActivity.activity_id
        stmt = self._base_select(kind).where(id_column.in_(ids))
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return {entity.id: entity for entity in self._rows_to_entities(kind, rows)}

    async def bounding_box_query(
        self, kind: EntityKind, lat: float, lon: float, lat_range: float, lon_range: float
    ) -> List[EntityBase]:
        """Discoverable entities inside the degree box around (lat, lon); exact filtering is left to the caller."""
        kind = EntityKind(kind)
        _, lat_column, lon_column = self._columns(kind)
        clauses = [lat_column.between(lat - lat_range, lat + lat_range)]
        lon_clause = self._longitude_clause(lon_column, lon, lon_range)
        if lon_clause is not None:
            clauses.append(lon_clause)
        discoverable = self._discoverable_clause(kind)
        if discoverable is not None:
            clauses.append(discoverable)

        stmt = self._base_select(kind).where(and_(*clauses))
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        entities = self._rows_to_entities(kind, rows)
        logger.debug("store_bbox_query", kind=kind.value, lat_range=lat_range, lon_range=lon_range, rows=len(entities))
        return entities

    async def discoverable_entities(self, kind: EntityKind) -> List[EntityBase]:
        kind = EntityKind(kind)
        stmt = self._base_select(kind)
        discoverable = self._discoverable_clause(kind)
        if discoverable is not None:
            stmt = stmt.where(discoverable)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return self._rows_to_entities(kind, rows)

    async def expired_ids(self, kind: EntityKind) -> List[str]:
        """Ids that have a position but fell out of their discoverability window."""
        kind = EntityKind(kind)
        if kind == EntityKind.USER:
            stmt = select(UserLocation.user_id).where(UserLocation.updated_at <= self._user_cutoff())
        elif kind == EntityKind.ACTIVITY:
            stmt = select(UserActivity.activity_id).where(UserActivity.created_at <= self._activity_cutoff())
        else:
            return []
        async with self._session() as session:
            return [str(row[0]) for row in (await session.execute(stmt)).all()]

    async def list_user_activities(self, user_id: str, limit: int = 20) -> List[ActivityEntity]:
        limit = limit if limit > 0 else self.settings.DEFAULT_LIMIT
        stmt = (
            self._activity_select()
            .where(UserActivity.user_id == user_id)
            .order_by(UserActivity.created_at.desc())
            .limit(min(limit, self.settings.MAX_LIMIT))
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return [self._activity_entity(activity, nickname) for activity, nickname in rows]

    async def find_groups_by_name(self, name: str, limit: int = 20) -> List[GroupEntity]:
        """Groups whose name contains `name`, case-insensitively, newest first."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("A group name to search for is required.")
        limit = limit if limit > 0 else self.settings.DEFAULT_LIMIT
        pattern = "%" + name.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        stmt = (
            select(Group)
            .where(Group.name.ilike(pattern, escape="\\"))
            .order_by(Group.created_at.desc(), Group.group_id)
            .limit(min(limit, self.settings.MAX_LIMIT))
        )
        async with self._session() as session:
            groups = (await session.execute(stmt)).scalars().all()
        return [self._group_entity(group) for group in groups]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def register_user(
        self,
        nickname: str,
        password_hash: Optional[str] = None,
        is_temporary: bool = False,
        user_id: Optional[str] = None,
    ) -> UserEntity:
        user = User(
            user_id=user_id or str(uuid.uuid4()),
            nickname=nickname,
            password_hash=password_hash,
            is_temporary=is_temporary,
            status="online",
            created_at=self.clock(),
        )
        async with self._session() as session:
            async with session.begin():
                session.add(user)
        logger.info("user_registered", user_id=user.user_id, is_temporary=is_temporary)
        return self._user_entity(user, None)

    async def _get_user(self, session: AsyncSession, user_id: str) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise EntityNotFound(EntityKind.USER.value, user_id)
        return user

    async def rename_user(self, user_id: str, nickname: str) -> UserEntity:
        async with self._session() as session:
            async with session.begin():
                user = await self._get_user(session, user_id)
                user.nickname = nickname
                location = await session.get(UserLocation, user_id)
        return self._user_entity(user, location)

    async def _upsert_location(self, session: AsyncSession, user_id: str, lat: float, lon: float) -> Tuple[UserLocation, Optional[Coords]]:
        location = await session.get(UserLocation, user_id)
        previous: Optional[Coords] = None
        if location is None:
            location = UserLocation(user_id=user_id, latitude=lat, longitude=lon, updated_at=self.clock())
            session.add(location)
        else:
            previous = (location.latitude, location.longitude)
            location.latitude = lat
            location.longitude = lon
            location.updated_at = self.clock()
        return location, previous

    async def report_location(self, user_id: str, lat: float, lon: float) -> Tuple[UserEntity, Optional[Coords]]:
        """Record a user's position; returns the user and the previous position, if any."""
        async with self._session() as session:
            async with session.begin():
                user = await self._get_user(session, user_id)
                location, previous = await self._upsert_location(session, user_id, lat, lon)
        return self._user_entity(user, location), previous

    async def delete_user(self, user_id: str) -> UserDeletion:
        async with self._session() as session:
            async with session.begin():
                user = await self._get_user(session, user_id)
                location = await session.get(UserLocation, user_id)
                deletion = UserDeletion(user=self._user_entity(user, location))

                activity_ids = (await session.execute(
                    select(UserActivity.activity_id).where(UserActivity.user_id == user_id)
                )).scalars().all()
                deletion.activity_ids = [str(a) for a in activity_ids]

                owned = (await session.execute(select(Group).where(Group.creator_id == user_id))).scalars().all()
                owned_ids = [g.group_id for g in owned]
                deletion.deleted_groups = [self._group_entity(g) for g in owned]

                joined_ids = (await session.execute(
                    select(GroupMember.group_id).where(GroupMember.user_id == user_id)
                )).scalars().all()
                other_ids = [g for g in joined_ids if g not in owned_ids]

                await session.execute(delete(UserActivity).where(UserActivity.user_id == user_id))
                await session.execute(delete(GroupMember).where(GroupMember.user_id == user_id))
                if other_ids:
                    await session.execute(
                        update(Group)
                        .where(Group.group_id.in_(other_ids))
                        .values(member_count=case((Group.member_count > 0, Group.member_count - 1), else_=0))
                        .execution_options(synchronize_session=False)
                    )
                if owned_ids:
                    await session.execute(delete(GroupMember).where(GroupMember.group_id.in_(owned_ids)))
                    await session.execute(delete(Group).where(Group.group_id.in_(owned_ids)))
                await session.execute(delete(UserLocation).where(UserLocation.user_id == user_id))
                await session.delete(user)

            if other_ids:
                refreshed = (await session.execute(select(Group).where(Group.group_id.in_(other_ids)))).scalars().all()
                deletion.updated_groups = [self._group_entity(g) for g in refreshed]

        logger.info(
            "user_deleted",
            user_id=user_id,
            activities=len(deletion.activity_ids),
            groups_deleted=len(deletion.deleted_groups),
        )
        return deletion

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _get_group(self, session: AsyncSession, group_id: str) -> Group:
        group = await session.get(Group, group_id)
        if group is None:
            raise EntityNotFound(EntityKind.GROUP.value, group_id)
        return group

    @staticmethod
    def _check_group_password(group: Group, password_hash: Optional[str]) -> None:
        if group.password_hash is None:
            return
        if not password_hash:
            raise PermissionDenied("A password is required to join this group.")
        if not hmac.compare_digest(group.password_hash.encode(), password_hash.encode()):
            raise PermissionDenied("Invalid group password.")

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
        now = self.clock()
        group = Group(
            group_id=str(uuid.uuid4()),
            name=name,
            location_name=location_name,
            latitude=lat,
            longitude=lon,
            description=description,
            password_hash=password_hash,
            creator_id=creator_id,
            created_at=now,
            member_count=1,
        )
        async with self._session() as session:
            async with session.begin():
                await self._get_user(session, creator_id)
                session.add(group)
                session.add(GroupMember(group_id=group.group_id, user_id=creator_id, joined_at=now, last_active=now))
        logger.info("group_created", group_id=group.group_id, creator_id=creator_id)
        return self._group_entity(group)

    async def join_group(
        self, group_id: str, user_id: str, password_hash: Optional[str] = None
    ) -> Tuple[GroupEntity, bool]:
        """
        Add a member. An existing member only has last_active refreshed.

        A newcomer to a password-protected group must present the hash the
        auth service stored for it, otherwise PermissionDenied.

        Returns the group and whether a new membership was created.
        """
        now = self.clock()
        async with self._session() as session:
            async with session.begin():
                group = await self._get_group(session, group_id)
                await self._get_user(session, user_id)
                membership = await session.get(GroupMember, (group_id, user_id))
                if membership is not None:
                    membership.last_active = now
                    joined = False
                else:
                    self._check_group_password(group, password_hash)
                    session.add(GroupMember(group_id=group_id, user_id=user_id, joined_at=now, last_active=now))
                    await session.execute(
                        update(Group)
                        .where(Group.group_id == group_id)
                        .values(member_count=Group.member_count + 1)
                        .execution_options(synchronize_session=False)
                    )
                    joined = True
            await session.refresh(group)
        return self._group_entity(group), joined

    async def leave_group(self, group_id: str, user_id: str) -> Tuple[GroupEntity, bool]:
        """Remove a membership. The group itself stays discoverable, even with no members."""
        async with self._session() as session:
            async with session.begin():
                group = await self._get_group(session, group_id)
                membership = await session.get(GroupMember, (group_id, user_id))
                if membership is None:
                    left = False
                else:
                    await session.delete(membership)
                    await session.execute(
                        update(Group)
                        .where(Group.group_id == group_id)
                        .values(member_count=case((Group.member_count > 0, Group.member_count - 1), else_=0))
                        .execution_options(synchronize_session=False)
                    )
                    left = True
            await session.refresh(group)
        return self._group_entity(group), left

    async def keep_alive(self, group_id: str, user_id: str) -> datetime:
        now = self.clock()
        async with self._session() as session:
            async with session.begin():
                await self._get_group(session, group_id)
                membership = await session.get(GroupMember, (group_id, user_id))
                if membership is None:
                    raise EntityNotFound("membership", f"{group_id}/{user_id}")
                membership.last_active = now
        return now

    async def update_group(
        self, group_id: str, actor_id: str, name: Optional[str] = None, description: Optional[str] = None
    ) -> GroupEntity:
        async with self._session() as session:
            async with session.begin():
                group = await self._get_group(session, group_id)
                if group.creator_id != actor_id:
                    raise PermissionDenied("Only the creator can edit this group.")
                if name is not None:
                    group.name = name
                if description is not None:
                    group.description = description
        return self._group_entity(group)

    async def move_group(
        self, group_id: str, actor_id: str, lat: float, lon: float, location_name: Optional[str] = None
    ) -> Tuple[GroupEntity, Coords]:
        async with self._session() as session:
            async with session.begin():
                group = await self._get_group(session, group_id)
                if group.creator_id != actor_id:
                    raise PermissionDenied("Only the creator can move this group.")
                previous = (group.latitude, group.longitude)
                group.latitude = lat
                group.longitude = lon
                if location_name is not None:
                    group.location_name = location_name
        return self._group_entity(group), previous

    async def delete_group(self, group_id: str, actor_id: str) -> GroupEntity:
        async with self._session() as session:
            async with session.begin():
                group = await self._get_group(session, group_id)
                if group.creator_id != actor_id:
                    raise PermissionDenied("Only the creator can delete this group.")
                snapshot = self._group_entity(group)
                await session.execute(delete(GroupMember).where(GroupMember.group_id == group_id))
                await session.delete(group)
        logger.info("group_deleted", group_id=group_id)
        return snapshot

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def create_activity(
        self,
        user_id: str,
        activity_type: str,
        activity_details: Optional[str],
        lat: float,
        lon: float,
    ) -> Tuple[ActivityEntity, UserEntity, Optional[Coords]]:
        """
        Insert an activity and move its author to the same position.

        Returns the activity, the author after the move, and the author's
        previous position.
        """
        if not activity_type:
            raise ValidationError("activity_type is required.")
        activity = UserActivity(
            activity_id=str(uuid.uuid4()),
            user_id=user_id,
            activity_type=activity_type,
            activity_details=activity_details,
            latitude=lat,
            longitude=lon,
            created_at=self.clock(),
        )
        try:
            async with self._session() as session:
                async with session.begin():
                    user = await self._get_user(session, user_id)
                    session.add(activity)
                    location, previous = await self._upsert_location(session, user_id, lat, lon)
        except IntegrityError as e:
            logger.error("activity_insert_rejected", user_id=user_id, error=str(e))
            raise ValidationError("Activity rejected by the store.", cause=str(e))
        return self._activity_entity(activity, user.nickname), self._user_entity(user, location), previous

    async def delete_activity(self, activity_id: str, actor_id: str) -> ActivityEntity:
        async with self._session() as session:
            async with session.begin():
                row = (await session.execute(
                    self._activity_select().where(UserActivity.activity_id == activity_id)
                )).first()
                if row is None:
                    raise EntityNotFound(EntityKind.ACTIVITY.value, activity_id)
                activity, nickname = row
                if activity.user_id != actor_id:
                    raise PermissionDenied("Only the author can delete this activity.")
                snapshot = self._activity_entity(activity, nickname)
                await session.delete(activity)
        return snapshot
