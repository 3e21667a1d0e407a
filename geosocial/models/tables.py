from sqlalchemy import Column, String, Float, Boolean, DateTime, Integer, Text, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import declarative_base

from geosocial.utils.clock import utcnow

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(255), primary_key=True)
    nickname = Column(String(255), nullable=False)
    password_hash = Column(Text, nullable=True)
    is_temporary = Column(Boolean, nullable=False, default=False)
    status = Column(String(255), nullable=False, default="online")
    avatar = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_users_is_temporary", "is_temporary"),
    )


class UserLocation(Base):
    """Latest reported position of a user; one row per user."""
    __tablename__ = "user_locations"

    user_id = Column(String(255), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("latitude BETWEEN -90 AND 90", name="user_latitude_range"),
        CheckConstraint("longitude BETWEEN -180 AND 180", name="user_longitude_range"),
        Index("idx_user_locations_coords", "latitude", "longitude"),
        Index("idx_user_locations_updated", "updated_at"),
    )


class Group(Base):
    __tablename__ = "groups"

    group_id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    location_name = Column(String(255), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    description = Column(Text, nullable=False, default="")
    password_hash = Column(Text, nullable=True)
    creator_id = Column(String(255), ForeignKey("users.user_id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    member_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("latitude BETWEEN -90 AND 90", name="latitude_range"),
        CheckConstraint("longitude BETWEEN -180 AND 180", name="longitude_range"),
        Index("idx_groups_location", "latitude", "longitude"),
        Index("idx_groups_name", "name"),
    )


class GroupMember(Base):
    __tablename__ = "group_members"

    group_id = Column(String(255), ForeignKey("groups.group_id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(255), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)
    last_active = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_group_members_user", "user_id"),
    )


class UserActivity(Base):
    __tablename__ = "user_activities"

    activity_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    activity_type = Column(String(50), nullable=False)
    activity_details = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("latitude BETWEEN -90 AND 90", name="activity_latitude_range"),
        CheckConstraint("longitude BETWEEN -180 AND 180", name="activity_longitude_range"),
        Index("idx_user_activities_user_id", "user_id"),
        Index("idx_user_activities_coords", "latitude", "longitude"),
        Index("idx_user_activities_created", "created_at"),
    )
