# geosocial/models/dto.py
# Entity snapshots, proximity results and API request/response models.

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field

from geosocial.models.kinds import EntityKind

# --- Entity snapshots (what the store loads and the cache holds) ---


class EntityBase(BaseModel):
    """Fields every discoverable entity carries."""
    id: str = Field(..., description="Entity identifier.")
    latitude: Optional[float] = Field(None, description="Latitude, None when unknown.")
    longitude: Optional[float] = Field(None, description="Longitude, None when unknown.")
    discoverable_until: Optional[datetime] = Field(
        None, description="UTC instant after which the entity drops out of proximity search; None means no expiry."
    )

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def is_discoverable(self, now: datetime) -> bool:
        if not self.has_location:
            return False
        return self.discoverable_until is None or self.discoverable_until > now


class UserEntity(EntityBase):
    kind: Literal["user"] = "user"
    nickname: str
    is_temporary: bool = False
    status: str = "online"
    avatar: Optional[str] = None
    created_at: datetime
    last_active: Optional[datetime] = Field(None, description="Time of the latest location report.")


class GroupEntity(EntityBase):
    kind: Literal["group"] = "group"
    name: str
    location_name: str
    description: str = ""
    has_password: bool = Field(False, description="True when joining requires a password.")
    creator_id: str
    created_at: datetime
    member_count: int = 0


class ActivityEntity(EntityBase):
    kind: Literal["activity"] = "activity"
    user_id: str
    nickname: str
    activity_type: str
    activity_details: Optional[str] = None
    created_at: datetime


Entity = Annotated[Union[UserEntity, GroupEntity, ActivityEntity], Field(discriminator="kind")]

ENTITY_MODELS: Dict[EntityKind, Type[EntityBase]] = {
    EntityKind.USER: UserEntity,
    EntityKind.GROUP: GroupEntity,
    EntityKind.ACTIVITY: ActivityEntity,
}


class ProximityResult(BaseModel):
    """One entity found near a query point; computed per query, never stored."""
    entity_id: str
    kind: EntityKind
    distance_meters: float = Field(..., description="Exact Haversine distance from the query point.")
    entity: Entity


# --- API Request Models ---


class RegisterUserRequest(BaseModel):
    nickname: str = Field(..., min_length=1, max_length=255)
    password_hash: Optional[str] = Field(None, description="Hash produced by the auth service, if any.")
    is_temporary: bool = False


class RenameUserRequest(BaseModel):
    nickname: str = Field(..., min_length=1, max_length=255)


class LocationRequest(BaseModel):
    latitude: float
    longitude: float


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    location_name: str = Field(..., min_length=1, max_length=255)
    latitude: float
    longitude: float
    description: str = ""
    password_hash: Optional[str] = None


class JoinGroupRequest(BaseModel):
    password_hash: Optional[str] = Field(None, description="Required by password-protected groups.")


class UpdateGroupRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None


class CreateActivityRequest(BaseModel):
    activity_type: str = Field(..., min_length=1, max_length=50)
    activity_details: Optional[str] = None
    latitude: float
    longitude: float


# --- API Response Models ---


class NearbyResponse(BaseModel):
    kind: EntityKind
    radius_meters: float = Field(..., description="Radius actually searched, after clamping.")
    results: List[ProximityResult]


class SweepResponse(BaseModel):
    kind: EntityKind
    evicted: List[str]


# --- Error Response Model ---

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="A machine-readable error code.")
    detail: str = Field(..., description="A human-readable explanation.")
    error_id: Optional[str] = Field(None, description="Correlation id for server-side failures.")
