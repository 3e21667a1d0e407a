# geosocial/api/routes.py
# Thin HTTP adapters over the search and mutation services.

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status

from geosocial.core.errors import PermissionDenied
from geosocial.models.dto import (
    ActivityEntity,
    CreateActivityRequest,
    CreateGroupRequest,
    Entity,
    ErrorResponse,
    GroupEntity,
    JoinGroupRequest,
    LocationRequest,
    NearbyResponse,
    RegisterUserRequest,
    RenameUserRequest,
    SweepResponse,
    UpdateGroupRequest,
    UserEntity,
)
from geosocial.services.mutations import MutationService
from geosocial.services.proximity_service import ProximitySearchService, parse_kind

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------
def get_search_service(request: Request) -> ProximitySearchService:
    return request.app.state.search_service


def get_mutations(request: Request) -> MutationService:
    return request.app.state.mutations


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """The upstream auth layer resolves the session and forwards the user id."""
    if not x_user_id:
        raise PermissionDenied("X-User-Id header is required.")
    return x_user_id


# ----------------------------------------------------------------------
# Search
# ----------------------------------------------------------------------
@router.get("/nearby/{kind}", response_model=NearbyResponse, responses=ERROR_RESPONSES)
async def nearby(
    kind: str,
    lat: float = Query(..., description="Latitude of the query point."),
    lon: float = Query(..., description="Longitude of the query point."),
    radius_m: Optional[float] = Query(None, description="Search radius in meters, clamped to the configured maximum."),
    limit: Optional[int] = Query(None, description="Maximum number of results."),
    service: ProximitySearchService = Depends(get_search_service),
):
    entity_kind = parse_kind(kind)
    results = await service.find_nearby(entity_kind, lat, lon, radius_m=radius_m, limit=limit)
    return NearbyResponse(
        kind=entity_kind,
        radius_meters=service.resolve_radius(entity_kind, radius_m),
        results=results,
    )


@router.get("/entities/{kind}/{entity_id}", response_model=Entity, responses=ERROR_RESPONSES)
async def get_entity(kind: str, entity_id: str, service: ProximitySearchService = Depends(get_search_service)):
    return await service.get_entity(kind, entity_id)


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------
@router.post("/users", response_model=UserEntity, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def register_user(data: RegisterUserRequest, mutations: MutationService = Depends(get_mutations)):
    return await mutations.register_user(data.nickname, password_hash=data.password_hash, is_temporary=data.is_temporary)


@router.patch("/users/me", response_model=UserEntity, responses=ERROR_RESPONSES)
async def rename_user(
    data: RenameUserRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.rename_user(user_id, data.nickname)


@router.put("/users/me/location", response_model=UserEntity, responses=ERROR_RESPONSES)
async def report_location(
    data: LocationRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.report_location(user_id, data.latitude, data.longitude)


@router.delete("/users/me", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_user(user_id: str = Depends(get_current_user_id), mutations: MutationService = Depends(get_mutations)):
    await mutations.delete_user(user_id)


@router.get("/users/{user_id}/activities", response_model=List[ActivityEntity], responses=ERROR_RESPONSES)
async def user_activities(
    user_id: str,
    limit: int = Query(20, description="Maximum number of activities, newest first."),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.list_user_activities(user_id, limit)


# ----------------------------------------------------------------------
# Groups
# ----------------------------------------------------------------------
@router.post("/groups", response_model=GroupEntity, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_group(
    data: CreateGroupRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.create_group(
        user_id,
        data.name,
        data.location_name,
        data.latitude,
        data.longitude,
        description=data.description,
        password_hash=data.password_hash,
    )


@router.get("/groups", response_model=List[GroupEntity], responses=ERROR_RESPONSES)
async def find_groups(
    name: str = Query(..., description="Case-insensitive fragment of the group name."),
    limit: int = Query(20, description="Maximum number of groups, newest first."),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.find_groups_by_name(name, limit)


@router.patch("/groups/{group_id}", response_model=GroupEntity, responses=ERROR_RESPONSES)
async def update_group(
    group_id: str,
    data: UpdateGroupRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.update_group(group_id, user_id, name=data.name, description=data.description)


@router.put("/groups/{group_id}/location", response_model=GroupEntity, responses=ERROR_RESPONSES)
async def move_group(
    group_id: str,
    data: LocationRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.move_group(group_id, user_id, data.latitude, data.longitude)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_group(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    await mutations.delete_group(group_id, user_id)


@router.post("/groups/{group_id}/join", response_model=GroupEntity, responses=ERROR_RESPONSES)
async def join_group(
    group_id: str,
    data: Optional[JoinGroupRequest] = None,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    password_hash = data.password_hash if data is not None else None
    return await mutations.join_group(group_id, user_id, password_hash=password_hash)


@router.post("/groups/{group_id}/leave", response_model=GroupEntity, responses=ERROR_RESPONSES)
async def leave_group(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.leave_group(group_id, user_id)


@router.post("/groups/{group_id}/keep-alive", responses=ERROR_RESPONSES)
async def keep_alive(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    last_active = await mutations.keep_alive(group_id, user_id)
    return {"group_id": group_id, "last_active": last_active.isoformat()}


# ----------------------------------------------------------------------
# Activities
# ----------------------------------------------------------------------
@router.post("/activities", response_model=ActivityEntity, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_activity(
    data: CreateActivityRequest,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    return await mutations.create_activity(
        user_id, data.activity_type, data.activity_details, data.latitude, data.longitude
    )


@router.delete("/activities/{activity_id}", status_code=status.HTTP_204_NO_CONTENT, responses=ERROR_RESPONSES)
async def delete_activity(
    activity_id: str,
    user_id: str = Depends(get_current_user_id),
    mutations: MutationService = Depends(get_mutations),
):
    await mutations.delete_activity(activity_id, user_id)


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------
@router.post("/maintenance/sweep/{kind}", response_model=SweepResponse, responses=ERROR_RESPONSES)
async def sweep(kind: str, mutations: MutationService = Depends(get_mutations)):
    entity_kind = parse_kind(kind)
    evicted = await mutations.sweep_expired(entity_kind)
    return SweepResponse(kind=entity_kind, evicted=evicted)
