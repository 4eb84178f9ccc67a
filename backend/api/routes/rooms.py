# backend/api/routes/rooms.py

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from api.routes.utils import get_current_user, get_services, room_view
from core.errors import AccessDenied, RoomNotFound
from core.state import AppServices
from models.models import (
    ChatHistoryPage,
    CreateRoomRequest,
    JoinRoomRequest,
    ReadyResponse,
    RoomMessageStats,
    RoomView,
    UpdateRoomRequest,
    User,
)

router = APIRouter(prefix="/rooms", tags=["rooms"])

# ============================================================================
# ROOM ENDPOINTS
# ============================================================================

@router.post("", response_model=RoomView, status_code=status.HTTP_201_CREATED)
async def create_room(
    request: CreateRoomRequest,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """
    Create a room with the caller as HOST.

    Returns:
        RoomView: The new room, including its 6-character join code

    Raises:
        503 if no unique join code could be generated
    """
    room = await services.rooms.create_room(user.id, request.title, request.max_seats)
    return await room_view(room, services)


@router.post("/join", response_model=RoomView)
async def join_room(
    request: JoinRoomRequest,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """
    Join a room by code (case-insensitive).

    Raises:
        404 unknown code, 409 room completed / full / already a member
    """
    room = await services.rooms.join_room(user.id, request.code)
    return await room_view(room, services)


@router.get("", response_model=List[RoomView])
async def list_my_rooms(
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Rooms the caller hosts or belongs to, most recently updated first."""
    rooms = await services.rooms.list_rooms_for_user(user.id)
    return [await room_view(room, services, with_members=False) for room in rooms]


@router.get("/{room_id}", response_model=RoomView)
async def get_room(
    room_id: str,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    room = await services.rooms.get_room_for_user(room_id, user.id)
    return await room_view(room, services)


@router.patch("/{room_id}", response_model=RoomView)
async def update_room(
    room_id: str,
    request: UpdateRoomRequest,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Host-only update of title, status or capacity."""
    room = await services.rooms.update_room(
        room_id,
        user.id,
        title=request.title,
        status=request.status,
        max_seats=request.max_seats,
    )
    return await room_view(room, services)


@router.post("/{room_id}/leave")
async def leave_room(
    room_id: str,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """
    Leave a room. Connected members are notified exactly as for a
    WebSocket `leaveRoom`.
    """
    if await services.rooms.get_room(room_id) is None:
        raise RoomNotFound()
    if not await services.gateway.leave_room(user, room_id):
        raise AccessDenied("Access denied: Not a member of the room")
    return {"status": "left", "room_id": room_id}


@router.post("/{room_id}/ready", response_model=ReadyResponse)
async def toggle_ready(
    room_id: str,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    ready = await services.gateway.set_ready(user, room_id)
    return ReadyResponse(ready=ready, message="User is ready" if ready else "User is not ready")


@router.get("/{room_id}/messages", response_model=ChatHistoryPage)
async def get_room_messages(
    room_id: str,
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = None,
    order: Literal["asc", "desc"] = "desc",
    since: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """
    Page through persisted chat history (members only).

    Messages still in the persistence queue are not visible yet.
    `total_count` counts the whole room, ignoring `since`.
    """
    await require_member(room_id, user, services)
    return await services.history.list_by_room(
        room_id, limit=limit, cursor=cursor, order=order, since=since
    )


@router.get("/{room_id}/stats", response_model=RoomMessageStats)
async def get_room_stats(
    room_id: str,
    user: User = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    """Message totals per type and the ten most active members (members only)."""
    await require_member(room_id, user, services)
    stats = await services.history.stats(room_id)
    for contributor in stats.top_contributors:
        known = await services.users.find_by_id(contributor.user_id)
        if known is not None:
            contributor.username = known.name
    return stats


async def require_member(room_id: str, user: User, services: AppServices) -> None:
    if not await services.rooms.is_member(room_id, user.id):
        if await services.rooms.get_room(room_id) is None:
            raise RoomNotFound()
        raise AccessDenied("Access denied: Not a member of the room")
