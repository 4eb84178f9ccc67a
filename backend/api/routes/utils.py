# backend/api/routes/utils.py

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.errors import AuthenticationFailed
from core.state import AppServices
from models.models import MemberView, Room, RoomView

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> AppServices:
    """Services built at startup (see core.state.build_services)."""
    return request.app.state.services


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: AppServices = Depends(get_services),
):
    if credentials is None:
        raise AuthenticationFailed("Authentication required")
    return await services.tokens.authenticate(credentials.credentials)


async def room_view(room: Room, services: AppServices, with_members: bool = True) -> RoomView:
    """Serialize a room for clients, resolving member names."""
    members = []
    if with_members:
        for member in room.members:
            user = await services.users.find_by_id(member.user_id)
            members.append(
                MemberView(
                    id=member.user_id,
                    name=user.name if user else "Unknown",
                    role=member.role,
                    ready=member.ready,
                    joined_at=member.joined_at,
                )
            )
    return RoomView(
        id=room.id,
        code=room.code,
        title=room.title,
        host_id=room.host_id,
        status=room.status,
        max_seats=room.max_seats,
        member_count=room.member_count,
        members=members,
        created_at=room.created_at,
    )
