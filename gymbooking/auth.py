from __future__ import annotations

from typing import Iterable, Optional, Set

from fastapi import Depends, Header, HTTPException
from sqlmodel import Session

from gymbooking.db import get_session
from gymbooking.models import Member, MemberRole
from gymbooking.services.bookings import Actor
from gymbooking.services.subscriptions import get_member

# Identity is established by the auth gateway in front of this service,
# which forwards the authenticated user id in this header.
USER_ID_HEADER = "X-User-Id"


def get_current_member(
    x_user_id: Optional[str] = Header(default=None, alias=USER_ID_HEADER),
    session: Session = Depends(get_session),
) -> Member:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    member = get_member(session=session, user_id=x_user_id)
    if not member:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return member


def require_roles(roles: Iterable[MemberRole]):
    role_set: Set[MemberRole] = set(roles)

    def dependency(member: Member = Depends(get_current_member)) -> Member:
        if member.role not in role_set:
            raise HTTPException(status_code=403, detail="Forbidden")
        return member

    return dependency


def actor_for(member: Member) -> Actor:
    return Actor(user_id=member.user_id, role=member.role)


def resolve_target_user(member: Member, user_id: Optional[str]) -> str:
    """Members act for themselves; only admins may name another member."""
    if not user_id or user_id == member.user_id:
        return member.user_id
    if member.role != MemberRole.admin:
        raise HTTPException(status_code=403, detail="Only administrators can act for other members")
    return user_id
