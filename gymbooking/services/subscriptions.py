from __future__ import annotations

import logging
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gymbooking.models import Member, MemberRole
from gymbooking.services.errors import InvalidRequest, MemberNotFound

logger = logging.getLogger(__name__)


class SubscriptionStatusProvider(Protocol):
    def is_blocked(self, user_id: str) -> bool:
        ...

    def role_of(self, user_id: str) -> Optional[MemberRole]:
        ...


class DatabaseSubscriptionStatus:
    """Reads blocked flag and role from the ``member`` table.

    Renewal processing lives in the payments service, which only flips
    ``Member.blocked``; booking checks read it through this provider.
    """

    def __init__(self, session: Session):
        self.session = session

    def _member(self, user_id: str) -> Optional[Member]:
        return self.session.exec(select(Member).where(Member.user_id == user_id)).first()

    def is_blocked(self, user_id: str) -> bool:
        member = self._member(user_id)
        return bool(member and member.blocked)

    def role_of(self, user_id: str) -> Optional[MemberRole]:
        member = self._member(user_id)
        return member.role if member else None


def get_member(session: Session, user_id: str) -> Optional[Member]:
    return session.exec(select(Member).where(Member.user_id == user_id)).first()


def require_member(session: Session, user_id: str) -> Member:
    member = get_member(session, user_id)
    if not member:
        raise MemberNotFound()
    return member


def register_member(
    session: Session,
    user_id: str,
    display_name: str,
    role: MemberRole = MemberRole.basica,
) -> Member:
    user_id = user_id.strip()
    if not user_id:
        raise InvalidRequest("user_id is required")
    member = Member(user_id=user_id, display_name=display_name.strip() or user_id, role=role)
    session.add(member)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise InvalidRequest("Member already exists")
    session.refresh(member)
    logger.info("Registered member %s with role %s", member.user_id, member.role.value)
    return member


def set_role(session: Session, user_id: str, role: MemberRole) -> Member:
    member = require_member(session, user_id)
    member.role = role
    session.add(member)
    session.commit()
    session.refresh(member)
    logger.info("Member %s role set to %s", user_id, role.value)
    return member


def set_blocked(session: Session, user_id: str, blocked: bool) -> Member:
    member = require_member(session, user_id)
    member.blocked = blocked
    session.add(member)
    session.commit()
    session.refresh(member)
    logger.info("Member %s %s", user_id, "blocked" if blocked else "unblocked")
    return member


def ensure_bootstrap_admin(session: Session, user_id: str) -> None:
    existing = session.exec(
        select(Member).where(Member.user_id == user_id).where(Member.role == MemberRole.admin)
    ).first()
    if existing:
        return
    member = get_member(session, user_id)
    if member:
        member.role = MemberRole.admin
    else:
        member = Member(user_id=user_id, display_name=user_id, role=MemberRole.admin)
    session.add(member)
    session.commit()
