from __future__ import annotations

from dataclasses import dataclass
from datetime import date as date_type
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from gymbooking.models import BookingStatus, ClassBooking, MemberRole
from gymbooking.settings import settings
from gymbooking.time_utils import month_start, next_month_start


class EntitlementKind(str, Enum):
    unlimited = "unlimited"
    capped = "capped"
    none = "none"


@dataclass(frozen=True)
class Entitlement:
    kind: EntitlementKind
    limit: Optional[int] = None

    @property
    def unlimited(self) -> bool:
        return self.kind == EntitlementKind.unlimited


def entitlement_for(role: Optional[MemberRole]) -> Entitlement:
    """Single source of truth for what each subscription may book per month."""
    if role in (MemberRole.admin, MemberRole.full):
        return Entitlement(EntitlementKind.unlimited)
    if role == MemberRole.basica_clases:
        return Entitlement(EntitlementKind.capped, settings.capped_monthly_quota)
    return Entitlement(EntitlementKind.none, 0)


@dataclass(frozen=True)
class QuotaState:
    user_id: str
    period_start: date_type
    limit: Optional[int]
    confirmed_count: int
    waitlisted_count: int

    @property
    def remaining(self) -> Optional[int]:
        # Only confirmed bookings use quota; a waitlist entry takes a unit when promoted.
        if self.limit is None:
            return None
        return max(0, self.limit - self.confirmed_count)


def quota_state(
    session: Session,
    user_id: str,
    role: Optional[MemberRole],
    on: date_type,
) -> QuotaState:
    period = month_start(on)
    rows = session.exec(
        select(ClassBooking.status, func.count(ClassBooking.id))
        .where(
            ClassBooking.user_id == user_id,
            ClassBooking.class_date >= period,
            ClassBooking.class_date < next_month_start(period),
        )
        .group_by(ClassBooking.status)
    ).all()
    counts: Dict[BookingStatus, int] = {BookingStatus(status): int(cnt) for status, cnt in rows}
    return QuotaState(
        user_id=user_id,
        period_start=period,
        limit=entitlement_for(role).limit,
        confirmed_count=counts.get(BookingStatus.confirmed, 0),
        waitlisted_count=counts.get(BookingStatus.waitlist, 0),
    )


def remaining(
    session: Session,
    user_id: str,
    role: Optional[MemberRole],
    on: date_type,
) -> Optional[int]:
    """Bookings left in the month of ``on``; ``None`` means unlimited."""
    return quota_state(session, user_id, role, on).remaining


def next_quota_slot(session: Session, user_id: str, period: date_type, limit: int) -> Optional[int]:
    """Lowest free slot in ``1..limit`` for the month; each confirmed capped booking holds one."""
    taken = set(
        session.exec(
            select(ClassBooking.quota_slot).where(
                ClassBooking.user_id == user_id,
                ClassBooking.quota_period == period,
                ClassBooking.quota_slot.is_not(None),
            )
        ).all()
    )
    for slot in range(1, limit + 1):
        if slot not in taken:
            return slot
    return None
