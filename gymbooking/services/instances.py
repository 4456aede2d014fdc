from __future__ import annotations

from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from gymbooking.models import BookingStatus, ClassBooking, ClassSchedule, ClassType
from gymbooking.services.errors import ClassTypeNotFound, InstanceNotFound
from gymbooking.settings import settings
from gymbooking.time_utils import day_of_week, month_start


@dataclass(frozen=True)
class ClassInstance:
    schedule_id: int
    class_type_id: int
    date: date_type
    starts_at: datetime
    ends_at: datetime
    capacity: int


@dataclass(frozen=True)
class InstanceAvailability:
    instance: ClassInstance
    confirmed: int
    waitlisted: int

    @property
    def available(self) -> bool:
        return self.confirmed < self.instance.capacity


def instance_on(schedule: ClassSchedule, day: date_type) -> ClassInstance:
    starts_at = datetime.combine(day, schedule.start_time)
    return ClassInstance(
        schedule_id=schedule.id,
        class_type_id=schedule.class_type_id,
        date=day,
        starts_at=starts_at,
        ends_at=starts_at + timedelta(minutes=schedule.duration_minutes),
        capacity=schedule.max_capacity,
    )


def project(
    schedule: ClassSchedule,
    horizon_start: date_type,
    horizon_weeks: int,
    now: datetime,
) -> Iterator[ClassInstance]:
    """Yield the future occurrences of ``schedule``, one per week of the horizon.

    The first occurrence is the next matching weekday on or after
    ``horizon_start``; when that one has already started the horizon begins a
    week later. Occurrences not strictly after ``now`` are dropped.
    """
    offset = (schedule.day_of_week - day_of_week(horizon_start)) % 7
    first = horizon_start + timedelta(days=offset)
    if datetime.combine(first, schedule.start_time) <= now:
        first += timedelta(days=7)
    for week in range(horizon_weeks):
        instance = instance_on(schedule, first + timedelta(weeks=week))
        if instance.starts_at > now:
            yield instance


def find_instance(schedule: ClassSchedule, class_date: date_type, now: datetime) -> ClassInstance:
    if day_of_week(class_date) != schedule.day_of_week:
        raise InstanceNotFound()
    instance = instance_on(schedule, class_date)
    if instance.starts_at <= now:
        raise InstanceNotFound("Booking unavailable: this class has already started")
    return instance


def _copy_rank(schedule: ClassSchedule, class_date: date_type, has_bookings: bool) -> tuple:
    # Higher wins: a copy already holding bookings, then the copy for that month.
    anchor = schedule.period_anchor
    return (
        has_bookings,
        anchor == month_start(class_date),
        anchor <= class_date,
        anchor,
        -schedule.id,
    )


def slot_copies(session: Session, schedule: ClassSchedule) -> List[ClassSchedule]:
    """Every rolled-forward copy of ``schedule``'s weekly slot, itself included."""
    if schedule.is_synthetic:
        return [schedule]
    return list(
        session.exec(
            select(ClassSchedule)
            .where(
                ClassSchedule.class_type_id == schedule.class_type_id,
                ClassSchedule.day_of_week == schedule.day_of_week,
                ClassSchedule.start_time == schedule.start_time,
                ClassSchedule.is_synthetic == False,  # noqa: E712
            )
            .order_by(ClassSchedule.id.asc())
        ).all()
    )


def resolve_slot(session: Session, schedule: ClassSchedule, class_date: date_type) -> ClassSchedule:
    """The copy that holds the instance on ``class_date``, as the class view shows it."""
    copies = slot_copies(session, schedule)
    if len(copies) < 2:
        return schedule
    booked = set(
        session.exec(
            select(ClassBooking.schedule_id).where(
                ClassBooking.schedule_id.in_([c.id for c in copies]),
                ClassBooking.class_date == class_date,
            )
        ).all()
    )
    return max(copies, key=lambda c: _copy_rank(c, class_date, c.id in booked))


def _booking_counts(
    session: Session, schedule_ids: List[int], since: date_type
) -> Dict[Tuple[int, date_type, BookingStatus], int]:
    if not schedule_ids:
        return {}
    rows = session.exec(
        select(
            ClassBooking.schedule_id,
            ClassBooking.class_date,
            ClassBooking.status,
            func.count(ClassBooking.id),
        )
        .where(
            ClassBooking.schedule_id.in_(schedule_ids),
            ClassBooking.class_date >= since,
        )
        .group_by(ClassBooking.schedule_id, ClassBooking.class_date, ClassBooking.status)
    ).all()
    return {
        (int(schedule_id), class_date, BookingStatus(status)): int(cnt)
        for schedule_id, class_date, status, cnt in rows
    }


def build_instances_for_class(
    session: Session,
    class_type_id: int,
    now: datetime,
    horizon_weeks: Optional[int] = None,
) -> List[InstanceAvailability]:
    if not session.get(ClassType, class_type_id):
        raise ClassTypeNotFound()
    weeks = horizon_weeks if horizon_weeks is not None else settings.booking_horizon_weeks

    schedules = session.exec(
        select(ClassSchedule).where(
            ClassSchedule.class_type_id == class_type_id,
            ClassSchedule.is_synthetic == False,  # noqa: E712
        )
    ).all()
    by_id = {s.id: s for s in schedules}
    counts = _booking_counts(session, list(by_id), now.date())

    # Rolled-forward copies of a template project onto the same slots; keep one per slot.
    chosen: Dict[Tuple[date_type, datetime], InstanceAvailability] = {}
    ranks: Dict[Tuple[date_type, datetime], tuple] = {}
    for schedule in schedules:
        for instance in project(schedule, now.date(), weeks, now):
            confirmed = counts.get((schedule.id, instance.date, BookingStatus.confirmed), 0)
            waitlisted = counts.get((schedule.id, instance.date, BookingStatus.waitlist), 0)
            rank = _copy_rank(schedule, instance.date, confirmed + waitlisted > 0)
            key = (instance.date, instance.starts_at)
            if key not in ranks or rank > ranks[key]:
                ranks[key] = rank
                chosen[key] = InstanceAvailability(
                    instance=instance, confirmed=confirmed, waitlisted=waitlisted
                )

    return sorted(chosen.values(), key=lambda x: (x.instance.starts_at, x.instance.schedule_id))
