from __future__ import annotations

import logging
from datetime import date as date_type
from datetime import time
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gymbooking.models import ClassBooking, ClassSchedule, ClassType
from gymbooking.services.errors import (
    ClassTypeNotFound,
    InvalidRequest,
    ScheduleConflict,
    ScheduleNotFound,
)
from gymbooking.time_utils import month_start, time_to_hm, weekday_label

logger = logging.getLogger(__name__)


def create_class_type(
    session: Session, name: str, description: Optional[str] = None, is_free_training: bool = False
) -> ClassType:
    name = name.strip()
    if not name:
        raise InvalidRequest("Class name is required")
    class_type = ClassType(
        name=name, description=(description or "").strip() or None, is_free_training=is_free_training
    )
    session.add(class_type)
    session.commit()
    session.refresh(class_type)
    return class_type


def list_class_types(session: Session) -> List[ClassType]:
    return list(session.exec(select(ClassType).order_by(ClassType.name)).all())


def find_matching_schedule(
    session: Session,
    class_type_id: int,
    day_of_week: int,
    start_time: time,
    period_anchor: date_type,
) -> Optional[ClassSchedule]:
    return session.exec(
        select(ClassSchedule).where(
            ClassSchedule.class_type_id == class_type_id,
            ClassSchedule.day_of_week == day_of_week,
            ClassSchedule.start_time == start_time,
            ClassSchedule.period_anchor == period_anchor,
            ClassSchedule.is_synthetic == False,  # noqa: E712
        )
    ).first()


def create_schedule(
    session: Session,
    class_type_id: int,
    day_of_week: int,
    start_time: time,
    duration_minutes: int,
    max_capacity: int,
    period_anchor: date_type,
) -> ClassSchedule:
    if not session.get(ClassType, class_type_id):
        raise ClassTypeNotFound()
    if not 0 <= day_of_week <= 6:
        raise InvalidRequest("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
    if duration_minutes < 1:
        raise InvalidRequest("Duration must be at least one minute")
    if max_capacity < 1:
        raise InvalidRequest("Capacity must be at least 1")

    anchor = month_start(period_anchor)
    conflict = ScheduleConflict(
        f"There is already a class on {weekday_label(day_of_week)} at "
        f"{time_to_hm(start_time)} for {anchor.strftime('%Y-%m')}"
    )
    if find_matching_schedule(session, class_type_id, day_of_week, start_time, anchor):
        raise conflict

    schedule = ClassSchedule(
        class_type_id=class_type_id,
        day_of_week=day_of_week,
        start_time=start_time,
        duration_minutes=duration_minutes,
        max_capacity=max_capacity,
        period_anchor=anchor,
    )
    session.add(schedule)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise conflict
    session.refresh(schedule)
    logger.info(
        "Created schedule %s: class %s %s %s",
        schedule.id,
        class_type_id,
        weekday_label(day_of_week),
        time_to_hm(start_time),
    )
    return schedule


def list_schedules(
    session: Session, class_type_id: int, period_anchor: Optional[date_type] = None
) -> List[ClassSchedule]:
    stmt = select(ClassSchedule).where(
        ClassSchedule.class_type_id == class_type_id,
        ClassSchedule.is_synthetic == False,  # noqa: E712
    )
    if period_anchor is not None:
        stmt = stmt.where(ClassSchedule.period_anchor == month_start(period_anchor))
    stmt = stmt.order_by(
        ClassSchedule.period_anchor.asc(),
        ClassSchedule.day_of_week.asc(),
        ClassSchedule.start_time.asc(),
    )
    return list(session.exec(stmt).all())


def delete_schedule(session: Session, schedule_id: int) -> int:
    """Delete a schedule and every booking made against it; returns bookings removed."""
    schedule = session.get(ClassSchedule, schedule_id)
    if not schedule:
        raise ScheduleNotFound()
    bookings = session.exec(
        select(ClassBooking).where(ClassBooking.schedule_id == schedule_id)
    ).all()
    for booking in bookings:
        session.delete(booking)
    session.flush()
    removed = len(bookings)
    session.delete(schedule)
    session.commit()
    logger.info("Deleted schedule %s and %d bookings", schedule_id, removed)
    return removed
