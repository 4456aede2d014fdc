from __future__ import annotations

import logging
from datetime import date as date_type
from datetime import datetime, time
from typing import List, Tuple

from sqlmodel import Session, select

from gymbooking.models import BookingStatus, ClassBooking, ClassSchedule, ClassType
from gymbooking.services.bookings import (
    Actor,
    ReservationResult,
    announce_reservation,
    place_booking,
    run_in_transaction,
)
from gymbooking.services.errors import ClassTypeNotFound, InvalidRequest
from gymbooking.services.notifications import Notifier
from gymbooking.services.subscriptions import SubscriptionStatusProvider
from gymbooking.settings import settings
from gymbooking.time_utils import day_of_week, month_start

logger = logging.getLogger(__name__)


def reserve_free_training(
    session: Session,
    class_type_id: int,
    class_date: date_type,
    start_time: time,
    user_id: str,
    actor: Actor,
    subscriptions: SubscriptionStatusProvider,
    notifier: Notifier,
    now: datetime,
) -> ReservationResult:
    """Book a self-scheduled single session.

    A one-seat synthetic schedule is created for the requested slot and booked
    in the same transaction, so a rejected booking leaves no schedule behind.
    Cancelling goes through ``bookings.cancel``, which removes the schedule.
    """
    class_type = session.get(ClassType, class_type_id)
    if not class_type:
        raise ClassTypeNotFound()
    if not class_type.is_free_training:
        raise InvalidRequest("This class does not offer free training sessions")
    if datetime.combine(class_date, start_time) <= now:
        raise InvalidRequest("You cannot book a session in the past")

    def work() -> Tuple[ClassSchedule, ClassBooking]:
        schedule = ClassSchedule(
            class_type_id=class_type_id,
            day_of_week=day_of_week(class_date),
            start_time=start_time,
            duration_minutes=settings.free_training_duration_minutes,
            max_capacity=1,
            period_anchor=month_start(class_date),
            is_synthetic=True,
        )
        session.add(schedule)
        session.flush()
        booking = place_booking(session, schedule, class_date, user_id, actor, subscriptions, now)
        return schedule, booking

    schedule, booking = run_in_transaction(session, work)
    session.refresh(schedule)
    session.refresh(booking)
    logger.info(
        "Free training %s booked for %s on %s at %s", schedule.id, user_id, class_date, start_time
    )
    announce_reservation(session, notifier, schedule, booking)
    return ReservationResult(booking=booking)


def list_free_trainings(
    session: Session, class_type_id: int, user_id: str, today: date_type
) -> List[Tuple[ClassBooking, ClassSchedule]]:
    rows = session.exec(
        select(ClassBooking, ClassSchedule)
        .join(ClassSchedule, ClassSchedule.id == ClassBooking.schedule_id)
        .where(
            ClassSchedule.class_type_id == class_type_id,
            ClassSchedule.is_synthetic == True,  # noqa: E712
            ClassBooking.user_id == user_id,
            ClassBooking.status == BookingStatus.confirmed,
            ClassBooking.class_date >= today,
        )
        .order_by(ClassBooking.class_date.asc(), ClassSchedule.start_time.asc())
    ).all()
    return list(rows)
