from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gymbooking.models import (
    BookingStatus,
    ClassBooking,
    ClassSchedule,
    ClassType,
    MemberRole,
    NotificationSeverity,
)
from gymbooking.services.errors import (
    AccountBlocked,
    BookingError,
    BookingNotFound,
    CancellationWindowClosed,
    CapacityRace,
    DuplicateBooking,
    QuotaExceeded,
    ScheduleNotFound,
)
from gymbooking.services.instances import find_instance, resolve_slot, slot_copies
from gymbooking.services.notifications import Notifier, safe_notify
from gymbooking.services.quota import entitlement_for, next_quota_slot, quota_state
from gymbooking.services.subscriptions import (
    DatabaseSubscriptionStatus,
    SubscriptionStatusProvider,
)
from gymbooking.settings import settings
from gymbooking.time_utils import month_start, time_to_hm

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Actor:
    """Who is performing a ledger operation; passed explicitly, never looked up."""

    user_id: str
    role: Optional[MemberRole]

    @property
    def is_admin(self) -> bool:
        return self.role == MemberRole.admin

    def acts_for(self, user_id: str) -> bool:
        return self.is_admin and self.user_id != user_id


@dataclass(frozen=True)
class ReservationResult:
    booking: ClassBooking

    @property
    def status(self) -> BookingStatus:
        return self.booking.status

    @property
    def position(self) -> Optional[int]:
        return self.booking.position


def run_in_transaction(session: Session, work: Callable[[], T]) -> T:
    """Run ``work`` and commit, retrying when a storage constraint loses a race.

    Seats, waitlist positions and quota slots are unique per instance/month,
    so a concurrent writer that picked the same one fails here and re-reads.
    """
    attempts = settings.reserve_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = work()
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("Booking write lost a race (attempt %d/%d), retrying", attempt, attempts)
            continue
        except BookingError:
            session.rollback()
            raise
        return result
    raise CapacityRace()


def lock_schedule(session: Session, schedule_id: int) -> ClassSchedule:
    schedule = session.exec(
        select(ClassSchedule).where(ClassSchedule.id == schedule_id).with_for_update()
    ).first()
    if not schedule:
        raise ScheduleNotFound()
    return schedule


def find_member_booking(
    session: Session, schedule: ClassSchedule, class_date: date_type, user_id: str
) -> Optional[ClassBooking]:
    """The member's booking for this instance, on whichever copy of the slot holds it."""
    schedule_ids = [s.id for s in slot_copies(session, schedule)]
    return session.exec(
        select(ClassBooking)
        .where(
            ClassBooking.schedule_id.in_(schedule_ids),
            ClassBooking.class_date == class_date,
            ClassBooking.user_id == user_id,
        )
        .order_by(ClassBooking.id.asc())
    ).first()


def _free_seat(session: Session, schedule: ClassSchedule, class_date: date_type) -> Optional[int]:
    taken = set(
        session.exec(
            select(ClassBooking.seat).where(
                ClassBooking.schedule_id == schedule.id,
                ClassBooking.class_date == class_date,
                ClassBooking.status == BookingStatus.confirmed,
            )
        ).all()
    )
    for seat in range(1, schedule.max_capacity + 1):
        if seat not in taken:
            return seat
    return None


def _next_position(session: Session, schedule_id: int, class_date: date_type) -> int:
    current = session.exec(
        select(func.max(ClassBooking.position)).where(
            ClassBooking.schedule_id == schedule_id,
            ClassBooking.class_date == class_date,
            ClassBooking.status == BookingStatus.waitlist,
        )
    ).one()
    return int(current or 0) + 1


def place_booking(
    session: Session,
    schedule: ClassSchedule,
    class_date: date_type,
    user_id: str,
    actor: Actor,
    subscriptions: SubscriptionStatusProvider,
    now: datetime,
) -> ClassBooking:
    """Validate and stage one reservation; the caller owns the transaction.

    Quota is spent by confirmed bookings only. A capped member needs a free
    quota slot to take a seat and at least one unit left to join the
    waitlist; the slot is assigned on promotion. Admins acting for a member
    may go past the quota, which marks the booking ``quota_exempt``.
    """
    find_instance(schedule, class_date, now)
    on_behalf = actor.acts_for(user_id)
    seat = _free_seat(session, schedule, class_date)

    role = subscriptions.role_of(user_id)
    entitlement = entitlement_for(role)
    period = month_start(class_date)
    quota_slot: Optional[int] = None
    quota_exempt = False
    if not entitlement.unlimited:
        state = quota_state(session, user_id, role, class_date)
        if seat is not None and entitlement.limit:
            quota_slot = next_quota_slot(session, user_id, period, entitlement.limit)
            within_quota = quota_slot is not None and bool(state.remaining)
        else:
            within_quota = bool(state.remaining)
        if not within_quota:
            if not on_behalf:
                raise QuotaExceeded(remaining=state.remaining or 0, limit=entitlement.limit)
            quota_exempt = True

    if subscriptions.is_blocked(user_id):
        raise AccountBlocked()

    if find_member_booking(session, schedule, class_date, user_id):
        raise DuplicateBooking()

    booking = ClassBooking(
        schedule_id=schedule.id,
        user_id=user_id,
        class_date=class_date,
        status=BookingStatus.confirmed if seat is not None else BookingStatus.waitlist,
        seat=seat,
        position=None if seat is not None else _next_position(session, schedule.id, class_date),
        quota_period=period if quota_slot is not None else None,
        quota_slot=quota_slot,
        quota_exempt=quota_exempt,
        created_at=datetime.utcnow(),
    )
    session.add(booking)
    session.flush()
    return booking


def describe_class(session: Session, schedule: ClassSchedule, class_date: date_type) -> str:
    class_type = session.get(ClassType, schedule.class_type_id)
    name = class_type.name if class_type else "class"
    return f"{name} on {class_date.strftime('%d/%m')} at {time_to_hm(schedule.start_time)}"


def announce_reservation(
    session: Session, notifier: Notifier, schedule: ClassSchedule, booking: ClassBooking
) -> None:
    what = describe_class(session, schedule, booking.class_date)
    if booking.status == BookingStatus.confirmed:
        safe_notify(
            notifier,
            booking.user_id,
            "Booking confirmed",
            f"You are booked for {what}",
            NotificationSeverity.success,
        )
    else:
        safe_notify(
            notifier,
            booking.user_id,
            "Added to waitlist",
            f"{what} is full. You are number {booking.position} on the waitlist",
            NotificationSeverity.info,
        )


def reserve(
    session: Session,
    schedule_id: int,
    class_date: date_type,
    user_id: str,
    actor: Actor,
    subscriptions: SubscriptionStatusProvider,
    notifier: Notifier,
    now: datetime,
) -> ReservationResult:
    def work() -> ClassBooking:
        requested = lock_schedule(session, schedule_id)
        # Rolled-forward copies share one instance; book the copy the class view shows.
        schedule = resolve_slot(session, requested, class_date)
        if schedule.id != requested.id:
            schedule = lock_schedule(session, schedule.id)
        return place_booking(session, schedule, class_date, user_id, actor, subscriptions, now)

    booking = run_in_transaction(session, work)
    session.refresh(booking)
    schedule = session.get(ClassSchedule, booking.schedule_id)
    logger.info(
        "Reserved schedule %s on %s for %s by %s: %s",
        booking.schedule_id,
        class_date,
        user_id,
        actor.user_id,
        booking.status.value,
    )
    announce_reservation(session, notifier, schedule, booking)
    return ReservationResult(booking=booking)


def _close_waitlist_gap(
    session: Session, schedule_id: int, class_date: date_type, after_position: int
) -> None:
    rows = session.exec(
        select(ClassBooking)
        .where(
            ClassBooking.schedule_id == schedule_id,
            ClassBooking.class_date == class_date,
            ClassBooking.status == BookingStatus.waitlist,
            ClassBooking.position > after_position,
        )
        .order_by(ClassBooking.position.asc())
    ).all()
    # One row per flush, lowest first, so the unique position never collides mid-update.
    for row in rows:
        row.position -= 1
        session.add(row)
        session.flush()


def _promotion_quota(
    session: Session, booking: ClassBooking, subscriptions: SubscriptionStatusProvider
) -> Tuple[bool, Optional[int]]:
    """Whether a waitlisted ``booking`` may take a seat, and the quota slot it spends."""
    if booking.quota_exempt:
        return True, None
    role = subscriptions.role_of(booking.user_id)
    entitlement = entitlement_for(role)
    if entitlement.unlimited:
        return True, None
    if not entitlement.limit:
        return False, None
    if not quota_state(session, booking.user_id, role, booking.class_date).remaining:
        return False, None
    slot = next_quota_slot(
        session, booking.user_id, month_start(booking.class_date), entitlement.limit
    )
    return slot is not None, slot


def remove_booking(
    session: Session,
    schedule: ClassSchedule,
    booking: ClassBooking,
    subscriptions: Optional[SubscriptionStatusProvider] = None,
) -> Optional[ClassBooking]:
    """Delete ``booking`` and repair the instance; returns the promoted booking, if any.

    A freed seat goes to the first waitlisted member, in position order, who
    still has quota for the class month. Members without quota keep their
    place in the queue.
    """
    subscriptions = subscriptions or DatabaseSubscriptionStatus(session)
    class_date = booking.class_date
    was_confirmed = booking.status == BookingStatus.confirmed
    freed_seat = booking.seat
    freed_position = booking.position
    session.delete(booking)
    session.flush()

    promoted: Optional[ClassBooking] = None
    if was_confirmed:
        waitlist = session.exec(
            select(ClassBooking)
            .where(
                ClassBooking.schedule_id == schedule.id,
                ClassBooking.class_date == class_date,
                ClassBooking.status == BookingStatus.waitlist,
            )
            .order_by(ClassBooking.position.asc())
        ).all()
        for candidate in waitlist:
            eligible, slot = _promotion_quota(session, candidate, subscriptions)
            if not eligible:
                continue
            candidate_position = candidate.position
            candidate.status = BookingStatus.confirmed
            candidate.seat = freed_seat
            candidate.position = None
            if slot is not None:
                candidate.quota_period = month_start(class_date)
                candidate.quota_slot = slot
            session.add(candidate)
            session.flush()
            _close_waitlist_gap(session, schedule.id, class_date, candidate_position)
            promoted = candidate
            break
    elif freed_position is not None:
        _close_waitlist_gap(session, schedule.id, class_date, freed_position)

    if schedule.is_synthetic:
        left = session.exec(
            select(func.count(ClassBooking.id)).where(ClassBooking.schedule_id == schedule.id)
        ).one()
        if not left:
            session.delete(schedule)
            session.flush()
    return promoted


def announce_promotion(session: Session, notifier: Notifier, promoted: ClassBooking) -> None:
    schedule = session.get(ClassSchedule, promoted.schedule_id)
    safe_notify(
        notifier,
        promoted.user_id,
        "You got a spot",
        f"A place opened up: you are now booked for {describe_class(session, schedule, promoted.class_date)}",
        NotificationSeverity.success,
    )


def cancel(
    session: Session,
    schedule_id: int,
    class_date: date_type,
    user_id: str,
    actor: Actor,
    notifier: Notifier,
    now: datetime,
) -> None:
    window = settings.cancellation_window_minutes

    def work() -> Tuple[str, Optional[ClassBooking]]:
        schedule = lock_schedule(session, schedule_id)
        booking = find_member_booking(session, schedule, class_date, user_id)
        if not booking:
            raise BookingNotFound()
        if booking.schedule_id != schedule.id:
            schedule = lock_schedule(session, booking.schedule_id)
        starts_at = datetime.combine(class_date, schedule.start_time)
        if not actor.acts_for(user_id) and starts_at - now <= timedelta(minutes=window):
            raise CancellationWindowClosed(window)
        what = describe_class(session, schedule, class_date)
        return what, remove_booking(session, schedule, booking)

    what, promoted = run_in_transaction(session, work)
    logger.info(
        "Cancelled schedule %s on %s for %s by %s", schedule_id, class_date, user_id, actor.user_id
    )
    if actor.acts_for(user_id):
        message = f"An administrator cancelled your booking for {what}"
    else:
        message = f"Your booking for {what} was cancelled"
    safe_notify(notifier, user_id, "Booking cancelled", message, NotificationSeverity.warning)
    if promoted:
        session.refresh(promoted)
        logger.info(
            "Promoted %s from waitlist on schedule %s %s", promoted.user_id, promoted.schedule_id, class_date
        )
        announce_promotion(session, notifier, promoted)


def list_instance_bookings(
    session: Session, schedule_id: int, class_date: date_type
) -> List[ClassBooking]:
    confirmed = session.exec(
        select(ClassBooking)
        .where(
            ClassBooking.schedule_id == schedule_id,
            ClassBooking.class_date == class_date,
            ClassBooking.status == BookingStatus.confirmed,
        )
        .order_by(ClassBooking.seat.asc())
    ).all()
    waitlist = session.exec(
        select(ClassBooking)
        .where(
            ClassBooking.schedule_id == schedule_id,
            ClassBooking.class_date == class_date,
            ClassBooking.status == BookingStatus.waitlist,
        )
        .order_by(ClassBooking.position.asc())
    ).all()
    return list(confirmed) + list(waitlist)


def list_user_bookings(
    session: Session, user_id: str, today: date_type
) -> List[Tuple[ClassBooking, ClassSchedule, ClassType]]:
    rows = session.exec(
        select(ClassBooking, ClassSchedule, ClassType)
        .join(ClassSchedule, ClassSchedule.id == ClassBooking.schedule_id)
        .join(ClassType, ClassType.id == ClassSchedule.class_type_id)
        .where(ClassBooking.user_id == user_id, ClassBooking.class_date >= today)
        .order_by(ClassBooking.class_date.asc(), ClassSchedule.start_time.asc())
    ).all()
    return list(rows)


def reset_future_bookings(
    session: Session, user_id: str, today: date_type, notifier: Notifier
) -> int:
    """Drop every booking of ``user_id`` from ``today`` on, e.g. after a renewal payment."""

    def work() -> Tuple[int, List[ClassBooking]]:
        bookings = session.exec(
            select(ClassBooking)
            .where(ClassBooking.user_id == user_id, ClassBooking.class_date >= today)
            .order_by(ClassBooking.schedule_id.asc(), ClassBooking.class_date.asc())
        ).all()
        promoted: List[ClassBooking] = []
        for booking in bookings:
            schedule = lock_schedule(session, booking.schedule_id)
            head = remove_booking(session, schedule, booking)
            if head:
                promoted.append(head)
        return len(bookings), promoted

    removed, promoted = run_in_transaction(session, work)
    logger.info("Reset %d future bookings for %s", removed, user_id)
    for booking in promoted:
        session.refresh(booking)
        announce_promotion(session, notifier, booking)
    return removed
