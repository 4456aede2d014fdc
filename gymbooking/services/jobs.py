"""Periodic jobs triggered by the external scheduler.

Every step is isolated: a failure is logged and recorded in the step's
``JobReport`` and the remaining steps (or items) still run.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date as date_type
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gymbooking.models import (
    BookingStatus,
    ClassBooking,
    ClassSchedule,
    ClassType,
    NotificationSeverity,
)
from gymbooking.services.errors import InvalidRequest
from gymbooking.services.notifications import Notifier
from gymbooking.services.templates import find_matching_schedule
from gymbooking.settings import settings
from gymbooking.time_utils import month_start, next_month_start, time_to_hm, week_start

logger = logging.getLogger(__name__)


@dataclass
class JobReport:
    name: str
    processed: int = 0
    skipped: int = 0
    failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "processed": self.processed,
            "skipped": self.skipped,
            "failures": list(self.failures),
        }


def duplicate_templates_for_next_period(session: Session, today: date_type) -> JobReport:
    report = JobReport(name="duplicate_templates")
    current = month_start(today)
    upcoming = next_month_start(today)
    templates = session.exec(
        select(ClassSchedule)
        .where(
            ClassSchedule.period_anchor == current,
            ClassSchedule.is_synthetic == False,  # noqa: E712
        )
        .order_by(ClassSchedule.id.asc())
    ).all()
    sources = [
        (t.id, t.class_type_id, t.day_of_week, t.start_time, t.duration_minutes, t.max_capacity)
        for t in templates
    ]

    for template_id, class_type_id, weekday, start_time, duration, capacity in sources:
        if find_matching_schedule(session, class_type_id, weekday, start_time, upcoming):
            report.skipped += 1
            continue
        session.add(
            ClassSchedule(
                class_type_id=class_type_id,
                day_of_week=weekday,
                start_time=start_time,
                duration_minutes=duration,
                max_capacity=capacity,
                period_anchor=upcoming,
            )
        )
        try:
            session.commit()
        except IntegrityError:
            # A concurrent run created it first.
            session.rollback()
            report.skipped += 1
            continue
        except Exception as exc:
            session.rollback()
            logger.exception("Failed to duplicate schedule %s", template_id)
            report.failures.append(f"schedule {template_id}: {exc}")
            continue
        report.processed += 1

    logger.info(
        "Duplicated %d schedules into %s (%d already present)",
        report.processed,
        upcoming,
        report.skipped,
    )
    return report


def expire_stale_bookings(session: Session, cutoff: datetime) -> JobReport:
    """Hard-delete bookings created before ``cutoff`` for classes dated before it."""
    report = JobReport(name="expire_stale_bookings")
    stale = session.exec(
        select(ClassBooking).where(
            ClassBooking.created_at < cutoff,
            ClassBooking.class_date < cutoff.date(),
        )
    ).all()
    for booking in stale:
        session.delete(booking)
    session.flush()

    orphans = session.exec(
        select(ClassSchedule).where(
            ClassSchedule.is_synthetic == True,  # noqa: E712
            ~select(ClassBooking.id).where(ClassBooking.schedule_id == ClassSchedule.id).exists(),
        )
    ).all()
    for schedule in orphans:
        session.delete(schedule)
    session.commit()

    report.processed = len(stale)
    report.skipped = len(orphans)
    logger.info(
        "Expired %d bookings older than %s and %d empty free-training schedules",
        len(stale),
        cutoff.isoformat(),
        len(orphans),
    )
    return report


def _claim(session: Session, booking_id: int, flag: str) -> bool:
    column = getattr(ClassBooking, flag)
    result = session.connection().execute(
        update(ClassBooking)
        .where(ClassBooking.id == booking_id, column == False)  # noqa: E712
        .values({flag: True})
    )
    session.commit()
    return result.rowcount == 1


def _release(session: Session, booking_ids: List[int], flag: str) -> None:
    session.connection().execute(
        update(ClassBooking).where(ClassBooking.id.in_(booking_ids)).values({flag: False})
    )
    session.commit()


def send_upcoming_reminders(session: Session, notifier: Notifier, now: datetime) -> JobReport:
    """Remind confirmed members whose class starts in about ``reminder_lead_minutes``.

    Each booking is claimed by flipping ``reminder_sent`` with a conditional
    update before sending, so overlapping runs never send twice. A failed
    send releases the claim for the next run.
    """
    report = JobReport(name="upcoming_reminders")
    target = now + timedelta(minutes=settings.reminder_lead_minutes)
    tolerance = timedelta(minutes=settings.reminder_tolerance_minutes)
    window_start, window_end = target - tolerance, target + tolerance

    rows = session.exec(
        select(ClassBooking, ClassSchedule, ClassType)
        .join(ClassSchedule, ClassSchedule.id == ClassBooking.schedule_id)
        .join(ClassType, ClassType.id == ClassSchedule.class_type_id)
        .where(
            ClassBooking.status == BookingStatus.confirmed,
            ClassBooking.reminder_sent == False,  # noqa: E712
            ClassBooking.class_date.in_(sorted({window_start.date(), window_end.date()})),
        )
    ).all()
    due: List[Tuple[int, str, str]] = []
    for booking, schedule, class_type in rows:
        starts_at = datetime.combine(booking.class_date, schedule.start_time)
        if window_start <= starts_at <= window_end:
            message = (
                f"Your {class_type.name} class starts at {time_to_hm(schedule.start_time)}. "
                "Get ready!"
            )
            due.append((booking.id, booking.user_id, message))

    for booking_id, user_id, message in due:
        if not _claim(session, booking_id, "reminder_sent"):
            report.skipped += 1
            continue
        try:
            notifier.notify(user_id, "Class in 1 hour", message, NotificationSeverity.info)
        except Exception as exc:
            logger.exception("Failed to send reminder for booking %s", booking_id)
            _release(session, [booking_id], "reminder_sent")
            report.failures.append(f"booking {booking_id}: {exc}")
            continue
        report.processed += 1

    logger.info("Sent %d class reminders (%d failed)", report.processed, len(report.failures))
    return report


def send_morning_reminders(session: Session, notifier: Notifier, today: date_type) -> JobReport:
    """One digest per member listing today's confirmed classes."""
    report = JobReport(name="morning_reminders")
    rows = session.exec(
        select(ClassBooking, ClassSchedule, ClassType)
        .join(ClassSchedule, ClassSchedule.id == ClassBooking.schedule_id)
        .join(ClassType, ClassType.id == ClassSchedule.class_type_id)
        .where(
            ClassBooking.status == BookingStatus.confirmed,
            ClassBooking.morning_reminder_sent == False,  # noqa: E712
            ClassBooking.class_date == today,
        )
        .order_by(ClassSchedule.start_time.asc())
    ).all()
    by_user: Dict[str, List[Tuple[int, str]]] = defaultdict(list)
    for booking, schedule, class_type in rows:
        by_user[booking.user_id].append(
            (booking.id, f"{class_type.name} at {time_to_hm(schedule.start_time)}")
        )

    for user_id, items in by_user.items():
        claimed = [
            (bid, label) for bid, label in items if _claim(session, bid, "morning_reminder_sent")
        ]
        if not claimed:
            report.skipped += 1
            continue
        if len(claimed) == 1:
            message = f"You have {claimed[0][1]} today"
        else:
            labels = ", ".join(label for _, label in claimed)
            message = f"You have {len(claimed)} classes today: {labels}"
        try:
            notifier.notify(user_id, "Good morning", message, NotificationSeverity.info)
        except Exception as exc:
            logger.exception("Failed to send morning reminder to %s", user_id)
            _release(session, [bid for bid, _ in claimed], "morning_reminder_sent")
            report.failures.append(f"user {user_id}: {exc}")
            continue
        report.processed += 1

    logger.info("Sent %d morning reminders (%d failed)", report.processed, len(report.failures))
    return report


def _run_step(session: Session, name: str, step: Callable[[], JobReport]) -> JobReport:
    try:
        return step()
    except Exception as exc:
        session.rollback()
        logger.exception("Job step %s failed", name)
        return JobReport(name=name, failures=[str(exc)])


def run_roll_forward(
    session: Session, now: datetime, cutoff: Optional[datetime] = None
) -> List[JobReport]:
    """Copy this month's schedules into the next month and expire old bookings.

    ``cutoff`` defaults to the start of the current week. It never reaches
    past the start of the current month, whose bookings the quota counts.
    """
    month_floor = datetime.combine(month_start(now.date()), time.min)
    cutoff = min(cutoff or week_start(now.date()), month_floor)
    return [
        _run_step(
            session,
            "duplicate_templates",
            lambda: duplicate_templates_for_next_period(session, now.date()),
        ),
        _run_step(session, "expire_stale_bookings", lambda: expire_stale_bookings(session, cutoff)),
    ]


REMINDER_KINDS = ("hourly", "morning")


def send_reminders(
    session: Session, notifier: Notifier, now: datetime, kind: str = "hourly"
) -> JobReport:
    if kind == "hourly":
        return _run_step(
            session, "upcoming_reminders", lambda: send_upcoming_reminders(session, notifier, now)
        )
    if kind == "morning":
        return _run_step(
            session, "morning_reminders", lambda: send_morning_reminders(session, notifier, now.date())
        )
    raise InvalidRequest(f"Unknown reminder type {kind!r}, expected one of {', '.join(REMINDER_KINDS)}")
