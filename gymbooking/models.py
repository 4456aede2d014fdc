from __future__ import annotations

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class MemberRole(str, Enum):
    admin = "admin"
    full = "full"
    basica_clases = "basica_clases"
    basica = "basica"


class BookingStatus(str, Enum):
    confirmed = "confirmed"
    waitlist = "waitlist"


class NotificationSeverity(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class Member(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    display_name: str = Field(index=True)
    role: MemberRole = Field(default=MemberRole.basica, index=True)
    blocked: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class ClassType(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: Optional[str] = None
    is_free_training: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class ClassSchedule(SQLModel, table=True):
    """Recurring weekly slot of a class type, valid for the month of ``period_anchor``."""

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedule_day_of_week"),
        CheckConstraint("max_capacity >= 1", name="ck_schedule_capacity"),
        CheckConstraint("duration_minutes >= 1", name="ck_schedule_duration"),
        # Free-training rows are per-member and may share a slot.
        Index(
            "uq_schedule_slot_period",
            "class_type_id",
            "day_of_week",
            "start_time",
            "period_anchor",
            unique=True,
            sqlite_where=text("is_synthetic = 0"),
            postgresql_where=text("is_synthetic = false"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    class_type_id: int = Field(foreign_key="classtype.id", index=True)
    day_of_week: int = Field(index=True)
    start_time: time
    duration_minutes: int = 60
    max_capacity: int = 20
    period_anchor: date = Field(index=True)
    is_synthetic: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class ClassBooking(SQLModel, table=True):
    # Writers only ever pick seats in 1..capacity and quota slots in 1..limit,
    # so the unique constraints below bound both counts in the database.
    __table_args__ = (
        UniqueConstraint("schedule_id", "class_date", "user_id", name="uq_booking_user_instance"),
        UniqueConstraint("schedule_id", "class_date", "seat", name="uq_booking_seat"),
        UniqueConstraint("schedule_id", "class_date", "position", name="uq_booking_position"),
        UniqueConstraint("user_id", "quota_period", "quota_slot", name="uq_booking_quota_slot"),
        CheckConstraint(
            "(status = 'confirmed' AND seat IS NOT NULL AND position IS NULL)"
            " OR (status = 'waitlist' AND seat IS NULL AND position IS NOT NULL)",
            name="ck_booking_status_slot",
        ),
        CheckConstraint("seat IS NULL OR seat >= 1", name="ck_booking_seat"),
        CheckConstraint("position IS NULL OR position >= 1", name="ck_booking_position"),
        CheckConstraint("quota_slot IS NULL OR quota_slot >= 1", name="ck_booking_quota_slot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    schedule_id: int = Field(foreign_key="classschedule.id", index=True)
    user_id: str = Field(index=True)
    class_date: date = Field(index=True)
    status: BookingStatus = Field(index=True)
    seat: Optional[int] = None
    position: Optional[int] = None
    quota_period: Optional[date] = Field(default=None, index=True)
    quota_slot: Optional[int] = None
    # Placed by an admin past the member's quota; promotion does not need a slot.
    quota_exempt: bool = False
    reminder_sent: bool = Field(default=False, index=True)
    morning_reminder_sent: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    message: str
    severity: NotificationSeverity = Field(default=NotificationSeverity.info)
    read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
