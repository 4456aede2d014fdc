from datetime import date, time

import pytest
from sqlmodel import select

from gymbooking.models import BookingStatus, ClassBooking, ClassSchedule
from gymbooking.services.errors import (
    ClassTypeNotFound,
    InvalidRequest,
    ScheduleConflict,
    ScheduleNotFound,
)
from gymbooking.services.templates import (
    create_class_type,
    create_schedule,
    delete_schedule,
    list_class_types,
    list_schedules,
)

from tests.conftest import MONDAY


@pytest.mark.integration
def test_create_class_type_requires_a_name(session):
    with pytest.raises(InvalidRequest):
        create_class_type(session, "   ")

    yoga = create_class_type(session, " Yoga ", description="  ")
    create_class_type(session, "Boxing")

    assert yoga.name == "Yoga"
    assert yoga.description is None
    assert [c.name for c in list_class_types(session)] == ["Boxing", "Yoga"]


@pytest.mark.integration
def test_create_schedule_normalises_period_to_month_start(session, class_type):
    schedule = create_schedule(
        session,
        class_type_id=class_type.id,
        day_of_week=3,
        start_time=time(19, 30),
        duration_minutes=50,
        max_capacity=15,
        period_anchor=date(2030, 1, 17),
    )

    assert schedule.id is not None
    assert schedule.period_anchor == date(2030, 1, 1)
    assert schedule.is_synthetic is False


@pytest.mark.integration
def test_duplicate_slot_in_same_period_conflicts(session, class_type):
    kwargs = dict(
        class_type_id=class_type.id,
        day_of_week=1,
        start_time=time(9, 0),
        duration_minutes=60,
        max_capacity=10,
    )
    create_schedule(session, period_anchor=date(2030, 1, 1), **kwargs)

    with pytest.raises(ScheduleConflict):
        create_schedule(session, period_anchor=date(2030, 1, 20), **kwargs)

    create_schedule(session, period_anchor=date(2030, 2, 1), **kwargs)
    assert len(list_schedules(session, class_type.id)) == 2


@pytest.mark.integration
@pytest.mark.parametrize(
    "day_of_week,duration,capacity",
    [(7, 60, 10), (-1, 60, 10), (1, 0, 10), (1, 60, 0)],
)
def test_create_schedule_validates_fields(session, class_type, day_of_week, duration, capacity):
    with pytest.raises(InvalidRequest):
        create_schedule(
            session,
            class_type_id=class_type.id,
            day_of_week=day_of_week,
            start_time=time(9, 0),
            duration_minutes=duration,
            max_capacity=capacity,
            period_anchor=date(2030, 1, 1),
        )


@pytest.mark.integration
def test_create_schedule_for_unknown_class(session):
    with pytest.raises(ClassTypeNotFound):
        create_schedule(session, 999, 1, time(9, 0), 60, 10, date(2030, 1, 1))


@pytest.mark.integration
def test_list_schedules_filters_by_period(session, class_type, make_schedule):
    friday = make_schedule(day_of_week=5)
    monday = make_schedule(day_of_week=1)
    february = make_schedule(day_of_week=1, anchor=date(2030, 2, 1))

    assert [s.id for s in list_schedules(session, class_type.id)] == [monday.id, friday.id, february.id]
    assert [s.id for s in list_schedules(session, class_type.id, date(2030, 2, 14))] == [february.id]


@pytest.mark.integration
def test_delete_schedule_removes_its_bookings(session, make_schedule):
    schedule = make_schedule()
    other = make_schedule(day_of_week=2)
    for seat, user_id in enumerate(("ana", "bea"), start=1):
        session.add(
            ClassBooking(
                schedule_id=schedule.id,
                user_id=user_id,
                class_date=MONDAY,
                status=BookingStatus.confirmed,
                seat=seat,
            )
        )
    session.add(
        ClassBooking(
            schedule_id=other.id,
            user_id="ana",
            class_date=date(2030, 1, 8),
            status=BookingStatus.confirmed,
            seat=1,
        )
    )
    session.commit()
    schedule_id = schedule.id

    assert delete_schedule(session, schedule_id) == 2

    assert session.get(ClassSchedule, schedule_id) is None
    remaining = session.exec(select(ClassBooking)).all()
    assert [b.schedule_id for b in remaining] == [other.id]


@pytest.mark.integration
def test_delete_unknown_schedule(session):
    with pytest.raises(ScheduleNotFound):
        delete_schedule(session, 404)
