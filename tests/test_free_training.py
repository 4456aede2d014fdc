from datetime import date, time

import pytest
from sqlmodel import select

from gymbooking.models import BookingStatus, ClassBooking, ClassSchedule, MemberRole
from gymbooking.services.bookings import cancel
from gymbooking.services.errors import ClassTypeNotFound, InvalidRequest, QuotaExceeded
from gymbooking.services.free_training import list_free_trainings, reserve_free_training
from gymbooking.services.subscriptions import DatabaseSubscriptionStatus

from tests.conftest import MONDAY, NOW, actor


@pytest.fixture
def train(session, notifier, free_class_type):
    def _train(member, class_date=MONDAY, start=time(12, 0), class_type_id=None, now=NOW):
        return reserve_free_training(
            session=session,
            class_type_id=class_type_id or free_class_type.id,
            class_date=class_date,
            start_time=start,
            user_id=member.user_id,
            actor=actor(member),
            subscriptions=DatabaseSubscriptionStatus(session),
            notifier=notifier,
            now=now,
        )

    return _train


def _synthetic_schedules(session):
    return session.exec(
        select(ClassSchedule).where(ClassSchedule.is_synthetic == True)  # noqa: E712
    ).all()


@pytest.mark.integration
def test_free_training_creates_one_seat_schedule(session, notifier, make_member, train):
    ana = make_member("ana")

    result = train(ana)

    assert result.status == BookingStatus.confirmed
    (schedule,) = _synthetic_schedules(session)
    assert schedule.max_capacity == 1
    assert schedule.duration_minutes == 60
    assert schedule.day_of_week == 1
    assert schedule.start_time == time(12, 0)
    assert schedule.period_anchor == date(2030, 1, 1)
    assert result.booking.schedule_id == schedule.id
    assert notifier.titles_for("ana") == ["Booking confirmed"]


@pytest.mark.integration
def test_cancelling_free_training_removes_its_schedule(session, notifier, make_member, train):
    ana = make_member("ana")
    schedule_id = train(ana).booking.schedule_id

    cancel(
        session=session,
        schedule_id=schedule_id,
        class_date=MONDAY,
        user_id="ana",
        actor=actor(ana),
        notifier=notifier,
        now=NOW,
    )

    assert _synthetic_schedules(session) == []
    assert session.exec(select(ClassBooking)).all() == []


@pytest.mark.integration
def test_two_members_can_train_in_the_same_slot(session, make_member, train):
    train(make_member("ana"))
    train(make_member("bea"))

    schedules = _synthetic_schedules(session)
    assert len(schedules) == 2
    assert len({s.id for s in schedules}) == 2


@pytest.mark.integration
def test_free_training_rejects_past_slots_and_regular_classes(make_member, class_type, train):
    ana = make_member("ana")

    with pytest.raises(InvalidRequest):
        train(ana, class_date=NOW.date(), start=time(9, 0))
    with pytest.raises(InvalidRequest):
        train(ana, class_type_id=class_type.id)
    with pytest.raises(ClassTypeNotFound):
        train(ana, class_type_id=999)


@pytest.mark.integration
def test_rejected_free_training_leaves_no_schedule(session, make_member, train):
    pepe = make_member("pepe", role=MemberRole.basica)

    with pytest.raises(QuotaExceeded):
        train(pepe)

    assert _synthetic_schedules(session) == []


@pytest.mark.integration
def test_list_free_trainings_only_for_the_member(session, free_class_type, make_member, train):
    ana, bea = make_member("ana"), make_member("bea")
    train(ana, start=time(18, 0))
    train(ana, start=time(7, 0))
    train(bea)

    rows = list_free_trainings(session, free_class_type.id, "ana", NOW.date())

    assert [(b.user_id, s.start_time) for b, s in rows] == [
        ("ana", time(7, 0)),
        ("ana", time(18, 0)),
    ]
