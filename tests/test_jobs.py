from datetime import date, datetime, time

import pytest
from sqlmodel import select

from gymbooking.models import BookingStatus, ClassBooking, ClassSchedule
from gymbooking.services import jobs
from gymbooking.services.errors import InvalidRequest
from gymbooking.services.jobs import (
    duplicate_templates_for_next_period,
    expire_stale_bookings,
    run_roll_forward,
    send_morning_reminders,
    send_reminders,
    send_upcoming_reminders,
)

from tests.conftest import JANUARY, MONDAY, FailingNotifier


def _book(session, schedule, user_id, class_date=MONDAY, seat=1):
    booking = ClassBooking(
        schedule_id=schedule.id,
        user_id=user_id,
        class_date=class_date,
        status=BookingStatus.confirmed,
        seat=seat,
    )
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def _flags(session, column):
    return dict(session.exec(select(ClassBooking.user_id, column)).all())


@pytest.mark.integration
def test_duplicate_templates_is_idempotent(session, make_schedule):
    make_schedule(day_of_week=1)
    make_schedule(day_of_week=3, start=time(18, 0), capacity=12)
    synthetic = make_schedule(day_of_week=2, capacity=1)
    synthetic.is_synthetic = True
    session.add(synthetic)
    session.commit()

    first = duplicate_templates_for_next_period(session, date(2030, 1, 20))
    second = duplicate_templates_for_next_period(session, date(2030, 1, 21))

    assert (first.processed, first.skipped) == (2, 0)
    assert (second.processed, second.skipped) == (0, 2)
    copies = session.exec(
        select(ClassSchedule)
        .where(ClassSchedule.period_anchor == date(2030, 2, 1))
        .order_by(ClassSchedule.day_of_week)
    ).all()
    assert [(c.day_of_week, c.start_time, c.max_capacity) for c in copies] == [
        (1, time(9, 0), 2),
        (3, time(18, 0), 12),
    ]
    assert not any(c.is_synthetic for c in copies)


@pytest.mark.integration
def test_expire_removes_only_past_classes_and_empty_free_trainings(session, make_schedule):
    schedule = make_schedule()
    _book(session, schedule, "ana", MONDAY)
    _book(session, schedule, "bea", date(2030, 1, 21))
    synthetic = make_schedule(day_of_week=2, capacity=1)
    synthetic.is_synthetic = True
    session.add(synthetic)
    session.commit()
    synthetic_id = synthetic.id

    report = expire_stale_bookings(session, datetime(2030, 1, 14))

    assert report.ok
    assert report.processed == 1
    assert [b.user_id for b in session.exec(select(ClassBooking)).all()] == ["bea"]
    assert session.get(ClassSchedule, synthetic_id) is None
    assert session.get(ClassSchedule, schedule.id) is not None


@pytest.mark.integration
@pytest.mark.parametrize(
    "now,expected",
    [
        (datetime(2030, 1, 7, 8, 0), 1),
        (datetime(2030, 1, 7, 8, 5), 1),
        (datetime(2030, 1, 7, 7, 50), 0),
        (datetime(2030, 1, 6, 8, 0), 0),
    ],
)
def test_upcoming_reminder_window(session, notifier, make_schedule, now, expected):
    _book(session, make_schedule(), "ana")

    report = send_upcoming_reminders(session, notifier, now)

    assert report.processed == expected
    assert len(notifier.titles_for("ana")) == expected


@pytest.mark.integration
def test_upcoming_reminder_is_sent_once(session, notifier, make_schedule):
    schedule = make_schedule()
    _book(session, schedule, "ana")
    session.add(
        ClassBooking(
            schedule_id=schedule.id,
            user_id="bea",
            class_date=MONDAY,
            status=BookingStatus.waitlist,
            position=1,
        )
    )
    session.commit()
    now = datetime(2030, 1, 7, 8, 0)

    send_upcoming_reminders(session, notifier, now)
    send_upcoming_reminders(session, notifier, datetime(2030, 1, 7, 8, 3))

    assert notifier.titles_for("ana") == ["Class in 1 hour"]
    assert notifier.titles_for("bea") == []
    assert _flags(session, ClassBooking.reminder_sent) == {"ana": True, "bea": False}


@pytest.mark.integration
def test_failed_reminder_is_released_for_retry(session, notifier, make_schedule):
    _book(session, make_schedule(), "ana")
    now = datetime(2030, 1, 7, 8, 0)

    report = send_upcoming_reminders(session, FailingNotifier(), now)

    assert not report.ok
    assert _flags(session, ClassBooking.reminder_sent) == {"ana": False}

    retry = send_upcoming_reminders(session, notifier, now)
    assert retry.processed == 1
    assert notifier.titles_for("ana") == ["Class in 1 hour"]


@pytest.mark.integration
def test_morning_digest_groups_classes_per_member(session, notifier, make_schedule):
    early = make_schedule()
    late = make_schedule(start=time(18, 0))
    _book(session, early, "ana")
    _book(session, late, "ana")
    _book(session, early, "bea", seat=2)

    report = send_morning_reminders(session, notifier, MONDAY)
    again = send_morning_reminders(session, notifier, MONDAY)

    assert report.processed == 2
    assert again.processed == 0
    messages = {uid: message for uid, _, message, _ in notifier.sent}
    assert messages["ana"] == "You have 2 classes today: Crossfit at 09:00, Crossfit at 18:00"
    assert messages["bea"] == "You have Crossfit at 09:00 today"


@pytest.mark.integration
def test_roll_forward_steps_are_isolated(session, make_schedule, monkeypatch):
    schedule = make_schedule(anchor=JANUARY)
    _book(session, schedule, "ana", MONDAY)

    def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(jobs, "duplicate_templates_for_next_period", broken)

    duplicate, expire = run_roll_forward(session, datetime(2030, 2, 12, 3, 0))

    assert not duplicate.ok
    assert duplicate.failures == ["boom"]
    assert expire.ok
    assert expire.processed == 1


@pytest.mark.integration
def test_roll_forward_defaults_cutoff_to_week_start(session, make_schedule):
    schedule = make_schedule(anchor=JANUARY)
    _book(session, schedule, "ana", MONDAY)

    reports = run_roll_forward(session, datetime(2030, 1, 7, 3, 0))

    assert [r.name for r in reports] == ["duplicate_templates", "expire_stale_bookings"]
    assert all(r.ok for r in reports)
    assert reports[0].processed == 1
    assert reports[1].processed == 0


@pytest.mark.unit
def test_unknown_reminder_kind(session, notifier):
    with pytest.raises(InvalidRequest):
        send_reminders(session, notifier, datetime(2030, 1, 7, 8, 0), kind="weekly")
