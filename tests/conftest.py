"""
Pytest configuration: in-memory database, recording notifier and factories.
"""
from datetime import date, datetime, time
from threading import Lock
from typing import List, Tuple

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from gymbooking.models import (
    ClassBooking,
    ClassSchedule,
    ClassType,
    Member,
    MemberRole,
    NotificationSeverity,
)
from gymbooking.services.bookings import Actor

# Wednesday; the first Monday after it is 2030-01-07.
NOW = datetime(2030, 1, 2, 10, 0)
MONDAY = date(2030, 1, 7)
JANUARY = date(2030, 1, 1)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, str, str, NotificationSeverity]] = []
        self._lock = Lock()

    def notify(self, user_id, title, message, severity=NotificationSeverity.info):
        with self._lock:
            self.sent.append((user_id, title, message, severity))

    def titles_for(self, user_id: str) -> List[str]:
        return [title for uid, title, _, _ in self.sent if uid == user_id]


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def notify(self, user_id, title, message, severity=NotificationSeverity.info):
        self.calls += 1
        raise RuntimeError("push gateway unavailable")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_member(session):
    def factory(user_id: str, role: MemberRole = MemberRole.basica_clases, blocked: bool = False):
        member = Member(user_id=user_id, display_name=user_id.title(), role=role, blocked=blocked)
        session.add(member)
        session.commit()
        session.refresh(member)
        return member

    return factory


@pytest.fixture
def class_type(session):
    class_type = ClassType(name="Crossfit")
    session.add(class_type)
    session.commit()
    session.refresh(class_type)
    return class_type


@pytest.fixture
def free_class_type(session):
    class_type = ClassType(name="Open gym", is_free_training=True)
    session.add(class_type)
    session.commit()
    session.refresh(class_type)
    return class_type


@pytest.fixture
def make_schedule(session, class_type):
    def factory(
        day_of_week: int = 1,
        start: time = time(9, 0),
        capacity: int = 2,
        anchor: date = JANUARY,
        duration: int = 60,
        class_type_id=None,
    ):
        schedule = ClassSchedule(
            class_type_id=class_type_id or class_type.id,
            day_of_week=day_of_week,
            start_time=start,
            duration_minutes=duration,
            max_capacity=capacity,
            period_anchor=anchor,
        )
        session.add(schedule)
        session.commit()
        session.refresh(schedule)
        return schedule

    return factory


@pytest.fixture
def admin(make_member):
    return make_member("admin", role=MemberRole.admin)


@pytest.fixture
def admin_actor(admin):
    return Actor(user_id=admin.user_id, role=MemberRole.admin)


def actor(member: Member) -> Actor:
    return Actor(user_id=member.user_id, role=member.role)


def instance_rows(session: Session, schedule_id: int, class_date: date):
    rows = session.exec(
        select(ClassBooking).where(
            ClassBooking.schedule_id == schedule_id, ClassBooking.class_date == class_date
        )
    ).all()
    return {b.user_id: (b.status.value, b.position) for b in rows}
