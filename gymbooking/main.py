import logging
from datetime import date as date_type
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from starlette.responses import JSONResponse
from sqlmodel import Session, select

from gymbooking.auth import actor_for, get_current_member, require_roles, resolve_target_user
from gymbooking.db import create_db_and_tables, engine, get_session
from gymbooking.models import ClassBooking, ClassSchedule, ClassType, Member, MemberRole
from gymbooking.settings import settings
from gymbooking.services.bookings import (
    cancel,
    list_instance_bookings,
    list_user_bookings,
    reserve,
    reset_future_bookings,
)
from gymbooking.services.errors import BookingError, ClassTypeNotFound, ScheduleNotFound
from gymbooking.services.free_training import list_free_trainings, reserve_free_training
from gymbooking.services.instances import InstanceAvailability, build_instances_for_class
from gymbooking.services.jobs import run_roll_forward, send_reminders
from gymbooking.services.notifications import (
    DatabaseNotifier,
    Notifier,
    list_notifications,
    mark_notification_read,
)
from gymbooking.services.quota import entitlement_for, quota_state
from gymbooking.services.subscriptions import (
    DatabaseSubscriptionStatus,
    ensure_bootstrap_admin,
    register_member,
    require_member,
    set_blocked,
    set_role,
)
from gymbooking.services.templates import (
    create_class_type,
    create_schedule,
    delete_schedule,
    list_class_types,
    list_schedules,
)
from gymbooking.time_utils import local_now, parse_hm, parse_ymd, time_to_hm, weekday_label

logger = logging.getLogger(__name__)

app = FastAPI(title="Gym class booking")

ADMIN_ONLY = [MemberRole.admin]


def get_notifier() -> Notifier:
    return DatabaseNotifier(engine)


def get_now() -> datetime:
    return local_now()


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def on_startup() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    create_db_and_tables()
    with Session(engine) as session:
        ensure_bootstrap_admin(session=session, user_id=settings.bootstrap_admin_user_id)
    logger.info("Gym class booking service started")


def _parse_date(value: str) -> date_type:
    try:
        return parse_ymd(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format")


def _parse_role(value: str) -> MemberRole:
    try:
        return MemberRole(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid role")


def _booking_dict(booking: ClassBooking) -> dict:
    return {
        "id": booking.id,
        "schedule_id": booking.schedule_id,
        "user_id": booking.user_id,
        "class_date": booking.class_date.isoformat(),
        "status": booking.status,
        "position": booking.position,
        "created_at": booking.created_at.isoformat(),
    }


def _schedule_dict(schedule: ClassSchedule) -> dict:
    return {
        "id": schedule.id,
        "class_type_id": schedule.class_type_id,
        "day_of_week": schedule.day_of_week,
        "day_label": weekday_label(schedule.day_of_week),
        "start_hm": time_to_hm(schedule.start_time),
        "duration_minutes": schedule.duration_minutes,
        "max_capacity": schedule.max_capacity,
        "period_anchor": schedule.period_anchor.isoformat(),
    }


def _instance_dict(item: InstanceAvailability) -> dict:
    instance = item.instance
    return {
        "schedule_id": instance.schedule_id,
        "date": instance.date.isoformat(),
        "starts_at": instance.starts_at.isoformat(),
        "ends_at": instance.ends_at.isoformat(),
        "start_hm": time_to_hm(instance.starts_at.time()),
        "capacity": instance.capacity,
        "confirmed": item.confirmed,
        "waitlisted": item.waitlisted,
        "available": item.available,
    }


def _quota_dict(session: Session, member: Member, on: date_type) -> dict:
    state = quota_state(session, member.user_id, member.role, on)
    return {
        "user_id": member.user_id,
        "role": member.role,
        "entitlement": entitlement_for(member.role).kind,
        "period_start": state.period_start.isoformat(),
        "limit": state.limit,
        "confirmed": state.confirmed_count,
        "waitlisted": state.waitlisted_count,
        "remaining": state.remaining,
        "unlimited": state.limit is None,
    }


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/class-types")
def api_list_class_types(
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
):
    return [
        {
            "id": c.id,
            "name": c.name,
            "description": c.description,
            "is_free_training": c.is_free_training,
        }
        for c in list_class_types(session)
    ]


@app.get("/api/classes/{class_type_id}/instances")
def api_class_instances(
    class_type_id: int,
    weeks: Optional[int] = None,
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    items = build_instances_for_class(
        session=session, class_type_id=class_type_id, now=now, horizon_weeks=weeks
    )
    return [_instance_dict(item) for item in items]


@app.post("/api/bookings")
def api_reserve(
    schedule_id: int = Form(...),
    class_date: str = Form(...),
    user_id: Optional[str] = Form(None),
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    target = resolve_target_user(member, user_id)
    if target != member.user_id:
        require_member(session, target)
    result = reserve(
        session=session,
        schedule_id=schedule_id,
        class_date=_parse_date(class_date),
        user_id=target,
        actor=actor_for(member),
        subscriptions=DatabaseSubscriptionStatus(session),
        notifier=notifier,
        now=now,
    )
    return _booking_dict(result.booking)


@app.post("/api/bookings/cancel")
def api_cancel(
    schedule_id: int = Form(...),
    class_date: str = Form(...),
    user_id: Optional[str] = Form(None),
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    target = resolve_target_user(member, user_id)
    cancel(
        session=session,
        schedule_id=schedule_id,
        class_date=_parse_date(class_date),
        user_id=target,
        actor=actor_for(member),
        notifier=notifier,
        now=now,
    )
    return {"cancelled": True}


@app.post("/api/free-training")
def api_reserve_free_training(
    class_type_id: int = Form(...),
    class_date: str = Form(...),
    start_hm: str = Form(...),
    user_id: Optional[str] = Form(None),
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    target = resolve_target_user(member, user_id)
    if target != member.user_id:
        require_member(session, target)
    try:
        start_time = parse_hm(start_hm)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid time format")
    result = reserve_free_training(
        session=session,
        class_type_id=class_type_id,
        class_date=_parse_date(class_date),
        start_time=start_time,
        user_id=target,
        actor=actor_for(member),
        subscriptions=DatabaseSubscriptionStatus(session),
        notifier=notifier,
        now=now,
    )
    return _booking_dict(result.booking)


@app.get("/api/classes/{class_type_id}/free-training")
def api_my_free_trainings(
    class_type_id: int,
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    rows = list_free_trainings(session, class_type_id, member.user_id, now.date())
    return [
        {**_booking_dict(booking), "start_hm": time_to_hm(schedule.start_time)}
        for booking, schedule in rows
    ]


@app.get("/api/me/bookings")
def api_my_bookings(
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    rows = list_user_bookings(session, member.user_id, now.date())
    return [
        {
            **_booking_dict(booking),
            "class_name": class_type.name,
            "start_hm": time_to_hm(schedule.start_time),
            "duration_minutes": schedule.duration_minutes,
        }
        for booking, schedule, class_type in rows
    ]


@app.get("/api/me/quota")
def api_my_quota(
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    return _quota_dict(session, member, now.date())


@app.get("/api/me/notifications")
def api_my_notifications(
    unread: bool = False,
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
):
    return [
        {
            "id": n.id,
            "title": n.title,
            "message": n.message,
            "severity": n.severity,
            "read": n.read,
            "created_at": n.created_at.isoformat(),
        }
        for n in list_notifications(session, member.user_id, unread_only=unread)
    ]


@app.post("/api/me/notifications/{notification_id}/read")
def api_mark_notification_read(
    notification_id: int,
    member: Member = Depends(get_current_member),
    session: Session = Depends(get_session),
):
    if not mark_notification_read(session, notification_id, member.user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"read": True}


@app.post("/api/admin/class-types/create")
def api_admin_create_class_type(
    name: str = Form(...),
    description: str = Form(""),
    is_free_training: bool = Form(False),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    class_type = create_class_type(session, name, description, is_free_training)
    return {"id": class_type.id, "name": class_type.name}


@app.get("/api/admin/schedules")
def api_admin_schedules(
    class_type_id: int,
    period: Optional[str] = None,
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    if not session.get(ClassType, class_type_id):
        raise ClassTypeNotFound()
    anchor = _parse_date(period) if period else None
    return [_schedule_dict(s) for s in list_schedules(session, class_type_id, anchor)]


@app.post("/api/admin/schedules/create")
def api_admin_create_schedule(
    class_type_id: int = Form(...),
    day_of_week: int = Form(...),
    start_hm: str = Form(...),
    duration_minutes: int = Form(60),
    max_capacity: int = Form(20),
    period: Optional[str] = Form(None),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    try:
        start_time = parse_hm(start_hm)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid time format")
    schedule = create_schedule(
        session=session,
        class_type_id=class_type_id,
        day_of_week=day_of_week,
        start_time=start_time,
        duration_minutes=duration_minutes,
        max_capacity=max_capacity,
        period_anchor=_parse_date(period) if period else now.date(),
    )
    return _schedule_dict(schedule)


@app.post("/api/admin/schedules/{schedule_id}/delete")
def api_admin_delete_schedule(
    schedule_id: int,
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    removed = delete_schedule(session, schedule_id)
    return {"deleted": True, "bookings_removed": removed}


@app.get("/api/admin/schedules/{schedule_id}/roster")
def api_admin_roster(
    schedule_id: int,
    date: str,
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    if not session.get(ClassSchedule, schedule_id):
        raise ScheduleNotFound()
    bookings = list_instance_bookings(session, schedule_id, _parse_date(date))
    names = {
        m.user_id: m.display_name
        for m in session.exec(
            select(Member).where(Member.user_id.in_([b.user_id for b in bookings]))
        ).all()
    }
    return [
        {**_booking_dict(b), "display_name": names.get(b.user_id, b.user_id)} for b in bookings
    ]


@app.post("/api/admin/members/create")
def api_admin_create_member(
    user_id: str = Form(...),
    display_name: str = Form(""),
    role: str = Form(MemberRole.basica.value),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    created = register_member(session, user_id, display_name, _parse_role(role))
    return {"user_id": created.user_id, "role": created.role, "blocked": created.blocked}


@app.post("/api/admin/members/{target_user_id}/role")
def api_admin_set_role(
    target_user_id: str,
    role: str = Form(...),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    updated = set_role(session, target_user_id, _parse_role(role))
    return {"user_id": updated.user_id, "role": updated.role}


@app.post("/api/admin/members/{target_user_id}/blocked")
def api_admin_set_blocked(
    target_user_id: str,
    blocked: bool = Form(...),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
):
    updated = set_blocked(session, target_user_id, blocked)
    return {"user_id": updated.user_id, "blocked": updated.blocked}


@app.get("/api/admin/members/{target_user_id}/quota")
def api_admin_member_quota(
    target_user_id: str,
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    return _quota_dict(session, require_member(session, target_user_id), now.date())


@app.post("/api/admin/members/{target_user_id}/reset-bookings")
def api_admin_reset_bookings(
    target_user_id: str,
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    require_member(session, target_user_id)
    removed = reset_future_bookings(session, target_user_id, now.date(), notifier)
    return {"bookings_removed": removed}


@app.post("/api/jobs/roll-forward")
def api_job_roll_forward(
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
    now: datetime = Depends(get_now),
):
    reports = run_roll_forward(session, now)
    return {"success": all(r.ok for r in reports), "steps": [r.to_dict() for r in reports]}


@app.post("/api/jobs/reminders")
def api_job_reminders(
    kind: str = Form("hourly"),
    member: Member = Depends(require_roles(ADMIN_ONLY)),
    session: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
    now: datetime = Depends(get_now),
):
    report = send_reminders(session, notifier, now, kind)
    return {"success": report.ok, "steps": [report.to_dict()]}
