from __future__ import annotations

import logging
from typing import List, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from gymbooking.models import Notification, NotificationSeverity

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.info,
    ) -> None:
        ...


class DatabaseNotifier:
    """Writes in-app notifications. Push delivery reads the same table elsewhere."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.info,
    ) -> None:
        # Own session, so a failed write never touches the caller's transaction.
        with Session(self.engine) as session:
            session.add(
                Notification(user_id=user_id, title=title, message=message, severity=severity)
            )
            session.commit()


def safe_notify(
    notifier: Notifier,
    user_id: str,
    title: str,
    message: str,
    severity: NotificationSeverity = NotificationSeverity.info,
) -> bool:
    try:
        notifier.notify(user_id, title, message, severity)
    except Exception:
        logger.exception("Failed to notify user %s: %s", user_id, title)
        return False
    return True


def list_notifications(
    session: Session, user_id: str, unread_only: bool = False, limit: int = 50
) -> List[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.read == False)  # noqa: E712
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return list(session.exec(stmt).all())


def mark_notification_read(session: Session, notification_id: int, user_id: str) -> bool:
    notification = session.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        return False
    notification.read = True
    session.add(notification)
    session.commit()
    return True
