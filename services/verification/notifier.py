"""
services/verification/notifier.py
Outbound side effects of verification transitions: in-app notifications for
subjects and admins, and transactional mail through Celery.

Both are best-effort. They run after the primary commit and a failure is
logged and counted instead of raised.
"""

import logging
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import sibling_session
from shared.models.models import Notification, NotificationType, User, UserRole

logger = logging.getLogger(__name__)

SIDE_EFFECT_FAILURES = Counter(
    "verification_side_effect_failures_total",
    "Best-effort side effects (mail, notifications) that failed",
    ["kind"],
)


class Mailer(Protocol):
    def send(self, to: str, template_name: str, data: Dict[str, Any]) -> None: ...


class CeleryMailer:
    """Fire-and-forget: enqueue and return without waiting on delivery."""

    def send(self, to: str, template_name: str, data: Dict[str, Any]) -> None:
        from tasks.notification_tasks import send_email

        try:
            send_email.delay(to_email=to, template_name=template_name, data=data)
        except Exception as e:
            SIDE_EFFECT_FAILURES.labels(kind="mail").inc()
            logger.warning(f"Could not enqueue '{template_name}' mail: {e}")


_mailer = CeleryMailer()


def get_mailer() -> Mailer:
    """FastAPI dependency; overridden in tests."""
    return _mailer


class Notifier:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> bool:
        try:
            async with sibling_session(self.db) as session:
                session.add(Notification(user_id=user_id, type=type, title=title, body=body, data=data))
                await session.commit()
        except SQLAlchemyError:
            self._failed(type)
            return False
        return True

    async def notify_admins(
        self,
        type: NotificationType,
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> int:
        """One notification per active admin. Returns how many were written."""
        try:
            async with sibling_session(self.db) as session:
                admin_ids = (await session.scalars(
                    select(User.id).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
                )).all()
                if not admin_ids:
                    logger.warning("No active admins to notify for %s", type.value)
                    return 0
                session.add_all(
                    Notification(user_id=admin_id, type=type, title=title, body=body, data=data)
                    for admin_id in admin_ids
                )
                await session.commit()
        except SQLAlchemyError:
            self._failed(type)
            return 0
        return len(admin_ids)

    @staticmethod
    def _failed(type: NotificationType) -> None:
        SIDE_EFFECT_FAILURES.labels(kind="notification").inc()
        logger.exception("Notification write failed: %s", type.value)
