"""
tasks/notification_tasks.py
Celery task for push delivery of in-app notifications.

The in-app row is already committed by the booking operation; this task only
delivers it over FCM and flags it as pushed. Safe to run twice.

Usage (after commit):
    from tasks.notification_tasks import send_push_notification
    send_push_notification.delay(str(notification.id), user.fcm_token, title, body)
"""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy import update

from config.database import task_session
from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _init_firebase() -> None:
    import firebase_admin
    from firebase_admin import credentials

    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)


def _send_fcm(fcm_token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        from firebase_admin import messaging

        _init_firebase()
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message)
        return True
    except Exception as e:
        logger.warning(f"FCM send failed: {e}")
        return False


async def _mark_pushed(notification_id: str) -> None:
    from shared.models.models import Notification

    async with task_session() as db:
        await db.execute(
            update(Notification)
            .where(Notification.id == uuid.UUID(notification_id))
            .values(sent_push=True)
        )


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_push_notification(
    self,
    notification_id: str,
    fcm_token: str,
    title: str,
    body: str,
    data: Optional[dict] = None,
):
    """Deliver one notification over FCM, retrying with exponential backoff."""
    success = _send_fcm(fcm_token, title, body, data)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    asyncio.run(_mark_pushed(notification_id))
    logger.info(f"Push delivered for notification {notification_id}")
