import logging
from typing import Any, Dict, List, Optional

import httpx

from lendingdesk.config import settings
from lendingdesk.database import get_db_connection
from lendingdesk.errors import NotFound
from lendingdesk.models import now, to_db

logger = logging.getLogger(__name__)


class NotificationSink:
    """Stores in-app notifications and optionally forwards them to a webhook.

    Fire-and-forget: every failure is logged and swallowed.
    """

    def __init__(
        self,
        db_file: Optional[str] = None,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.db_file = db_file
        self.webhook_url = webhook_url if webhook_url is not None else settings.notify_webhook_url
        self.timeout = timeout if timeout is not None else settings.notify_timeout

    def notify(self, user_id: int, subject: str, message: str) -> None:
        try:
            conn = get_db_connection(self.db_file)
            try:
                conn.execute(
                    "INSERT INTO notifications (user_id, subject, message, status) VALUES (?, ?, ?, 'pending')",
                    (user_id, subject, message),
                )
            finally:
                conn.close()
        except Exception:
            logger.exception("Notification for user %s was not stored", user_id)

        if self.webhook_url:
            self._post(user_id, subject, message)

    def _post(self, user_id: int, subject: str, message: str) -> None:
        payload = {"user_id": user_id, "subject": subject, "message": message}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Notification webhook failed for user %s: %s", user_id, e)
        except Exception:
            logger.exception("Notification webhook failed for user %s", user_id)


def list_notifications(conn, user_id: int, unread_only: bool = False) -> List[Dict[str, Any]]:
    query = "SELECT id, user_id, subject, message, status, created_at, read_at FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND status = 'pending'"
    rows = conn.execute(query + " ORDER BY id DESC", (user_id,)).fetchall()
    return [dict(r) for r in rows]


def mark_read(conn, notification_id: int, user_id: int) -> Dict[str, Any]:
    row = conn.execute(
        "SELECT id FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
    ).fetchone()
    if row is None:
        raise NotFound(f"Notification {notification_id} not found.")
    conn.execute(
        "UPDATE notifications SET status = 'read', read_at = ? WHERE id = ? AND status = 'pending'",
        (to_db(now()), notification_id),
    )
    updated = conn.execute(
        "SELECT id, user_id, subject, message, status, created_at, read_at FROM notifications WHERE id = ?",
        (notification_id,),
    ).fetchone()
    return dict(updated)
