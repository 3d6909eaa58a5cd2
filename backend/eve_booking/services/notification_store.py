import logging
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional
from uuid import uuid4

from eve_booking.models import NotificationRecord, Reservation

logger = logging.getLogger(__name__)

INBOX_LIMIT = 100


class NotificationStore:
    """In-process inbox of booking events; delivery belongs to a separate service."""

    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
        logger.info("Notification queued user=%s category=%s title=%s", user_id, category, title)
        return record

    def notify_parties(
        self,
        reservation: Reservation,
        recipients: set,
        actor_user_id: Optional[str],
        title: str,
        body: str,
        category: str = "booking",
    ) -> List[NotificationRecord]:
        """Notify everyone in ``recipients`` except the user who caused the event."""
        created = []
        for user_id in sorted(recipients):
            if user_id and user_id != actor_user_id:
                created.append(
                    self.create(
                        user_id=user_id,
                        title=title,
                        body=body,
                        category=category,
                        deep_link=f"booking:{reservation.id}",
                    )
                )
        return created

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:INBOX_LIMIT]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None

    def clear(self) -> None:
        with self._lock:
            self._notifications.clear()


notification_store = NotificationStore()
