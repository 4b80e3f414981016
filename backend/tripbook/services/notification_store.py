import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from tripbook.models import NotificationRecord
from tripbook.services.push_sender import PushSender

logger = logging.getLogger(__name__)

# (title, body) per vertical and event. Bodies are formatted with the notify() context.
TEMPLATES: Dict[str, Dict[str, Tuple[str, str]]] = {
    "guide": {
        "booking_requested": ("New Tour Request", "{requester_id} wants to book a tour for {party_size} on {window_start}."),
        "booking_discussing": ("Tour Request Under Discussion", "Your tour request is being discussed."),
        "booking_approved": ("Tour Request Approved!", "Your tour on {window_start} has been confirmed."),
        "booking_rejected": ("Tour Request Declined", "Your tour request was declined. {reason}"),
        "booking_canceled": ("Tour Canceled", "The tour on {window_start} was canceled. {reason}"),
        "booking_started": ("Tour Started", "Your tour has started. Enjoy!"),
        "booking_completed": ("Tour Completed", "Your tour is complete. You can now leave a review."),
        "review_received": ("New Tour Review", "You received a {rating}-star review."),
    },
    "stay": {
        "booking_requested": ("New Stay Request", "{requester_id} wants to stay with {party_size} guest(s) from {window_start}."),
        "booking_discussing": ("Stay Request Under Discussion", "Your stay request is being discussed."),
        "booking_approved": ("Stay Request Approved!", "Your stay from {window_start} has been confirmed."),
        "booking_rejected": ("Stay Request Declined", "Your stay request was declined. {reason}"),
        "booking_canceled": ("Stay Canceled", "The stay from {window_start} was canceled. {reason}"),
        "booking_started": ("Guest Checked In", "Check-in recorded. Have a great stay!"),
        "booking_completed": ("Stay Completed", "Check-out recorded. You can now leave a review."),
        "review_received": ("New Stay Review", "You received a {rating}-star review."),
    },
}


class _Context(dict):
    def __missing__(self, key: str) -> str:
        return ""


class NotificationStore:
    def __init__(self, push_sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}
        self._push_sender = push_sender or PushSender()

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def create(
        self,
        user_id: str,
        event_kind: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            event_kind=event_kind,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
            payload=dict(payload or {}),
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        invalid_tokens = self._push_sender.send_notification(
            tokens=tokens,
            title=title,
            body=body,
            data={
                "notification_id": record.id,
                "event_kind": event_kind,
                "category": category,
                "deep_link": deep_link or "",
            },
        )
        if invalid_tokens:
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


class NotificationDispatcher:
    """Turns booking events into stored notifications. Never raises to the caller."""

    def __init__(self, store: NotificationStore):
        self.store = store

    def notify(self, user_id: str, event_kind: str, *, vertical: str, booking_id: str, **context: Any) -> Optional[NotificationRecord]:
        try:
            title, body = TEMPLATES[vertical][event_kind]
            values = _Context({k: str(v) for k, v in context.items() if v is not None})
            category = "review" if event_kind.startswith("review_") else "booking"
            return self.store.create(
                user_id=user_id,
                event_kind=event_kind,
                title=title,
                body=body.format_map(values).strip(),
                category=category,
                deep_link=f"{vertical}/bookings/{booking_id}",
                payload={"vertical": vertical, "booking_id": booking_id, **context},
            )
        except Exception:
            logger.exception("Failed to notify %s about %s for booking %s", user_id, event_kind, booking_id)
            return None
