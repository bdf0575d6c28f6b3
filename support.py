from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from models import RequestStatus, SupportRequest

logger = logging.getLogger("forexdesk.support")

REPLY_AUTO = "auto"
REPLY_ADMIN = "admin"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SupportDesk:
    """Conversation history and the human reply queue."""

    def __init__(self, store: Any, notifier: Any) -> None:
        self.store = store
        self.notifier = notifier

    def record_auto_reply(
        self,
        user_id: str,
        topic: str,
        message: str,
        image_ref: str | None,
        reply: str,
        now: datetime | None = None,
    ) -> SupportRequest:
        return self.store.insert_support_request(
            request_id=str(uuid.uuid4()),
            user_id=user_id,
            topic=topic,
            message=message,
            image_ref=image_ref,
            status=RequestStatus.ANSWERED,
            reply=reply,
            reply_source=REPLY_AUTO,
            now=now or _now_utc(),
        )

    def open_request(
        self,
        user_id: str,
        topic: str,
        message: str,
        image_ref: str | None = None,
        now: datetime | None = None,
    ) -> SupportRequest:
        request = self.store.insert_support_request(
            request_id=str(uuid.uuid4()),
            user_id=user_id,
            topic=topic,
            message=message,
            image_ref=image_ref,
            status=RequestStatus.AWAITING_ADMIN,
            reply=None,
            reply_source=None,
            now=now or _now_utc(),
        )
        logger.info("Support request %s opened by %s.", request.id, user_id)
        self.notifier.notify_admin(
            f"New {topic} request from user {user_id} ({request.id}):\n{message}"
        )
        return request

    def reply(self, request_id: str, text: str, now: datetime | None = None) -> SupportRequest | None:
        request = self.store.set_support_reply(
            request_id,
            reply=text,
            reply_source=REPLY_ADMIN,
            now=now or _now_utc(),
        )
        if request is None:
            return None
        logger.info("Admin replied to support request %s.", request_id)
        self.notifier.notify(request.user_id, f"Reply from our team:\n{text}")
        return request

    def history(self, user_id: str, limit: int = 50) -> list[SupportRequest]:
        return self.store.fetch_support_requests(user_id=user_id, limit=limit)

    def queue(self, status: RequestStatus | None = RequestStatus.AWAITING_ADMIN, limit: int = 50) -> list[SupportRequest]:
        return self.store.fetch_support_requests(status=status, limit=limit)
