from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from loguru import logger
from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from ..models import PushSubscription


@dataclass
class PushMessage:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    # None sends a silent push
    sound: Optional[str] = "default"


class WebPushTransport:
    """Web Push delivery to every subscription a user registered."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        vapid_private_key: Optional[str],
        vapid_subject: str,
    ) -> None:
        self._session_factory = session_factory
        self._private_key = vapid_private_key
        self._subject = vapid_subject

    def is_available(self) -> bool:
        return bool(self._private_key)

    async def send_push(self, user_id: str, message: PushMessage) -> bool:
        if not self.is_available():
            logger.warning("push not configured, dropping message for user {}", user_id)
            return False
        return await asyncio.to_thread(self._send_sync, user_id, message)

    def _send_sync(self, user_id: str, message: PushMessage) -> bool:
        body: Dict[str, Any] = {
            "title": message.title,
            "body": message.body,
            "data": {k: str(v) for k, v in message.data.items()},
        }
        if message.sound:
            body["sound"] = message.sound
        else:
            body["silent"] = True
        payload = json.dumps(body)
        # Reminders ring like alarms, so ask for immediate delivery
        headers = {"Urgency": "high", "Topic": "reminder"} if message.sound == "alarm" else {}

        db = self._session_factory()
        try:
            subs = db.query(PushSubscription).filter(PushSubscription.user_id == user_id).all()
            if not subs:
                logger.info("user {} has no push subscriptions", user_id)
                return False

            sent = 0
            for sub in subs:
                try:
                    webpush(
                        subscription_info={
                            "endpoint": sub.endpoint,
                            "keys": {"p256dh": sub.p256dh, "auth": sub.auth},
                        },
                        data=payload,
                        vapid_private_key=self._private_key,
                        vapid_claims={"sub": self._subject},
                        headers=headers,
                    )
                    sent += 1
                except WebPushException as exc:
                    status = exc.response.status_code if exc.response is not None else None
                    if status in (404, 410):
                        logger.warning("deleting expired push subscription {} ({})", sub.id, status)
                        db.delete(sub)
                        db.commit()
                    else:
                        logger.warning("push to subscription {} failed: {}", sub.id, exc)
                except Exception:
                    logger.exception("push send error for subscription {}", sub.id)

            logger.info("push sent to {}/{} subscriptions for user {}", sent, len(subs), user_id)
            return sent > 0
        finally:
            db.close()
