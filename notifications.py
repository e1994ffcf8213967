"""
Best-effort notification fan-out.

A notice is written to the notification collection and pushed to any open
sockets of the recipient. Callers treat this as fire-and-forget.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from pymongo.collection import Collection

from channels import ConnectionHub
from schemas import Notification, NotificationKind
from stores import Clock, to_doc, utcnow

logger = logging.getLogger(__name__)


class NotificationSink:
    def __init__(self, collection: Collection, hub: Optional[ConnectionHub] = None, clock: Clock = utcnow):
        self._collection = collection
        self._hub = hub
        self._clock = clock

    async def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> str:
        notification = Notification(user_id=user_id, kind=kind, payload=payload)
        result = await asyncio.to_thread(self._collection.insert_one, to_doc(notification, self._clock()))
        if self._hub is not None:
            await self._hub.emit_to_user(user_id, "notification:new", {"kind": kind, **payload})
        return str(result.inserted_id)

    async def notify_quietly(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        """Like notify(), but failures are logged and never raised."""
        try:
            await self.notify(user_id, kind, payload)
        except Exception:
            logger.exception("Failed to send %s notification to %s", kind, user_id)
