from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from chatfeed.core.settings import S
from chatfeed.core.time import now_iso
from chatfeed.metrics import LIVE_CONNECTIONS, NOTIFICATIONS_DELIVERED, NOTIFICATIONS_DROPPED

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    NEW_POST = "newPost"
    POST_LIKED = "postLiked"


class QueueChannel:
    """
    One live connection. Events are queued on the connection's own event
    loop, so ``send`` may be called from any thread.
    """

    def __init__(self, user_id: str, loop: Optional[asyncio.AbstractEventLoop] = None, maxsize: Optional[int] = None) -> None:
        self.user_id = user_id
        self.loop = loop or asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or S.sse_queue_size)

    def send(self, event: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self._offer, event)

    def _offer(self, event: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            NOTIFICATIONS_DROPPED.labels(event=event.get("type", "unknown")).inc()
            logger.warning("live queue full for user %s; dropped %s", self.user_id, event.get("type"))

    async def get(self, timeout: float) -> Dict[str, Any]:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class ConnectionRegistry:
    """
    Per-process map of user id -> live channels. Entries are routing hints
    only; a user may hold several channels (tabs, devices).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[str, List[Any]] = {}
        self._owner: Dict[Any, str] = {}

    def register(self, user_id: str, channel: Any) -> None:
        with self._lock:
            if channel in self._owner:
                return
            self._owner[channel] = user_id
            self._by_user.setdefault(user_id, []).append(channel)
            LIVE_CONNECTIONS.set(len(self._owner))

    def unregister(self, channel: Any) -> None:
        with self._lock:
            user_id = self._owner.pop(channel, None)
            if user_id is None:
                return
            conns = self._by_user.get(user_id, [])
            if channel in conns:
                conns.remove(channel)
            if not conns:
                self._by_user.pop(user_id, None)
            LIVE_CONNECTIONS.set(len(self._owner))

    def channels_for(self, user_id: str) -> List[Any]:
        with self._lock:
            return list(self._by_user.get(user_id, []))

    def online_users(self) -> List[str]:
        with self._lock:
            return sorted(self._by_user)


class NotificationDispatcher:
    """Fire-and-forget push of live events; nothing here may fail a request."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def notify(self, event_type: EventType, payload: Dict[str, Any], recipient_ids: Iterable[str]) -> None:
        try:
            event_type = EventType(event_type)
        except ValueError:
            NOTIFICATIONS_DROPPED.labels(event=str(event_type)).inc()
            logger.error("unknown live event type %r; not delivered", event_type)
            return
        event = {"type": event_type.value, "data": payload, "ts": now_iso()}
        for user_id in recipient_ids:
            for channel in self.registry.channels_for(user_id):
                try:
                    channel.send(event)
                except Exception:
                    NOTIFICATIONS_DROPPED.labels(event=event_type.value).inc()
                    logger.warning("failed to push %s to user %s", event_type.value, user_id, exc_info=True)
                    continue
                NOTIFICATIONS_DELIVERED.labels(event=event_type.value).inc()
