from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from chatfeed.core.errors import NotFound
from chatfeed.core.retry import run_with_retry
from chatfeed.core.time import new_id
from chatfeed.models import CurrentUser
from chatfeed.services.conversations import ConversationIndex
from chatfeed.services.feed import LikeResult, PostStore
from chatfeed.services.notifications import EventType, NotificationDispatcher

logger = logging.getLogger(__name__)


class Interactions:
    """
    Request-level orchestration: store operation, then best-effort fan-out
    to everyone the acting user chats with.

    Like, comment and delete retry the storage step on TransientError. Each
    request carries one idempotency key across attempts, so a retry never
    applies a write twice. Notification happens once, after the storage step
    has settled.
    """

    def __init__(
        self,
        store: PostStore,
        conversations: ConversationIndex,
        dispatcher: NotificationDispatcher,
        retry_attempts: Optional[int] = None,
        retry_wait_seconds: Optional[float] = None,
    ) -> None:
        self.store = store
        self.conversations = conversations
        self.dispatcher = dispatcher
        self.retry_attempts = retry_attempts
        self.retry_wait_seconds = retry_wait_seconds

    def _retry(self, op):
        return run_with_retry(op, attempts=self.retry_attempts, wait_seconds=self.retry_wait_seconds)

    def _fan_out(self, actor_id: str, event_type: EventType, payload: Dict[str, Any]) -> None:
        try:
            audience = self.conversations.audience_for(actor_id)
            audience.discard(actor_id)
            if audience:
                self.dispatcher.notify(event_type, payload, audience)
        except Exception:
            logger.warning("fan-out of %s for user %s failed", event_type.value, actor_id, exc_info=True)

    def feed(
        self,
        user: CurrentUser,
        page: int = 1,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return self.store.list_visible_posts(user.user_id, page=page, limit=limit, after=after)

    def get_post(self, post_id: str) -> Dict[str, Any]:
        return self.store.get_post(post_id)

    def create_post(self, user: CurrentUser, content: Optional[str] = None, image: Optional[str] = None) -> Dict[str, Any]:
        post = self.store.create_post(user.user_id, user.full_name, content=content, image=image)
        self._fan_out(user.user_id, EventType.NEW_POST, post)
        return post

    def like_post(self, user: CurrentUser, post_id: str, request_key: Optional[str] = None) -> LikeResult:
        key = request_key or new_id("req")
        result = self._retry(lambda attempt: self.store.toggle_like(post_id, user.user_id, key))
        self._fan_out(
            user.user_id,
            EventType.POST_LIKED,
            {
                "post_id": result.post_id,
                "author_id": result.post["author"]["user_id"],
                "user_id": user.user_id,
                "likes": result.likes,
                "is_liked": result.is_liked,
            },
        )
        return result

    def comment_on_post(
        self,
        user: CurrentUser,
        post_id: str,
        text: Optional[str],
        request_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = request_key or new_id("cmt")
        post = self._retry(lambda attempt: self.store.add_comment(post_id, user.user_id, text, key))
        # TODO: push a "newComment" event to the post author once clients subscribe to it.
        return post

    def delete_post(self, user: CurrentUser, post_id: str) -> bool:
        def _delete(attempt: int) -> bool:
            try:
                return self.store.delete_post(post_id, user.user_id)
            except NotFound:
                # An earlier attempt may have deleted it before failing.
                if attempt > 1:
                    logger.info("post %s already gone on attempt %d", post_id, attempt)
                    return True
                raise

        return self._retry(_delete)
