from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from chatfeed.core.errors import Forbidden, NotFound
from chatfeed.core.time import now_iso, new_id

from .base import MessageRepository, PostRepository, UserRepository, newest_first, post_sort_key


class InMemoryPostRepository(PostRepository):
    """
    Process-local posts. Mutations on one post are serialised by a per-post
    lock; different posts never contend. Readers copy under the same lock.
    """

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def _locked(self, post_id: str) -> Iterator[Optional[Dict[str, Any]]]:
        """Hold the post's lock and yield the stored dict, or None when absent."""
        with self._guard:
            lock = self._locks.get(post_id)
        if lock is None:
            yield None
            return
        with lock:
            yield self._items.get(post_id)

    def put(self, item: Dict[str, Any]) -> None:
        item = copy.deepcopy(item)
        item.setdefault("comments", [])
        item.setdefault("likes", [])
        item.setdefault("like_tokens", {})
        item.setdefault("comment_ids", [])
        with self._guard:
            self._locks.setdefault(item["post_id"], threading.Lock())
            self._items[item["post_id"]] = item

    def get(self, post_id: str) -> Optional[Dict[str, Any]]:
        with self._locked(post_id) as item:
            return copy.deepcopy(item) if item else None

    def list_by_authors(
        self,
        author_ids: Sequence[str],
        *,
        limit: int,
        skip: int = 0,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        wanted = set(author_ids)
        with self._guard:
            post_ids = list(self._items)
        by_author: Dict[str, List[Dict[str, Any]]] = {}
        for post_id in post_ids:
            item = self.get(post_id)
            if not item or item.get("author_id") not in wanted:
                continue
            if after and (item.get("created_at") or "") <= after:
                continue
            by_author.setdefault(item["author_id"], []).append(item)
        streams = [sorted(posts, key=post_sort_key, reverse=True) for posts in by_author.values()]
        return newest_first(streams, skip=skip, limit=limit)

    def toggle_like(self, post_id: str, user_id: str, request_key: str) -> Tuple[Dict[str, Any], bool]:
        with self._locked(post_id) as item:
            if not item:
                raise NotFound("Post not found", post_id=post_id)
            likes: List[str] = item["likes"]
            if item["like_tokens"].get(user_id) == request_key:
                return copy.deepcopy(item), user_id in likes
            if user_id in likes:
                likes.remove(user_id)
                liked = False
            else:
                likes.append(user_id)
                liked = True
            item["like_tokens"][user_id] = request_key
            item["updated_at"] = now_iso()
            return copy.deepcopy(item), liked

    def append_comment(self, post_id: str, comment: Dict[str, Any]) -> Dict[str, Any]:
        with self._locked(post_id) as item:
            if not item:
                raise NotFound("Post not found", post_id=post_id)
            if comment["comment_id"] not in item["comment_ids"]:
                item["comments"].append(copy.deepcopy(comment))
                item["comment_ids"].append(comment["comment_id"])
                item["updated_at"] = now_iso()
            return copy.deepcopy(item)

    def delete(self, post_id: str, requester_id: str) -> None:
        with self._locked(post_id) as item:
            if not item:
                raise NotFound("Post not found", post_id=post_id)
            if item.get("author_id") != requester_id:
                raise Forbidden("You can't delete this post, you are not the author", post_id=post_id)
            with self._guard:
                del self._items[post_id]
                self._locks.pop(post_id, None)


class InMemoryMessageRepository(MessageRepository):
    def __init__(self) -> None:
        self._messages: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, sender_id: str, receiver_id: str, text: str = "") -> Dict[str, Any]:
        msg = {
            "message_id": new_id("msg"),
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "text": text,
            "created_at": now_iso(),
        }
        with self._lock:
            self._messages.append(msg)
        return dict(msg)

    def messages_for(self, user_id: str) -> Iterator[Dict[str, Any]]:
        with self._lock:
            snapshot = list(self._messages)
        for msg in snapshot:
            if msg["sender_id"] == user_id or msg["receiver_id"] == user_id:
                yield dict(msg)


class InMemoryUserRepository(UserRepository):
    def __init__(self) -> None:
        self._users: Dict[str, Dict[str, Any]] = {}

    def upsert(self, user_id: str, full_name: str, profile_pic: str = "") -> Dict[str, Any]:
        self._users[user_id] = {"user_id": user_id, "full_name": full_name, "profile_pic": profile_pic}
        return dict(self._users[user_id])

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._users.get(user_id)
        return dict(user) if user else None

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return {uid: dict(self._users[uid]) for uid in set(user_ids) if uid in self._users}
