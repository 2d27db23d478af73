from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from chatfeed.core.errors import NotFound, ValidationError
from chatfeed.core.settings import S
from chatfeed.core.time import new_id, now_iso, parse_timestamp
from chatfeed.metrics import COMMENTS_ADDED, LIKES_TOGGLED, POSTS_CREATED, POSTS_DELETED
from chatfeed.repositories.base import PostRepository, UserRepository
from chatfeed.services.conversations import ConversationIndex


@dataclass(frozen=True)
class LikeResult:
    post_id: str
    likes: int
    is_liked: bool
    post: Dict[str, Any]


def _user_ref(user_id: Optional[str], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    user = users.get(user_id or "") or {}
    return {
        "user_id": user_id,
        "full_name": user.get("full_name"),
        "profile_pic": user.get("profile_pic"),
    }


def post_view(item: Dict[str, Any], users: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Public shape of a post; bookkeeping attributes never leave the store."""
    users = users or {}
    likes = list(item.get("likes") or [])
    return {
        "post_id": item["post_id"],
        "author": _user_ref(item.get("author_id"), users),
        "author_name": item.get("author_name"),
        "content": item.get("content"),
        "image": item.get("image"),
        "comments": [
            {
                "comment_id": c.get("comment_id"),
                "sender": _user_ref(c.get("sender_id"), users),
                "comment": c.get("comment"),
                "created_at": c.get("created_at"),
            }
            for c in item.get("comments") or []
        ],
        "likes": likes,
        "like_count": len(likes),
        "created_at": item.get("created_at"),
        "updated_at": item.get("updated_at"),
    }


class PostStore:
    def __init__(
        self,
        posts: PostRepository,
        users: UserRepository,
        conversations: ConversationIndex,
        default_limit: Optional[int] = None,
        max_limit: Optional[int] = None,
    ) -> None:
        self.posts = posts
        self.users = users
        self.conversations = conversations
        self.default_limit = default_limit or S.feed_default_limit
        self.max_limit = max_limit or S.feed_max_limit

    def hydrate(self, items: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        items = list(items)
        ids = set()
        for item in items:
            ids.add(item.get("author_id"))
            ids.update(c.get("sender_id") for c in item.get("comments") or [])
        ids.discard(None)
        users = self.users.get_many(ids) if ids else {}
        return [post_view(item, users) for item in items]

    def list_visible_posts(
        self,
        requester_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Feed scoped to the requester's chat graph, newest first.

        With ``after`` only posts created strictly later are returned and
        ``page`` is ignored; otherwise ``(page - 1) * limit`` posts are skipped.
        """
        limit = self.default_limit if limit is None else limit
        if page < 1:
            raise ValidationError("page must be >= 1", page=page)
        if limit < 1:
            raise ValidationError("limit must be >= 1", limit=limit)
        limit = min(limit, self.max_limit)
        try:
            cursor = parse_timestamp(after)
        except ValueError as exc:
            raise ValidationError("Invalid 'after' timestamp", after=after) from exc

        authors = self.conversations.audience_for(requester_id)
        if not authors:
            return []
        skip = 0 if cursor else (page - 1) * limit
        items = self.posts.list_by_authors(sorted(authors), limit=limit, skip=skip, after=cursor)
        return self.hydrate(items)

    def get_post(self, post_id: str) -> Dict[str, Any]:
        item = self.posts.get(post_id)
        if not item:
            raise NotFound("Post not found", post_id=post_id)
        return self.hydrate([item])[0]

    def create_post(
        self,
        author_id: str,
        author_name: str,
        content: Optional[str] = None,
        image: Optional[str] = None,
    ) -> Dict[str, Any]:
        # Empty posts (no content, no image) are accepted.
        created_at = now_iso()
        item = {
            "post_id": new_id("post"),
            "author_id": author_id,
            "author_name": author_name,
            "content": content,
            "image": image,
            "comments": [],
            "likes": [],
            "like_tokens": {},
            "created_at": created_at,
            "updated_at": created_at,
        }
        self.posts.put(item)
        POSTS_CREATED.inc()
        return self.hydrate([item])[0]

    def toggle_like(self, post_id: str, user_id: str, request_key: Optional[str] = None) -> LikeResult:
        item, liked = self.posts.toggle_like(post_id, user_id, request_key or new_id("req"))
        LIKES_TOGGLED.labels(state="liked" if liked else "unliked").inc()
        view = post_view(item)
        return LikeResult(post_id=post_id, likes=view["like_count"], is_liked=liked, post=view)

    def add_comment(
        self,
        post_id: str,
        sender_id: str,
        text: Optional[str],
        request_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not text or not text.strip():
            raise ValidationError("Comment text is required", post_id=post_id)
        comment = {
            "comment_id": request_key or new_id("cmt"),
            "sender_id": sender_id,
            "comment": text,
            "created_at": now_iso(),
        }
        self.posts.append_comment(post_id, comment)
        COMMENTS_ADDED.inc()
        return self.get_post(post_id)

    def delete_post(self, post_id: str, requester_id: str) -> bool:
        self.posts.delete(post_id, requester_id)
        POSTS_DELETED.inc()
        return True
