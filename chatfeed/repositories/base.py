from __future__ import annotations

import heapq
from abc import ABC, abstractmethod
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple


def post_sort_key(item: Dict[str, Any]) -> Tuple[str, str]:
    return (item.get("created_at") or "", item.get("post_id") or "")


def newest_first(streams: Iterable[Sequence[Dict[str, Any]]], *, skip: int, limit: int) -> List[Dict[str, Any]]:
    """
    Merge per-author result lists (each already newest first) into one page.
    """
    merged = heapq.merge(*streams, key=post_sort_key, reverse=True)
    return list(islice(merged, skip, skip + limit))


class PostRepository(ABC):
    """
    Storage for posts. Mutations are atomic per post and idempotent per
    request key, so a retried write never applies twice.
    """

    @abstractmethod
    def put(self, item: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, post_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_by_authors(
        self,
        author_ids: Sequence[str],
        *,
        limit: int,
        skip: int = 0,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Posts by any of ``author_ids``, newest first, optionally only those created after ``after``."""
        raise NotImplementedError

    @abstractmethod
    def toggle_like(self, post_id: str, user_id: str, request_key: str) -> Tuple[Dict[str, Any], bool]:
        """Flip ``user_id`` in the post's likes; returns (post, liked_after)."""
        raise NotImplementedError

    @abstractmethod
    def append_comment(self, post_id: str, comment: Dict[str, Any]) -> Dict[str, Any]:
        """Append ``comment`` unless its ``comment_id`` was already applied; returns the post."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, post_id: str, requester_id: str) -> None:
        raise NotImplementedError


class MessageRepository(ABC):
    @abstractmethod
    def messages_for(self, user_id: str) -> Iterator[Dict[str, Any]]:
        """Every message where ``user_id`` is sender or receiver."""
        raise NotImplementedError


class UserRepository(ABC):
    @abstractmethod
    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def get_many(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        raise NotImplementedError
