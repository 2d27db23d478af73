from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from chatfeed.core.errors import (
    Forbidden,
    NotFound,
    TransientError,
    UnknownError,
    from_storage_error,
    is_conditional_failure,
)
from chatfeed.core.settings import S
from chatfeed.core.time import now_iso, now_ts
from chatfeed.services.rate_limit import RateLimiter

from .base import MessageRepository, PostRepository, UserRepository, newest_first

logger = logging.getLogger(__name__)

# Lost races between the like and unlike branches before giving up.
TOGGLE_MAX_ROUNDS = 3
BATCH_GET_MAX_KEYS = 100
BATCH_GET_MAX_ROUNDS = 5


def _call(fn: Callable[..., Dict[str, Any]], **kwargs) -> Dict[str, Any]:
    try:
        return fn(**kwargs)
    except (ClientError, BotoCoreError) as exc:
        raise from_storage_error(exc) from exc


def _conditional(fn: Callable[..., Dict[str, Any]], **kwargs) -> Optional[Dict[str, Any]]:
    """Like _call, but a failed condition returns None instead of raising."""
    try:
        return fn(**kwargs)
    except ClientError as exc:
        if is_conditional_failure(exc):
            return None
        raise from_storage_error(exc) from exc
    except BotoCoreError as exc:
        raise from_storage_error(exc) from exc


def _from_ddb(item: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(item)
    out["likes"] = sorted(item.get("likes") or [])
    out["comment_ids"] = sorted(item.get("comment_ids") or [])
    out["comments"] = list(item.get("comments") or [])
    out["like_tokens"] = dict(item.get("like_tokens") or {})
    return out


class DynamoPostRepository(PostRepository):
    """
    Posts table keyed by ``post_id`` with a GSI on (``author_id``, ``created_at``).

    ``likes`` and ``comment_ids`` are string sets, so like/unlike are single
    conditional ADD/DELETE updates and comments are a conditional list_append.
    """

    def __init__(self, table: Any, author_index: Optional[str] = None) -> None:
        self.table = table
        self.author_index = author_index or S.posts_author_index

    def put(self, item: Dict[str, Any]) -> None:
        row = {k: v for k, v in item.items() if k not in ("likes", "comment_ids")}
        # DynamoDB rejects empty sets; an absent attribute reads back as empty.
        if item.get("likes"):
            row["likes"] = set(item["likes"])
        if item.get("comment_ids"):
            row["comment_ids"] = set(item["comment_ids"])
        row.setdefault("like_tokens", {})
        _call(
            self.table.put_item,
            Item=row,
            ConditionExpression="attribute_not_exists(post_id)",
        )

    def get(self, post_id: str) -> Optional[Dict[str, Any]]:
        resp = _call(self.table.get_item, Key={"post_id": post_id}, ConsistentRead=True)
        item = resp.get("Item")
        return _from_ddb(item) if item else None

    def _query_author(self, author_id: str, want: int, after: Optional[str]) -> List[Dict[str, Any]]:
        cond = Key("author_id").eq(author_id)
        if after:
            cond = cond & Key("created_at").gt(after)
        kwargs: Dict[str, Any] = dict(
            IndexName=self.author_index,
            KeyConditionExpression=cond,
            ScanIndexForward=False,
            Limit=want,
        )
        out: List[Dict[str, Any]] = []
        while len(out) < want:
            resp = _call(self.table.query, **kwargs)
            out.extend(resp.get("Items", []))
            lek = resp.get("LastEvaluatedKey")
            if not lek:
                break
            kwargs["ExclusiveStartKey"] = lek
        return [_from_ddb(it) for it in out[:want]]

    def list_by_authors(
        self,
        author_ids: Sequence[str],
        *,
        limit: int,
        skip: int = 0,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if limit <= 0 or not author_ids:
            return []
        want = skip + limit
        streams = [self._query_author(author_id, want, after) for author_id in author_ids]
        return newest_first(streams, skip=skip, limit=limit)

    def _flip(self, post_id: str, user_id: str, request_key: str, like: bool) -> Optional[Dict[str, Any]]:
        action = "ADD" if like else "DELETE"
        membership = "NOT contains(likes, :uid)" if like else "contains(likes, :uid)"
        resp = _conditional(
            self.table.update_item,
            Key={"post_id": post_id},
            UpdateExpression=f"{action} likes :u SET #tok.#uid = :rk, updated_at = :now",
            ConditionExpression=(
                f"attribute_exists(post_id) AND {membership} "
                "AND (attribute_not_exists(#tok.#uid) OR #tok.#uid <> :rk)"
            ),
            ExpressionAttributeNames={"#tok": "like_tokens", "#uid": user_id},
            ExpressionAttributeValues={":u": {user_id}, ":uid": user_id, ":rk": request_key, ":now": now_iso()},
            ReturnValues="ALL_NEW",
        )
        if resp is None:
            return None
        return _from_ddb(resp.get("Attributes", {}))

    def toggle_like(self, post_id: str, user_id: str, request_key: str) -> Tuple[Dict[str, Any], bool]:
        for _ in range(TOGGLE_MAX_ROUNDS):
            item = self._flip(post_id, user_id, request_key, like=True)
            if item is not None:
                return item, True
            item = self._flip(post_id, user_id, request_key, like=False)
            if item is not None:
                return item, False

            current = self.get(post_id)
            if current is None:
                raise NotFound("Post not found", post_id=post_id)
            if current["like_tokens"].get(user_id) == request_key:
                logger.info("like request %s on %s already applied", request_key, post_id)
                return current, user_id in current["likes"]
        raise TransientError("Like toggle kept losing to concurrent updates", post_id=post_id)

    def append_comment(self, post_id: str, comment: Dict[str, Any]) -> Dict[str, Any]:
        cid = comment["comment_id"]
        resp = _conditional(
            self.table.update_item,
            Key={"post_id": post_id},
            UpdateExpression=(
                "SET comments = list_append(if_not_exists(comments, :empty), :c), updated_at = :now "
                "ADD comment_ids :cids"
            ),
            ConditionExpression="attribute_exists(post_id) AND NOT contains(comment_ids, :cid)",
            ExpressionAttributeValues={
                ":empty": [],
                ":c": [comment],
                ":cids": {cid},
                ":cid": cid,
                ":now": now_iso(),
            },
            ReturnValues="ALL_NEW",
        )
        if resp is not None:
            return _from_ddb(resp.get("Attributes", {}))

        current = self.get(post_id)
        if current is None:
            raise NotFound("Post not found", post_id=post_id)
        if cid in current["comment_ids"]:
            logger.info("comment %s on %s already applied", cid, post_id)
            return current
        raise UnknownError("Comment rejected by storage", post_id=post_id)

    def delete(self, post_id: str, requester_id: str) -> None:
        resp = _conditional(
            self.table.delete_item,
            Key={"post_id": post_id},
            ConditionExpression="attribute_exists(post_id) AND author_id = :uid",
            ExpressionAttributeValues={":uid": requester_id},
        )
        if resp is not None:
            return
        if self.get(post_id) is None:
            raise NotFound("Post not found", post_id=post_id)
        raise Forbidden("You can't delete this post, you are not the author", post_id=post_id)


class DynamoMessageRepository(MessageRepository):
    """
    Messages table with one GSI per participant role so a user's
    conversations are two index queries, never a table scan.
    """

    def __init__(self, table: Any, sender_index: Optional[str] = None, receiver_index: Optional[str] = None) -> None:
        self.table = table
        self.sender_index = sender_index or S.messages_sender_index
        self.receiver_index = receiver_index or S.messages_receiver_index

    def messages_for(self, user_id: str) -> Iterator[Dict[str, Any]]:
        for index, attr in ((self.sender_index, "sender_id"), (self.receiver_index, "receiver_id")):
            kwargs: Dict[str, Any] = dict(
                IndexName=index,
                KeyConditionExpression=Key(attr).eq(user_id),
                ProjectionExpression="sender_id, receiver_id",
            )
            while True:
                resp = _call(self.table.query, **kwargs)
                yield from resp.get("Items", [])
                lek = resp.get("LastEvaluatedKey")
                if not lek:
                    break
                kwargs["ExclusiveStartKey"] = lek


class DynamoUserRepository(UserRepository):
    def __init__(self, resource: Any, table_name: Optional[str] = None) -> None:
        self.resource = resource
        self.table_name = table_name or S.users_table_name
        self.table = resource.Table(self.table_name)

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        resp = _call(self.table.get_item, Key={"user_id": user_id})
        return resp.get("Item")

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted({uid for uid in user_ids if uid})
        out: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(ids), BATCH_GET_MAX_KEYS):
            request = {
                self.table_name: {
                    "Keys": [{"user_id": uid} for uid in ids[start:start + BATCH_GET_MAX_KEYS]],
                    "ProjectionExpression": "user_id, full_name, profile_pic",
                }
            }
            for _ in range(BATCH_GET_MAX_ROUNDS):
                resp = _call(self.resource.batch_get_item, RequestItems=request)
                for it in resp.get("Responses", {}).get(self.table_name, []):
                    out[it["user_id"]] = it
                request = resp.get("UnprocessedKeys") or {}
                if not request:
                    break
            else:
                raise TransientError("Users table kept returning unprocessed keys")
        return out


class DynamoRateLimiter(RateLimiter):
    """
    Counters in a table keyed by (``user_id``, ``bucket``), one item per
    action. A new window resets the item; within a window the count is bumped
    only while under the limit, so concurrent requests never overshoot.
    """

    def __init__(
        self,
        table: Any,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> None:
        super().__init__(max_requests, window_seconds)
        self.table = table

    def hit(self, user_id: str, action: str) -> bool:
        if not self.enabled:
            return True
        now = now_ts()
        window = self.window_of(now)
        key = {"user_id": user_id, "bucket": f"rl#{action}"}
        names = {"#w": "window", "#n": "count"}

        resp = _conditional(
            self.table.update_item,
            Key=key,
            UpdateExpression="SET #w = :w, #n = :one, expires_at = :exp",
            ConditionExpression="attribute_not_exists(#w) OR #w <> :w",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues={":w": window, ":one": 1, ":exp": now + 2 * self.window_seconds},
        )
        if resp is not None:
            return True

        resp = _conditional(
            self.table.update_item,
            Key=key,
            UpdateExpression="ADD #n :one",
            ConditionExpression="#w = :w AND #n < :limit",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues={":w": window, ":one": 1, ":limit": self.max_requests},
        )
        return resp is not None
