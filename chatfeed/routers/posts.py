from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response

from chatfeed.auth.deps import get_current_user
from chatfeed.core.settings import S
from chatfeed.dependencies import get_interactions, get_rate_limiter
from chatfeed.models import CommentReq, CreatePostReq, CurrentUser
from chatfeed.responses import success
from chatfeed.services.interactions import Interactions
from chatfeed.services.rate_limit import RateLimiter, rate_limit_or_429

router = APIRouter(prefix="/posts", tags=["posts"])


def limit_writes(action: str):
    """Per-user write limit for ``action``; raises RateLimited (429) when used up."""

    def _check(
        user: CurrentUser = Depends(get_current_user),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        rate_limit_or_429(limiter, user.user_id, action)

    return _check


@router.get("")
def list_posts(
    response: Response,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=S.feed_default_limit, ge=1),
    after: Optional[str] = Query(default=None, description="Only posts created after this timestamp"),
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    posts = svc.feed(user, page=page, limit=limit, after=after)
    response.headers["Cache-Control"] = f"private, max-age={S.feed_cache_seconds}"
    return success(posts)


@router.get("/{post_id}")
def get_post(
    post_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    return success(svc.get_post(post_id))


@router.post("", status_code=201, dependencies=[Depends(limit_writes("create_post"))])
def create_post(
    req: CreatePostReq,
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    post = svc.create_post(user, content=req.content, image=req.image)
    return success(post, message="Post created successfully")


@router.post("/{post_id}/like", dependencies=[Depends(limit_writes("like"))])
def like_post(
    post_id: str,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    result = svc.like_post(user, post_id, request_key=idempotency_key)
    return success({"post_id": result.post_id, "likes": result.likes, "is_liked": result.is_liked})


@router.post("/{post_id}/comments", status_code=201, dependencies=[Depends(limit_writes("comment"))])
def comment_on_post(
    post_id: str,
    req: CommentReq,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    return success(svc.comment_on_post(user, post_id, req.comment, request_key=idempotency_key))


@router.delete("/{post_id}", dependencies=[Depends(limit_writes("delete_post"))])
def delete_post(
    post_id: str,
    user: CurrentUser = Depends(get_current_user),
    svc: Interactions = Depends(get_interactions),
):
    svc.delete_post(user, post_id)
    return success({"message": "Post deleted successfully"})
