from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from chatfeed.core.settings import S
from chatfeed.repositories.base import MessageRepository, PostRepository, UserRepository
from chatfeed.services.conversations import ConversationIndex
from chatfeed.services.feed import PostStore
from chatfeed.services.interactions import Interactions
from chatfeed.services.notifications import ConnectionRegistry, NotificationDispatcher
from chatfeed.services.rate_limit import InMemoryRateLimiter, RateLimiter


@dataclass(frozen=True)
class Services:
    interactions: Interactions
    users: UserRepository
    registry: ConnectionRegistry
    limiter: RateLimiter


def build_services(
    posts: Optional[PostRepository] = None,
    messages: Optional[MessageRepository] = None,
    users: Optional[UserRepository] = None,
    registry: Optional[ConnectionRegistry] = None,
    limiter: Optional[RateLimiter] = None,
    backend: Optional[str] = None,
) -> Services:
    backend = backend or S.storage_backend
    if posts is None or messages is None or users is None or limiter is None:
        if backend == "memory":
            from chatfeed.repositories.in_memory import (
                InMemoryMessageRepository,
                InMemoryPostRepository,
                InMemoryUserRepository,
            )

            posts = posts or InMemoryPostRepository()
            messages = messages or InMemoryMessageRepository()
            users = users or InMemoryUserRepository()
            limiter = limiter or InMemoryRateLimiter()
        else:
            from chatfeed.core.aws import ddb
            from chatfeed.core.tables import dynamo_tables
            from chatfeed.repositories.dynamo import (
                DynamoMessageRepository,
                DynamoPostRepository,
                DynamoRateLimiter,
                DynamoUserRepository,
            )

            tables = dynamo_tables()
            posts = posts or DynamoPostRepository(tables.posts)
            messages = messages or DynamoMessageRepository(tables.messages)
            users = users or DynamoUserRepository(ddb)
            limiter = limiter or DynamoRateLimiter(tables.rate_limits)

    registry = registry or ConnectionRegistry()
    conversations = ConversationIndex(messages)
    store = PostStore(posts, users, conversations)
    interactions = Interactions(store, conversations, NotificationDispatcher(registry))
    return Services(interactions=interactions, users=users, registry=registry, limiter=limiter)


def get_interactions(request: Request) -> Interactions:
    return request.app.state.services.interactions


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.services.registry


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.services.limiter
