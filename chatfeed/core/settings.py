from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # Storage: "dynamodb" or "memory"
    storage_backend: str = os.environ.get("STORAGE_BACKEND", "dynamodb").lower()

    # DynamoDB tables
    posts_table_name: str = os.environ.get("POSTS_TABLE", "posts")
    posts_author_index: str = os.environ.get("POSTS_AUTHOR_INDEX", "author_id-created_at-index")
    messages_table_name: str = os.environ.get("MESSAGES_TABLE", "messages")
    messages_sender_index: str = os.environ.get("MESSAGES_SENDER_INDEX", "sender_id-index")
    messages_receiver_index: str = os.environ.get("MESSAGES_RECEIVER_INDEX", "receiver_id-index")
    users_table_name: str = os.environ.get("USERS_TABLE", "users")

    # Feed
    feed_default_limit: int = int(os.environ.get("FEED_DEFAULT_LIMIT", "5"))
    feed_max_limit: int = int(os.environ.get("FEED_MAX_LIMIT", "50"))
    feed_cache_seconds: int = int(os.environ.get("FEED_CACHE_SECONDS", "300"))

    # Retry policy for storage writes
    store_retry_attempts: int = int(os.environ.get("STORE_RETRY_ATTEMPTS", "3"))
    store_retry_wait_seconds: float = float(os.environ.get("STORE_RETRY_WAIT_SECONDS", "0.1"))

    # Per-user limit on post writes (create, like, comment, delete); 0 disables
    rate_limit_table_name: str = os.environ.get("RATE_LIMIT_TABLE", "rate_limits")
    rate_limit_max_requests: int = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "100"))
    rate_limit_window_seconds: int = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "900"))

    # Live events (SSE)
    sse_queue_size: int = int(os.environ.get("SSE_QUEUE_SIZE", "200"))
    sse_keepalive_seconds: int = int(os.environ.get("SSE_KEEPALIVE_SECONDS", "15"))

    # HTTP
    cors_origins: str = os.environ.get("CORS_ORIGINS", "http://localhost:5173")
    gzip_min_bytes: int = int(os.environ.get("GZIP_MIN_BYTES", "1000"))
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")


S = Settings()
