from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    posts: Any
    messages: Any
    users: Any
    rate_limits: Any

def dynamo_tables() -> Tables:
    return Tables(
        posts=ddb.Table(S.posts_table_name),
        messages=ddb.Table(S.messages_table_name),
        users=ddb.Table(S.users_table_name),
        rate_limits=ddb.Table(S.rate_limit_table_name),
    )
