from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, Request
from starlette.responses import StreamingResponse

from chatfeed.auth.deps import get_current_user
from chatfeed.core.settings import S
from chatfeed.core.time import now_iso
from chatfeed.dependencies import get_registry
from chatfeed.models import CurrentUser
from chatfeed.responses import success
from chatfeed.services.notifications import ConnectionRegistry, QueueChannel

router = APIRouter(prefix="/events", tags=["events"])


def sse_format(event: Dict[str, Any]) -> str:
    data = json.dumps(event, separators=(",", ":"), default=str)
    return f"event: {event.get('type', 'message')}\ndata: {data}\n\n"


async def sse_event_stream(request: Request, channel: QueueChannel) -> AsyncIterator[str]:
    yield sse_format({"type": "hello", "user_id": channel.user_id, "ts": now_iso()})

    while True:
        if await request.is_disconnected():
            break
        try:
            event = await channel.get(timeout=S.sse_keepalive_seconds)
            yield sse_format(event)
        except asyncio.TimeoutError:
            yield ":\n\n"


@router.get("")
async def events(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_registry),
):
    channel = QueueChannel(user.user_id)
    registry.register(user.user_id, channel)

    async def _gen():
        try:
            async for chunk in sse_event_stream(request, channel):
                yield chunk
        finally:
            registry.unregister(channel)

    return StreamingResponse(_gen(), media_type="text/event-stream")


@router.get("/online")
def online_users(
    user: CurrentUser = Depends(get_current_user),
    registry: ConnectionRegistry = Depends(get_registry),
):
    return success(registry.online_users())
