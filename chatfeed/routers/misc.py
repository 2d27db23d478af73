from __future__ import annotations

from fastapi import APIRouter

from chatfeed.core.settings import S
from chatfeed.core.time import now_ts

router = APIRouter(tags=["misc"])


@router.get("/health")
def health():
    return {"ok": True, "ts": now_ts(), "storage": S.storage_backend}
