from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class CurrentUser(BaseModel):
    user_id: str
    full_name: str
    profile_pic: Optional[str] = None


class CreatePostReq(BaseModel):
    content: Optional[str] = Field(default=None, max_length=10000)
    image: Optional[str] = Field(default=None, max_length=2048)


class CommentReq(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=4000)
