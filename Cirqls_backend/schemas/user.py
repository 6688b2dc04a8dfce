from datetime import datetime

from pydantic import BaseModel, Field

from schemas.feed import UserRef


class UserResponse(BaseModel):
    user_id: int
    username: str
    email: str | None = None
    profile_pic_src: str | None = None
    created_at: datetime | None = None
    followers_count: int = 0
    following_count: int = 0


class UserUpdate(BaseModel):
    username: str = Field(min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_]+$")


class UserListResponse(BaseModel):
    users: list[UserRef]
