from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from schemas.feed import UserRef

CommunityType = Literal["public", "restricted", "private"]


class CommunityCreate(BaseModel):
    name: str = Field(min_length=3, max_length=21, pattern=r"^[A-Za-z0-9_]+$")
    title: str = Field(min_length=1)
    description: str = ""
    type: CommunityType = "public"
    logo_src: str | None = None


class CommunityUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    type: CommunityType | None = None
    logo_src: str | None = None


class CommunityResponse(BaseModel):
    community_id: int
    name: str
    title: str
    description: str = ""
    type: str = "public"
    logo_src: str | None = None
    created_at: datetime | None = None
    members_count: int = 0


class CommunityListResponse(BaseModel):
    communities: list[CommunityResponse]


class CommunityMembersResponse(BaseModel):
    community_id: int
    users: list[UserRef]
