from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from schemas.feed import MediaPost, TextPost


class UserResult(BaseModel):
    result_type: Literal["user"] = "user"
    user_id: int
    username: str
    profile_pic_src: str | None = None


class CommunityResult(BaseModel):
    result_type: Literal["community"] = "community"
    community_id: int
    name: str
    title: str
    logo_src: str | None = None


class TextPostResult(TextPost):
    result_type: Literal["post"] = "post"


class MediaPostResult(MediaPost):
    result_type: Literal["post"] = "post"


# Post hits resolve to their variant by ``type``
PostResult = Annotated[Union[TextPostResult, MediaPostResult], Field(discriminator="type")]

SearchResult = Annotated[
    Union[UserResult, CommunityResult, PostResult],
    Field(discriminator="result_type"),
]


class SearchResponse(BaseModel):
    term: str
    results: list[SearchResult]
