from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


ReactionType = Literal["like", "dislike"]
ViewerReaction = Literal["like", "dislike", "none"]
FeedSort = Literal["new", "top"]


class UserRef(BaseModel):
    user_id: int
    username: str
    profile_pic_src: str | None = None


class CommunityRef(BaseModel):
    community_id: int
    name: str
    title: str | None = None
    logo_src: str | None = None


class ReactionSummary(BaseModel):
    likes: int = 0
    dislikes: int = 0
    total: int = 0
    viewer_reaction: ViewerReaction = "none"


class CommentsInfo(BaseModel):
    total: int = 0
    comment_ids: list[int] = []


class PostBase(BaseModel):
    post_id: int
    title: str
    created_at: datetime
    created_since: str | None = None
    poster: UserRef | None = None
    community: CommunityRef | None = None
    reactions: ReactionSummary = ReactionSummary()
    comments_info: CommentsInfo = CommentsInfo()


class TextPost(PostBase):
    type: Literal["text"] = "text"
    description: str


class MediaPost(PostBase):
    type: Literal["media"] = "media"
    media_src: str


PostSummary = Annotated[Union[TextPost, MediaPost], Field(discriminator="type")]


class FeedListResponse(BaseModel):
    sort: FeedSort
    posts: list[PostSummary]


class TextPostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""
    community_id: int


class MediaPostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    media_src: str = Field(min_length=1)
    community_id: int


class ReactionRequest(BaseModel):
    reaction: ReactionType


class CommentNode(BaseModel):
    comment_id: int
    parent_comment_id: int | None = None
    post_id: int
    commenter: UserRef | None = None
    message: str
    created_at: datetime | None = None
    created_since: str | None = None
    reactions: ReactionSummary = ReactionSummary()
    child_comments: list["CommentNode"] = []


class CommentCreate(BaseModel):
    post_id: int
    parent_comment_id: int | None = None
    message: str = Field(min_length=1)


class ReadCommentsRequest(BaseModel):
    comment_ids: list[int]


class CommentsListResponse(BaseModel):
    post_id: int
    comments: list[CommentNode]


class SuccessResponse(BaseModel):
    success: bool = True


CommentNode.model_rebuild()
