from datetime import datetime
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, Field

from schemas.feed import ReactionType, UserRef


MESSAGE_CHANNEL = "new_message"
NOTIFICATION_CHANNEL = "new_notification"
CHANNELS = (MESSAGE_CHANNEL, NOTIFICATION_CHANNEL)


class EventBase(BaseModel):
    # Push channels an event of this kind is delivered on
    channels: ClassVar[tuple[str, ...]] = (NOTIFICATION_CHANNEL,)

    recipient_id: int


class MessageEvent(EventBase):
    channels: ClassVar[tuple[str, ...]] = (MESSAGE_CHANNEL, NOTIFICATION_CHANNEL)

    kind: Literal["message"] = "message"
    message_id: int
    sender: UserRef
    recipient: UserRef
    message: str
    sent_at: datetime
    is_read: bool = False


class CommentEvent(EventBase):
    kind: Literal["comment"] = "comment"
    comment_id: int
    parent_comment_id: int | None = None
    post_id: int
    commenter: UserRef
    message: str
    created_at: datetime | None = None
    is_read: bool = False


class ReactionEvent(EventBase):
    kind: Literal["reaction"] = "reaction"
    target: Literal["post", "comment"]
    target_id: int
    post_id: int
    reactor: UserRef
    reaction: ReactionType


NotificationEvent = Annotated[
    Union[MessageEvent, CommentEvent, ReactionEvent],
    Field(discriminator="kind"),
]

# Stored notifications are messages and comments; reactions are push-only
StoredNotification = Annotated[
    Union[MessageEvent, CommentEvent],
    Field(discriminator="kind"),
]


class NotificationsResponse(BaseModel):
    notifications: list[StoredNotification]
