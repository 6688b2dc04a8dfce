from pydantic import BaseModel, Field
from datetime import datetime

from schemas.feed import UserRef


class MessageCreate(BaseModel):
    recipient: str  # username
    message: str = Field(min_length=1)


class ReadMessagesRequest(BaseModel):
    message_ids: list[int]


class MessageResponse(BaseModel):
    message_id: int
    sender: UserRef
    recipient: UserRef
    message: str
    sent_at: datetime
    is_read: bool = False


class Conversation(BaseModel):
    user: UserRef
    messages: list[MessageResponse]


class ConversationsResponse(BaseModel):
    conversations: list[Conversation]


class ConversationResponse(BaseModel):
    user: UserRef
    messages: list[MessageResponse]
