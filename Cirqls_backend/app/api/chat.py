from typing import Any, Mapping

from fastapi import APIRouter, Depends, HTTPException

from app.errors import NotFound
from app.gateway import EntityStoreGateway, get_gateway
from app.security import require_viewer_id
from app.services.notify_dispatcher import fire_notification, message_event
from app.utils.refs import user_ref
from app.ws import NotificationHub, get_hub
from schemas.chat import (
    Conversation,
    ConversationResponse,
    ConversationsResponse,
    MessageCreate,
    MessageResponse,
    ReadMessagesRequest,
)

router = APIRouter()


def to_message(row: Mapping[str, Any]) -> MessageResponse:
    return MessageResponse(
        message_id=row["message_id"],
        sender=user_ref(row, "sender_"),
        recipient=user_ref(row, "recipient_"),
        message=row["message"],
        sent_at=row["sent_at"],
        is_read=bool(row.get("is_read")),
    )


def group_conversations(rows: list[Mapping[str, Any]], viewer_id: int) -> list[Conversation]:
    """Group chronological message rows by counterpart, latest conversation first."""
    grouped: dict[int, Conversation] = {}
    for row in rows:
        prefix = "recipient_" if row["sender_id"] == viewer_id else "sender_"
        other = user_ref(row, prefix)
        conversation = grouped.get(other.user_id)
        if conversation is None:
            conversation = grouped[other.user_id] = Conversation(user=other, messages=[])
        conversation.messages.append(to_message(row))
    return sorted(
        grouped.values(),
        key=lambda c: (c.messages[-1].sent_at, c.messages[-1].message_id),
        reverse=True,
    )


@router.get("/conversations", response_model=ConversationsResponse)
async def conversations(
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    rows = await gateway.fetch_message_rows(viewer_id)
    return ConversationsResponse(conversations=group_conversations(rows, viewer_id))


@router.get("/conversation/{username}", response_model=ConversationResponse)
async def conversation(
    username: str,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    other = await gateway.get_user_by_username(username)
    if not other:
        raise NotFound("User not found")
    rows = await gateway.fetch_conversation_rows(viewer_id, other["user_id"])
    return ConversationResponse(user=user_ref(other), messages=[to_message(row) for row in rows])


@router.post("", response_model=MessageResponse)
async def send_message(
    payload: MessageCreate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
    hub: NotificationHub = Depends(get_hub),
):
    recipient = await gateway.get_user_by_username(payload.recipient)
    if not recipient:
        raise NotFound("Recipient not found")
    if recipient["user_id"] == viewer_id:
        raise HTTPException(status_code=400, detail="Cannot send a message to yourself")
    row = await gateway.insert_message(
        sender_id=viewer_id,
        recipient_id=recipient["user_id"],
        message=payload.message,
    )
    fire_notification(hub, message_event(row))
    return to_message(row)


@router.post("/read", response_model=list[MessageResponse])
async def read_messages(
    payload: ReadMessagesRequest,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    rows = await gateway.mark_messages_read(payload.message_ids, viewer_id)
    return [to_message(row) for row in rows]
