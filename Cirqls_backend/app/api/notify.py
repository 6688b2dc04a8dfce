from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.gateway import EntityStoreGateway, get_gateway
from app.security import require_viewer_id
from app.services.notify_dispatcher import comment_event, message_event
from app.utils.age import as_utc
from schemas.notify import CommentEvent, MessageEvent, NotificationsResponse

router = APIRouter()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _occurred_at(event: MessageEvent | CommentEvent):
    stamp = event.sent_at if isinstance(event, MessageEvent) else event.created_at
    return as_utc(stamp) if stamp else _EPOCH


@router.get("", response_model=NotificationsResponse)
async def notifications(
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    """Unread messages and unread comments addressed to the viewer, newest first."""
    events: list[MessageEvent | CommentEvent] = [
        message_event(row) for row in await gateway.fetch_unread_message_rows(viewer_id)
    ]
    events.extend(comment_event(row, viewer_id) for row in await gateway.fetch_unread_comment_rows(viewer_id))
    events.sort(key=_occurred_at, reverse=True)
    return NotificationsResponse(notifications=events)
