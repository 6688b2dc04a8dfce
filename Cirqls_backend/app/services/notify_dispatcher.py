import asyncio
import logging
from typing import Any, Mapping

from app.utils.refs import user_ref
from app.ws import NotificationHub
from schemas.feed import UserRef
from schemas.notify import CommentEvent, EventBase, MessageEvent, ReactionEvent

logger = logging.getLogger("cirqls.notify")

# Strong references to in-flight publishes so they are not collected early
_pending: set[asyncio.Task] = set()


def message_event(row: Mapping[str, Any]) -> MessageEvent:
    return MessageEvent(
        recipient_id=row["recipient_id"],
        message_id=row["message_id"],
        sender=user_ref(row, "sender_"),
        recipient=user_ref(row, "recipient_"),
        message=row["message"],
        sent_at=row["sent_at"],
        is_read=bool(row.get("is_read")),
    )


def comment_event(row: Mapping[str, Any], recipient_id: int) -> CommentEvent:
    return CommentEvent(
        recipient_id=recipient_id,
        comment_id=row["comment_id"],
        parent_comment_id=row.get("parent_comment_id"),
        post_id=row["post_id"],
        commenter=user_ref(row),
        message=row.get("message") or "",
        created_at=row.get("created_at"),
        is_read=bool(row.get("is_read")),
    )


def comment_events(
    comment_row: Mapping[str, Any],
    post_author_id: int | None,
    parent_author_id: int | None = None,
) -> list[CommentEvent]:
    """One event per distinct addressee: the post author and the replied-to author."""
    recipients: list[int] = []
    for user_id in (post_author_id, parent_author_id):
        if user_id is None or user_id == comment_row["user_id"] or user_id in recipients:
            continue
        recipients.append(user_id)
    return [comment_event(comment_row, user_id) for user_id in recipients]


def reaction_event(
    *,
    target: str,
    target_id: int,
    post_id: int,
    owner_id: int | None,
    reactor: UserRef,
    reaction: str,
) -> ReactionEvent | None:
    if owner_id is None or owner_id == reactor.user_id:
        return None
    return ReactionEvent(
        recipient_id=owner_id,
        target=target,
        target_id=target_id,
        post_id=post_id,
        reactor=reactor,
        reaction=reaction,
    )


async def _publish(hub: NotificationHub, event: EventBase) -> None:
    try:
        delivered = await hub.publish(event)
    except Exception:
        logger.exception("publish failed recipient=%s", event.recipient_id)
        return
    logger.debug("published kind=%s recipient=%s delivered=%d", getattr(event, "kind", "-"), event.recipient_id, delivered)


def fire_notification(hub: NotificationHub, *events: EventBase | None) -> None:
    """Schedule best-effort delivery of ``events`` without blocking the caller.

    Publishes are scheduled in argument order; the hub keeps per-recipient
    order from there.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("no running loop, dropping %d notification(s)", len(events))
        return
    for event in events:
        if event is None:
            continue
        task = loop.create_task(_publish(hub, event))
        _pending.add(task)
        task.add_done_callback(_pending.discard)
