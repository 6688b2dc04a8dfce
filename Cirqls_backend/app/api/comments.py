from fastapi import APIRouter, Depends

from app.errors import AuthorizationFailure, NotFound
from app.gateway import EntityStoreGateway, get_gateway
from app.security import get_viewer_id, require_viewer_id
from app.services.comment_tree import build_forest, find_node, flat_nodes
from app.services.notify_dispatcher import comment_events, fire_notification, reaction_event
from app.services.reactions import group_rows
from app.utils.refs import user_ref
from app.ws import NotificationHub, get_hub
from schemas.feed import CommentCreate, CommentNode, ReactionRequest, ReadCommentsRequest

router = APIRouter()


async def load_comment(gateway: EntityStoreGateway, comment_id: int, viewer_id: int | None) -> CommentNode:
    """Build the post's forest and return the subtree rooted at ``comment_id``."""
    row = await gateway.fetch_comment_row(comment_id)
    if not row:
        raise NotFound("Comment not found")
    rows = await gateway.fetch_comment_rows(row["post_id"])
    reaction_rows = await gateway.fetch_comment_reaction_rows(r["comment_id"] for r in rows)
    forest = build_forest(rows, group_rows(reaction_rows, "comment_id"), viewer_id)
    node = find_node(forest, comment_id)
    if node is None:
        raise NotFound("Comment not found")
    return node


@router.get("/{comment_id}", response_model=CommentNode)
async def get_comment(
    comment_id: int,
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    return await load_comment(gateway, comment_id, viewer_id)


@router.post("", response_model=CommentNode)
async def add_comment(
    payload: CommentCreate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
    hub: NotificationHub = Depends(get_hub),
):
    post = await gateway.fetch_post_row(payload.post_id)
    if not post:
        raise NotFound("Post not found")
    parent = None
    if payload.parent_comment_id is not None:
        parent = await gateway.fetch_comment_row(payload.parent_comment_id)
        # A reply must stay on its parent's post
        if not parent or parent["post_id"] != payload.post_id:
            raise NotFound("Parent comment not found on this post")
    comment_id = await gateway.insert_comment(
        post_id=payload.post_id,
        user_id=viewer_id,
        message=payload.message,
        parent_comment_id=payload.parent_comment_id,
    )
    row = await gateway.fetch_comment_row(comment_id)
    fire_notification(hub, *comment_events(row, post["user_id"], parent["user_id"] if parent else None))
    return await load_comment(gateway, comment_id, viewer_id)


@router.post("/read", response_model=list[CommentNode])
async def read_comments(
    payload: ReadCommentsRequest,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    rows = await gateway.mark_comments_read(payload.comment_ids, viewer_id)
    reaction_rows = await gateway.fetch_comment_reaction_rows(row["comment_id"] for row in rows)
    return flat_nodes(rows, group_rows(reaction_rows, "comment_id"), viewer_id)


@router.delete("/{comment_id}", response_model=CommentNode)
async def delete_comment(
    comment_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    node = await load_comment(gateway, comment_id, viewer_id)
    if not node.commenter or node.commenter.user_id != viewer_id:
        raise AuthorizationFailure("Only the author can delete this comment")
    await gateway.delete_comment(comment_id)
    return node


@router.post("/{comment_id}/reaction", response_model=CommentNode)
async def add_comment_reaction(
    comment_id: int,
    payload: ReactionRequest,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
    hub: NotificationHub = Depends(get_hub),
):
    row = await gateway.fetch_comment_row(comment_id)
    if not row:
        raise NotFound("Comment not found")
    await gateway.set_comment_reaction(comment_id, viewer_id, payload.reaction)
    reactor = user_ref(await gateway.get_user(viewer_id) or {"user_id": viewer_id})
    fire_notification(hub, reaction_event(
        target="comment",
        target_id=comment_id,
        post_id=row["post_id"],
        owner_id=row["user_id"],
        reactor=reactor,
        reaction=payload.reaction,
    ))
    return await load_comment(gateway, comment_id, viewer_id)


@router.delete("/{comment_id}/reaction", response_model=CommentNode)
async def delete_comment_reaction(
    comment_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    if not await gateway.fetch_comment_row(comment_id):
        raise NotFound("Comment not found")
    await gateway.delete_comment_reaction(comment_id, viewer_id)
    return await load_comment(gateway, comment_id, viewer_id)
