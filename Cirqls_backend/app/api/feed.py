from typing import Any, Union

from fastapi import APIRouter, Depends

from app.config import settings
from app.errors import AuthorizationFailure, NotFound
from app.gateway import EntityStoreGateway, get_gateway
from app.security import get_viewer_id, require_viewer_id
from app.services.comment_tree import build_forest
from app.services.feed_composer import build_post, compose_feed
from app.services.notify_dispatcher import fire_notification, reaction_event
from app.services.reactions import group_rows
from app.utils.refs import user_ref
from app.ws import NotificationHub, get_hub
from schemas.feed import (
    CommentsListResponse,
    FeedListResponse,
    FeedSort,
    MediaPost,
    MediaPostCreate,
    ReactionRequest,
    SuccessResponse,
    TextPost,
    TextPostCreate,
)

router = APIRouter()


async def load_feed(
    gateway: EntityStoreGateway,
    rows: list[dict[str, Any]],
    sort: str,
    viewer_id: int | None,
    limit: int | None = None,
) -> list[TextPost | MediaPost]:
    post_ids = [row["post_id"] for row in rows]
    reactions = group_rows(await gateway.fetch_post_reaction_rows(post_ids), "post_id")
    comment_ids = await gateway.fetch_comment_ids_by_post(post_ids)
    return compose_feed(rows, sort, limit, viewer_id, reactions, comment_ids)


async def load_post(gateway: EntityStoreGateway, post_id: int, viewer_id: int | None) -> TextPost | MediaPost:
    row = await gateway.fetch_post_row(post_id)
    if not row:
        raise NotFound("Post not found")
    reactions = await gateway.fetch_post_reaction_rows([post_id])
    comment_ids = await gateway.fetch_comment_ids_by_post([post_id])
    return build_post(row, reactions, comment_ids.get(post_id), viewer_id)


@router.get("/home", response_model=FeedListResponse)
async def home_page_posts(
    sort: FeedSort = "new",
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    rows = await gateway.fetch_home_post_rows(viewer_id, window=settings.FEED_FETCH_WINDOW)
    posts = await load_feed(gateway, rows, sort, viewer_id, settings.FEED_PAGE_SIZE)
    return FeedListResponse(sort=sort, posts=posts)


@router.get("/explore", response_model=FeedListResponse)
async def explore_page_posts(
    sort: FeedSort = "new",
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    rows = await gateway.fetch_explore_post_rows(window=settings.FEED_FETCH_WINDOW)
    posts = await load_feed(gateway, rows, sort, viewer_id, settings.FEED_PAGE_SIZE)
    return FeedListResponse(sort=sort, posts=posts)


@router.get("/{post_id}", response_model=Union[TextPost, MediaPost])
async def get_post(
    post_id: int,
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    return await load_post(gateway, post_id, viewer_id)


@router.get("/{post_id}/comments", response_model=CommentsListResponse)
async def post_comments(
    post_id: int,
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    if not await gateway.fetch_post_row(post_id):
        raise NotFound("Post not found")
    rows = await gateway.fetch_comment_rows(post_id)
    reaction_rows = await gateway.fetch_comment_reaction_rows(row["comment_id"] for row in rows)
    forest = build_forest(rows, group_rows(reaction_rows, "comment_id"), viewer_id)
    return CommentsListResponse(post_id=post_id, comments=forest)


async def _require_community(gateway: EntityStoreGateway, community_id: int) -> None:
    if not await gateway.get_community(community_id):
        raise NotFound("Community not found")


@router.post("/text", response_model=Union[TextPost, MediaPost])
async def add_text_post(
    payload: TextPostCreate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await _require_community(gateway, payload.community_id)
    post_id = await gateway.insert_post(
        user_id=viewer_id,
        community_id=payload.community_id,
        type="text",
        title=payload.title.strip(),
        description=payload.description,
    )
    return await load_post(gateway, post_id, viewer_id)


@router.post("/media", response_model=Union[TextPost, MediaPost])
async def add_media_post(
    payload: MediaPostCreate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await _require_community(gateway, payload.community_id)
    post_id = await gateway.insert_post(
        user_id=viewer_id,
        community_id=payload.community_id,
        type="media",
        title=payload.title.strip(),
        media_src=payload.media_src,
    )
    return await load_post(gateway, post_id, viewer_id)


@router.delete("/{post_id}", response_model=Union[TextPost, MediaPost])
async def delete_post(
    post_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    post = await load_post(gateway, post_id, viewer_id)
    if not post.poster or post.poster.user_id != viewer_id:
        raise AuthorizationFailure("Only the author can delete this post")
    await gateway.delete_post(post_id)
    return post


@router.post("/{post_id}/reaction", response_model=Union[TextPost, MediaPost])
async def add_post_reaction(
    post_id: int,
    payload: ReactionRequest,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
    hub: NotificationHub = Depends(get_hub),
):
    row = await gateway.fetch_post_row(post_id)
    if not row:
        raise NotFound("Post not found")
    await gateway.set_post_reaction(post_id, viewer_id, payload.reaction)
    reactor = user_ref(await gateway.get_user(viewer_id) or {"user_id": viewer_id})
    fire_notification(hub, reaction_event(
        target="post",
        target_id=post_id,
        post_id=post_id,
        owner_id=row["user_id"],
        reactor=reactor,
        reaction=payload.reaction,
    ))
    return await load_post(gateway, post_id, viewer_id)


@router.delete("/{post_id}/reaction", response_model=Union[TextPost, MediaPost])
async def delete_post_reaction(
    post_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    if not await gateway.fetch_post_row(post_id):
        raise NotFound("Post not found")
    await gateway.delete_post_reaction(post_id, viewer_id)
    return await load_post(gateway, post_id, viewer_id)


@router.post("/{post_id}/save", response_model=SuccessResponse)
async def save_post(
    post_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    if not await gateway.fetch_post_row(post_id):
        raise NotFound("Post not found")
    await gateway.save_post(post_id, viewer_id)
    return SuccessResponse()


@router.delete("/{post_id}/save", response_model=SuccessResponse)
async def unsave_post(
    post_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await gateway.unsave_post(post_id, viewer_id)
    return SuccessResponse()
