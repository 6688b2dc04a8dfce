from typing import Any, Mapping

from fastapi import APIRouter, Depends, HTTPException

from app.api.feed import load_feed
from app.config import settings
from app.errors import AuthorizationFailure, NotFound
from app.gateway import EntityStoreGateway, get_gateway
from app.security import get_viewer_id, require_viewer_id
from app.utils.refs import user_ref
from schemas.community import (
    CommunityCreate,
    CommunityListResponse,
    CommunityMembersResponse,
    CommunityResponse,
    CommunityUpdate,
)
from schemas.feed import FeedListResponse, FeedSort

router = APIRouter()


def to_community(row: Mapping[str, Any]) -> CommunityResponse:
    return CommunityResponse(
        community_id=row["community_id"],
        name=row["name"],
        title=row.get("title") or row["name"],
        description=row.get("description") or "",
        type=row.get("type") or "public",
        logo_src=row.get("logo_src"),
        created_at=row.get("created_at"),
        members_count=row.get("members_count") or 0,
    )


async def _by_name(gateway: EntityStoreGateway, name: str) -> Mapping[str, Any]:
    row = await gateway.get_community_by_name(name)
    if not row:
        raise NotFound("Community not found")
    return row


async def _by_id(gateway: EntityStoreGateway, community_id: int) -> Mapping[str, Any]:
    row = await gateway.get_community(community_id)
    if not row:
        raise NotFound("Community not found")
    return row


@router.get("", response_model=CommunityListResponse)
async def list_communities(gateway: EntityStoreGateway = Depends(get_gateway)):
    rows = await gateway.list_communities()
    return CommunityListResponse(communities=[to_community(row) for row in rows])


@router.get("/{name}", response_model=CommunityResponse)
async def get_community(name: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    return to_community(await _by_name(gateway, name))


@router.get("/{name}/members", response_model=CommunityMembersResponse)
async def community_members(name: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    community = await _by_name(gateway, name)
    rows = await gateway.fetch_community_members(community["community_id"])
    return CommunityMembersResponse(community_id=community["community_id"], users=[user_ref(r) for r in rows])


@router.get("/{name}/moderators", response_model=CommunityMembersResponse)
async def community_moderators(name: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    community = await _by_name(gateway, name)
    rows = await gateway.fetch_community_moderators(community["community_id"])
    return CommunityMembersResponse(community_id=community["community_id"], users=[user_ref(r) for r in rows])


@router.get("/{name}/posts", response_model=FeedListResponse)
async def community_posts(
    name: str,
    sort: FeedSort = "new",
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    community = await _by_name(gateway, name)
    rows = await gateway.fetch_community_post_rows(community["community_id"], window=settings.FEED_FETCH_WINDOW)
    posts = await load_feed(gateway, rows, sort, viewer_id, settings.FEED_PAGE_SIZE)
    return FeedListResponse(sort=sort, posts=posts)


@router.post("", response_model=CommunityResponse)
async def create_community(
    payload: CommunityCreate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    if await gateway.get_community_by_name(payload.name):
        raise HTTPException(status_code=409, detail="Community name already taken")
    community_id = await gateway.insert_community(
        creator_id=viewer_id,
        name=payload.name,
        title=payload.title.strip(),
        description=payload.description,
        type=payload.type,
        logo_src=payload.logo_src,
    )
    return to_community(await _by_id(gateway, community_id))


@router.patch("/{community_id}", response_model=CommunityResponse)
async def update_community(
    community_id: int,
    payload: CommunityUpdate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await _by_id(gateway, community_id)
    if not await gateway.is_moderator(community_id, viewer_id):
        raise AuthorizationFailure("Only moderators can edit this community")
    await gateway.update_community(community_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return to_community(await _by_id(gateway, community_id))


@router.post("/{community_id}/membership", response_model=CommunityResponse)
async def join_community(
    community_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await _by_id(gateway, community_id)
    await gateway.join_community(community_id, viewer_id)
    return to_community(await _by_id(gateway, community_id))


@router.delete("/{community_id}/membership", response_model=CommunityResponse)
async def leave_community(
    community_id: int,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    await _by_id(gateway, community_id)
    await gateway.leave_community(community_id, viewer_id)
    return to_community(await _by_id(gateway, community_id))
