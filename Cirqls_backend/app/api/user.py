from typing import Any, Mapping

from fastapi import APIRouter, Depends, HTTPException

from app.api.feed import load_feed
from app.config import settings
from app.errors import AuthenticationFailure, AuthorizationFailure, NotFound
from app.gateway import EntityStoreGateway, get_gateway
from app.security import get_viewer_id, require_viewer_id
from app.services.comment_tree import flat_nodes
from app.services.reactions import group_rows
from app.utils.refs import user_ref
from schemas.feed import CommentNode, FeedListResponse, FeedSort, SuccessResponse
from schemas.user import UserListResponse, UserResponse, UserUpdate

router = APIRouter()


async def _require_user(gateway: EntityStoreGateway, username: str) -> Mapping[str, Any]:
    user = await gateway.get_user_by_username(username)
    if not user:
        raise NotFound("User not found")
    return user


async def _profile(gateway: EntityStoreGateway, user: Mapping[str, Any]) -> UserResponse:
    followers, following = await gateway.count_follows(user["user_id"])
    return UserResponse(
        user_id=user["user_id"],
        username=user["username"],
        email=user.get("email"),
        profile_pic_src=user.get("profile_pic_src"),
        created_at=user.get("created_at"),
        followers_count=followers,
        following_count=following,
    )


def _require_self(user: Mapping[str, Any], viewer_id: int | None) -> None:
    if viewer_id is None:
        raise AuthenticationFailure("Not authenticated")
    if user["user_id"] != viewer_id:
        raise AuthorizationFailure("Only available to the account owner")


@router.get("/me", response_model=UserResponse)
async def me(
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await gateway.get_user(viewer_id)
    if not user:
        raise NotFound("User not found")
    return await _profile(gateway, user)


@router.patch("/me", response_model=UserResponse)
async def change_username(
    payload: UserUpdate,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    taken = await gateway.get_user_by_username(payload.username)
    if taken and taken["user_id"] != viewer_id:
        raise HTTPException(status_code=409, detail="Username already taken")
    await gateway.update_user(viewer_id, {"username": payload.username})
    user = await gateway.get_user(viewer_id)
    if not user:
        raise NotFound("User not found")
    return await _profile(gateway, user)


@router.get("/{username}", response_model=UserResponse)
async def get_user(username: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    return await _profile(gateway, await _require_user(gateway, username))


@router.get("/{username}/followers", response_model=UserListResponse)
async def followers(username: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    user = await _require_user(gateway, username)
    rows = await gateway.fetch_followers(user["user_id"])
    return UserListResponse(users=[user_ref(row) for row in rows])


@router.get("/{username}/following", response_model=UserListResponse)
async def following(username: str, gateway: EntityStoreGateway = Depends(get_gateway)):
    user = await _require_user(gateway, username)
    rows = await gateway.fetch_following(user["user_id"])
    return UserListResponse(users=[user_ref(row) for row in rows])


@router.get("/{username}/posts", response_model=FeedListResponse)
async def user_posts(
    username: str,
    sort: FeedSort = "new",
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    rows = await gateway.fetch_user_post_rows(user["user_id"], window=settings.FEED_FETCH_WINDOW)
    posts = await load_feed(gateway, rows, sort, viewer_id, settings.FEED_PAGE_SIZE)
    return FeedListResponse(sort=sort, posts=posts)


@router.get("/{username}/comments", response_model=list[CommentNode])
async def user_comments(
    username: str,
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    _require_self(user, viewer_id)
    rows = await gateway.fetch_user_comment_rows(user["user_id"])
    reaction_rows = await gateway.fetch_comment_reaction_rows(row["comment_id"] for row in rows)
    return flat_nodes(rows, group_rows(reaction_rows, "comment_id"), viewer_id)


@router.get("/{username}/saved", response_model=FeedListResponse)
async def saved_posts(
    username: str,
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    _require_self(user, viewer_id)
    rows = await gateway.fetch_saved_post_rows(user["user_id"])
    posts = await load_feed(gateway, rows, "new", viewer_id)
    return FeedListResponse(sort="new", posts=posts)


@router.post("/{username}/follow", response_model=SuccessResponse)
async def follow(
    username: str,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    if user["user_id"] == viewer_id:
        raise HTTPException(status_code=400, detail="Cannot follow yourself")
    await gateway.follow(viewer_id, user["user_id"])
    return SuccessResponse()


@router.delete("/{username}/follow", response_model=SuccessResponse)
async def unfollow(
    username: str,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    await gateway.unfollow(viewer_id, user["user_id"])
    return SuccessResponse()


@router.delete("/{username}/follower", response_model=SuccessResponse)
async def remove_follower(
    username: str,
    viewer_id: int = Depends(require_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    user = await _require_user(gateway, username)
    await gateway.unfollow(user["user_id"], viewer_id)
    return SuccessResponse()
