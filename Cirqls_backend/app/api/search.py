from fastapi import APIRouter, Depends, Query

from app.api.feed import load_feed
from app.gateway import EntityStoreGateway, get_gateway
from app.security import get_viewer_id
from schemas.feed import TextPost
from schemas.search import CommunityResult, MediaPostResult, SearchResponse, TextPostResult, UserResult

router = APIRouter()

USER_PREFIX = "u/"
COMMUNITY_PREFIX = "c/"
ALL_SCOPES = frozenset({"user", "community", "post"})


def parse_term(term: str) -> tuple[str, frozenset[str]]:
    """Split an optional ``u/`` or ``c/`` scope prefix off a search term.

    A bare prefix keeps an empty needle, which lists every entity in scope.
    """
    term = term.strip()
    lowered = term.lower()
    if lowered.startswith(USER_PREFIX):
        return term[len(USER_PREFIX):].strip(), frozenset({"user"})
    if lowered.startswith(COMMUNITY_PREFIX):
        return term[len(COMMUNITY_PREFIX):].strip(), frozenset({"community"})
    return term, ALL_SCOPES


@router.get("", response_model=SearchResponse)
async def search(
    term: str = Query(..., max_length=100),
    limit: int = Query(20, ge=1, le=100),
    viewer_id: int | None = Depends(get_viewer_id),
    gateway: EntityStoreGateway = Depends(get_gateway),
):
    needle, scopes = parse_term(term)
    results = []
    if not needle and scopes == ALL_SCOPES:
        return SearchResponse(term=term, results=results)
    if "user" in scopes:
        results.extend(
            UserResult(user_id=row["user_id"], username=row["username"], profile_pic_src=row.get("profile_pic_src"))
            for row in await gateway.search_users(needle, limit)
        )
    if "community" in scopes:
        results.extend(
            CommunityResult(
                community_id=row["community_id"],
                name=row["name"],
                title=row.get("title") or row["name"],
                logo_src=row.get("logo_src"),
            )
            for row in await gateway.search_communities(needle, limit)
        )
    if "post" in scopes:
        posts = await load_feed(gateway, await gateway.search_posts(needle, limit), "new", viewer_id)
        results.extend(
            (TextPostResult if isinstance(post, TextPost) else MediaPostResult)(**post.model_dump())
            for post in posts
        )
    return SearchResponse(term=term, results=results)
