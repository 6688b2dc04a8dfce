import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from app.errors import DataIntegrityFailure
from app.services.reactions import aggregate
from app.utils.age import as_utc, format_age, utcnow
from app.utils.refs import user_ref
from schemas.feed import CommentsInfo, CommunityRef, MediaPost, TextPost

logger = logging.getLogger("cirqls.feed")

SORT_NEW = "new"
SORT_TOP = "top"
SORT_MODES = (SORT_NEW, SORT_TOP)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _community(row: Mapping[str, Any]) -> CommunityRef | None:
    if row.get("community_id") is None:
        return None
    return CommunityRef(
        community_id=row["community_id"],
        name=row.get("community_name") or "",
        title=row.get("community_title"),
        logo_src=row.get("community_logo_src"),
    )


def build_post(
    row: Mapping[str, Any],
    reaction_rows: Iterable[Mapping[str, Any]] | None = None,
    comment_ids: Sequence[int] | None = None,
    viewer_id: int | None = None,
    now: datetime | None = None,
) -> TextPost | MediaPost:
    """Map one post row onto its variant, annotated with reactions and comment info."""
    comment_ids = list(comment_ids or [])
    common = dict(
        post_id=row["post_id"],
        title=row.get("title") or "",
        created_at=row["created_at"],
        created_since=format_age(row.get("created_at"), now),
        poster=user_ref(row),
        community=_community(row),
        reactions=aggregate(reaction_rows, viewer_id),
        comments_info=CommentsInfo(total=len(comment_ids), comment_ids=comment_ids),
    )
    kind = row.get("type")
    if kind == "text":
        return TextPost(description=row.get("description") or "", **common)
    if kind == "media":
        return MediaPost(media_src=row.get("media_src") or "", **common)
    logger.error("unknown post type post_id=%s type=%r", row.get("post_id"), kind)
    raise DataIntegrityFailure(f"Post {row.get('post_id')} has unknown type {kind!r}")


def _new_key(post: TextPost | MediaPost):
    created_at = as_utc(post.created_at) if post.created_at else _EPOCH
    return created_at, post.post_id


def order_posts(posts: Iterable[TextPost | MediaPost], mode: str) -> list[TextPost | MediaPost]:
    if mode not in SORT_MODES:
        raise ValueError(f"Unknown feed sort {mode!r}")
    ordered = sorted(posts, key=_new_key, reverse=True)
    if mode == SORT_TOP:
        # Stable sort: equal totals keep their chronological order
        ordered = sorted(ordered, key=lambda post: post.reactions.total, reverse=True)
    return ordered


def compose_feed(
    rows: Iterable[Mapping[str, Any]],
    mode: str = SORT_NEW,
    limit: int | None = None,
    viewer_id: int | None = None,
    reactions_by_post: Mapping[int, Iterable[Mapping[str, Any]]] | None = None,
    comments_by_post: Mapping[int, Sequence[int]] | None = None,
    now: datetime | None = None,
) -> list[TextPost | MediaPost]:
    """Build an ordered feed from flat post rows.

    ``new`` orders by creation time then post id, both descending. ``top``
    orders by total reactions and falls back to the ``new`` order on ties.
    The ordered feed is cut to ``limit`` entries when a limit is given.
    """
    if mode not in SORT_MODES:
        raise ValueError(f"Unknown feed sort {mode!r}")
    reactions_by_post = reactions_by_post or {}
    comments_by_post = comments_by_post or {}
    now = now or utcnow()
    posts = [
        build_post(
            row,
            reactions_by_post.get(row["post_id"]),
            comments_by_post.get(row["post_id"]),
            viewer_id,
            now,
        )
        for row in rows
    ]
    ordered = order_posts(posts, mode)
    if limit is not None:
        ordered = ordered[:max(limit, 0)]
    return ordered
