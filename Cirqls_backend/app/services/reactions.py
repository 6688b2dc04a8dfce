from collections import defaultdict
from typing import Any, Hashable, Iterable, Mapping

from schemas.feed import ReactionSummary

LIKE = "like"
DISLIKE = "dislike"
REACTION_TYPES = (LIKE, DISLIKE)


def aggregate(rows: Iterable[Mapping[str, Any]] | None, viewer_id: Hashable | None = None) -> ReactionSummary:
    """Tally reaction rows into a :class:`ReactionSummary`.

    Each row carries ``user_id`` and ``type``. Types other than like/dislike
    are skipped so a new reaction kind does not break older readers. When
    ``viewer_id`` is given, the viewer's own like/dislike is reported; any
    other case reads as ``"none"``.
    """
    likes = 0
    dislikes = 0
    viewer_reaction = "none"
    for row in rows or ():
        kind = row.get("type")
        if kind == LIKE:
            likes += 1
        elif kind == DISLIKE:
            dislikes += 1
        else:
            continue
        if viewer_id is not None and row.get("user_id") == viewer_id:
            viewer_reaction = kind
    return ReactionSummary(
        likes=likes,
        dislikes=dislikes,
        total=likes + dislikes,
        viewer_reaction=viewer_reaction,
    )


def group_rows(rows: Iterable[Mapping[str, Any]], key: str) -> dict[Any, list[Mapping[str, Any]]]:
    """Group flat rows by one of their columns, keeping supply order."""
    grouped: dict[Any, list[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[row[key]].append(row)
    return dict(grouped)
